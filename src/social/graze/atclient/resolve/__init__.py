"""
Identity resolution boundary used by the OAuth client to find an account's PDS.
"""
