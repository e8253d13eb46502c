"""
Models

Pydantic models for OAuth server metadata, token responses and persisted token records, plus the
token store boundary and the in-process pending authorization store.
"""
