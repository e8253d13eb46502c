"""
atclient - AT Protocol authenticated session client

This package implements the authenticated-session core of an AT Protocol client: the OAuth 2.0
authorization code flow with PKCE, DPoP sender-constrained tokens, session token state with
single-flight refresh, and the authenticated XRPC request pipeline every higher-level endpoint
client goes through.

Key Components:
- app: Settings, metrics and the command line entry point
- atproto: Protocol integration (PKCE, DPoP, OAuth, sessions, XRPC pipeline, app passwords)
- model: Pydantic models for server metadata, token responses and persisted token records
- resolve: Minimal handle and DID to PDS resolution used when starting an authorization

Architecture Overview:
1. Authorization Flow:
   - `OAuthClient.start_authorization` discovers the issuer, creates a PKCE pair and a DPoP key
     and returns the authorization URL
   - `OAuthClient.complete_authorization` consumes the pending request exactly once and
     exchanges the code for a DPoP-bound `Session`

2. Session Management:
   - `Session.ensure_fresh` refreshes at most once at a time no matter how many tasks ask
   - Refreshed tokens are swapped in atomically and optionally written to a `TokenStore`

3. Authenticated Calls:
   - `XrpcClient` signs every call, and recovers from one nonce challenge and one expired
     token per logical call before surfacing a fatal error
"""
