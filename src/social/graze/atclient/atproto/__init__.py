"""
AT Protocol Integration

This package implements the client side of AT Protocol authentication and authenticated
requests to Personal Data Server (PDS) instances.

Key Components:
- pkce.py: PKCE verifier, challenge and state generation
- jwt.py: DPoP proof and client assertion claims and signing
- dpop.py: Session scoped DPoP signer with per-audience nonce tracking
- chain.py: Middleware chain for outbound requests (DPoP, client assertions, metrics)
- pds.py: Protected resource and authorization server discovery
- oauth.py: Authorization flow, token refresh, resume and logout
- session.py: Session token state with single-flight refresh
- xrpc.py: Authenticated XRPC requests with bounded retries
- app_password.py: Legacy app password sessions

Key Features:
- OAuth 2.0 flow with PKCE and pushed authorization requests
- DPoP (Demonstrating Proof-of-Possession) bound access tokens
- One nonce retry and one refresh retry per request, never more
"""
