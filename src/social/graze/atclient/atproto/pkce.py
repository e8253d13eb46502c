"""
PKCE and state generation (RFC 7636).

All values are URL-safe base64 without padding. The verifier is 32 random bytes, which encodes
to exactly 43 characters, the minimum length RFC 7636 section 4.1 allows.
"""

import base64
import hashlib
import secrets
from typing import Tuple


def _encode(value: bytes) -> str:
    return base64.urlsafe_b64encode(value).decode("ascii").rstrip("=")


def generate_verifier() -> str:
    """Generate a PKCE code verifier from 32 bytes of secure randomness."""
    return _encode(secrets.token_bytes(32))


def derive_challenge(verifier: str) -> str:
    """
    Derive the S256 code challenge for a verifier.

    Args:
        verifier: The code verifier, an ASCII string

    Returns:
        str: base64url(SHA-256(verifier)) without padding
    """
    hashed = hashlib.sha256(verifier.encode("ascii")).digest()
    return _encode(hashed)


def generate_state() -> str:
    """Generate an opaque state value used to correlate the authorization callback."""
    return _encode(secrets.token_bytes(32))


def generate_nonce() -> str:
    return _encode(secrets.token_bytes(32))


def generate_pkce_pair() -> Tuple[str, str]:
    """
    Generate a PKCE verifier and its S256 challenge.

    Returns:
        Tuple[str, str]: A tuple containing (pkce_verifier, pkce_challenge)
    """
    verifier = generate_verifier()
    return (verifier, derive_challenge(verifier))
