"""
JWT and DPoP utilities for AT Protocol authentication.

Provides helper functions for creating DPoP (Demonstrating Proof of Possession) proofs as
specified in RFC 9449 and private_key_jwt client assertions (RFC 7523).
"""

import base64
import hashlib
import secrets
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from urllib.parse import urlsplit, urlunsplit
from jwcrypto import jwt, jwk
from ulid import ULID

from social.graze.atclient.errors import DpopException

CLIENT_ASSERTION_TYPE = "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"


def normalize_htu(http_uri: str) -> str:
    """Strip the query and fragment from a request URI for the `htu` claim.

    Args:
        http_uri: Target HTTP URI for the request

    Returns:
        str: scheme, lowercase host, port and path of the URI

    Raises:
        DpopException: If the URI is not an absolute http(s) URL
    """
    try:
        parts = urlsplit(str(http_uri))
    except ValueError as e:
        raise DpopException.malformed_url(str(http_uri)) from e

    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise DpopException.malformed_url(str(http_uri))

    return urlunsplit((parts.scheme, parts.netloc.lower(), parts.path, "", ""))


def access_token_hash(access_token: str) -> str:
    """Compute the `ath` claim: base64url(SHA-256(access_token)) without padding."""
    digest = hashlib.sha256(access_token.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def create_dpop_header(public_key_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Create DPoP JWT header with embedded public key.

    Args:
        public_key_dict: Public key dictionary of the session's DPoP key

    Returns:
        Dict[str, Any]: DPoP JWT header ready for use with jwcrypto
    """
    return {
        "alg": "ES256",
        "jwk": public_key_dict,
        "typ": "dpop+jwt",
    }


def create_dpop_claims(
    http_method: str,
    http_uri: str,
    issued_at: Optional[datetime] = None,
    expires_in_seconds: int = 30,
    nonce: Optional[str] = None,
    access_token: Optional[str] = None,
) -> Dict[str, Any]:
    """Create DPoP JWT claims for request binding.

    Binds the proof to a specific HTTP method and URI, and when an access token is given, to
    that token through the `ath` claim.

    Args:
        http_method: HTTP method (e.g., "POST", "GET")
        http_uri: Target HTTP URI for the request, normalized before use
        issued_at: Token issuance time (defaults to current UTC time)
        expires_in_seconds: Token validity period in seconds (default: 30)
        nonce: Optional server issued nonce
        access_token: Access token the proof accompanies, for resource server calls

    Returns:
        Dict[str, Any]: DPoP JWT claims with a fresh `jti`

    Security considerations:
        - Short expiration time (30s default) reduces replay attack window
        - A unique jti on every proof lets servers detect replays
    """
    if issued_at is None:
        issued_at = datetime.now(timezone.utc)

    claims: Dict[str, Any] = {
        "jti": secrets.token_urlsafe(32),
        "htm": http_method.upper(),
        "htu": normalize_htu(http_uri),
        "iat": int(issued_at.timestamp()),
        "exp": int(issued_at.timestamp()) + expires_in_seconds,
    }

    if nonce is not None:
        claims["nonce"] = nonce

    if access_token is not None:
        claims["ath"] = access_token_hash(access_token)

    return claims


def sign_jwt(
    key: jwk.JWK, header: Dict[str, Any], claims: Dict[str, Any]
) -> str:
    token = jwt.JWT(header=header, claims=claims)
    token.make_signed_token(key)
    return token.serialize()


def create_client_assertion(
    signing_key: jwk.JWK,
    client_id: str,
    audience: str,
    issued_at: Optional[datetime] = None,
) -> str:
    """Create a private_key_jwt client assertion.

    Args:
        signing_key: Confidential client signing key, its `kid` goes in the header
        client_id: Client identifier, used as both issuer and subject
        audience: Authorization server issuer

    Returns:
        str: Serialized, signed client assertion JWT
    """
    if issued_at is None:
        issued_at = datetime.now(timezone.utc)

    header = {"alg": "ES256", "kid": signing_key.get("kid")}
    claims = {
        "iss": client_id,
        "sub": client_id,
        "aud": audience,
        "jti": str(ULID()),
        "iat": int(issued_at.timestamp()),
    }
    return sign_jwt(signing_key, header, claims)
