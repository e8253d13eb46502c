"""
OAuth wire and persistence models.

Server metadata and token responses are parsed into pydantic models with unknown fields ignored,
so servers adding fields never break discovery. `TokenRecord` is the durable projection of a
session handed to a `TokenStore`.
"""

import base64
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, field_serializer, field_validator

from social.graze.atclient.atproto.dpop import DpopSigner


class ProtectedResourceMetadata(BaseModel):
    """`/.well-known/oauth-protected-resource` document of a PDS."""

    model_config = ConfigDict(extra="ignore")

    resource: Optional[str] = None
    authorization_servers: List[str] = []


class AuthorizationServerMetadata(BaseModel):
    """RFC 8414 metadata, limited to what the AT Protocol flow reads."""

    model_config = ConfigDict(extra="ignore")

    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    pushed_authorization_request_endpoint: Optional[str] = None
    require_pushed_authorization_requests: bool = False
    registration_endpoint: Optional[str] = None
    revocation_endpoint: Optional[str] = None
    scopes_supported: List[str] = []
    response_types_supported: List[str] = []
    grant_types_supported: List[str] = []
    code_challenge_methods_supported: List[str] = []
    dpop_signing_alg_values_supported: List[str] = []
    token_endpoint_auth_methods_supported: List[str] = []
    authorization_response_iss_parameter_supported: bool = False


class ClientRegistration(BaseModel):
    """RFC 7591 registration response."""

    model_config = ConfigDict(extra="ignore")

    client_id: str
    client_secret: Optional[str] = None
    client_id_issued_at: Optional[int] = None
    client_secret_expires_at: Optional[int] = None


class TokenResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    access_token: str
    token_type: str
    expires_in: Optional[int] = None
    refresh_token: Optional[str] = None
    scope: Optional[str] = None
    sub: Optional[str] = None


class CredentialKind(str, Enum):
    oauth = "oauth"
    app_password = "app_password"


class TokenRecord(BaseModel):
    """
    Persisted form of a session.

    `dpop_private_key` holds the raw PKCS#8 DER bytes of the session DPoP key and is the
    sensitive part of the record. In JSON form it is base64 encoded.
    """

    did: str
    handle: Optional[str] = None
    kind: CredentialKind = CredentialKind.oauth
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "DPoP"
    pds_url: str
    issuer: Optional[str] = None
    token_endpoint: Optional[str] = None
    revocation_endpoint: Optional[str] = None
    client_id: Optional[str] = None
    scope: Optional[str] = None
    dpop_private_key: Optional[bytes] = None
    auth_server_nonce: Optional[str] = None
    resource_server_nonce: Optional[str] = None
    token_obtained_at: datetime
    expires_at: datetime

    @field_validator("dpop_private_key", mode="before")
    @classmethod
    def decode_dpop_private_key(cls, v):
        if isinstance(v, str):
            return base64.b64decode(v)
        return v

    @field_serializer("dpop_private_key", when_used="json")
    def encode_dpop_private_key(self, v: Optional[bytes]) -> Optional[str]:
        if v is None:
            return None
        return base64.b64encode(v).decode("ascii")


@dataclass(repr=False, eq=False)
class AuthorizationRequest:
    """
    An outstanding authorization, created by `start_authorization` and consumed exactly once
    by `complete_authorization`.

    The signer is owned by the request until completion hands it to the new session. An
    abandoned request discards it when it is evicted.
    """

    state: str
    pkce_verifier: str
    pkce_challenge: str
    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    revocation_endpoint: Optional[str]
    pds_url: str
    expected_did: Optional[str]
    handle: Optional[str]
    login_hint: Optional[str]
    redirect_uri: str
    client_id: str
    scope: str
    signer: DpopSigner
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def is_expired(self, ttl_seconds: int, now: Optional[datetime] = None) -> bool:
        if now is None:
            now = datetime.now(timezone.utc)
        return (now - self.created_at).total_seconds() > ttl_seconds


@dataclass(frozen=True)
class AuthorizationStart:
    """Result of starting an authorization: the URL to send the user to and its state."""

    url: str
    state: str
