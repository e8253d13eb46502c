"""
Protected resource and authorization server discovery.

The fetch functions return None on a non-200 response so callers can turn that into a specific
resolution error. `validate_authorization_server` enforces what the AT Protocol OAuth profile
requires of an issuer before any secret material is generated for it.
"""

import logging
from typing import Optional
from urllib.parse import urlsplit

from aiohttp import ClientSession
from pydantic import ValidationError

from social.graze.atclient.errors import ConfigurationException
from social.graze.atclient.model.oauth import (
    AuthorizationServerMetadata,
    ProtectedResourceMetadata,
)

logger = logging.getLogger(__name__)


async def oauth_protected_resource(
    session: ClientSession, pds: str
) -> Optional[ProtectedResourceMetadata]:
    async with session.get(
        f"{pds.rstrip('/')}/.well-known/oauth-protected-resource"
    ) as resp:
        if resp.status != 200:
            logger.debug(f"Protected resource metadata for {pds} returned {resp.status}")
            return None
        try:
            return ProtectedResourceMetadata.model_validate(await resp.json())
        except ValidationError:
            logger.exception(f"Invalid protected resource metadata for {pds}")
            return None


async def oauth_authorization_server(
    session: ClientSession, authorization_server: str
) -> Optional[AuthorizationServerMetadata]:
    async with session.get(
        f"{authorization_server.rstrip('/')}/.well-known/oauth-authorization-server"
    ) as resp:
        if resp.status != 200:
            logger.debug(
                f"Authorization server metadata for {authorization_server} returned {resp.status}"
            )
            return None
        try:
            return AuthorizationServerMetadata.model_validate(await resp.json())
        except ValidationError as e:
            raise ConfigurationException.metadata_invalid(str(e)) from e


def _origin(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme.lower()}://{parts.netloc.lower()}"


def validate_authorization_server(
    metadata: AuthorizationServerMetadata, authorization_server: str
) -> None:
    """
    Check that an issuer can run the DPoP bound PKCE flow.

    Raises:
        ConfigurationException: If the issuer origin does not match the advertised server, or
            S256 PKCE or ES256 DPoP is not supported
    """
    if _origin(metadata.issuer) != _origin(authorization_server):
        raise ConfigurationException.metadata_invalid(
            f"issuer {metadata.issuer} does not match {authorization_server}"
        )

    if "S256" not in metadata.code_challenge_methods_supported:
        raise ConfigurationException.pkce_not_supported(metadata.issuer)

    if "ES256" not in metadata.dpop_signing_alg_values_supported:
        raise ConfigurationException.dpop_not_supported(metadata.issuer)

    if metadata.scopes_supported and "atproto" not in metadata.scopes_supported:
        raise ConfigurationException.metadata_invalid(
            f"issuer {metadata.issuer} does not support the atproto scope"
        )

    if metadata.require_pushed_authorization_requests and (
        metadata.pushed_authorization_request_endpoint is None
    ):
        raise ConfigurationException.metadata_invalid(
            f"issuer {metadata.issuer} requires PAR but advertises no PAR endpoint"
        )
