"""
Legacy app password sessions.

App password sessions use plain `Bearer` tokens from `com.atproto.server.createSession` and are
refreshed with `com.atproto.server.refreshSession`. They share the `Session` type and the XRPC
pipeline with OAuth sessions but carry no DPoP key.
"""

import asyncio
from datetime import datetime, timezone
import logging
from typing import Any, Dict, Optional

from aiohttp import ClientError, ClientSession
import sentry_sdk

from social.graze.atclient.app.config import Settings
from social.graze.atclient.app.metrics import MetricsClient, NoOpMetricsClient
from social.graze.atclient.atproto.session import Session, TokenSet
from social.graze.atclient.errors import (
    ConfigurationException,
    ProtocolException,
    ReauthorizationRequired,
    TransportException,
)
from social.graze.atclient.model.oauth import CredentialKind
from social.graze.atclient.model.store import TokenStore

logger = logging.getLogger(__name__)

REJECTED_SESSION_ERRORS = ("ExpiredToken", "InvalidToken", "AuthenticationRequired")


async def _post_json(
    http_session: ClientSession,
    url: str,
    headers: Dict[str, str],
    payload: Optional[Dict[str, Any]] = None,
) -> tuple[int, Any]:
    try:
        async with http_session.post(url, headers=headers, json=payload) as response:
            if response.content_type == "application/json":
                return response.status, await response.json()
            return response.status, await response.text()
    except (ClientError, asyncio.TimeoutError) as e:
        raise TransportException(f"error-transport-1000 POST {url} failed: {e!r}") from e


def _body_error(body: Any) -> Optional[str]:
    if isinstance(body, dict):
        error = body.get("error", None)
        if isinstance(error, str):
            return error
    return None


class AppPasswordClient:
    """
    Creates and refreshes bearer token sessions from an identifier and app password.

    Args:
        settings: Client settings
        http_session: Shared aiohttp session, owned by the caller
        token_store: Optional store for created and refreshed sessions
        metrics_client: Optional metrics sink
    """

    def __init__(
        self,
        settings: Settings,
        http_session: ClientSession,
        token_store: Optional[TokenStore] = None,
        metrics_client: Optional[MetricsClient] = None,
    ) -> None:
        self._settings = settings
        self._http_session = http_session
        self._token_store = token_store
        self._metrics = metrics_client or NoOpMetricsClient()

    def _metric(self, name: str) -> str:
        return f"{self._settings.statsd_prefix}.app_password.{name}"

    def _tokens_from_body(
        self, body: Dict[str, Any], obtained_at: datetime
    ) -> TokenSet:
        access_token = body.get("accessJwt", None)
        refresh_token = body.get("refreshJwt", None)
        if not isinstance(access_token, str) or not isinstance(refresh_token, str):
            raise ProtocolException.invalid_token_response("missing accessJwt or refreshJwt")

        # TODO: Pull the lifetime from the access token JWT claims payload.
        return TokenSet.from_lifetime(
            access_token,
            refresh_token,
            self._settings.app_password_access_token_expiry,
            token_type="Bearer",
            obtained_at=obtained_at,
        )

    async def login(self, identifier: str, password: str, pds_url: str) -> Session:
        """
        Create a session with `com.atproto.server.createSession`.

        Raises:
            ProtocolException: The PDS refused the credentials or answered with an invalid body
            TransportException: Network failure or an unexpected status
        """
        pds_url = pds_url.rstrip("/")
        url = f"{pds_url}/xrpc/com.atproto.server.createSession"
        obtained_at = datetime.now(timezone.utc)

        status, body = await _post_json(
            self._http_session,
            url,
            {},
            {"identifier": identifier, "password": password},
        )

        if status != 200:
            self._metrics.increment(self._metric("login.failed"), 1)
            error = _body_error(body)
            if 400 <= status < 500 and error is not None:
                description = body.get("message", None) if isinstance(body, dict) else None
                raise ProtocolException.oauth_error(url, status, error, description, body)
            raise TransportException.unexpected_status(url, status, body)

        if not isinstance(body, dict):
            raise ProtocolException.invalid_token_response("createSession body is not JSON")

        did = body.get("did", None)
        if not isinstance(did, str) or not did.startswith("did:"):
            raise ProtocolException.invalid_token_response(f"invalid subject {did}")

        if not body.get("active", True):
            raise ProtocolException.invalid_token_response(f"account {did} is not active")

        session = Session(
            did=did,
            pds_url=pds_url,
            tokens=self._tokens_from_body(body, obtained_at),
            refresher=self,
            handle=body.get("handle", None),
            kind=CredentialKind.app_password,
            refresh_margin=self._settings.refresh_safety_margin,
            token_store=self._token_store,
        )
        await session.persist()

        self._metrics.increment(self._metric("login.success"), 1)
        logger.info(f"App password session created for {did}")
        return session

    async def refresh_tokens(self, session: Session) -> TokenSet:
        """
        Refresh with `com.atproto.server.refreshSession`.

        Raises:
            ReauthorizationRequired: The refresh token was rejected, the account is inactive or
                the PDS returned a different subject
        """
        refresh_token = session.tokens.refresh_token
        if refresh_token is None:
            raise ReauthorizationRequired.refresh_rejected(session.did, "missing_refresh_token")

        url = f"{session.pds_url}/xrpc/com.atproto.server.refreshSession"
        obtained_at = datetime.now(timezone.utc)
        status, body = await _post_json(
            self._http_session, url, {"Authorization": f"Bearer {refresh_token}"}
        )

        if status != 200:
            error = _body_error(body)
            if status in (400, 401) and error in REJECTED_SESSION_ERRORS:
                self._metrics.increment(self._metric("refresh.rejected"), 1)
                raise ReauthorizationRequired.refresh_rejected(session.did, error, status)
            self._metrics.increment(self._metric("refresh.failed"), 1)
            raise TransportException.unexpected_status(url, status, body)

        if not isinstance(body, dict):
            raise ProtocolException.invalid_token_response("refreshSession body is not JSON")

        if body.get("did", None) != session.did:
            raise ReauthorizationRequired.refresh_rejected(session.did, "subject_mismatch")

        if not body.get("active", True):
            raise ReauthorizationRequired.refresh_rejected(session.did, "account_inactive")

        self._metrics.increment(self._metric("refresh.success"), 1)
        return self._tokens_from_body(body, obtained_at)

    async def resume(self, did: str) -> Optional[Session]:
        """Reload a stored app password session, or None when nothing is stored for `did`."""
        if self._token_store is None:
            raise ConfigurationException("error-config-1009 resume requires a token store")

        record = await self._token_store.get(did)
        if record is None:
            return None

        if record.kind != CredentialKind.app_password:
            raise ConfigurationException(
                f"error-config-1011 Stored record for {did} is not an app password session"
            )

        return Session.from_record(
            record,
            refresher=self,
            refresh_margin=self._settings.refresh_safety_margin,
            token_store=self._token_store,
        )

    async def logout(self, session: Session) -> None:
        """Delete the session at the PDS, best effort, then end it locally."""
        refresh_token = session.tokens.refresh_token
        try:
            if refresh_token is not None:
                url = f"{session.pds_url}/xrpc/com.atproto.server.deleteSession"
                status, _ = await _post_json(
                    self._http_session, url, {"Authorization": f"Bearer {refresh_token}"}
                )
                if status != 200:
                    logger.warning(f"deleteSession for {session.did} returned {status}")
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.exception(f"Error deleting session for {session.did}")
        finally:
            session.close()
            if self._token_store is not None:
                await self._token_store.remove(session.did)

        self._metrics.increment(self._metric("logout"), 1)
