"""
Authenticated session state and refresh coordination.

A `Session` holds the current `TokenSet` for one account together with the DPoP signer bound to
those tokens. Token fields are never mutated one by one: a refresh builds a new frozen `TokenSet`
and swaps the reference, so a reader sees either the old or the new tokens and never a mix.

Refresh is single-flight. The first task that finds the tokens stale starts a refresh task; every
other task that asks while it runs awaits that same task and observes the same outcome. The
refresh task is shielded from the cancellation of any single waiter and is only cancelled when
every waiter has gone away, in which case the previous tokens stay in place and the next
`ensure_fresh()` starts a new attempt.

A session is bound to the event loop it is first refreshed on.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
import logging
from typing import Optional, Protocol

import sentry_sdk

from social.graze.atclient.atproto.dpop import DpopAudience, DpopSigner
from social.graze.atclient.errors import ReauthorizationRequired
from social.graze.atclient.model.oauth import CredentialKind, TokenRecord
from social.graze.atclient.model.store import TokenStore

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    authenticated = "authenticated"
    refreshing = "refreshing"
    expired = "expired"
    closed = "closed"


@dataclass(frozen=True)
class TokenSet:
    access_token: str
    refresh_token: Optional[str]
    expires_at: datetime
    obtained_at: datetime
    token_type: str = "DPoP"
    scope: Optional[str] = None

    @staticmethod
    def from_lifetime(
        access_token: str,
        refresh_token: Optional[str],
        expires_in: int,
        token_type: str = "DPoP",
        scope: Optional[str] = None,
        obtained_at: Optional[datetime] = None,
    ) -> "TokenSet":
        if obtained_at is None:
            obtained_at = datetime.now(timezone.utc)
        return TokenSet(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=obtained_at + timedelta(seconds=expires_in),
            obtained_at=obtained_at,
            token_type=token_type,
            scope=scope,
        )

    def expires_within(self, seconds: float, now: Optional[datetime] = None) -> bool:
        if now is None:
            now = datetime.now(timezone.utc)
        return (self.expires_at - now).total_seconds() <= seconds

    @property
    def authorization(self) -> str:
        return f"{self.token_type} {self.access_token}"


class TokenRefresher(Protocol):
    async def refresh_tokens(self, session: "Session") -> TokenSet:
        """
        Exchange the session's refresh token for a new TokenSet.

        Must raise `ReauthorizationRequired` when the refresh token is rejected and leave the
        session untouched for any other failure.
        """
        ...


class _RefreshFlight:
    __slots__ = ("task", "waiters")

    def __init__(self, task: "asyncio.Task[TokenSet]") -> None:
        self.task = task
        self.waiters = 0


class Session:
    """
    The authenticated unit for one account.

    Args:
        did: Account DID
        pds_url: Resource server base URL
        tokens: Initial token set
        refresher: Component performing the refresh exchange
        signer: DPoP signer bound to the tokens, None for bearer (app password) sessions
        refresh_margin: Seconds before expiry at which tokens count as stale
        token_store: Optional store updated after every successful refresh
    """

    def __init__(
        self,
        did: str,
        pds_url: str,
        tokens: TokenSet,
        refresher: TokenRefresher,
        signer: Optional[DpopSigner] = None,
        handle: Optional[str] = None,
        issuer: Optional[str] = None,
        token_endpoint: Optional[str] = None,
        revocation_endpoint: Optional[str] = None,
        client_id: Optional[str] = None,
        kind: CredentialKind = CredentialKind.oauth,
        refresh_margin: float = 60,
        token_store: Optional[TokenStore] = None,
    ) -> None:
        self.did = did
        self.handle = handle
        self.pds_url = pds_url.rstrip("/")
        self.issuer = issuer
        self.token_endpoint = token_endpoint
        self.revocation_endpoint = revocation_endpoint
        self.client_id = client_id
        self.kind = kind
        self.refresh_margin = refresh_margin

        self._tokens = tokens
        self._signer = signer
        self._refresher = refresher
        self._token_store = token_store
        self._state = SessionState.authenticated
        self._invalidated_token: Optional[str] = None
        self._flight: Optional[_RefreshFlight] = None

    def __repr__(self) -> str:
        return f"Session(did={self.did!r}, kind={self.kind.value!r}, state={self._state.value!r})"

    @property
    def tokens(self) -> TokenSet:
        return self._tokens

    @property
    def signer(self) -> Optional[DpopSigner]:
        return self._signer

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def dpop_bound(self) -> bool:
        return self._signer is not None

    @property
    def refresh_in_flight(self) -> bool:
        return self._flight is not None

    def _check_usable(self) -> None:
        if self._state == SessionState.expired:
            raise ReauthorizationRequired.session_expired(self.did)
        if self._state == SessionState.closed:
            raise ReauthorizationRequired.session_closed(self.did)

    def needs_refresh(self, tokens: Optional[TokenSet] = None) -> bool:
        if tokens is None:
            tokens = self._tokens
        if self._invalidated_token == tokens.access_token:
            return True
        return tokens.expires_within(self.refresh_margin)

    def invalidate(self, access_token: str) -> bool:
        """
        Force the next `ensure_fresh()` to refresh, if `access_token` is still current.

        Returns:
            bool: False when the token was already replaced by a concurrent refresh
        """
        if self._tokens.access_token != access_token:
            return False
        self._invalidated_token = access_token
        return True

    async def ensure_fresh(self) -> TokenSet:
        """
        Return a token set that is not about to expire, refreshing at most once concurrently.

        Raises:
            ReauthorizationRequired: If the session is expired or closed, or the refresh token
                is rejected during this call
        """
        self._check_usable()

        tokens = self._tokens
        if not self.needs_refresh(tokens):
            return tokens

        flight = self._flight
        if flight is None:
            flight = _RefreshFlight(asyncio.get_running_loop().create_task(self._run_refresh()))
            self._flight = flight
            logger.debug(f"Starting token refresh for {self.did}")

        flight.waiters += 1
        try:
            return await asyncio.shield(flight.task)
        except asyncio.CancelledError:
            current_task = asyncio.current_task()
            if self._state == SessionState.closed and (
                current_task is None or not current_task.cancelling()
            ):
                raise ReauthorizationRequired.session_closed(self.did) from None
            raise
        finally:
            flight.waiters -= 1
            if flight.waiters == 0 and not flight.task.done():
                logger.info(f"Token refresh for {self.did} abandoned by all callers")
                flight.task.cancel()
                if self._flight is flight:
                    self._flight = None

    async def _run_refresh(self) -> TokenSet:
        refreshed = False
        self._state = SessionState.refreshing
        try:
            tokens = await self._refresher.refresh_tokens(self)
            refreshed = True
        except ReauthorizationRequired:
            logger.warning(f"Refresh token rejected for {self.did}, session expired")
            self._state = SessionState.expired
            raise
        finally:
            current = self._flight is None or self._flight.task is asyncio.current_task()
            if not refreshed and current and self._state == SessionState.refreshing:
                self._state = SessionState.authenticated
            if self._flight is not None and self._flight.task is asyncio.current_task():
                self._flight = None

        self._tokens = tokens
        self._invalidated_token = None
        self._state = SessionState.authenticated
        logger.info(f"Refreshed tokens for {self.did}, expires at {tokens.expires_at}")

        await self.persist()
        return tokens

    async def persist(self) -> None:
        """Write the current record to the token store, if one is configured."""
        if self._token_store is None or self._state == SessionState.closed:
            return
        try:
            await self._token_store.store(self.did, self.to_record())
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.exception(f"Unable to persist session for {self.did}")

    def update_nonce(self, audience: DpopAudience, nonce: Optional[str]) -> bool:
        if self._signer is None:
            return False
        return self._signer.record_nonce(audience, nonce)

    def to_record(self) -> TokenRecord:
        """
        Export the session for storage. The record contains the raw DPoP private key.
        """
        tokens = self._tokens
        nonces = self._signer.nonces() if self._signer is not None else {}
        return TokenRecord(
            did=self.did,
            handle=self.handle,
            kind=self.kind,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_type=tokens.token_type,
            pds_url=self.pds_url,
            issuer=self.issuer,
            token_endpoint=self.token_endpoint,
            revocation_endpoint=self.revocation_endpoint,
            client_id=self.client_id,
            scope=tokens.scope,
            dpop_private_key=(
                self._signer.export_private_key() if self._signer is not None else None
            ),
            auth_server_nonce=nonces.get(DpopAudience.authorization_server),
            resource_server_nonce=nonces.get(DpopAudience.resource_server),
            token_obtained_at=tokens.obtained_at,
            expires_at=tokens.expires_at,
        )

    @classmethod
    def from_record(
        cls,
        record: TokenRecord,
        refresher: TokenRefresher,
        refresh_margin: float = 60,
        token_store: Optional[TokenStore] = None,
    ) -> "Session":
        signer: Optional[DpopSigner] = None
        if record.dpop_private_key is not None:
            signer = DpopSigner.from_private_key(record.dpop_private_key)
            signer.record_nonce(DpopAudience.authorization_server, record.auth_server_nonce)
            signer.record_nonce(DpopAudience.resource_server, record.resource_server_nonce)

        tokens = TokenSet(
            access_token=record.access_token,
            refresh_token=record.refresh_token,
            expires_at=record.expires_at,
            obtained_at=record.token_obtained_at,
            token_type=record.token_type,
            scope=record.scope,
        )
        return cls(
            did=record.did,
            pds_url=record.pds_url,
            tokens=tokens,
            refresher=refresher,
            signer=signer,
            handle=record.handle,
            issuer=record.issuer,
            token_endpoint=record.token_endpoint,
            revocation_endpoint=record.revocation_endpoint,
            client_id=record.client_id,
            kind=record.kind,
            refresh_margin=refresh_margin,
            token_store=token_store,
        )

    def close(self) -> None:
        """Move to the terminal closed state and drop key material."""
        self._state = SessionState.closed
        if self._flight is not None:
            self._flight.task.cancel()
            self._flight = None
        if self._signer is not None:
            self._signer.discard()
