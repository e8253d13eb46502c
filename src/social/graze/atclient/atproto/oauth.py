"""
AT Protocol OAuth Client Implementation

This module implements an OAuth 2.0 client adapted for AT Protocol authentication. It is an
explicitly constructed component: callers create one `OAuthClient` with their settings, HTTP
session, resolver and token store and pass it to whatever needs to start authorizations.

The implementation follows these OAuth 2.0 standards and specifications:
- OAuth 2.0 Authorization Code Grant (RFC 6749)
- Proof Key for Code Exchange (PKCE) (RFC 7636)
- OAuth 2.0 Demonstrating Proof of Possession (DPoP) (RFC 9449)
- OAuth 2.0 JWT Client Authentication (RFC 7523)
- OAuth 2.0 Pushed Authorization Requests (PAR) (RFC 9126)
- OAuth 2.0 Dynamic Client Registration (RFC 7591)
- OAuth 2.0 Token Revocation (RFC 7009)

The flow is implemented in two phases plus session maintenance:
1. `start_authorization`: Resolve the account's PDS, discover and validate its authorization
   server, prepare PKCE and a DPoP key, push the request when PAR is available and return the
   URL to send the user to
2. `complete_authorization`: Consume the pending request for the callback state exactly once,
   exchange the code and build a DPoP bound `Session`
3. `refresh_tokens`, `resume` and `logout`: Keep sessions alive, reload them from a token
   store and end them

Every request to the authorization server goes through the middleware chain, which signs a DPoP
proof for each attempt and retries a nonce challenge exactly once.
"""

import asyncio
from datetime import datetime, timezone
import logging
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlencode, urlparse, parse_qsl, urlunparse

from aiohttp import ClientError, ClientSession
from pydantic import ValidationError
import sentry_sdk

from social.graze.atclient.app.config import Settings
from social.graze.atclient.app.metrics import MetricsClient, NoOpMetricsClient
from social.graze.atclient.atproto.chain import (
    ChainMiddlewareClient,
    ChainResponse,
    DebugMiddleware,
    GenerateClaimAssertionMiddleware,
    GenerateDpopMiddleware,
    RequestMiddlewareBase,
    StatsdMiddleware,
)
from social.graze.atclient.atproto.dpop import DpopAudience, DpopSigner
from social.graze.atclient.atproto.pds import (
    oauth_authorization_server,
    oauth_protected_resource,
    validate_authorization_server,
)
from social.graze.atclient.atproto.pkce import generate_pkce_pair, generate_state
from social.graze.atclient.atproto.session import Session, TokenSet
from social.graze.atclient.errors import (
    ConfigurationException,
    CorrelationException,
    ProtocolException,
    ReauthorizationRequired,
    ResolutionException,
    TransportException,
)
from social.graze.atclient.model.oauth import (
    AuthorizationRequest,
    AuthorizationServerMetadata,
    AuthorizationStart,
    ClientRegistration,
    CredentialKind,
    TokenResponse,
)
from social.graze.atclient.model.store import PendingAuthorizationStore, TokenStore
from social.graze.atclient.resolve.handle import PdsResolver

logger = logging.getLogger(__name__)

LOOPBACK_HOSTS = ("localhost", "127.0.0.1", "::1")

REFRESH_REJECTED_ERRORS = ("invalid_grant",)


def validate_callback_url(callback_url: str) -> str:
    """
    Raises:
        ConfigurationException: Unless the URL is https, or http on a loopback host
    """
    parsed = urlparse(callback_url)
    if parsed.scheme == "https" and parsed.hostname:
        return callback_url
    if parsed.scheme == "http" and parsed.hostname in LOOPBACK_HOSTS:
        return callback_url
    raise ConfigurationException.invalid_callback_url(callback_url)


def loopback_client_id(redirect_uri: str, scope: str) -> str:
    """Client id for a native client without hosted metadata."""
    return "http://localhost?" + urlencode({"redirect_uri": redirect_uri, "scope": scope})


def build_authorization_url(authorization_endpoint: str, params: Dict[str, str]) -> str:
    parsed_authorization_endpoint = urlparse(authorization_endpoint)
    query = dict(parse_qsl(parsed_authorization_endpoint.query))
    query.update(params)
    parsed_authorization_endpoint = parsed_authorization_endpoint._replace(
        query=urlencode(query)
    )
    return str(urlunparse(parsed_authorization_endpoint))


def raise_for_oauth_error(endpoint: str, chain_response: ChainResponse) -> None:
    """
    Raise a typed error for a failed authorization server response.

    4xx responses carrying an OAuth `error` become `ProtocolException`; anything else is a
    `TransportException`.
    """
    if chain_response.ok:
        return

    error = chain_response.error
    if 400 <= chain_response.status < 500 and error is not None:
        raise ProtocolException.oauth_error(
            endpoint,
            chain_response.status,
            error,
            chain_response.error_description,
            chain_response.body,
        )
    raise TransportException.unexpected_status(
        endpoint, chain_response.status, chain_response.body
    )


class OAuthClient:
    """
    OAuth client for AT Protocol authorization servers.

    Args:
        settings: Client settings
        http_session: Shared aiohttp session, owned by the caller
        resolver: Handle/DID to PDS resolver, required unless every call passes a PDS URL
        token_store: Optional store for completed and refreshed sessions
        metrics_client: Optional metrics sink, defaults to a no-op client
    """

    def __init__(
        self,
        settings: Settings,
        http_session: ClientSession,
        resolver: Optional[PdsResolver] = None,
        token_store: Optional[TokenStore] = None,
        metrics_client: Optional[MetricsClient] = None,
    ) -> None:
        self._settings = settings
        self._http_session = http_session
        self._resolver = resolver
        self._token_store = token_store
        self._metrics = metrics_client or NoOpMetricsClient()
        self._pending = PendingAuthorizationStore(
            ttl_seconds=settings.authorization_request_ttl,
            max_pending=settings.max_pending_authorizations,
        )
        self._registrations: Dict[str, str] = {}

    @property
    def pending(self) -> PendingAuthorizationStore:
        return self._pending

    def _metric(self, name: str) -> str:
        return f"{self._settings.statsd_prefix}.oauth.{name}"

    def _chain_client(
        self, signer: DpopSigner, issuer: str, client_id: str
    ) -> ChainMiddlewareClient:
        chain_middleware: list[RequestMiddlewareBase] = [
            StatsdMiddleware(self._metrics, self._settings.statsd_prefix)
        ]
        if self._settings.debug:
            chain_middleware.append(DebugMiddleware())
        chain_middleware.append(
            GenerateDpopMiddleware(signer, DpopAudience.authorization_server)
        )

        signing_key = self._settings.active_signing_key()
        if signing_key is not None and not client_id.startswith("http://localhost"):
            chain_middleware.append(
                GenerateClaimAssertionMiddleware(signing_key, client_id, issuer)
            )

        return ChainMiddlewareClient(
            client_session=self._http_session,
            raise_for_status=False,
            middleware=chain_middleware,
        )

    async def _resolve_target(
        self, identifier: str, pds_hint: Optional[str]
    ) -> Tuple[str, Optional[str], Optional[str], Optional[str]]:
        """Returns (pds_url, expected_did, handle, login_hint)."""
        identifier = identifier.strip()

        if pds_hint:
            login_hint = identifier or None
            expected_did = identifier if identifier.startswith("did:") else None
            return pds_hint.rstrip("/"), expected_did, None, login_hint

        if identifier.startswith("https://") or identifier.startswith("http://"):
            return identifier.rstrip("/"), None, None, None

        if self._resolver is None:
            raise ConfigurationException(
                "error-config-1007 A PdsResolver is required to resolve handles and DIDs"
            )

        resolved = await self._resolver.resolve(identifier)
        if resolved is None:
            raise ResolutionException.subject_unresolved(identifier)

        login_hint = resolved.handle or resolved.did
        return resolved.pds.rstrip("/"), resolved.did, resolved.handle, login_hint

    async def discover(self, pds_url: str) -> AuthorizationServerMetadata:
        """
        Find and validate the authorization server protecting a PDS.

        Raises:
            ResolutionException: If metadata cannot be fetched
            ConfigurationException: If the issuer cannot run the DPoP bound PKCE flow
        """
        try:
            protected_resource = await oauth_protected_resource(self._http_session, pds_url)
        except (ClientError, asyncio.TimeoutError) as e:
            raise TransportException(
                f"error-transport-1002 Protected resource discovery for {pds_url} failed: {e!r}"
            ) from e
        if protected_resource is None:
            raise ResolutionException.protected_resource_missing(pds_url)

        first_authorization_server = next(
            iter(protected_resource.authorization_servers), None
        )
        if first_authorization_server is None:
            raise ResolutionException.authorization_server_missing(pds_url)

        try:
            metadata = await oauth_authorization_server(
                self._http_session, first_authorization_server
            )
        except (ClientError, asyncio.TimeoutError) as e:
            raise TransportException(
                f"error-transport-1002 Authorization server discovery for "
                f"{first_authorization_server} failed: {e!r}"
            ) from e
        if metadata is None:
            raise ResolutionException.authorization_server_metadata_missing(
                first_authorization_server
            )

        validate_authorization_server(metadata, first_authorization_server)
        return metadata

    async def _client_id_for(
        self, metadata: AuthorizationServerMetadata, redirect_uri: str
    ) -> str:
        if self._settings.client_id is not None:
            return self._settings.client_id

        if metadata.registration_endpoint is None:
            return loopback_client_id(redirect_uri, self._settings.scope)

        cached = self._registrations.get(metadata.issuer)
        if cached is not None:
            return cached

        registration = await self.register_client(
            metadata.registration_endpoint, redirect_uri
        )
        self._registrations[metadata.issuer] = registration.client_id
        return registration.client_id

    async def register_client(
        self, registration_endpoint: str, redirect_uri: str
    ) -> ClientRegistration:
        """
        Register this client dynamically following RFC 7591.

        Raises:
            ProtocolException: If the server rejects the registration
        """
        signing_key = self._settings.active_signing_key()
        client_metadata: Dict[str, Any] = {
            "client_name": self._settings.client_name,
            "redirect_uris": [redirect_uri],
            "grant_types": ["authorization_code", "refresh_token"],
            "response_types": ["code"],
            "scope": self._settings.scope,
            "dpop_bound_access_tokens": True,
            "application_type": (
                "native" if urlparse(redirect_uri).hostname in LOOPBACK_HOSTS else "web"
            ),
            "token_endpoint_auth_method": "none",
        }
        if signing_key is not None:
            client_metadata["token_endpoint_auth_method"] = "private_key_jwt"
            client_metadata["token_endpoint_auth_signing_alg"] = "ES256"
            client_metadata["jwks"] = {"keys": [signing_key.export_public(as_dict=True)]}

        try:
            async with self._http_session.post(
                registration_endpoint,
                json=client_metadata,
                headers={"Accept": "application/json"},
            ) as resp:
                if resp.status not in (200, 201):
                    logger.error(
                        f"Registration at {registration_endpoint} failed: {resp.status}"
                    )
                    raise ProtocolException.registration_failed(
                        registration_endpoint, resp.status
                    )
                try:
                    return ClientRegistration.model_validate(await resp.json())
                except ValidationError as e:
                    raise ProtocolException.registration_failed(
                        registration_endpoint, resp.status
                    ) from e
        except (ClientError, asyncio.TimeoutError) as e:
            raise TransportException(
                f"error-transport-1003 Registration at {registration_endpoint} failed: {e!r}"
            ) from e

    async def start_authorization(
        self,
        identifier: str,
        callback_url: str,
        pds_hint: Optional[str] = None,
    ) -> AuthorizationStart:
        """
        Begin an authorization and return the URL to send the user to.

        Args:
            identifier: Handle, DID or PDS URL of the account
            callback_url: Redirect URI receiving the authorization response
            pds_hint: PDS base URL to use instead of resolving `identifier`

        Returns:
            AuthorizationStart: The authorization URL and the state correlating the callback

        Raises:
            ConfigurationException: Bad callback URL or an incapable authorization server
            ResolutionException: The identifier or server metadata could not be resolved
            ProtocolException: The pushed authorization request failed
        """
        redirect_uri = validate_callback_url(callback_url)
        self._pending.purge_expired()

        pds_url, expected_did, handle, login_hint = await self._resolve_target(
            identifier, pds_hint
        )
        metadata = await self.discover(pds_url)

        signer = DpopSigner.generate()
        try:
            (pkce_verifier, code_challenge) = generate_pkce_pair()
            state = generate_state()
            client_id = await self._client_id_for(metadata, redirect_uri)

            params = {
                "response_type": "code",
                "code_challenge": code_challenge,
                "code_challenge_method": "S256",
                "state": state,
                "client_id": client_id,
                "redirect_uri": redirect_uri,
                "scope": self._settings.scope,
            }
            if login_hint is not None:
                params["login_hint"] = login_hint

            par_endpoint = metadata.pushed_authorization_request_endpoint
            if par_endpoint is not None and (
                self._settings.use_par or metadata.require_pushed_authorization_requests
            ):
                request_uri = await self._push_authorization_request(
                    signer, metadata.issuer, par_endpoint, client_id, params
                )
                authorization_url = build_authorization_url(
                    metadata.authorization_endpoint,
                    {"client_id": client_id, "request_uri": request_uri},
                )
            else:
                authorization_url = build_authorization_url(
                    metadata.authorization_endpoint, params
                )

            self._pending.add(
                AuthorizationRequest(
                    state=state,
                    pkce_verifier=pkce_verifier,
                    pkce_challenge=code_challenge,
                    issuer=metadata.issuer,
                    authorization_endpoint=metadata.authorization_endpoint,
                    token_endpoint=metadata.token_endpoint,
                    revocation_endpoint=metadata.revocation_endpoint,
                    pds_url=pds_url,
                    expected_did=expected_did,
                    handle=handle,
                    login_hint=login_hint,
                    redirect_uri=redirect_uri,
                    client_id=client_id,
                    scope=self._settings.scope,
                    signer=signer,
                )
            )
        except BaseException:
            signer.discard()
            raise

        self._metrics.increment(self._metric("authorization.start"), 1)
        self._metrics.gauge(self._metric("authorization.pending"), len(self._pending))
        logger.debug(f"Authorization started for {identifier} at {metadata.issuer}")
        return AuthorizationStart(url=authorization_url, state=state)

    async def _push_authorization_request(
        self,
        signer: DpopSigner,
        issuer: str,
        par_endpoint: str,
        client_id: str,
        params: Dict[str, str],
    ) -> str:
        chain_client = self._chain_client(signer, issuer, client_id)
        async with chain_client.post(par_endpoint, data=dict(params)) as (
            _,
            chain_response,
        ):
            raise_for_oauth_error(par_endpoint, chain_response)

            if not isinstance(chain_response.body, dict):
                raise ProtocolException.invalid_par_response(chain_response.status)

            request_uri = chain_response.body.get("request_uri", None)
            if not isinstance(request_uri, str):
                raise ProtocolException.invalid_par_response(chain_response.status)

            return request_uri

    async def _token_request(
        self,
        signer: DpopSigner,
        issuer: str,
        token_endpoint: str,
        client_id: str,
        data: Dict[str, str],
    ) -> TokenResponse:
        chain_client = self._chain_client(signer, issuer, client_id)
        async with chain_client.post(token_endpoint, data=data) as (
            _,
            chain_response,
        ):
            raise_for_oauth_error(token_endpoint, chain_response)

            try:
                token_response = TokenResponse.model_validate(chain_response.body)
            except ValidationError as e:
                raise ProtocolException.invalid_token_response(str(e)) from e

        if token_response.token_type.lower() != "dpop":
            raise ProtocolException.invalid_token_response(
                f"expected DPoP token type, got {token_response.token_type}"
            )
        return token_response

    async def complete_authorization(
        self, code: str, state: str, issuer: Optional[str]
    ) -> Session:
        """
        Finish an authorization from the callback parameters.

        The pending request for `state` is consumed before anything else happens, so a state
        can never be completed twice. The request's DPoP key is discarded on every failure.

        Raises:
            CorrelationException: Unknown, reused or expired state, issuer or subject mismatch
            ProtocolException: Token endpoint errors, including a repeated nonce challenge
        """
        request = self._pending.pop(state)
        if request is None:
            self._metrics.increment(self._metric("authorization.invalid_state"), 1)
            raise CorrelationException.invalid_state()

        signer = request.signer
        try:
            if issuer is None or issuer.rstrip("/").lower() != request.issuer.rstrip("/").lower():
                raise CorrelationException.issuer_mismatch(request.issuer, issuer)

            obtained_at = datetime.now(timezone.utc)
            token_response = await self._token_request(
                signer,
                request.issuer,
                request.token_endpoint,
                request.client_id,
                {
                    "grant_type": "authorization_code",
                    "code": code,
                    "code_verifier": request.pkce_verifier,
                    "redirect_uri": request.redirect_uri,
                    "client_id": request.client_id,
                },
            )

            sub = token_response.sub
            if sub is None or not sub.startswith("did:"):
                raise ProtocolException.invalid_token_response(f"invalid subject {sub}")

            if request.expected_did is not None and request.expected_did != sub:
                raise CorrelationException.subject_mismatch(request.expected_did, sub)

            scope = token_response.scope
            if scope is None or "atproto" not in scope.split():
                raise ProtocolException.invalid_token_response("atproto scope not granted")

            pds_url = request.pds_url
            handle = request.handle
            if request.expected_did is None:
                pds_url, handle = await self._verify_subject_authority(
                    sub, request.issuer, pds_url
                )

            session = Session(
                did=sub,
                pds_url=pds_url,
                tokens=TokenSet.from_lifetime(
                    token_response.access_token,
                    token_response.refresh_token,
                    token_response.expires_in
                    or self._settings.default_access_token_lifetime,
                    token_type="DPoP",
                    scope=scope,
                    obtained_at=obtained_at,
                ),
                refresher=self,
                signer=signer,
                handle=handle,
                issuer=request.issuer,
                token_endpoint=request.token_endpoint,
                revocation_endpoint=request.revocation_endpoint,
                client_id=request.client_id,
                kind=CredentialKind.oauth,
                refresh_margin=self._settings.refresh_safety_margin,
                token_store=self._token_store,
            )
            await session.persist()
        except BaseException:
            signer.discard()
            self._metrics.increment(self._metric("authorization.failed"), 1)
            raise

        self._metrics.increment(self._metric("authorization.complete"), 1)
        logger.info(f"Authorization completed for {sub} ({handle})")
        return session

    async def _verify_subject_authority(
        self, sub: str, issuer: str, pds_url: str
    ) -> Tuple[str, Optional[str]]:
        """
        When the flow started from a server URL, check that the subject's own PDS is protected
        by the same issuer that issued the tokens.
        """
        if self._resolver is None:
            logger.warning(f"No resolver configured, trusting {pds_url} for {sub}")
            return pds_url, None

        resolved = await self._resolver.resolve(sub)
        if resolved is None:
            raise ResolutionException.subject_unresolved(sub)

        metadata = await self.discover(resolved.pds.rstrip("/"))
        if metadata.issuer.rstrip("/").lower() != issuer.rstrip("/").lower():
            raise CorrelationException.issuer_mismatch(issuer, metadata.issuer)

        return resolved.pds.rstrip("/"), resolved.handle

    async def refresh_tokens(self, session: Session) -> TokenSet:
        """
        Refresh an OAuth session. Called by `Session.ensure_fresh`, never concurrently for the
        same session.

        Raises:
            ReauthorizationRequired: If the refresh token is missing or rejected
        """
        signer = session.signer
        if (
            signer is None
            or session.issuer is None
            or session.token_endpoint is None
            or session.client_id is None
        ):
            raise ConfigurationException(
                f"error-config-1008 Session for {session.did} cannot be refreshed with OAuth"
            )

        previous = session.tokens
        if previous.refresh_token is None:
            raise ReauthorizationRequired.refresh_rejected(session.did, "missing_refresh_token")

        obtained_at = datetime.now(timezone.utc)
        try:
            token_response = await self._token_request(
                signer,
                session.issuer,
                session.token_endpoint,
                session.client_id,
                {
                    "grant_type": "refresh_token",
                    "refresh_token": previous.refresh_token,
                    "client_id": session.client_id,
                },
            )
        except ProtocolException as e:
            if e.error in REFRESH_REJECTED_ERRORS:
                self._metrics.increment(self._metric("refresh.rejected"), 1)
                raise ReauthorizationRequired.refresh_rejected(
                    session.did, e.error, e.status
                ) from e
            self._metrics.increment(self._metric("refresh.failed"), 1)
            raise

        if token_response.sub is not None and token_response.sub != session.did:
            raise ProtocolException.invalid_token_response(
                f"refresh returned subject {token_response.sub} for {session.did}"
            )

        self._metrics.increment(self._metric("refresh.success"), 1)
        return TokenSet.from_lifetime(
            token_response.access_token,
            token_response.refresh_token or previous.refresh_token,
            token_response.expires_in or self._settings.default_access_token_lifetime,
            token_type="DPoP",
            scope=token_response.scope or previous.scope,
            obtained_at=obtained_at,
        )

    async def resume(self, did: str) -> Optional[Session]:
        """Reload a stored OAuth session, or None when the store has no record for `did`."""
        if self._token_store is None:
            raise ConfigurationException(
                "error-config-1009 resume requires a token store"
            )

        record = await self._token_store.get(did)
        if record is None:
            return None

        if record.kind != CredentialKind.oauth or record.dpop_private_key is None:
            raise ConfigurationException(
                f"error-config-1010 Stored record for {did} is not an OAuth session"
            )

        return Session.from_record(
            record,
            refresher=self,
            refresh_margin=self._settings.refresh_safety_margin,
            token_store=self._token_store,
        )

    async def logout(self, session: Session) -> None:
        """
        Revoke the session's tokens at the issuer if possible, then end the session locally.

        Revocation is best effort: failures are reported and logged but never raised, and the
        session is closed and removed from the token store regardless.
        """
        tokens = session.tokens
        signer = session.signer
        try:
            if (
                session.revocation_endpoint is not None
                and signer is not None
                and not signer.discarded
                and session.issuer is not None
                and session.client_id is not None
            ):
                token = tokens.refresh_token or tokens.access_token
                token_type_hint = (
                    "refresh_token" if tokens.refresh_token is not None else "access_token"
                )
                chain_client = self._chain_client(signer, session.issuer, session.client_id)
                async with chain_client.post(
                    session.revocation_endpoint,
                    data={
                        "token": token,
                        "token_type_hint": token_type_hint,
                        "client_id": session.client_id,
                    },
                ) as (_, chain_response):
                    if not chain_response.ok:
                        logger.warning(
                            f"Revocation for {session.did} returned {chain_response.status}"
                        )
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.exception(f"Error revoking tokens for {session.did}")
        finally:
            session.close()
            if self._token_store is not None:
                await self._token_store.remove(session.did)

        self._metrics.increment(self._metric("logout"), 1)
        logger.info(f"Logged out {session.did}")
