"""
Authenticated XRPC requests against a session's PDS.

Each call goes through the same pipeline:

1. `Session.ensure_fresh()` returns tokens that are not about to expire, joining any refresh
   already running for the session.
2. The request is sent with `Authorization: <type> <token>` and, for DPoP bound sessions, a
   proof signed for this exact attempt with the resource server nonce and the `ath` claim.
3. The response is classified. A DPoP nonce challenge and an expired access token are each
   retried at most once per call; seeing the same reason twice is fatal.

Nonces returned by the PDS are recorded on every response, including errors, so the next
request from any task starts with the freshest value.
"""

from enum import Enum
import logging
from time import time
from typing import Any, Dict, List, Mapping, Optional, Set

from aiohttp import ClientSession, hdrs

from social.graze.atclient.app.config import Settings
from social.graze.atclient.app.metrics import MetricsClient, NoOpMetricsClient
from social.graze.atclient.atproto.chain import (
    ChainMiddlewareClient,
    ChainResponse,
    DebugMiddleware,
    RequestMiddlewareBase,
    StatsdMiddleware,
)
from social.graze.atclient.atproto.dpop import DpopAudience
from social.graze.atclient.atproto.session import Session
from social.graze.atclient.errors import ProtocolException, XrpcException

logger = logging.getLogger(__name__)

EXPIRED_TOKEN_ERRORS = ("ExpiredToken", "InvalidToken")


class Outcome(Enum):
    """What the pipeline does next with a response."""

    SUCCESS = "success"
    RETRY_NONCE = "retry_nonce"
    RETRY_REFRESH = "retry_refresh"
    FATAL = "fatal"


def is_expired_token(chain_response: ChainResponse) -> bool:
    if chain_response.status not in (400, 401):
        return False
    error = chain_response.error
    if chain_response.status == 401 and error == "invalid_token":
        return True
    return error in EXPIRED_TOKEN_ERRORS


def classify_response(chain_response: ChainResponse, dpop_bound: bool) -> Outcome:
    if chain_response.ok:
        return Outcome.SUCCESS
    if dpop_bound and chain_response.is_nonce_challenge():
        return Outcome.RETRY_NONCE
    if is_expired_token(chain_response):
        return Outcome.RETRY_REFRESH
    return Outcome.FATAL


class XrpcClient:
    """
    Sends XRPC queries and procedures on behalf of one session.

    Args:
        settings: Client settings
        http_session: Shared aiohttp session, owned by the caller
        session: The authenticated session to act as
        metrics_client: Optional metrics sink
    """

    def __init__(
        self,
        settings: Settings,
        http_session: ClientSession,
        session: Session,
        metrics_client: Optional[MetricsClient] = None,
    ) -> None:
        self._settings = settings
        self._session = session
        self._metrics = metrics_client or NoOpMetricsClient()

        chain_middleware: List[RequestMiddlewareBase] = [
            StatsdMiddleware(self._metrics, settings.statsd_prefix)
        ]
        if settings.debug:
            chain_middleware.append(DebugMiddleware())

        # Retries are decided here, not by the chain.
        self._chain_client = ChainMiddlewareClient(
            client_session=http_session,
            middleware=chain_middleware,
            raise_for_status=False,
            attempt_max=1,
        )

    @property
    def session(self) -> Session:
        return self._session

    def url_for(self, nsid_or_url: str) -> str:
        if nsid_or_url.startswith("https://") or nsid_or_url.startswith("http://"):
            return nsid_or_url
        return f"{self._session.pds_url}/xrpc/{nsid_or_url}"

    async def query(
        self, nsid: str, params: Optional[Mapping[str, Any]] = None
    ) -> Any:
        """Run an XRPC query (GET) and return the decoded body."""
        chain_response = await self.request(hdrs.METH_GET, nsid, params=params)
        return chain_response.body

    async def procedure(
        self,
        nsid: str,
        body: Any = None,
        params: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        """Run an XRPC procedure (POST) with a JSON body and return the decoded body."""
        chain_response = await self.request(hdrs.METH_POST, nsid, params=params, json=body)
        return chain_response.body

    async def request(
        self,
        method: str,
        nsid_or_url: str,
        params: Optional[Mapping[str, Any]] = None,
        json: Any = None,
        data: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> ChainResponse:
        """
        Send one authenticated request, retrying a nonce challenge and an expired token once each.

        Args:
            method: HTTP method
            nsid_or_url: XRPC method id resolved against the session PDS, or an absolute URL
            params: Query string parameters
            json: JSON request body
            data: Raw request body, used when `json` is None
            headers: Extra request headers

        Returns:
            ChainResponse: The successful response

        Raises:
            ReauthorizationRequired: The session cannot be refreshed any more
            ProtocolException: The same retry reason occurred twice within this call
            XrpcException: Any other error response
        """
        url = self.url_for(nsid_or_url)
        session = self._session
        signer = session.signer
        used: Set[Outcome] = set()

        request_kwargs: Dict[str, Any] = {}
        if params is not None:
            request_kwargs["params"] = dict(params)
        if json is not None:
            request_kwargs["json"] = json
        elif data is not None:
            request_kwargs["data"] = data

        start_time = time()
        try:
            while True:
                tokens = await session.ensure_fresh()

                request_headers = dict(headers or {})
                request_headers["Authorization"] = tokens.authorization
                if signer is not None:
                    request_headers["DPoP"] = signer.create_proof(
                        method,
                        url,
                        DpopAudience.resource_server,
                        access_token=tokens.access_token,
                    )

                async with self._chain_client.request(
                    method, url, headers=request_headers, **request_kwargs
                ) as (_, chain_response):
                    pass

                session.update_nonce(DpopAudience.resource_server, chain_response.dpop_nonce)

                outcome = classify_response(chain_response, signer is not None)
                if outcome == Outcome.SUCCESS:
                    return chain_response

                if outcome == Outcome.FATAL:
                    raise XrpcException(
                        f"error-xrpc-1000 {method} {url} returned {chain_response.status}: "
                        f"{chain_response.error}",
                        status=chain_response.status,
                        error=chain_response.error,
                        description=chain_response.error_description,
                        body=chain_response.body,
                    )

                if outcome in used:
                    self._metrics.increment(
                        f"{self._settings.statsd_prefix}.xrpc.retry_exhausted",
                        1,
                        tag_dict={"reason": outcome.value},
                    )
                    if outcome == Outcome.RETRY_NONCE:
                        raise ProtocolException.repeated_nonce_challenge(url)
                    raise ProtocolException.repeated_expired_token(
                        url, chain_response.status, chain_response.body
                    )

                used.add(outcome)
                self._metrics.increment(
                    f"{self._settings.statsd_prefix}.xrpc.retry",
                    1,
                    tag_dict={"reason": outcome.value},
                )

                if outcome == Outcome.RETRY_REFRESH:
                    logger.info(f"Access token rejected by {url}, refreshing for {session.did}")
                    session.invalidate(tokens.access_token)
                else:
                    logger.info(f"DPoP nonce challenge from {url}")
        finally:
            self._metrics.timer(
                f"{self._settings.statsd_prefix}.xrpc.request.time",
                time() - start_time,
                tag_dict={
                    "method": method.lower(),
                    "authentication": session.kind.value,
                },
            )
