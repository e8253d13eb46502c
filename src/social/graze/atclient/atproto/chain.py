"""
Middleware chain for outbound HTTP requests.

A `ChainMiddlewareClient` wraps an aiohttp `ClientSession`. Each request runs through a list of
`RequestMiddlewareBase` instances, outermost first, and ends at `EndOfLineChainMiddleware`,
which performs the actual request and reads the body into a `ChainResponse`.

A middleware may ask for the request to be sent again by returning a third element, the request
to retry with. `ChainMiddlewareContext` honours that at most `attempt_max - 1` times; the DPoP
middleware uses it for the single nonce-challenge retry against authorization servers.
"""

from abc import ABC, abstractmethod
import asyncio
from dataclasses import dataclass
import logging
from time import time
from types import TracebackType
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Generator,
    Optional,
    Sequence,
    Tuple,
)

from aiohttp import ClientError, ClientResponse, ClientSession, hdrs
from aiohttp.typedefs import StrOrURL
from jwcrypto import jwk
from multidict import CIMultiDictProxy
import sentry_sdk

from social.graze.atclient.app.metrics import MetricsClient
from social.graze.atclient.atproto.dpop import DpopAudience, DpopSigner
from social.graze.atclient.atproto.jwt import CLIENT_ASSERTION_TYPE, create_client_assertion
from social.graze.atclient.errors import ProtocolException, TransportException

RequestFunc = Callable[..., Awaitable[ClientResponse]]

DPOP_NONCE_HEADER = "DPoP-Nonce"

logger = logging.getLogger(__name__)


@dataclass
class ChainRequest:
    method: str
    url: StrOrURL
    headers: dict[str, Any] | None = None
    trace_request_ctx: dict[str, Any] | None = None
    kwargs: dict[str, Any] | None = None

    @staticmethod
    def from_chain_request(request: "ChainRequest") -> "ChainRequest":
        return ChainRequest(
            method=request.method,
            url=request.url,
            headers=dict(request.headers) if request.headers is not None else None,
            trace_request_ctx=request.trace_request_ctx,
            kwargs=dict(request.kwargs) if request.kwargs is not None else None,
        )


@dataclass
class ChainResponse:
    status: int
    headers: CIMultiDictProxy[str]
    body: str | bytes | dict[str, Any] | None = None

    @staticmethod
    async def from_aiohttp_response(response: ClientResponse) -> "ChainResponse":
        status = response.status
        headers = response.headers

        content_type = response.headers.get(hdrs.CONTENT_TYPE, "")

        if content_type.startswith("application/json"):
            try:
                return ChainResponse(
                    status=status, headers=headers, body=await response.json()
                )
            except ValueError:
                logger.warning(f"Malformed JSON body from {response.url} ({status})")
                return ChainResponse(
                    status=status, headers=headers, body=await response.text()
                )
        elif content_type.startswith("text/"):
            return ChainResponse(
                status=status, headers=headers, body=await response.text()
            )
        else:
            return ChainResponse(
                status=status, headers=headers, body=await response.read()
            )

    def body_matches_kv(self, key: str, value: Any) -> bool:
        if self.body is None:
            return False

        return (
            isinstance(self.body, dict) and key in self.body and self.body[key] == value
        )

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def error(self) -> Optional[str]:
        """OAuth or XRPC error code from the JSON body, falling back to WWW-Authenticate."""
        if isinstance(self.body, dict):
            error = self.body.get("error", None)
            if isinstance(error, str):
                return error

        return www_authenticate_error(self.headers.get(hdrs.WWW_AUTHENTICATE, ""))

    @property
    def error_description(self) -> Optional[str]:
        if isinstance(self.body, dict):
            for key in ("error_description", "message"):
                value = self.body.get(key, None)
                if isinstance(value, str):
                    return value
        return None

    @property
    def dpop_nonce(self) -> Optional[str]:
        return self.headers.get(DPOP_NONCE_HEADER, None)

    def is_nonce_challenge(self) -> bool:
        """True for a 400/401 asking the client to retry with the supplied DPoP nonce."""
        if self.status not in (400, 401) or not self.dpop_nonce:
            return False
        return self.error in ("use_dpop_nonce", "invalid_dpop_proof")


def www_authenticate_error(value: str) -> Optional[str]:
    """Extract the `error` parameter of a DPoP or Bearer WWW-Authenticate challenge."""
    if not value:
        return None

    _, _, params = value.partition(" ")
    for param in params.split(","):
        name, _, param_value = param.strip().partition("=")
        if name.strip().lower() == "error":
            return param_value.strip().strip('"') or None
    return None


NextChainResponseCallbackType = (
    Tuple[ClientResponse, ChainResponse]
    | Tuple[ClientResponse, ChainResponse, ChainRequest]
)

NextChainCallbackType = Callable[
    [ChainRequest], Awaitable[NextChainResponseCallbackType]
]


class RequestMiddlewareBase(ABC):
    @abstractmethod
    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        pass

    def handle_gen(self, next: NextChainCallbackType) -> NextChainCallbackType:
        async def next_invoke(request: ChainRequest) -> NextChainResponseCallbackType:
            return await self.handle(next, request)

        return next_invoke


class StatsdMiddleware(RequestMiddlewareBase):
    """Records a count and a duration for every request, tagged by method."""

    def __init__(self, metrics_client: MetricsClient, prefix: str = "atclient") -> None:
        super().__init__()
        self._metrics_client = metrics_client
        self._prefix = prefix

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        tags = {"method": request.method.lower()}
        start_time = time()
        try:
            return await next(request)
        except Exception as e:
            sentry_sdk.capture_exception(e)
            raise
        finally:
            self._metrics_client.timer(
                f"{self._prefix}.client.request.time", time() - start_time, tag_dict=tags
            )
            self._metrics_client.increment(
                f"{self._prefix}.client.request.count", 1, tag_dict=tags
            )


class DebugMiddleware(RequestMiddlewareBase):
    """Logs each request line and response status. Never logs headers or bodies."""

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        logger.debug(f"Request: {request.method} {request.url}")
        response = await next(request)
        logger.debug(f"Response: {response[1].status} {request.method} {request.url}")
        return response


class GenerateClaimAssertionMiddleware(RequestMiddlewareBase):
    """
    Adds a private_key_jwt client assertion to form encoded requests.

    A new assertion with a fresh `jti` is generated for every attempt, including retries.
    """

    def __init__(self, signing_key: jwk.JWK, client_id: str, audience: str) -> None:
        super().__init__()
        self._signing_key = signing_key
        self._client_id = client_id
        self._audience = audience

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:

        if request.kwargs is None:
            return await next(request)

        data: Dict[str, str] = dict(request.kwargs.get("data", None) or {})
        data["client_assertion_type"] = CLIENT_ASSERTION_TYPE
        data["client_assertion"] = create_client_assertion(
            self._signing_key, self._client_id, self._audience
        )
        request.kwargs["data"] = data

        return await next(request)


class GenerateDpopMiddleware(RequestMiddlewareBase):
    """
    Signs a DPoP proof for every attempt and learns nonces from every response.

    When the response is a nonce challenge, the new nonce is recorded on the signer and a copy
    of the request is returned for the chain context to retry with a freshly signed proof.
    """

    def __init__(
        self,
        signer: DpopSigner,
        audience: DpopAudience = DpopAudience.authorization_server,
        access_token: Optional[str] = None,
    ) -> None:
        super().__init__()
        self._signer = signer
        self._audience = audience
        self._access_token = access_token

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        if request.headers is None:
            request.headers = {}
        request.headers["DPoP"] = self._signer.create_proof(
            request.method,
            str(request.url),
            self._audience,
            access_token=self._access_token,
        )

        response = await next(request)
        client_response = response[0]
        chain_response = response[1]
        new_request = None
        if len(response) == 3:
            new_request = response[2]

        self._signer.record_nonce(self._audience, chain_response.dpop_nonce)

        if chain_response.is_nonce_challenge():
            logger.info(f"DPoP nonce challenge from {request.url}")
            if new_request is None:
                new_request = ChainRequest.from_chain_request(request)

        if new_request is None:
            return client_response, chain_response
        return client_response, chain_response, new_request


class EndOfLineChainMiddleware:
    def __init__(
        self,
        request_func: RequestFunc,
        raise_for_status: bool = False,
    ) -> None:
        super().__init__()
        self._request_func = request_func
        self._raise_for_status = raise_for_status

    async def handle(self, request: ChainRequest) -> NextChainResponseCallbackType:
        try:
            response: ClientResponse = await self._request_func(
                request.method.lower(),
                request.url,
                headers=request.headers,
                trace_request_ctx={
                    **(request.trace_request_ctx or {}),
                },
                **(request.kwargs or {}),
            )

            if self._raise_for_status:
                response.raise_for_status()

            return response, await ChainResponse.from_aiohttp_response(response)
        except (ClientError, asyncio.TimeoutError) as e:
            raise TransportException(
                f"error-transport-1000 {request.method} {request.url} failed: {e!r}"
            ) from e


class ChainMiddlewareContext:
    def __init__(
        self,
        chain_callback: NextChainCallbackType,
        chain_request: ChainRequest,
        raise_for_status: bool = False,
        attempt_max: int = 2,
    ) -> None:
        self._chain_callback = chain_callback
        self._chain_request = chain_request
        self._raise_for_status = raise_for_status

        self._chain_response: ChainResponse | None = None
        self.client_response: ClientResponse | None = None

        self._attempt_max = attempt_max

    async def _do_request(self) -> Tuple[ClientResponse, ChainResponse]:
        current_attempt = 0

        chain_request = self._chain_request

        while True:
            current_attempt += 1

            if current_attempt > self._attempt_max:
                if self.client_response is not None and not self.client_response.closed:
                    self.client_response.close()
                raise ProtocolException.repeated_nonce_challenge(
                    str(self._chain_request.url)
                )

            logger.debug(
                f"Attempt {current_attempt} out of {self._attempt_max}: "
                f"{chain_request.method} {chain_request.url}"
            )

            response = await self._chain_callback(chain_request)
            client_response = response[0]
            chain_response = response[1]
            new_request = None
            if len(response) == 3:
                new_request = response[2]

            if self.client_response is not None and not self.client_response.closed:
                self.client_response.close()

            self._chain_response = chain_response
            self.client_response = client_response

            if new_request is None:
                return client_response, chain_response

            chain_request = new_request

    def __await__(self) -> Generator[Any, None, Tuple[ClientResponse, ChainResponse]]:
        return self.__aenter__().__await__()

    async def __aenter__(self) -> Tuple[ClientResponse, ChainResponse]:
        return await self._do_request()

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self.client_response is not None and not self.client_response.closed:
            self.client_response.close()


class ChainMiddlewareClient:
    def __init__(
        self,
        client_session: ClientSession,
        middleware: Sequence[RequestMiddlewareBase] | None = None,
        raise_for_status: bool = False,
        attempt_max: int = 2,
    ) -> None:
        self._client = client_session
        self._middleware = middleware
        self._raise_for_status = raise_for_status
        self._attempt_max = attempt_max

    def request(
        self,
        method: str,
        url: StrOrURL,
        raise_for_status: bool | None = None,
        **kwargs: Any,
    ) -> ChainMiddlewareContext:
        return self._make_request(
            method=method,
            url=url,
            raise_for_status=raise_for_status,
            **kwargs,
        )

    def get(
        self,
        url: StrOrURL,
        raise_for_status: bool | None = None,
        **kwargs: Any,
    ) -> ChainMiddlewareContext:
        return self._make_request(
            method=hdrs.METH_GET,
            url=url,
            raise_for_status=raise_for_status,
            **kwargs,
        )

    def post(
        self,
        url: StrOrURL,
        raise_for_status: bool | None = None,
        **kwargs: Any,
    ) -> ChainMiddlewareContext:
        return self._make_request(
            method=hdrs.METH_POST,
            url=url,
            raise_for_status=raise_for_status,
            **kwargs,
        )

    def _make_request(
        self,
        method: str,
        url: StrOrURL,
        raise_for_status: bool | None = None,
        **kwargs: Any,
    ) -> ChainMiddlewareContext:
        chain_request = ChainRequest(
            method=method,
            url=url,
            headers=kwargs.pop("headers", None) or {},
            trace_request_ctx=kwargs.pop("trace_request_ctx", None),
            kwargs=kwargs,
        )

        if raise_for_status is None:
            raise_for_status = self._raise_for_status

        end_of_line_middleware = EndOfLineChainMiddleware(
            request_func=self._client.request,
            raise_for_status=raise_for_status,
        )

        chain_callback: NextChainCallbackType = end_of_line_middleware.handle

        full_middleware_chain = reversed(self._middleware or [])

        for mw in full_middleware_chain:
            chain_callback = mw.handle_gen(chain_callback)

        return ChainMiddlewareContext(
            chain_callback=chain_callback,
            chain_request=chain_request,
            raise_for_status=raise_for_status,
            attempt_max=self._attempt_max,
        )
