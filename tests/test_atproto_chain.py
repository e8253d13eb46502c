"""
Unit tests for the outbound request middleware chain.

Tests cover request/response helpers, metrics and debug middleware, client assertions, DPoP
signing with the single nonce retry, transport error wrapping and the retry bound.
"""

import base64
import json
from typing import Any, Dict
from unittest.mock import AsyncMock, Mock, patch

import pytest
from aiohttp import ClientConnectionError, ClientResponse, hdrs
from jwcrypto import jwk, jwt
from multidict import CIMultiDict, CIMultiDictProxy

from social.graze.atclient.app.metrics import MetricsClient
from social.graze.atclient.atproto.chain import (
    ChainMiddlewareClient,
    ChainMiddlewareContext,
    ChainRequest,
    ChainResponse,
    DebugMiddleware,
    EndOfLineChainMiddleware,
    GenerateClaimAssertionMiddleware,
    GenerateDpopMiddleware,
    RequestMiddlewareBase,
    StatsdMiddleware,
    www_authenticate_error,
)
from social.graze.atclient.atproto.dpop import DpopAudience, DpopSigner
from social.graze.atclient.atproto.jwt import CLIENT_ASSERTION_TYPE
from social.graze.atclient.errors import ProtocolException, TransportException


def create_headers_proxy(headers_list):
    """Create CIMultiDictProxy from list of tuples."""
    return CIMultiDictProxy(CIMultiDict(headers_list))


def create_mock_response(
    status: int = 200,
    headers: Dict[str, str] | None = None,
    content_type: str = "application/json",
    body: Any = None,
) -> ClientResponse:
    """Create a mock aiohttp ClientResponse."""
    mock_response = AsyncMock(spec=ClientResponse)
    mock_response.status = status

    headers_dict = dict(headers or {})
    if hdrs.CONTENT_TYPE not in headers_dict:
        headers_dict[hdrs.CONTENT_TYPE] = content_type
    mock_response.headers = CIMultiDictProxy(CIMultiDict(headers_dict))

    if content_type.startswith("application/json"):
        mock_response.json = AsyncMock(return_value=body or {})
        mock_response.text = AsyncMock(return_value=json.dumps(body or {}))
        mock_response.read = AsyncMock(return_value=json.dumps(body or {}).encode())
    elif content_type.startswith("text/"):
        text_body = str(body) if body is not None else "test response"
        mock_response.text = AsyncMock(return_value=text_body)
        mock_response.read = AsyncMock(return_value=text_body.encode())
    else:
        binary_body = body if isinstance(body, bytes) else b"binary data"
        mock_response.read = AsyncMock(return_value=binary_body)

    mock_response.raise_for_status = Mock()
    mock_response.closed = False
    mock_response.close = Mock()

    return mock_response


def nonce_challenge_response(nonce: str = "server-nonce") -> ChainResponse:
    return ChainResponse(
        status=400,
        headers=create_headers_proxy([("DPoP-Nonce", nonce)]),
        body={"error": "use_dpop_nonce"},
    )


def ok_response() -> ChainResponse:
    return ChainResponse(status=200, headers=create_headers_proxy([]), body={})


def proof_claims(proof: str) -> Dict[str, Any]:
    segment = proof.split(".")[1]
    return json.loads(base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4)))


class TestChainRequest:
    def test_from_chain_request_copy(self):
        """Copies are independent of the original headers and kwargs."""
        original = ChainRequest(
            method="POST",
            url="https://example.com/resource",
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            trace_request_ctx={"span_id": "456"},
            kwargs={"data": {"key": "value"}},
        )

        copy = ChainRequest.from_chain_request(original)
        copy.headers["DPoP"] = "proof"  # type: ignore
        copy.kwargs["timeout"] = 5  # type: ignore

        assert copy is not original
        assert copy.method == original.method
        assert copy.url == original.url
        assert "DPoP" not in original.headers  # type: ignore
        assert "timeout" not in original.kwargs  # type: ignore

    def test_from_chain_request_with_none_values(self):
        copy = ChainRequest.from_chain_request(ChainRequest("DELETE", "https://example.com"))
        assert copy.headers is None
        assert copy.kwargs is None


class TestChainResponse:
    @pytest.mark.asyncio
    async def test_from_aiohttp_response_json(self):
        mock_response = create_mock_response(body={"key": "value"})
        chain_response = await ChainResponse.from_aiohttp_response(mock_response)

        assert chain_response.status == 200
        assert chain_response.body == {"key": "value"}

    @pytest.mark.asyncio
    async def test_from_aiohttp_response_malformed_json(self):
        mock_response = create_mock_response(status=502)
        mock_response.json = AsyncMock(
            side_effect=json.JSONDecodeError("Expecting value", "<html>", 0)
        )
        mock_response.text = AsyncMock(return_value="<html>bad gateway</html>")

        chain_response = await ChainResponse.from_aiohttp_response(mock_response)

        assert chain_response.status == 502
        assert chain_response.body == "<html>bad gateway</html>"
        assert chain_response.error is None

    @pytest.mark.asyncio
    async def test_from_aiohttp_response_text(self):
        mock_response = create_mock_response(content_type="text/plain", body="Hello")
        chain_response = await ChainResponse.from_aiohttp_response(mock_response)
        assert chain_response.body == "Hello"

    @pytest.mark.asyncio
    async def test_from_aiohttp_response_binary(self):
        mock_response = create_mock_response(
            content_type="application/octet-stream", body=b"\x00\x01"
        )
        chain_response = await ChainResponse.from_aiohttp_response(mock_response)
        assert chain_response.body == b"\x00\x01"

    def test_body_matches_kv(self):
        response = ChainResponse(200, create_headers_proxy([]), {"error": "invalid_grant"})
        assert response.body_matches_kv("error", "invalid_grant")
        assert not response.body_matches_kv("error", "other")
        assert not ChainResponse(200, create_headers_proxy([]), "text").body_matches_kv(
            "error", "invalid_grant"
        )

    def test_error_prefers_body(self):
        response = ChainResponse(
            401,
            create_headers_proxy([("WWW-Authenticate", 'DPoP error="invalid_token"')]),
            {"error": "ExpiredToken", "message": "Token has expired"},
        )
        assert response.error == "ExpiredToken"
        assert response.error_description == "Token has expired"

    def test_error_falls_back_to_www_authenticate(self):
        response = ChainResponse(
            401,
            create_headers_proxy(
                [("WWW-Authenticate", 'DPoP algs="ES256", error="use_dpop_nonce"')]
            ),
            b"",
        )
        assert response.error == "use_dpop_nonce"

    def test_nonce_challenge_detection(self):
        assert nonce_challenge_response().is_nonce_challenge()

        proof_error = ChainResponse(
            401,
            create_headers_proxy([("DPoP-Nonce", "n")]),
            {"error": "invalid_dpop_proof"},
        )
        assert proof_error.is_nonce_challenge()

        without_nonce = ChainResponse(
            400, create_headers_proxy([]), {"error": "use_dpop_nonce"}
        )
        assert not without_nonce.is_nonce_challenge()

        other_error = ChainResponse(
            400, create_headers_proxy([("DPoP-Nonce", "n")]), {"error": "invalid_grant"}
        )
        assert not other_error.is_nonce_challenge()


class TestWwwAuthenticateError:
    @pytest.mark.parametrize(
        "value, expected",
        [
            ('DPoP error="use_dpop_nonce"', "use_dpop_nonce"),
            ('Bearer realm="x", error="invalid_token"', "invalid_token"),
            ('DPoP algs="ES256"', None),
            ("", None),
        ],
    )
    def test_parse(self, value, expected):
        assert www_authenticate_error(value) == expected


class TestRequestMiddlewareBase:
    def test_abstract_class_cannot_be_instantiated(self):
        with pytest.raises(TypeError):
            RequestMiddlewareBase()  # type: ignore

    @pytest.mark.asyncio
    async def test_handle_gen_invokes_handle(self):
        class TaggingMiddleware(RequestMiddlewareBase):
            async def handle(self, next, request):
                request.headers = {"X-Tag": "1"}
                return await next(request)

        mock_next = AsyncMock(return_value=("response", "chain_response"))
        request = ChainRequest("GET", "https://example.com")

        result = await TaggingMiddleware().handle_gen(mock_next)(request)

        assert result == ("response", "chain_response")
        assert request.headers == {"X-Tag": "1"}


class TestStatsdMiddleware:
    @pytest.mark.asyncio
    async def test_statsd_middleware_success_metrics(self):
        mock_metrics = Mock(spec=MetricsClient)
        middleware = StatsdMiddleware(mock_metrics, "test")

        mock_next = AsyncMock(return_value=("response", "chain_response"))
        request = ChainRequest("POST", "https://example.com/api")

        with patch(
            "social.graze.atclient.atproto.chain.time", side_effect=[1000.0, 1001.5]
        ):
            result = await middleware.handle(mock_next, request)

        assert result == ("response", "chain_response")
        mock_metrics.timer.assert_called_once_with(
            "test.client.request.time", 1.5, tag_dict={"method": "post"}
        )
        mock_metrics.increment.assert_called_once_with(
            "test.client.request.count", 1, tag_dict={"method": "post"}
        )

    @pytest.mark.asyncio
    async def test_statsd_middleware_exception_handling(self):
        """Exceptions are reported to Sentry and metrics are still sent."""
        mock_metrics = Mock(spec=MetricsClient)
        middleware = StatsdMiddleware(mock_metrics)

        test_exception = Exception("Test error")
        mock_next = AsyncMock(side_effect=test_exception)
        request = ChainRequest("GET", "https://example.com")

        with patch(
            "social.graze.atclient.atproto.chain.time", side_effect=[1000.0, 1000.25]
        ):
            with patch("sentry_sdk.capture_exception") as mock_sentry:
                with pytest.raises(Exception, match="Test error"):
                    await middleware.handle(mock_next, request)

        mock_sentry.assert_called_once_with(test_exception)
        mock_metrics.timer.assert_called_once_with(
            "atclient.client.request.time", 0.25, tag_dict={"method": "get"}
        )
        mock_metrics.increment.assert_called_once_with(
            "atclient.client.request.count", 1, tag_dict={"method": "get"}
        )


class TestDebugMiddleware:
    @pytest.mark.asyncio
    async def test_debug_middleware_logs_request_response(self):
        middleware = DebugMiddleware()
        mock_response = ("client_response", Mock(status=200))
        mock_next = AsyncMock(return_value=mock_response)
        request = ChainRequest(
            "POST",
            "https://example.com/api",
            headers={"Authorization": "DPoP secret-token"},
        )

        with patch("social.graze.atclient.atproto.chain.logger") as mock_logger:
            result = await middleware.handle(mock_next, request)

        assert result == mock_response
        assert mock_logger.debug.call_count == 2
        request_log = mock_logger.debug.call_args_list[0][0][0]
        assert "POST" in request_log
        assert "secret-token" not in request_log
        assert "200" in mock_logger.debug.call_args_list[1][0][0]


class TestGenerateClaimAssertionMiddleware:
    @pytest.mark.asyncio
    async def test_no_kwargs_passes_through(self):
        signing_key = jwk.JWK.generate(kty="EC", crv="P-256", kid="k1")
        middleware = GenerateClaimAssertionMiddleware(
            signing_key, "https://client/metadata.json", "https://auth"
        )
        mock_next = AsyncMock(return_value=("response", "chain_response"))
        request = ChainRequest("POST", "https://auth/oauth/token")

        await middleware.handle(mock_next, request)

        assert request.kwargs is None

    @pytest.mark.asyncio
    async def test_adds_fresh_assertion_each_attempt(self):
        signing_key = jwk.JWK.generate(kty="EC", crv="P-256", kid="k1")
        middleware = GenerateClaimAssertionMiddleware(
            signing_key, "https://client/metadata.json", "https://auth"
        )
        mock_next = AsyncMock(return_value=("response", "chain_response"))
        request = ChainRequest(
            "POST", "https://auth/oauth/token", kwargs={"data": {"grant_type": "x"}}
        )

        await middleware.handle(mock_next, request)
        first = dict(request.kwargs["data"])  # type: ignore
        await middleware.handle(mock_next, request)
        second = dict(request.kwargs["data"])  # type: ignore

        assert first["grant_type"] == "x"
        assert first["client_assertion_type"] == CLIENT_ASSERTION_TYPE
        assert len(second) == 3
        assert first["client_assertion"] != second["client_assertion"]

        claims = json.loads(jwt.JWT(jwt=second["client_assertion"], key=signing_key).claims)
        assert claims["aud"] == "https://auth"
        assert claims["iss"] == "https://client/metadata.json"


class TestGenerateDpopMiddleware:
    @pytest.mark.asyncio
    async def test_adds_proof_header(self):
        signer = DpopSigner.generate()
        middleware = GenerateDpopMiddleware(signer)
        mock_next = AsyncMock(return_value=("client_response", ok_response()))
        request = ChainRequest("POST", "https://auth.example.com/oauth/par")

        result = await middleware.handle(mock_next, request)

        assert len(result) == 2
        claims = proof_claims(request.headers["DPoP"])  # type: ignore
        assert claims["htm"] == "POST"
        assert claims["htu"] == "https://auth.example.com/oauth/par"

    @pytest.mark.asyncio
    async def test_nonce_challenge_returns_retry_request(self):
        signer = DpopSigner.generate()
        middleware = GenerateDpopMiddleware(signer)
        mock_next = AsyncMock(
            return_value=("client_response", nonce_challenge_response("fresh"))
        )
        request = ChainRequest("POST", "https://auth.example.com/oauth/token", headers={})

        result = await middleware.handle(mock_next, request)

        assert len(result) == 3
        assert result[2] is not request  # type: ignore
        assert signer.nonce(DpopAudience.authorization_server) == "fresh"

    @pytest.mark.asyncio
    async def test_records_nonce_from_successful_response(self):
        signer = DpopSigner.generate()
        middleware = GenerateDpopMiddleware(signer)
        response = ChainResponse(200, create_headers_proxy([("DPoP-Nonce", "rotated")]), {})
        mock_next = AsyncMock(return_value=("client_response", response))

        result = await middleware.handle(mock_next, ChainRequest("POST", "https://a/b"))

        assert len(result) == 2
        assert signer.nonce(DpopAudience.authorization_server) == "rotated"

    @pytest.mark.asyncio
    async def test_no_retry_on_other_errors(self):
        signer = DpopSigner.generate()
        middleware = GenerateDpopMiddleware(signer)
        response = ChainResponse(400, create_headers_proxy([]), {"error": "invalid_grant"})
        mock_next = AsyncMock(return_value=("client_response", response))

        result = await middleware.handle(mock_next, ChainRequest("POST", "https://a/b"))

        assert len(result) == 2


class TestEndOfLineChainMiddleware:
    @pytest.mark.asyncio
    async def test_executes_request(self):
        mock_response = create_mock_response(body={"ok": True})
        request_func = AsyncMock(return_value=mock_response)
        middleware = EndOfLineChainMiddleware(request_func)

        client_response, chain_response = await middleware.handle(  # type: ignore
            ChainRequest("POST", "https://example.com", headers={"A": "b"}, kwargs={"data": {}})
        )

        assert client_response is mock_response
        assert chain_response.body == {"ok": True}
        request_func.assert_called_once_with(
            "post", "https://example.com", headers={"A": "b"}, trace_request_ctx={}, data={}
        )

    @pytest.mark.asyncio
    async def test_wraps_client_errors(self):
        request_func = AsyncMock(side_effect=ClientConnectionError("refused"))
        middleware = EndOfLineChainMiddleware(request_func)

        with pytest.raises(TransportException):
            await middleware.handle(ChainRequest("GET", "https://example.com"))


class TestChainMiddlewareContext:
    @pytest.mark.asyncio
    async def test_retry_closes_previous_response(self):
        first_response = create_mock_response()
        retry_request = ChainRequest("GET", "https://example.com/retry")
        final_response = create_mock_response()
        final_chain_response = ok_response()

        mock_callback = AsyncMock(
            side_effect=[
                (first_response, nonce_challenge_response(), retry_request),
                (final_response, final_chain_response),
            ]
        )
        context = ChainMiddlewareContext(
            mock_callback, ChainRequest("GET", "https://example.com")
        )

        async with context as (client_response, chain_response):
            assert client_response is final_response
            assert chain_response is final_chain_response

        first_response.close.assert_called_once()
        final_response.close.assert_called_once()
        mock_callback.assert_any_call(retry_request)

    @pytest.mark.asyncio
    async def test_retry_bound(self):
        """A second retry request within the same call is a protocol error."""
        retry_request = ChainRequest("GET", "https://example.com/retry")
        mock_callback = AsyncMock(
            return_value=(create_mock_response(), nonce_challenge_response(), retry_request)
        )
        context = ChainMiddlewareContext(
            mock_callback, ChainRequest("GET", "https://example.com"), attempt_max=2
        )

        with pytest.raises(ProtocolException) as exc_info:
            await context

        assert exc_info.value.error == "use_dpop_nonce"
        assert mock_callback.call_count == 2

    @pytest.mark.asyncio
    async def test_no_cleanup_if_closed(self):
        mock_client_response = create_mock_response()
        mock_client_response.closed = True
        mock_callback = AsyncMock(return_value=(mock_client_response, ok_response()))
        context = ChainMiddlewareContext(
            mock_callback, ChainRequest("GET", "https://example.com")
        )

        async with context:
            pass

        mock_client_response.close.assert_not_called()


class TestChainMiddlewareClient:
    @pytest.mark.asyncio
    async def test_middleware_order_and_dpop_retry(self):
        """Middleware runs outermost first and a nonce challenge is retried once."""
        signer = DpopSigner.generate()
        responses = [
            create_mock_response(
                status=400,
                headers={"DPoP-Nonce": "n-1"},
                body={"error": "use_dpop_nonce"},
            ),
            create_mock_response(body={"request_uri": "urn:x"}),
        ]
        client_session = Mock()
        client_session.request = AsyncMock(side_effect=responses)
        mock_metrics = Mock(spec=MetricsClient)

        chain_client = ChainMiddlewareClient(
            client_session,
            middleware=[StatsdMiddleware(mock_metrics), GenerateDpopMiddleware(signer)],
        )

        async with chain_client.post(
            "https://auth.example.com/oauth/par", data={"state": "s"}
        ) as (_, chain_response):
            assert chain_response.body == {"request_uri": "urn:x"}

        assert client_session.request.call_count == 2
        first_proof = client_session.request.call_args_list[0][1]["headers"]["DPoP"]
        second_proof = client_session.request.call_args_list[1][1]["headers"]["DPoP"]
        assert "nonce" not in proof_claims(first_proof)
        assert proof_claims(second_proof)["nonce"] == "n-1"
        assert proof_claims(first_proof)["jti"] != proof_claims(second_proof)["jti"]
        assert mock_metrics.increment.call_count == 2
