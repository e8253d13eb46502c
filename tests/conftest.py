"""
Shared fixtures: a fake AT Protocol authorization server and PDS served by aiohttp's TestServer.

The fake server verifies DPoP proofs the way a real one would (signature, htm/htu, nonce, ath
and key binding) so the client is exercised end to end over real HTTP.
"""

import asyncio
import base64
import hashlib
import json
from typing import Any, Dict, List, Optional, Set, Tuple
from urllib.parse import parse_qsl, urlsplit

import aiohttp
from aiohttp import web
from aiohttp.test_utils import TestServer
from jwcrypto import jwk, jwt
import pytest
import pytest_asyncio

from social.graze.atclient.app.config import Settings
from social.graze.atclient.resolve.handle import ResolvedSubject


def s256(value: str) -> str:
    digest = hashlib.sha256(value.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def decode_segment(segment: str) -> Dict[str, Any]:
    return json.loads(base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4)))


def decode_dpop_proof(proof: str) -> Tuple[Dict[str, Any], Dict[str, Any], str]:
    """Verify a DPoP proof against its embedded key, returning (header, claims, thumbprint)."""
    header = decode_segment(proof.split(".")[0])
    key = jwk.JWK(**header["jwk"])
    verified = jwt.JWT(jwt=proof, key=key)
    return header, json.loads(verified.claims), key.thumbprint()


class FakeAtprotoServer:
    """One origin acting as both PDS and authorization server."""

    def __init__(self) -> None:
        self.base_url = ""
        self.sub = "did:plc:alice"
        self.handle = "alice.test"
        self.granted_scope = "atproto transition:generic"
        self.token_type = "DPoP"
        self.expires_in: Optional[int] = 3600

        self.require_nonce = True
        self.auth_nonce = "as-nonce-1"
        self.resource_nonce = "rs-nonce-1"
        self.always_challenge: Set[str] = set()

        self.metadata_overrides: Dict[str, Any] = {}
        self.par_enabled = True

        self.refresh_error: Optional[str] = None
        self.refresh_gate: Optional[asyncio.Event] = None
        self.rejected_access_tokens: Set[str] = set()
        self.reject_all_access_tokens = False
        self.xrpc_error: Optional[Tuple[int, str]] = None
        self.bad_gateway = False

        self.par_requests: Dict[str, Dict[str, str]] = {}
        self.codes: Dict[str, Dict[str, str]] = {}
        self.access_tokens: Dict[str, str] = {}
        self.refresh_tokens: Dict[str, str] = {}
        self.app_password_tokens: Dict[str, str] = {}

        self.attempts: Dict[str, int] = {}
        self.refresh_count = 0
        self.revocations: List[Dict[str, str]] = []
        self.registrations: List[Dict[str, Any]] = []
        self.deleted_sessions: List[str] = []
        self.xrpc_headers: List[Dict[str, str]] = []
        self._counter = 0

    def _next(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}-{self._counter}"

    def _count(self, name: str) -> None:
        self.attempts[name] = self.attempts.get(name, 0) + 1

    def metadata(self) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {
            "issuer": self.base_url,
            "authorization_endpoint": f"{self.base_url}/oauth/authorize",
            "token_endpoint": f"{self.base_url}/oauth/token",
            "revocation_endpoint": f"{self.base_url}/oauth/revoke",
            "scopes_supported": ["atproto", "transition:generic"],
            "response_types_supported": ["code"],
            "grant_types_supported": ["authorization_code", "refresh_token"],
            "code_challenge_methods_supported": ["S256"],
            "dpop_signing_alg_values_supported": ["ES256"],
            "token_endpoint_auth_methods_supported": ["none", "private_key_jwt"],
            "authorization_response_iss_parameter_supported": True,
            "some_future_field": {"ignored": True},
        }
        if self.par_enabled:
            metadata["pushed_authorization_request_endpoint"] = f"{self.base_url}/oauth/par"
        metadata.update(self.metadata_overrides)
        return metadata

    def authorize(self, authorization_url: str) -> Tuple[str, str]:
        """Play the user approving the request. Returns (code, state)."""
        query = dict(parse_qsl(urlsplit(authorization_url).query))
        if "request_uri" in query:
            params = dict(self.par_requests[query["request_uri"]])
        else:
            params = query
        code = self._next("code")
        self.codes[code] = params
        return code, params["state"]

    def _nonce_challenge(self, name: str, proof_nonce: Optional[str]) -> Optional[web.Response]:
        if name in self.always_challenge:
            self.auth_nonce = self._next("as-nonce")
        elif not self.require_nonce or proof_nonce == self.auth_nonce:
            return None
        return web.json_response(
            status=400,
            data={"error": "use_dpop_nonce", "error_description": "nonce required"},
            headers={"DPoP-Nonce": self.auth_nonce},
        )

    def _check_proof(self, request: web.Request, path: str) -> Tuple[Dict[str, Any], str]:
        proof = request.headers["DPoP"]
        header, claims, thumbprint = decode_dpop_proof(proof)
        assert header["typ"] == "dpop+jwt"
        assert header["alg"] == "ES256"
        assert "d" not in header["jwk"]
        assert claims["htm"] == request.method
        assert claims["htu"] == f"{self.base_url}{path}"
        assert claims["jti"]
        return claims, thumbprint

    async def handle_protected_resource(self, request: web.Request) -> web.Response:
        return web.json_response(
            {"resource": self.base_url, "authorization_servers": [self.base_url]}
        )

    async def handle_authorization_server(self, request: web.Request) -> web.Response:
        return web.json_response(self.metadata())

    async def handle_par(self, request: web.Request) -> web.Response:
        self._count("par")
        claims, thumbprint = self._check_proof(request, "/oauth/par")
        challenge = self._nonce_challenge("par", claims.get("nonce"))
        if challenge is not None:
            return challenge

        form = dict(await request.post())
        form["dpop_jkt"] = thumbprint
        request_uri = f"urn:ietf:params:oauth:request_uri:{self._next('req')}"
        self.par_requests[request_uri] = form
        return web.json_response(
            status=201,
            data={"request_uri": request_uri, "expires_in": 90},
            headers={"DPoP-Nonce": self.auth_nonce},
        )

    def _issue(self, thumbprint: str) -> Dict[str, Any]:
        access_token = self._next("access")
        refresh_token = self._next("refresh")
        self.access_tokens[access_token] = thumbprint
        self.refresh_tokens[refresh_token] = thumbprint
        body: Dict[str, Any] = {
            "access_token": access_token,
            "refresh_token": refresh_token,
            "token_type": self.token_type,
            "scope": self.granted_scope,
            "sub": self.sub,
        }
        if self.expires_in is not None:
            body["expires_in"] = self.expires_in
        return body

    async def handle_token(self, request: web.Request) -> web.Response:
        self._count("token")
        claims, thumbprint = self._check_proof(request, "/oauth/token")
        assert "ath" not in claims
        challenge = self._nonce_challenge("token", claims.get("nonce"))
        if challenge is not None:
            return challenge

        form = dict(await request.post())
        if form["grant_type"] == "authorization_code":
            params = self.codes.pop(form["code"], None)
            if params is None:
                return web.json_response(status=400, data={"error": "invalid_grant"})
            assert s256(form["code_verifier"]) == params["code_challenge"]
            assert form["redirect_uri"] == params["redirect_uri"]
            assert form["client_id"] == params["client_id"]
            if "dpop_jkt" in params:
                assert params["dpop_jkt"] == thumbprint
            return web.json_response(self._issue(thumbprint))

        if form["grant_type"] == "refresh_token":
            self.refresh_count += 1
            if self.refresh_gate is not None:
                await self.refresh_gate.wait()
            if self.refresh_error is not None:
                return web.json_response(
                    status=400,
                    data={"error": self.refresh_error, "error_description": "rejected"},
                )
            bound = self.refresh_tokens.pop(form["refresh_token"], None)
            if bound is None:
                return web.json_response(status=400, data={"error": "invalid_grant"})
            assert bound == thumbprint
            return web.json_response(self._issue(thumbprint))

        return web.json_response(status=400, data={"error": "unsupported_grant_type"})

    async def handle_revoke(self, request: web.Request) -> web.Response:
        self._check_proof(request, "/oauth/revoke")
        self.revocations.append(dict(await request.post()))
        return web.Response(status=200)

    async def handle_register(self, request: web.Request) -> web.Response:
        body = await request.json()
        self.registrations.append(body)
        return web.json_response(
            status=201, data={"client_id": "registered-client", "client_id_issued_at": 1}
        )

    async def handle_get_session(self, request: web.Request) -> web.Response:
        self._count("xrpc")
        self.xrpc_headers.append(dict(request.headers))
        if self.bad_gateway:
            return web.Response(
                status=502, text="<html>bad gateway</html>", content_type="application/json"
            )
        scheme, _, token = request.headers.get("Authorization", "").partition(" ")

        if scheme == "Bearer":
            if token not in self.app_password_tokens.values():
                return web.json_response(status=401, data={"error": "ExpiredToken"})
            return web.json_response({"did": self.sub, "handle": self.handle})

        assert scheme == "DPoP"
        claims, thumbprint = self._check_proof(
            request, "/xrpc/com.atproto.server.getSession"
        )
        assert claims["ath"] == s256(token)

        if "xrpc" in self.always_challenge:
            self.resource_nonce = self._next("rs-nonce")
        if "xrpc" in self.always_challenge or (
            self.require_nonce and claims.get("nonce") != self.resource_nonce
        ):
            return web.json_response(
                status=401,
                data={"error": "use_dpop_nonce", "message": "nonce required"},
                headers={
                    "DPoP-Nonce": self.resource_nonce,
                    "WWW-Authenticate": 'DPoP error="use_dpop_nonce"',
                },
            )

        if (
            self.reject_all_access_tokens
            or token in self.rejected_access_tokens
            or self.access_tokens.get(token) != thumbprint
        ):
            return web.json_response(
                status=401,
                data={"error": "invalid_token", "message": "token expired"},
                headers={"WWW-Authenticate": 'DPoP error="invalid_token"'},
            )

        if self.xrpc_error is not None:
            status, error = self.xrpc_error
            return web.json_response(status=status, data={"error": error, "message": "nope"})

        return web.json_response(
            {"did": self.sub, "handle": self.handle},
            headers={"DPoP-Nonce": self.resource_nonce},
        )

    async def handle_create_session(self, request: web.Request) -> web.Response:
        body = await request.json()
        if body.get("password") != "app-pass-word-1234":
            return web.json_response(
                status=401, data={"error": "AuthenticationRequired", "message": "Invalid"}
            )
        access_jwt = self._next("access-jwt")
        refresh_jwt = self._next("refresh-jwt")
        self.app_password_tokens[refresh_jwt] = access_jwt
        return web.json_response(
            {
                "did": self.sub,
                "handle": self.handle,
                "accessJwt": access_jwt,
                "refreshJwt": refresh_jwt,
                "active": True,
            }
        )

    async def handle_refresh_session(self, request: web.Request) -> web.Response:
        self.refresh_count += 1
        _, _, token = request.headers.get("Authorization", "").partition(" ")
        if self.refresh_error is not None or token not in self.app_password_tokens:
            return web.json_response(
                status=400,
                data={"error": self.refresh_error or "ExpiredToken", "message": "Expired"},
            )
        self.app_password_tokens.pop(token)
        access_jwt = self._next("access-jwt")
        refresh_jwt = self._next("refresh-jwt")
        self.app_password_tokens[refresh_jwt] = access_jwt
        return web.json_response(
            {
                "did": self.sub,
                "handle": self.handle,
                "accessJwt": access_jwt,
                "refreshJwt": refresh_jwt,
                "active": True,
            }
        )

    async def handle_delete_session(self, request: web.Request) -> web.Response:
        _, _, token = request.headers.get("Authorization", "").partition(" ")
        self.deleted_sessions.append(token)
        self.app_password_tokens.pop(token, None)
        return web.Response(status=200)

    def app(self) -> web.Application:
        app = web.Application()
        app.add_routes(
            [
                web.get(
                    "/.well-known/oauth-protected-resource",
                    self.handle_protected_resource,
                ),
                web.get(
                    "/.well-known/oauth-authorization-server",
                    self.handle_authorization_server,
                ),
                web.post("/oauth/par", self.handle_par),
                web.post("/oauth/token", self.handle_token),
                web.post("/oauth/revoke", self.handle_revoke),
                web.post("/oauth/register", self.handle_register),
                web.get("/xrpc/com.atproto.server.getSession", self.handle_get_session),
                web.post(
                    "/xrpc/com.atproto.server.createSession", self.handle_create_session
                ),
                web.post(
                    "/xrpc/com.atproto.server.refreshSession",
                    self.handle_refresh_session,
                ),
                web.post(
                    "/xrpc/com.atproto.server.deleteSession",
                    self.handle_delete_session,
                ),
            ]
        )
        return app


class StaticResolver:
    """PdsResolver backed by a dictionary."""

    def __init__(self, subjects: Dict[str, ResolvedSubject]) -> None:
        self.subjects = subjects
        self.calls: List[str] = []

    async def resolve(self, subject: str) -> Optional[ResolvedSubject]:
        self.calls.append(subject)
        return self.subjects.get(subject)


@pytest_asyncio.fixture
async def fake_server():
    fake = FakeAtprotoServer()
    server = TestServer(fake.app())
    await server.start_server()
    fake.base_url = f"http://{server.host}:{server.port}"
    yield fake
    await server.close()


@pytest_asyncio.fixture
async def http_session():
    async with aiohttp.ClientSession() as session:
        yield session


@pytest.fixture
def settings() -> Settings:
    return Settings(statsd_prefix="test")


@pytest.fixture
def callback_url() -> str:
    return "http://127.0.0.1:8085/callback"
