"""
Error taxonomy for the authenticated-session client.

Every error raised by this package derives from `AtClientException` and carries an `ErrorKind`
so that callers can decide whether to reauthorize, retry or fail the user-visible operation
without parsing messages. Messages start with a stable code (`error-<area>-<number>`) that is
safe to log and to match on in support tooling.
"""

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    """Broad classification of a failure."""

    configuration = "configuration"
    resolution = "resolution"
    correlation = "correlation"
    protocol = "protocol"
    reauthorization_required = "reauthorization_required"
    transport = "transport"
    xrpc = "xrpc"


class AtClientException(Exception):
    """
    Base class for all errors raised by this package.

    Attributes:
        kind: Broad failure classification
        status: HTTP status of the response that caused the failure, if any
        error: OAuth or XRPC error code from the response body, if any
        description: Human readable description from the response body, if any
    """

    kind: ErrorKind = ErrorKind.protocol

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        error: Optional[str] = None,
        description: Optional[str] = None,
        body: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status = status
        self.error = error
        self.description = description
        self.body = body

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(kind={self.kind.value!r}, message={self.message!r}, "
            f"status={self.status!r}, error={self.error!r})"
        )


class ConfigurationException(AtClientException):
    """The client or the remote server is not set up in a way the flow can work with."""

    kind = ErrorKind.configuration

    @staticmethod
    def invalid_callback_url(url: str) -> "ConfigurationException":
        return ConfigurationException(
            f"error-config-1000 Callback URL must use https or a loopback http host: {url}"
        )

    @staticmethod
    def dpop_not_supported(issuer: str) -> "ConfigurationException":
        return ConfigurationException(
            f"error-config-1001 Authorization server does not support ES256 DPoP: {issuer}"
        )

    @staticmethod
    def pkce_not_supported(issuer: str) -> "ConfigurationException":
        return ConfigurationException(
            f"error-config-1002 Authorization server does not support S256 PKCE: {issuer}"
        )

    @staticmethod
    def metadata_invalid(reason: str) -> "ConfigurationException":
        return ConfigurationException(
            f"error-config-1003 Authorization server metadata invalid: {reason}"
        )

    @staticmethod
    def signing_key_missing() -> "ConfigurationException":
        return ConfigurationException(
            "error-config-1004 Active signing key not found in json_web_keys"
        )

    @staticmethod
    def key_discarded() -> "ConfigurationException":
        return ConfigurationException(
            "error-config-1005 DPoP key material has been discarded"
        )

    @staticmethod
    def invalid_url(url: str) -> "ConfigurationException":
        return ConfigurationException(f"error-config-1006 Invalid URL: {url}")


class DpopException(ConfigurationException):
    """A DPoP proof could not be produced."""

    @staticmethod
    def malformed_url(url: str) -> "DpopException":
        return DpopException(f"error-dpop-1000 Cannot sign proof for malformed URL: {url}")


class ResolutionException(AtClientException):
    """Identity or metadata discovery failed."""

    kind = ErrorKind.resolution

    @staticmethod
    def subject_unresolved(subject: str) -> "ResolutionException":
        return ResolutionException(f"error-resolve-1000 Unable to resolve subject: {subject}")

    @staticmethod
    def protected_resource_missing(pds: str) -> "ResolutionException":
        return ResolutionException(
            f"error-resolve-1001 No protected resource metadata found for {pds}"
        )

    @staticmethod
    def authorization_server_missing(pds: str) -> "ResolutionException":
        return ResolutionException(
            f"error-resolve-1002 No authorization server advertised by {pds}"
        )

    @staticmethod
    def authorization_server_metadata_missing(issuer: str) -> "ResolutionException":
        return ResolutionException(
            f"error-resolve-1003 No authorization server metadata found for {issuer}"
        )


class CorrelationException(AtClientException):
    """The callback does not match an outstanding authorization. Never retried."""

    kind = ErrorKind.correlation

    @staticmethod
    def invalid_state() -> "CorrelationException":
        return CorrelationException(
            "error-oauth-1000 Invalid or expired authorization", error="invalid_state"
        )

    @staticmethod
    def issuer_mismatch(expected: str, actual: Optional[str]) -> "CorrelationException":
        return CorrelationException(
            f"error-oauth-1001 Issuer mismatch: expected {expected}, got {actual}",
            error="issuer_mismatch",
        )

    @staticmethod
    def subject_mismatch(expected: str, actual: str) -> "CorrelationException":
        return CorrelationException(
            f"error-oauth-1002 Subject mismatch: expected {expected}, got {actual}",
            error="subject_mismatch",
        )

    @staticmethod
    def too_many_pending(limit: int) -> "CorrelationException":
        return CorrelationException(
            f"error-oauth-1003 Too many pending authorization requests (limit {limit})",
            error="server_error",
        )


class ProtocolException(AtClientException):
    """The server broke the protocol or a transient condition repeated within one call."""

    kind = ErrorKind.protocol

    @staticmethod
    def repeated_nonce_challenge(url: str) -> "ProtocolException":
        return ProtocolException(
            f"error-protocol-1000 Repeated DPoP nonce challenge from {url}",
            error="use_dpop_nonce",
        )

    @staticmethod
    def repeated_expired_token(url: str, status: int, body: Any) -> "ProtocolException":
        return ProtocolException(
            f"error-protocol-1001 Access token rejected again after refresh by {url}",
            status=status,
            error="invalid_token",
            body=body,
        )

    @staticmethod
    def invalid_token_response(reason: str) -> "ProtocolException":
        return ProtocolException(f"error-protocol-1002 Invalid token response: {reason}")

    @staticmethod
    def invalid_par_response(status: int) -> "ProtocolException":
        return ProtocolException(
            f"error-protocol-1003 Invalid pushed authorization response: {status}",
            status=status,
        )

    @staticmethod
    def oauth_error(
        endpoint: str,
        status: int,
        error: Optional[str],
        description: Optional[str],
        body: Any = None,
    ) -> "ProtocolException":
        return ProtocolException(
            f"error-protocol-1004 {endpoint} returned {status}: {error} {description or ''}".rstrip(),
            status=status,
            error=error,
            description=description,
            body=body,
        )

    @staticmethod
    def registration_failed(endpoint: str, status: int) -> "ProtocolException":
        return ProtocolException(
            f"error-protocol-1005 Client registration at {endpoint} failed: {status}",
            status=status,
        )


class ReauthorizationRequired(AtClientException):
    """The refresh token was rejected. The session is terminally expired."""

    kind = ErrorKind.reauthorization_required

    @staticmethod
    def refresh_rejected(
        did: str, error: Optional[str] = None, status: Optional[int] = None
    ) -> "ReauthorizationRequired":
        return ReauthorizationRequired(
            f"error-session-1000 Refresh token rejected for {did}, reauthorization required",
            status=status,
            error=error,
        )

    @staticmethod
    def session_expired(did: str) -> "ReauthorizationRequired":
        return ReauthorizationRequired(
            f"error-session-1001 Session for {did} has expired, reauthorization required"
        )

    @staticmethod
    def session_closed(did: str) -> "ReauthorizationRequired":
        return ReauthorizationRequired(
            f"error-session-1002 Session for {did} has been logged out"
        )


class TransportException(AtClientException):
    """Network failure or an unexpected non-OAuth error status."""

    kind = ErrorKind.transport

    @staticmethod
    def unexpected_status(endpoint: str, status: int, body: Any = None) -> "TransportException":
        return TransportException(
            f"error-transport-1001 {endpoint} returned unexpected status {status}",
            status=status,
            body=body,
        )


class XrpcException(AtClientException):
    """A non-retryable error response from an XRPC endpoint."""

    kind = ErrorKind.xrpc
