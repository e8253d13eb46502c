"""
Configuration Module for the atclient library

This module defines the configuration system for the AT Protocol session client, using
pydantic-settings for validation and environment loading.

Settings are loaded from environment variables prefixed with `ATCLIENT_` and fall back to
defaults that work for a native/loopback client talking to the public network. The Settings
object is passed explicitly to `OAuthClient`, `AppPasswordClient` and `XrpcClient`; nothing in
this package reads configuration from module level state.

Key configuration areas include:
- Client identity (static client_id, display name, requested scope)
- Cryptographic materials (confidential client signing keys)
- Session timing (refresh safety margin, pending authorization TTL)
- Monitoring and observability
"""

from typing import Annotated, List, Optional
import logging
from jwcrypto import jwk
from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from social.graze.atclient.errors import ConfigurationException


logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Settings for the AT Protocol session client.

    Environment variables are mapped to fields with the `ATCLIENT_` prefix, for example
    `ATCLIENT_CLIENT_ID` or `ATCLIENT_REFRESH_SAFETY_MARGIN`.
    """

    model_config = SettingsConfigDict(env_prefix="ATCLIENT_", arbitrary_types_allowed=True)

    debug: bool = False
    """
    Enable verbose logging of outbound requests.
    Set with ATCLIENT_DEBUG=true environment variable.
    """

    # Client identity
    client_id: Optional[str] = None
    """
    Static OAuth client_id, normally the URL of the hosted client metadata document.
    When unset the client registers dynamically if the server allows it, otherwise it uses a
    synthesized loopback client id.
    Set with ATCLIENT_CLIENT_ID environment variable.
    """

    client_name: str = "atclient"
    """Client name sent with dynamic client registration requests."""

    scope: str = "atproto transition:generic"
    """
    Space separated scopes requested during authorization. Must include `atproto`.
    Set with ATCLIENT_SCOPE environment variable.
    """

    use_par: bool = True
    """
    Use pushed authorization requests when the server advertises a PAR endpoint.
    Set with ATCLIENT_USE_PAR environment variable.
    """

    user_agent: str = "atclient/0.1.0"
    """User-Agent header sent with every request."""

    http_timeout: float = 30.0
    """Total timeout in seconds applied to HTTP sessions created by the CLI."""

    # Security and cryptography settings
    json_web_keys: Annotated[jwk.JWKSet, NoDecode] = jwk.JWKSet()
    """
    JSON Web Key Set containing the confidential client signing keys used for
    private_key_jwt client assertions. Can be set to a JWKSet object or path to a JSON file.
    Set with ATCLIENT_JSON_WEB_KEYS environment variable.
    """

    active_signing_keys: List[str] = list()
    """
    List of key IDs (kid) from json_web_keys that should be used for client assertions.
    Empty means the client is public and sends no assertion.
    Set with ATCLIENT_ACTIVE_SIGNING_KEYS environment variable as a JSON list.
    """

    # Session timing
    refresh_safety_margin: int = 60
    """
    Seconds before expiry at which an access token is considered stale and refreshed.
    Set with ATCLIENT_REFRESH_SAFETY_MARGIN environment variable.
    Default: 60
    """

    authorization_request_ttl: int = 600
    """
    Seconds a pending authorization request remains consumable.
    Set with ATCLIENT_AUTHORIZATION_REQUEST_TTL environment variable.
    Default: 600 (10 minutes)
    """

    max_pending_authorizations: int = 100
    """
    Upper bound on outstanding authorization requests kept in memory.
    Set with ATCLIENT_MAX_PENDING_AUTHORIZATIONS environment variable.
    """

    default_access_token_lifetime: int = 3600
    """
    Lifetime in seconds assumed when a token response omits expires_in.
    """

    app_password_access_token_expiry: int = 720  # 12 minutes
    """
    Lifetime in seconds assumed for app password access tokens.
    Set with ATCLIENT_APP_PASSWORD_ACCESS_TOKEN_EXPIRY environment variable.
    Default: 720 (12 minutes)
    """

    plc_hostname: str = "plc.directory"
    """
    Hostname for the PLC directory used by the bundled resolver.
    Set with ATCLIENT_PLC_HOSTNAME environment variable.
    """

    # Monitoring and error reporting
    sentry_dsn: Optional[str] = None
    """
    Sentry DSN for error reporting. Optional, no error reporting if not set.
    Set with ATCLIENT_SENTRY_DSN environment variable.
    """

    metrics_backend: str = "none"
    """
    Metrics backend, one of 'telegraf' or 'none'.
    Set with ATCLIENT_METRICS_BACKEND environment variable.
    """

    statsd_host: str = "localhost"
    """StatsD/Telegraf host for metrics collection."""

    statsd_port: int = 8125
    """StatsD/Telegraf port for metrics collection."""

    statsd_prefix: str = "atclient"
    """Prefix for all StatsD metrics from this library."""

    @field_validator("json_web_keys", mode="before")
    @classmethod
    def decode_json_web_keys(cls, v) -> jwk.JWKSet:
        """
        Accepts an existing JWKSet or a path to a JSON file containing a JWK Set.

        Raises:
            ValueError: If the input is neither a JWKSet nor a valid file path
        """
        if isinstance(v, jwk.JWKSet):
            return v
        elif isinstance(v, str):
            with open(v) as fd:
                data = fd.read()
                return jwk.JWKSet.from_json(data)
        raise ValueError(
            "json_web_keys must be a JWKSet object or a valid JSON file path"
        )

    @field_validator("scope")
    @classmethod
    def validate_scope(cls, v: str) -> str:
        if "atproto" not in v.split():
            raise ValueError("scope must include the atproto scope")
        return v

    def active_signing_key(self) -> Optional[jwk.JWK]:
        """
        Returns the first active signing key, or None for a public client.

        Raises:
            ConfigurationException: If a key id is configured but missing from json_web_keys
        """
        signing_key_id = next(iter(self.active_signing_keys), None)
        if signing_key_id is None:
            return None

        signing_key = self.json_web_keys.get_key(signing_key_id)
        if signing_key is None:
            raise ConfigurationException.signing_key_missing()
        return signing_key
