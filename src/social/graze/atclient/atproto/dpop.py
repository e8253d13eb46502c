"""
DPoP proof signer.

A `DpopSigner` owns one P-256 keypair for the life of a session and produces per-request proofs.
It also tracks the most recent server issued nonce for each audience, because the authorization
server and the resource server (PDS) issue independent nonces.

The key id of the signer is its RFC 7638 thumbprint, which is stable across export and import.
"""

from enum import Enum
import logging
from typing import Dict, Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from jwcrypto import jwk

from social.graze.atclient.atproto.jwt import (
    create_dpop_claims,
    create_dpop_header,
    sign_jwt,
)
from social.graze.atclient.errors import ConfigurationException

logger = logging.getLogger(__name__)


class DpopAudience(str, Enum):
    authorization_server = "authorization_server"
    resource_server = "resource_server"


class DpopSigner:
    """
    Signs DPoP proofs with a session scoped key and remembers server nonces per audience.

    Instances must never be shared between sessions. Use `generate()` for a new session and
    `from_private_key()` to reconstitute a persisted one.
    """

    def __init__(self, private_key: ec.EllipticCurvePrivateKey) -> None:
        if not isinstance(private_key.curve, ec.SECP256R1):
            raise ConfigurationException(
                "error-dpop-1001 DPoP keys must use the P-256 curve"
            )

        imported = jwk.JWK.from_pyca(private_key)
        self._thumbprint: str = imported.thumbprint()
        self._private_key: Optional[ec.EllipticCurvePrivateKey] = private_key
        key_dict = imported.export(private_key=True, as_dict=True)
        key_dict.update(kid=self._thumbprint, alg="ES256")
        self._key: Optional[jwk.JWK] = jwk.JWK(**key_dict)
        self._public_key_dict = self._key.export_public(as_dict=True)
        self._nonces: Dict[DpopAudience, str] = {}

    @classmethod
    def generate(cls) -> "DpopSigner":
        return cls(ec.generate_private_key(ec.SECP256R1()))

    @classmethod
    def from_private_key(cls, data: bytes) -> "DpopSigner":
        """Load a signer from PKCS#8 DER bytes produced by `export_private_key()`."""
        private_key = serialization.load_der_private_key(data, password=None)
        if not isinstance(private_key, ec.EllipticCurvePrivateKey):
            raise ConfigurationException(
                "error-dpop-1002 Persisted DPoP key is not an elliptic curve key"
            )
        return cls(private_key)

    @property
    def thumbprint(self) -> str:
        return self._thumbprint

    @property
    def key_id(self) -> str:
        return self._thumbprint

    @property
    def public_key(self) -> Dict[str, str]:
        return dict(self._public_key_dict)

    @property
    def discarded(self) -> bool:
        return self._key is None

    def nonce(self, audience: DpopAudience) -> Optional[str]:
        return self._nonces.get(audience)

    def nonces(self) -> Dict[DpopAudience, str]:
        return dict(self._nonces)

    def record_nonce(self, audience: DpopAudience, nonce: Optional[str]) -> bool:
        """
        Store the freshest nonce for an audience.

        Returns:
            bool: True when the stored value changed
        """
        if not nonce:
            return False

        if self._nonces.get(audience) == nonce:
            return False

        self._nonces[audience] = nonce
        logger.debug("Recorded new DPoP nonce for %s", audience.value)
        return True

    def create_proof(
        self,
        http_method: str,
        http_uri: str,
        audience: DpopAudience,
        access_token: Optional[str] = None,
    ) -> str:
        """
        Sign a DPoP proof for one HTTP request.

        Args:
            http_method: HTTP method of the request
            http_uri: Full request URI; query and fragment are stripped for `htu`
            audience: Which server the request goes to, selects the nonce
            access_token: Access token sent with the request, bound through `ath`

        Returns:
            str: Serialized DPoP proof for the `DPoP` header

        Raises:
            DpopException: If the URI is malformed
            ConfigurationException: If the key material was discarded
        """
        if self._key is None:
            raise ConfigurationException.key_discarded()

        claims = create_dpop_claims(
            http_method,
            http_uri,
            nonce=self._nonces.get(audience),
            access_token=access_token,
        )
        return sign_jwt(self._key, create_dpop_header(self._public_key_dict), claims)

    def export_private_key(self) -> bytes:
        """Export the private key as unencrypted PKCS#8 DER. The caller must protect it."""
        if self._private_key is None:
            raise ConfigurationException.key_discarded()

        return self._private_key.private_bytes(
            encoding=serialization.Encoding.DER,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )

    def discard(self) -> None:
        """Drop key material and nonces. Any later signing or export fails."""
        self._key = None
        self._private_key = None
        self._nonces.clear()
