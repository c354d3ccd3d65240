import logging
from pathlib import Path
from typing import Any, Dict, Optional

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from errors import SigningKeyError

logger = logging.getLogger(__name__)


class KeyManager:
    """
    Holds the process-wide RSA signing key pair.

    The private key never leaves this object: callers get sign() and the
    exported public JWK. Immutable after construction, safe to share across
    concurrent requests without locking.
    """

    def __init__(self, private_key: rsa.RSAPrivateKey, key_id: str, algorithm: str = "RS256"):
        if not isinstance(private_key, rsa.RSAPrivateKey):
            raise SigningKeyError("Signing key must be an RSA private key")
        if not algorithm.startswith(("RS", "PS")):
            raise SigningKeyError(f"Unsupported signing algorithm for RSA key: {algorithm}")

        self._private_key = private_key
        self.key_id = key_id
        self.algorithm = algorithm

    @classmethod
    def generate(cls, key_id: str, algorithm: str = "RS256", key_size: int = 2048) -> "KeyManager":
        """Create a key manager around a freshly generated key pair"""
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
        return cls(private_key, key_id, algorithm)

    @classmethod
    def from_pem(cls, pem: bytes, key_id: str, algorithm: str = "RS256") -> "KeyManager":
        try:
            private_key = serialization.load_pem_private_key(pem, password=None)
        except ValueError as e:
            raise SigningKeyError(f"Could not load signing key: {e}") from e
        return cls(private_key, key_id, algorithm)

    @classmethod
    def from_config(cls, config) -> "KeyManager":
        """Load the signing key named by the configuration"""
        if config.signing_key_path:
            path = Path(config.signing_key_path)
            try:
                pem = path.read_bytes()
            except OSError as e:
                raise SigningKeyError(f"Could not read signing key {path}: {e}") from e

            manager = cls.from_pem(pem, config.signing_key_id, config.signing_algorithm)
            logger.info(f"Loaded signing key {config.signing_key_id} from {path}")
            return manager

        if not config.is_development:
            raise SigningKeyError("SIGNING_KEY_PATH is required outside development")

        logger.warning("No SIGNING_KEY_PATH configured - generating an ephemeral development key")
        return cls.generate(config.signing_key_id, config.signing_algorithm)

    @property
    def public_key(self) -> rsa.RSAPublicKey:
        return self._private_key.public_key()

    def sign(self, claims: Dict[str, Any], header_overrides: Optional[Dict[str, Any]] = None) -> str:
        """Sign claims as a compact JWS. alg and kid cannot be overridden."""
        headers = dict(header_overrides or {})
        headers["kid"] = self.key_id
        headers.pop("alg", None)
        return jwt.encode(claims, self._private_key, algorithm=self.algorithm, headers=headers)

    def export_public_key(self) -> Dict[str, Any]:
        """Public half as a JWK tagged with use, alg and kid"""
        jwk = RSAAlgorithm.to_jwk(self.public_key, as_dict=True)
        # key_ops and use must not both be present (RFC 7517 4.3)
        jwk.pop("key_ops", None)
        jwk.update({"use": "sig", "alg": self.algorithm, "kid": self.key_id})
        return jwk

    def write_pem(self, private_path: Path, public_path: Path) -> None:
        """Write the key pair as PKCS8 / SubjectPublicKeyInfo PEM files"""
        private_path.write_bytes(self._private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ))
        private_path.chmod(0o600)
        public_path.write_bytes(self.public_key.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        ))
