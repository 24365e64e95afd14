"""Key provider for issuer and end-entity keys.

The signer only depends on two capabilities:
- SigningKey: sign a digest and return a DER-encoded ECDSA signature
- KeyProvider: load the issuer keys, mint end-entity keys, and find
  previously minted end-entity keys by handle

SoftwareKeyProvider implements both with cryptography. End-entity keys are
kept in memory and, when a storage directory is configured, written there
as PKCS#8 PEM files (encrypted when a password is set) so they survive
restarts. HSM-backed providers plug in behind the same protocols.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import (
    BestAvailableEncryption,
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
    load_pem_private_key,
)

from contentsig.services.content_signature import prehash_for_digest

if TYPE_CHECKING:
    from cryptography.hazmat.primitives.asymmetric.types import (
        PrivateKeyTypes,
        PublicKeyTypes,
    )

    from contentsig.services.signer import SignerConfiguration

logger = logging.getLogger(__name__)


class SigningKey(Protocol):
    """Signing capability of an end-entity key."""

    @property
    def handle(self) -> str:
        """Opaque key-store handle, recorded in the registry."""
        ...

    @property
    def curve(self) -> ec.EllipticCurve: ...

    def public_key(self) -> ec.EllipticCurvePublicKey: ...

    def sign(self, digest: bytes) -> bytes:
        """Sign a digest and return a DER-encoded ECDSA signature."""
        ...


@dataclass(frozen=True, slots=True)
class IssuerKeys:
    """Issuer key pair and certificate.

    Attributes:
        private_key: Issuer private key, signs end-entity certificates.
        public_key: Issuer public key, as found in its certificate.
        certificate: Issuer certificate, second element of published chains.
    """

    private_key: PrivateKeyTypes
    public_key: PublicKeyTypes
    certificate: x509.Certificate


class KeyProvider(Protocol):
    """Source of issuer keys and end-entity keys."""

    def get_issuer_keys(self, config: SignerConfiguration) -> IssuerKeys: ...

    def make_key(self, issuer_public_key: ec.EllipticCurvePublicKey, label: str) -> SigningKey:
        """Mint an end-entity key on the issuer's curve."""
        ...

    def get_key(self, handle: str) -> SigningKey:
        """Find a previously minted end-entity key."""
        ...


class KeyProviderError(Exception):
    """Base exception for key provider errors."""

    pass


class KeyNotFoundError(KeyProviderError):
    """Raised when a requested key is not found."""

    def __init__(self, handle: str) -> None:
        super().__init__(f"Key not found: {handle}")
        self.handle = handle


class UnsupportedKeyError(KeyProviderError):
    """Raised when a key is not an elliptic-curve key on a supported curve."""

    pass


class SoftwareSigningKey:
    """End-entity key held in process memory."""

    def __init__(self, private_key: ec.EllipticCurvePrivateKey, handle: str) -> None:
        self._private_key = private_key
        self._handle = handle

    @property
    def handle(self) -> str:
        return self._handle

    @property
    def curve(self) -> ec.EllipticCurve:
        return self._private_key.curve

    def public_key(self) -> ec.EllipticCurvePublicKey:
        return self._private_key.public_key()

    def sign(self, digest: bytes) -> bytes:
        return self._private_key.sign(digest, ec.ECDSA(prehash_for_digest(digest)))


class SoftwareKeyProvider:
    """Key provider backed by cryptography software keys.

    Example:
        provider = SoftwareKeyProvider(key_storage_path=Path("/keys"))
        issuer = provider.get_issuer_keys(config)
        ee_key = provider.make_key(issuer.public_key, "myapp-20261019120000")
    """

    def __init__(
        self,
        key_storage_path: Path | None = None,
        key_password: bytes | None = None,
    ) -> None:
        """Initialize the provider.

        Args:
            key_storage_path: Directory for end-entity key files, in-memory only if None.
            key_password: Password for encrypting stored keys.
        """
        self._key_storage_path = key_storage_path
        self._key_password = key_password
        self._keys: dict[str, SoftwareSigningKey] = {}

    def get_issuer_keys(self, config: SignerConfiguration) -> IssuerKeys:
        """Load the issuer private key and certificate from configuration.

        Raises:
            KeyProviderError: If the PEM data cannot be parsed or the private
                key does not match the certificate.
        """
        try:
            private_key = load_pem_private_key(config.private_key.encode("utf-8"), password=None)
        except (ValueError, TypeError) as exc:
            msg = f"failed to parse issuer private key for signer {config.id!r}: {exc}"
            raise KeyProviderError(msg) from exc

        try:
            certificate = x509.load_pem_x509_certificate(config.public_key.encode("utf-8"))
        except ValueError as exc:
            msg = f"failed to parse issuer certificate for signer {config.id!r}: {exc}"
            raise KeyProviderError(msg) from exc

        public_key = certificate.public_key()
        if _spki(private_key.public_key()) != _spki(public_key):
            msg = f"issuer private key does not match issuer certificate for signer {config.id!r}"
            raise KeyProviderError(msg)

        return IssuerKeys(
            private_key=private_key,
            public_key=public_key,
            certificate=certificate,
        )

    def make_key(self, issuer_public_key: ec.EllipticCurvePublicKey, label: str) -> SigningKey:
        """Generate an end-entity key on the issuer's curve and store it under its label."""
        if not isinstance(issuer_public_key, ec.EllipticCurvePublicKey):
            msg = "end-entity keys can only be made for elliptic-curve issuers"
            raise UnsupportedKeyError(msg)

        private_key = ec.generate_private_key(issuer_public_key.curve)
        if self._key_storage_path is not None:
            self._store_key(label, private_key)

        key = SoftwareSigningKey(private_key, handle=label)
        self._keys[label] = key
        logger.info("Generated end-entity key: %s (curve: %s)", label, private_key.curve.name)
        return key

    def get_key(self, handle: str) -> SigningKey:
        """Return a minted key from memory or from the storage directory.

        Raises:
            KeyNotFoundError: If no key exists under the handle.
            UnsupportedKeyError: If the stored key is not an EC key.
        """
        key = self._keys.get(handle)
        if key is not None:
            return key

        key_file = self._key_file(handle)
        if key_file is None or not key_file.exists():
            raise KeyNotFoundError(handle)

        logger.info("Loading existing end-entity key: %s", handle)
        private_key = load_pem_private_key(key_file.read_bytes(), password=self._key_password)
        if not isinstance(private_key, ec.EllipticCurvePrivateKey):
            msg = f"stored key {handle!r} is not an elliptic-curve key"
            raise UnsupportedKeyError(msg)

        key = SoftwareSigningKey(private_key, handle=handle)
        self._keys[handle] = key
        return key

    def _key_file(self, handle: str) -> Path | None:
        if self._key_storage_path is None:
            return None
        return self._key_storage_path / f"{handle}.pem"

    def _store_key(self, label: str, private_key: ec.EllipticCurvePrivateKey) -> None:
        key_file = self._key_file(label)
        if key_file is None:
            return
        key_file.parent.mkdir(parents=True, exist_ok=True)

        if self._key_password:
            encryption = BestAvailableEncryption(self._key_password)
        else:
            encryption = NoEncryption()

        key_pem = private_key.private_bytes(
            encoding=Encoding.PEM,
            format=PrivateFormat.PKCS8,
            encryption_algorithm=encryption,
        )
        key_file.write_bytes(key_pem)
        key_file.chmod(0o600)  # Secure permissions for private key


def _spki(public_key: PublicKeyTypes) -> bytes:
    return public_key.public_bytes(Encoding.DER, PublicFormat.SubjectPublicKeyInfo)
