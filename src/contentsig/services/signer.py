"""Content signer.

A ContentSigner signs payloads for one signer identity with an end-entity
(EE) key subordinate to a fixed issuer key. Initialization walks through:

    UNINITIALIZED -> KEYS_BOUND -> EE_RESOLVED -> CHAIN_VERIFIED -> READY

and lands in FAILED from any step that raises. Resolving the EE reuses the
one recorded in the registry when it is recent enough, otherwise a new EE
key is minted, its certificate chain published, and the EE recorded. The
registry transaction is committed only once the chain has been fetched
back and verified, so an unpublished EE is never recorded.

Example:
    signer = ContentSigner(config, SoftwareKeyProvider(), registry=registry)
    signer.initialize()
    signature = signer.sign_data(b"payload bytes")
    verify(signature.x5u, signature.marshal(), b"payload bytes")
"""

from __future__ import annotations

import logging
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from contentsig.core.config import CONTENT_SIGNATURE_PKI_TYPE
from contentsig.services.content_signature import (
    ContentSignature,
    Mode,
    SignatureDecodeError,
    make_templated_hash,
)
from contentsig.services.keys import SoftwareKeyProvider, UnsupportedKeyError
from contentsig.services.registry import EndEntityRegistry
from contentsig.services.storage import ObjectStoreClient
from contentsig.services.x5u import (
    ChainError,
    ChainFetcher,
    ChainPublisher,
    ChainVerificationError,
    build_chain_pem,
    chain_name,
    join_location,
    make_end_entity_certificate,
)

if TYPE_CHECKING:
    from collections.abc import Iterator

    import httpx

    from contentsig.core.config import Settings, SignerSettings
    from contentsig.services.keys import IssuerKeys, KeyProvider, SigningKey
    from contentsig.services.registry import EndEntityTransaction

logger = logging.getLogger(__name__)

# Lifetime of EE certificates when the signer does not configure one
DEFAULT_VALIDITY = timedelta(days=30)

# Payloads shorter than this are refused by sign_data
MIN_DATA_LENGTH = 10

# Digest lengths accepted by sign_hash
VALID_DIGEST_LENGTHS = frozenset({32, 48, 64})


class ContentSignerError(Exception):
    """Base exception for content signer errors."""

    pass


class ConfigurationError(ContentSignerError):
    """Raised when the signer configuration is missing or invalid."""

    def __init__(self, message: str, field: str | None = None) -> None:
        self.message = message
        self.field = field
        super().__init__(message)


class SignerInitializationError(ContentSignerError):
    """Raised when a lifecycle step fails during initialization.

    Attributes:
        step: The state the signer was moving to when the step failed.
    """

    def __init__(self, message: str, step: SignerState) -> None:
        self.step = step
        super().__init__(message)


class SignerNotReadyError(ContentSignerError):
    """Raised when signing is attempted before initialization succeeded."""

    pass


class InputTooShortError(ContentSignerError):
    """Raised when a payload is too short to be signed."""

    pass


class InvalidHashLengthError(ContentSignerError):
    """Raised when a digest does not have a supported length."""

    pass


class SigningError(ContentSignerError):
    """Raised when the EE key fails to produce a usable signature."""

    pass


class VerificationError(ContentSignerError):
    """Raised when a signature cannot be verified against its chain."""

    pass


class SignatureMismatchError(VerificationError):
    """Raised when a signature is well-formed but does not match the payload."""

    pass


class SignerState(str, Enum):
    """Lifecycle state of a ContentSigner."""

    UNINITIALIZED = "uninitialized"
    KEYS_BOUND = "keys_bound"
    EE_RESOLVED = "ee_resolved"
    CHAIN_VERIFIED = "chain_verified"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class SignerConfiguration:
    """Configuration of one content signer.

    Attributes:
        id: Signer identifier, prefix of EE labels, chain names and DNS names.
        private_key: PEM-encoded issuer private key.
        public_key: PEM-encoded issuer certificate.
        x5u: Public base URL chains are fetched from.
        chain_upload_location: Base URL chains are written to.
        type: Signer type tag, must be contentsignaturepki.
        ca_cert: PEM-encoded root certificate appended to chains.
        validity: Lifetime of EE certificates, defaults to 30 days.
        clock_skew_tolerance: Backdating of EE certificates.
        organization_name: Subject organization of EE certificates.
        country: Subject country of EE certificates.
        mode: Signing mode, derived from the issuer key at initialization.
    """

    id: str
    private_key: str
    public_key: str
    x5u: str = ""
    chain_upload_location: str = ""
    type: str = CONTENT_SIGNATURE_PKI_TYPE
    ca_cert: str | None = None
    validity: timedelta | None = None
    clock_skew_tolerance: timedelta = timedelta(minutes=10)
    organization_name: str = "Mozilla Corporation"
    country: str = "US"
    mode: Mode | None = None

    @classmethod
    def from_settings(cls, settings: SignerSettings) -> SignerConfiguration:
        """Create configuration from SignerSettings."""
        return cls(
            id=settings.id,
            type=settings.type,
            private_key=settings.private_key.get_secret_value(),
            public_key=settings.public_key,
            x5u=settings.x5u,
            chain_upload_location=settings.chain_upload_location,
            ca_cert=settings.ca_cert,
            validity=settings.validity,
            clock_skew_tolerance=settings.clock_skew_tolerance,
            organization_name=settings.organization_name,
            country=settings.country,
        )


class ContentSigner:
    """Signs payloads with an end-entity key and publishes its chain.

    Nothing is signed until initialize() has completed; sign_data() and
    sign_hash() are blocking calls that each do a full signing round trip
    with the key provider.
    """

    def __init__(
        self,
        config: SignerConfiguration,
        key_provider: KeyProvider,
        *,
        registry: EndEntityRegistry | None = None,
        publisher: ChainPublisher | None = None,
        fetcher: ChainFetcher | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        """Initialize the signer.

        Args:
            config: Signer configuration.
            key_provider: Source of issuer keys and EE keys.
            registry: End-entity registry, a new EE is minted on every
                initialization if None.
            publisher: Chain publisher, file:// only if None.
            fetcher: Chain fetcher, https/http/file only if None.
            logger: Logger for lifecycle events, the module logger if None.
        """
        self._config = config
        self._key_provider = key_provider
        self._registry = registry
        self._publisher = publisher or ChainPublisher()
        self._fetcher = fetcher or ChainFetcher()
        self._logger = logger or logging.getLogger(__name__)

        self._state = SignerState.UNINITIALIZED
        self._issuer: IssuerKeys | None = None
        self._mode: Mode | None = None
        self._validity = config.validity or DEFAULT_VALIDITY
        self._ee_key: SigningKey | None = None
        self._ee_label = ""
        self._x5u = ""

    @property
    def state(self) -> SignerState:
        return self._state

    @property
    def signer_id(self) -> str:
        return self._config.id

    @property
    def mode(self) -> Mode | None:
        return self._mode

    @property
    def x5u(self) -> str:
        """Location of the published chain of the current EE."""
        return self._x5u

    @property
    def end_entity_label(self) -> str:
        return self._ee_label

    @property
    def config(self) -> SignerConfiguration:
        """Effective configuration: defaulted validity, derived mode and chain x5u."""
        return replace(
            self._config,
            validity=self._validity,
            mode=self._mode,
            x5u=self._x5u or self._config.x5u,
        )

    def initialize(self) -> None:
        """Bind keys, resolve the EE, verify its chain and become ready.

        Calling it again on a ready signer is a no-op.

        Raises:
            ConfigurationError: If the configuration is invalid.
            SignerInitializationError: If any lifecycle step fails.
        """
        if self._state is SignerState.READY:
            return
        if self._state is not SignerState.UNINITIALIZED:
            msg = f"signer {self._config.id!r}: cannot initialize from state {self._state.value}"
            raise SignerInitializationError(msg, step=self._state)

        with self._step(SignerState.KEYS_BOUND):
            self._bind_keys()

        with ExitStack() as stack:
            with self._step(SignerState.EE_RESOLVED):
                tx: EndEntityTransaction | None = None
                if self._registry is not None:
                    tx = stack.enter_context(self._registry.end_entity_operations(self._config.id))
                self._resolve_end_entity(tx)

            with self._step(SignerState.CHAIN_VERIFIED):
                self._verify_chain()

            with self._step(SignerState.READY):
                if tx is not None:
                    tx.end()

        self._logger.info(
            "Content signer %s ready: mode=%s ee=%s x5u=%s",
            self._config.id,
            self._mode.value if self._mode else "",
            self._ee_label,
            self._x5u,
        )

    @contextmanager
    def _step(self, target: SignerState) -> Iterator[None]:
        """Run one lifecycle step, moving to target on success and FAILED otherwise."""
        try:
            yield
        except ContentSignerError:
            self._state = SignerState.FAILED
            raise
        except Exception as exc:
            self._state = SignerState.FAILED
            msg = f"signer {self._config.id!r}: {target.value} step failed: {exc}"
            raise SignerInitializationError(msg, step=target) from exc
        self._state = target

    def _bind_keys(self) -> None:
        config = self._config
        if config.type != CONTENT_SIGNATURE_PKI_TYPE:
            msg = (
                f"signer {config.id!r}: invalid type {config.type!r}, "
                f"must be {CONTENT_SIGNATURE_PKI_TYPE!r}"
            )
            raise ConfigurationError(msg, field="type")
        if not config.id:
            msg = "signer: missing signer id"
            raise ConfigurationError(msg, field="id")
        if not config.private_key:
            msg = f"signer {config.id!r}: missing issuer private key"
            raise ConfigurationError(msg, field="private_key")

        issuer = self._key_provider.get_issuer_keys(config)
        if not isinstance(issuer.public_key, ec.EllipticCurvePublicKey):
            msg = f"signer {config.id!r}: issuer key must be an elliptic-curve key"
            raise UnsupportedKeyError(msg)

        mode = Mode.from_curve(issuer.public_key.curve)
        if mode is None:
            msg = f"signer {config.id!r}: unsupported issuer curve {issuer.public_key.curve.name!r}"
            raise UnsupportedKeyError(msg)

        if config.validity is None:
            self._logger.warning(
                "Signer %s has no validity configured, using %s",
                config.id,
                DEFAULT_VALIDITY,
            )

        self._issuer = issuer
        self._mode = mode

    def _resolve_end_entity(self, tx: EndEntityTransaction | None) -> None:
        if tx is not None:
            lookup = tx.find_suitable_end_entity(self._validity)
            if lookup.found and lookup.record is not None:
                record = lookup.record
                key = self._key_provider.get_key(record.hsm_handle)
                if Mode.from_curve(key.curve) is not self._mode:
                    msg = f"end-entity key {record.label!r} is not on the issuer's curve"
                    raise UnsupportedKeyError(msg)
                self._ee_key = key
                self._ee_label = record.label
                self._x5u = record.x5u
                self._logger.info(
                    "Using existing end-entity %s for signer %s",
                    record.label,
                    self._config.id,
                )
                return
            self._logger.info("No suitable end-entity for signer %s, making one", self._config.id)

        self._make_end_entity(tx)

    def _make_end_entity(self, tx: EndEntityTransaction | None) -> None:
        config = self._config
        issuer = self._require_issuer()
        now = datetime.now(UTC)
        label = f"{config.id}-{now.strftime('%Y%m%d%H%M%S')}"

        key = self._key_provider.make_key(issuer.public_key, label)
        certificate = make_end_entity_certificate(
            key.public_key(),
            issuer,
            config.id,
            validity=self._validity,
            clock_skew_tolerance=config.clock_skew_tolerance,
            organization_name=config.organization_name,
            country=config.country,
            now=now,
        )
        chain = build_chain_pem(certificate, issuer.certificate, config.ca_cert)

        name = chain_name(config.id, now)
        self._publisher.publish(config.chain_upload_location, name, chain)
        x5u = join_location(config.x5u, name)

        if tx is not None:
            tx.insert_end_entity(x5u, label, config.id, key.handle)

        self._ee_key = key
        self._ee_label = label
        self._x5u = x5u
        self._logger.info("Made end-entity %s for signer %s", label, config.id)

    def _verify_chain(self) -> None:
        certificates = self._fetcher.fetch(self._x5u)
        ee_key = self._require_ee_key()
        published = certificates[0].public_key().public_bytes(
            Encoding.DER, PublicFormat.SubjectPublicKeyInfo
        )
        expected = ee_key.public_key().public_bytes(Encoding.DER, PublicFormat.SubjectPublicKeyInfo)
        if published != expected:
            msg = f"chain at {self._x5u} does not hold the key of end-entity {self._ee_label!r}"
            raise ChainVerificationError(msg)

    def _require_issuer(self) -> IssuerKeys:
        if self._issuer is None:
            msg = f"signer {self._config.id!r}: issuer keys are not bound"
            raise SignerNotReadyError(msg)
        return self._issuer

    def _require_ee_key(self) -> SigningKey:
        if self._ee_key is None:
            msg = f"signer {self._config.id!r}: no end-entity key"
            raise SignerNotReadyError(msg)
        return self._ee_key

    def _ensure_ready(self) -> None:
        if self._state is not SignerState.READY:
            msg = f"signer {self._config.id!r} is not ready (state: {self._state.value})"
            raise SignerNotReadyError(msg)

    def sign_data(self, data: bytes) -> ContentSignature:
        """Sign a payload with its templated hash.

        Args:
            data: Payload, at least 10 bytes long.

        Returns:
            Finished ContentSignature recording the hash used.

        Raises:
            SignerNotReadyError: If the signer is not ready.
            InputTooShortError: If the payload is shorter than 10 bytes.
            SigningError: If the EE key fails to sign.
        """
        self._ensure_ready()
        if len(data) < MIN_DATA_LENGTH:
            msg = (
                f"signer {self._config.id!r}: cannot sign input shorter "
                f"than {MIN_DATA_LENGTH} bytes"
            )
            raise InputTooShortError(msg)

        hash_name, digest = make_templated_hash(data, self._mode)
        return self.sign_hash(digest).with_hash_name(hash_name)

    def sign_hash(self, digest: bytes) -> ContentSignature:
        """Sign a precomputed digest of 32, 48 or 64 bytes.

        Raises:
            SignerNotReadyError: If the signer is not ready.
            InvalidHashLengthError: If the digest length is not supported.
            SigningError: If the EE key fails to sign or returns bad DER.
        """
        self._ensure_ready()
        if len(digest) not in VALID_DIGEST_LENGTHS:
            msg = (
                f"signer {self._config.id!r}: refusing to sign input hash of "
                f"{len(digest)} bytes, expected 32, 48 or 64"
            )
            raise InvalidHashLengthError(msg)

        ee_key = self._require_ee_key()
        try:
            der = ee_key.sign(digest)
        except Exception as exc:
            msg = f"signer {self._config.id!r}: signing with {ee_key.handle!r} failed: {exc}"
            raise SigningError(msg) from exc

        try:
            r, s = decode_dss_signature(der)
        except ValueError as exc:
            msg = f"signer {self._config.id!r}: failed to decode DER signature: {exc}"
            raise SigningError(msg) from exc

        return ContentSignature(
            r=r,
            s=s,
            mode=self._mode,
            x5u=self._x5u,
            signer_id=self._config.id,
            finished=True,
        )


def verify(
    x5u: str,
    signature: str,
    data: bytes,
    *,
    fetcher: ChainFetcher | None = None,
) -> None:
    """Verify a wire-form signature over a payload against the chain at x5u.

    Args:
        x5u: Location of the certificate chain.
        signature: base64url signature.
        data: Payload that was signed.
        fetcher: Chain fetcher, https/http/file only if None.

    Raises:
        VerificationError: If the chain cannot be retrieved or does not hold
            an elliptic-curve key, or the signature cannot be decoded.
        SignatureMismatchError: If the signature does not match the payload.
    """
    fetcher = fetcher or ChainFetcher()
    try:
        certificates = fetcher.fetch(x5u)
    except ChainError as exc:
        msg = f"verify: failed to retrieve chain from {x5u}: {exc}"
        raise VerificationError(msg) from exc

    public_key = certificates[0].public_key()
    if not isinstance(public_key, ec.EllipticCurvePublicKey):
        msg = f"verify: end-entity certificate at {x5u} does not hold an elliptic-curve key"
        raise VerificationError(msg)

    try:
        content_signature = ContentSignature.unmarshal(signature)
    except SignatureDecodeError as exc:
        msg = f"verify: failed to decode signature: {exc}"
        raise VerificationError(msg) from exc

    if not content_signature.verify_data(data, public_key):
        msg = f"verify: signature does not match the end-entity at {x5u}"
        raise SignatureMismatchError(msg)
    logger.debug("Verified %s signature against %s", content_signature.mode.value, x5u)


def _needs_object_store(*locations: str) -> bool:
    return any(location.startswith("s3://") for location in locations)


def create_content_signer(
    settings: Settings,
    *,
    http_client: httpx.Client | None = None,
) -> ContentSigner:
    """Build and initialize a content signer from application settings.

    Args:
        settings: Application settings.
        http_client: HTTP client used to fetch chains back, one per fetch if None.

    Returns:
        A ready ContentSigner.

    Raises:
        ConfigurationError: If the signer configuration is invalid.
        SignerInitializationError: If initialization fails.
    """
    signer_settings = settings.signer
    config = SignerConfiguration.from_settings(signer_settings)

    key_password = (
        signer_settings.key_password.get_secret_value().encode("utf-8")
        if signer_settings.key_password
        else None
    )
    key_provider = SoftwareKeyProvider(
        key_storage_path=(
            Path(signer_settings.key_storage_path) if signer_settings.key_storage_path else None
        ),
        key_password=key_password,
    )

    object_store = None
    if _needs_object_store(config.x5u, config.chain_upload_location):
        object_store = ObjectStoreClient.from_settings(settings.s3)

    registry = None
    if settings.has_registry:
        registry = EndEntityRegistry.from_settings(settings.database)
    else:
        logger.warning(
            "No end-entity registry configured, signer %s will make a new end-entity",
            config.id,
        )

    signer = ContentSigner(
        config,
        key_provider,
        registry=registry,
        publisher=ChainPublisher(object_store=object_store),
        fetcher=ChainFetcher(http_client=http_client, object_store=object_store),
    )
    signer.initialize()
    return signer
