"""End-entity certificates and certificate chain publication.

A chain is the PEM concatenation of the end-entity (EE) certificate, the
issuer certificate and, when configured, the root certificate. Each EE
generation gets its own chain file, named after the signer and the UTC
time it was made:

    remote-settings-2026-10-19-12-00-00.chain

The chain is written to the signer's upload location (s3:// or file://)
and fetched back through its public x5u (https://, http://, file:// or
s3://) before the signer is used. Verifiers fetch it the same way.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING
from urllib.parse import unquote, urlparse

import httpx
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.serialization import Encoding
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from contentsig.services.storage import StorageError

if TYPE_CHECKING:
    from cryptography.hazmat.primitives.asymmetric import ec

    from contentsig.services.keys import IssuerKeys
    from contentsig.services.storage import ObjectStoreClient

logger = logging.getLogger(__name__)

# Reserved DNS namespace of content signature end-entity certificates
CONTENT_SIGNATURE_NAMESPACE = ".content-signature.mozilla.org"

# Content type and ACL of chains uploaded to S3
CHAIN_CONTENT_TYPE = "binary/octet-stream"
CHAIN_ACL = "public-read"


class ChainError(Exception):
    """Base exception for certificate chain errors."""

    pass


class ChainPublishError(ChainError):
    """Raised when a chain cannot be written to its upload location."""

    pass


class ChainFetchError(ChainError):
    """Raised when a chain cannot be retrieved from its x5u."""

    pass


class ChainVerificationError(ChainError):
    """Raised when a retrieved chain cannot be parsed or does not verify."""

    pass


def chain_name(signer_id: str, now: datetime) -> str:
    """Return the chain file name for an EE made at the given time."""
    return f"{signer_id}-{now.astimezone(UTC).strftime('%Y-%m-%d-%H-%M-%S')}.chain"


def join_location(base: str, name: str) -> str:
    """Append a file name to a base location, adding the separator if missing."""
    if not base.endswith("/"):
        base += "/"
    return base + name


def make_end_entity_certificate(
    ee_public_key: ec.EllipticCurvePublicKey,
    issuer: IssuerKeys,
    signer_id: str,
    *,
    validity: timedelta,
    clock_skew_tolerance: timedelta,
    organization_name: str = "Mozilla Corporation",
    country: str = "US",
    now: datetime | None = None,
) -> x509.Certificate:
    """Issue a code-signing certificate for an end-entity key.

    The certificate is backdated by the clock skew tolerance, and its
    expiry pushed by the same amount, so that clients with slightly wrong
    clocks accept it for the whole validity period.

    Args:
        ee_public_key: Public key of the end-entity.
        issuer: Issuer keys and certificate.
        signer_id: Signer identifier, prefix of the certificate's DNS name.
        validity: Nominal lifetime of the certificate.
        clock_skew_tolerance: Backdating and grace period.
        organization_name: Subject organization.
        country: Subject country code.
        now: Issuance time, defaults to the current UTC time.

    Returns:
        The EE certificate, signed with ECDSA-SHA384 by the issuer key.
    """
    now = now or datetime.now(UTC)
    dns_name = signer_id + CONTENT_SIGNATURE_NAMESPACE

    subject = x509.Name(
        [
            x509.NameAttribute(NameOID.COUNTRY_NAME, country),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, organization_name),
            x509.NameAttribute(NameOID.COMMON_NAME, dns_name),
        ]
    )

    cert_builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer.certificate.subject)
        .public_key(ee_public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - clock_skew_tolerance)
        .not_valid_after(now + validity + clock_skew_tolerance)
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(dns_name)]), critical=False)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(
            x509.ExtendedKeyUsage([ExtendedKeyUsageOID.CODE_SIGNING]),
            critical=False,
        )
    )
    return cert_builder.sign(issuer.private_key, hashes.SHA384())


def build_chain_pem(
    ee_certificate: x509.Certificate,
    issuer_certificate: x509.Certificate,
    ca_cert: str | None = None,
) -> bytes:
    """Concatenate the EE, issuer and optional root certificates as PEM."""
    pem = ee_certificate.public_bytes(Encoding.PEM) + issuer_certificate.public_bytes(
        Encoding.PEM
    )
    if ca_cert:
        root = ca_cert.strip().encode("utf-8") + b"\n"
        pem += root
    return pem


def parse_chain(data: bytes) -> list[x509.Certificate]:
    """Parse a PEM chain into certificates, EE first.

    Raises:
        ChainVerificationError: If the data holds no parseable certificate.
    """
    try:
        return x509.load_pem_x509_certificates(data)
    except ValueError as exc:
        msg = f"chain: failed to parse certificates: {exc}"
        raise ChainVerificationError(msg) from exc


def verify_chain(certificates: list[x509.Certificate], now: datetime | None = None) -> None:
    """Check that a chain is usable.

    Every certificate must be inside its validity window and be issued by
    the certificate that follows it. A trailing self-issued certificate
    must carry a valid self-signature.

    Raises:
        ChainVerificationError: If any check fails.
    """
    if not certificates:
        msg = "chain: no certificate found"
        raise ChainVerificationError(msg)

    now = now or datetime.now(UTC)
    for index, cert in enumerate(certificates):
        if now < cert.not_valid_before_utc:
            msg = f"chain: certificate {index} ({cert.subject.rfc4514_string()}) is not yet valid"
            raise ChainVerificationError(msg)
        if now > cert.not_valid_after_utc:
            msg = f"chain: certificate {index} ({cert.subject.rfc4514_string()}) has expired"
            raise ChainVerificationError(msg)

        if index + 1 < len(certificates):
            issuer_cert = certificates[index + 1]
        elif cert.issuer == cert.subject:
            issuer_cert = cert
        else:
            continue

        try:
            cert.verify_directly_issued_by(issuer_cert)
        except (InvalidSignature, ValueError, TypeError) as exc:
            msg = (
                f"chain: certificate {index} ({cert.subject.rfc4514_string()}) "
                f"is not issued by {issuer_cert.subject.rfc4514_string()}"
            )
            raise ChainVerificationError(msg) from exc


def _split_s3_location(location: str) -> tuple[str, str]:
    parsed = urlparse(location)
    return parsed.netloc, unquote(parsed.path).lstrip("/")


class ChainPublisher:
    """Writes chains to s3:// or file:// upload locations.

    Example:
        publisher = ChainPublisher(object_store=ObjectStoreClient.from_settings(settings.s3))
        url = publisher.publish("s3://chains/signers/", name, chain_pem)
    """

    def __init__(self, object_store: ObjectStoreClient | None = None) -> None:
        self._object_store = object_store

    def publish(self, upload_location: str, name: str, chain: bytes) -> str:
        """Write a chain under its name in an upload location.

        Args:
            upload_location: Base s3:// or file:// URL.
            name: Chain file name.
            chain: PEM chain bytes.

        Returns:
            URL the chain was written to.

        Raises:
            ChainPublishError: If the scheme is unsupported or the write fails.
        """
        target = join_location(upload_location, name)
        scheme = urlparse(target).scheme
        if scheme == "s3":
            self._publish_s3(target, chain)
        elif scheme == "file":
            self._publish_file(target, chain)
        else:
            msg = f"chain: unsupported upload scheme {scheme!r} in {upload_location!r}"
            raise ChainPublishError(msg)

        logger.info("Published certificate chain to %s (%d bytes)", target, len(chain))
        return target

    def _publish_s3(self, target: str, chain: bytes) -> None:
        if self._object_store is None:
            msg = f"chain: no object store configured to upload {target}"
            raise ChainPublishError(msg)
        bucket, key = _split_s3_location(target)
        try:
            stored = self._object_store.upload(
                bucket,
                key,
                chain,
                content_type=CHAIN_CONTENT_TYPE,
                acl=CHAIN_ACL,
            )
        except StorageError as exc:
            msg = f"chain: failed to upload to {target}: {exc}"
            raise ChainPublishError(msg) from exc
        logger.debug(
            "Stored chain in %s/%s (sha256=%s etag=%s)",
            stored.bucket,
            stored.key,
            stored.sha256_digest,
            stored.etag,
        )

    def _publish_file(self, target: str, chain: bytes) -> None:
        path = Path(unquote(urlparse(target).path))
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(chain)
        except OSError as exc:
            msg = f"chain: failed to write {path}: {exc}"
            raise ChainPublishError(msg) from exc


class ChainFetcher:
    """Retrieves, parses and verifies chains from their x5u."""

    def __init__(
        self,
        http_client: httpx.Client | None = None,
        object_store: ObjectStoreClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        """Initialize the fetcher.

        Args:
            http_client: Client for http(s) locations, a short-lived one is
                created per fetch if None.
            object_store: Client for s3:// locations.
            timeout: Timeout in seconds for short-lived HTTP clients.
        """
        self._http_client = http_client
        self._object_store = object_store
        self._timeout = timeout

    def fetch(self, x5u: str, *, now: datetime | None = None) -> list[x509.Certificate]:
        """Fetch the chain at x5u and verify it.

        Returns:
            Certificates of the chain, EE first.

        Raises:
            ChainFetchError: If the chain cannot be retrieved.
            ChainVerificationError: If the chain is empty, unparseable or invalid.
        """
        data = self.fetch_bytes(x5u)
        certificates = parse_chain(data)
        verify_chain(certificates, now=now)
        logger.debug("Fetched and verified %d certificates from %s", len(certificates), x5u)
        return certificates

    def fetch_bytes(self, x5u: str) -> bytes:
        """Retrieve the raw chain bytes at x5u.

        Raises:
            ChainFetchError: If the scheme is unsupported or retrieval fails.
        """
        scheme = urlparse(x5u).scheme
        if scheme in ("https", "http"):
            return self._fetch_http(x5u)
        if scheme == "file":
            return self._fetch_file(x5u)
        if scheme == "s3":
            return self._fetch_s3(x5u)
        msg = f"chain: unsupported x5u scheme {scheme!r} in {x5u!r}"
        raise ChainFetchError(msg)

    def _fetch_http(self, x5u: str) -> bytes:
        try:
            if self._http_client is not None:
                response = self._http_client.get(x5u)
            else:
                with httpx.Client(timeout=self._timeout) as client:
                    response = client.get(x5u)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            msg = f"chain: failed to retrieve {x5u}: HTTP {exc.response.status_code}"
            raise ChainFetchError(msg) from exc
        except httpx.HTTPError as exc:
            msg = f"chain: failed to retrieve {x5u}: {exc}"
            raise ChainFetchError(msg) from exc
        return response.content

    def _fetch_file(self, x5u: str) -> bytes:
        path = Path(unquote(urlparse(x5u).path))
        try:
            return path.read_bytes()
        except OSError as exc:
            msg = f"chain: failed to read {path}: {exc}"
            raise ChainFetchError(msg) from exc

    def _fetch_s3(self, x5u: str) -> bytes:
        if self._object_store is None:
            msg = f"chain: no object store configured to retrieve {x5u}"
            raise ChainFetchError(msg)
        bucket, key = _split_s3_location(x5u)
        try:
            return self._object_store.download(bucket, key)
        except StorageError as exc:
            msg = f"chain: failed to retrieve {x5u}: {exc}"
            raise ChainFetchError(msg) from exc
