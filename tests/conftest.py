"""Pytest configuration and shared fixtures.

Provides:
- A throwaway PKI (root -> issuer) per supported curve, built once per session
- A file-backed SQLite end-entity registry
- Signer configurations publishing chains to a temporary directory

The SQLite engine opens every transaction with BEGIN IMMEDIATE so that the
registry lock serializes concurrent signers the way a PostgreSQL row lock does.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
)
from cryptography.x509.oid import NameOID
from sqlalchemy import create_engine, event

from contentsig.db import create_session_factory
from contentsig.db.models import Base
from contentsig.services.keys import SoftwareKeyProvider
from contentsig.services.registry import EndEntityRegistry
from contentsig.services.signer import SignerConfiguration


# ---------------------------------------------------------------------------
# Test PKI
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class IssuerPKI:
    """Root and issuer material for one curve."""

    root_key: object
    root_cert: x509.Certificate
    issuer_key: object
    issuer_cert: x509.Certificate

    @property
    def issuer_key_pem(self) -> str:
        return self.issuer_key.private_bytes(
            Encoding.PEM, PrivateFormat.PKCS8, NoEncryption()
        ).decode("utf-8")

    @property
    def issuer_cert_pem(self) -> str:
        return self.issuer_cert.public_bytes(Encoding.PEM).decode("utf-8")

    @property
    def root_cert_pem(self) -> str:
        return self.root_cert.public_bytes(Encoding.PEM).decode("utf-8")


def _ca_certificate(subject_cn, public_key, signing_key, issuer_name=None):
    now = datetime.now(UTC)
    subject = x509.Name(
        [
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Content Signature Test"),
            x509.NameAttribute(NameOID.COMMON_NAME, subject_cn),
        ]
    )
    return (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer_name or subject)
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=3650))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .sign(signing_key, hashes.SHA384())
    )


def make_test_pki(issuer_key, root_key=None) -> IssuerPKI:
    """Build a root certificate and an issuer certificate signed by it."""
    root_key = root_key or ec.generate_private_key(ec.SECP384R1())
    root_cert = _ca_certificate("test root", root_key.public_key(), root_key)
    issuer_cert = _ca_certificate(
        "test issuer",
        issuer_key.public_key(),
        root_key,
        issuer_name=root_cert.subject,
    )
    return IssuerPKI(
        root_key=root_key,
        root_cert=root_cert,
        issuer_key=issuer_key,
        issuer_cert=issuer_cert,
    )


@pytest.fixture(scope="session")
def p256_pki() -> IssuerPKI:
    """PKI whose issuer key is on P-256."""
    return make_test_pki(ec.generate_private_key(ec.SECP256R1()))


@pytest.fixture(scope="session")
def p384_pki() -> IssuerPKI:
    """PKI whose issuer key is on P-384."""
    return make_test_pki(ec.generate_private_key(ec.SECP384R1()))


@pytest.fixture(scope="session")
def p521_pki() -> IssuerPKI:
    """PKI whose issuer key is on a curve no mode exists for."""
    return make_test_pki(ec.generate_private_key(ec.SECP521R1()))


@pytest.fixture(scope="session")
def rsa_pki() -> IssuerPKI:
    """PKI whose issuer key is not an elliptic-curve key."""
    return make_test_pki(rsa.generate_private_key(public_exponent=65537, key_size=2048))


# ---------------------------------------------------------------------------
# Registry fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def registry_engine(tmp_path):
    """File-backed SQLite engine with the registry schema."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'registry.db'}",
        connect_args={"timeout": 60, "check_same_thread": False},
    )

    @event.listens_for(engine, "connect")
    def _disable_driver_transactions(dbapi_connection, _connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(registry_engine):
    """Session factory bound to the test registry."""
    return create_session_factory(registry_engine)


@pytest.fixture
def registry(session_factory) -> EndEntityRegistry:
    """End-entity registry over SQLite."""
    return EndEntityRegistry(session_factory)


# ---------------------------------------------------------------------------
# Signer fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def chain_dir(tmp_path):
    """Directory chains are published to."""
    path = tmp_path / "chains"
    path.mkdir()
    return path


@pytest.fixture
def make_signer_config(chain_dir):
    """Factory for signer configurations publishing to chain_dir."""

    def _make(pki: IssuerPKI, signer_id: str = "testsigner", **overrides) -> SignerConfiguration:
        values = {
            "id": signer_id,
            "private_key": pki.issuer_key_pem,
            "public_key": pki.issuer_cert_pem,
            "x5u": f"file://{chain_dir}/",
            "chain_upload_location": f"file://{chain_dir}/",
            "validity": timedelta(days=30),
        }
        values.update(overrides)
        return SignerConfiguration(**values)

    return _make


@pytest.fixture
def key_provider() -> SoftwareKeyProvider:
    """In-memory software key provider."""
    return SoftwareKeyProvider()
