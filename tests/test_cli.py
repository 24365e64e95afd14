"""Tests for the operator command line.

Covers:
- Argument parsing
- init and sign against environment configuration
- verify reporting OK, FAILED and ERROR
"""

import json
import logging
from pathlib import Path
from urllib.parse import urlparse

import pytest
from moto import mock_aws

from contentsig.cli import build_parser, main
from contentsig.core.settings import clear_settings_cache
from contentsig.services.signer import ContentSigner
from contentsig.services.storage import ObjectStoreClient


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------
@pytest.fixture(autouse=True)
def clean_settings_cache():
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture(autouse=True)
def restore_root_log_level():
    root = logging.getLogger()
    level = root.level
    yield
    root.setLevel(level)


@pytest.fixture
def signer_env(monkeypatch, tmp_path, chain_dir, p384_pki):
    """Environment configuring a file-publishing signer without a registry."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("CONTENTSIG_DATABASE__URL", raising=False)
    monkeypatch.delenv("CONTENTSIG_ENVIRONMENT", raising=False)
    monkeypatch.setenv("CONTENTSIG_SIGNER__ID", "clisigner")
    monkeypatch.setenv("CONTENTSIG_SIGNER__PRIVATE_KEY", p384_pki.issuer_key_pem)
    monkeypatch.setenv("CONTENTSIG_SIGNER__PUBLIC_KEY", p384_pki.issuer_cert_pem)
    monkeypatch.setenv("CONTENTSIG_SIGNER__CA_CERT", p384_pki.root_cert_pem)
    monkeypatch.setenv("CONTENTSIG_SIGNER__X5U", f"file://{chain_dir}/")
    monkeypatch.setenv("CONTENTSIG_SIGNER__CHAIN_UPLOAD_LOCATION", f"file://{chain_dir}/")
    return chain_dir


@pytest.fixture
def signed_payload(tmp_path, make_signer_config, key_provider, p384_pki):
    """A payload file, its signature and the x5u of the signing chain."""
    signer = ContentSigner(make_signer_config(p384_pki), key_provider)
    signer.initialize()

    payload = tmp_path / "payload.json"
    payload.write_bytes(b'{"data": [], "last_modified": 1760875200000}')
    signature = signer.sign_data(payload.read_bytes())
    return payload, signature.marshal(), signer.x5u


# ---------------------------------------------------------------------------
# Parser Tests
# ---------------------------------------------------------------------------
class TestParser:
    """Tests for build_parser."""

    def test_verify_arguments(self):
        args = build_parser().parse_args(
            ["verify", "--x5u", "https://cdn/a.chain", "--signature", "abc", "payload.json"]
        )
        assert args.command == "verify"
        assert args.x5u == "https://cdn/a.chain"
        assert args.signature == "abc"
        assert args.file == "payload.json"

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_verify_requires_x5u(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["verify", "--signature", "abc", "payload.json"])


# ---------------------------------------------------------------------------
# init / sign Tests
# ---------------------------------------------------------------------------
class TestInitAndSign:
    """Tests for the init and sign commands."""

    def test_init_publishes_chain(self, signer_env, capsys):
        assert main(["init"]) == 0

        output = json.loads(capsys.readouterr().out)
        assert output["signer_id"] == "clisigner"
        assert output["mode"] == "p384ecdsa"
        assert output["end_entity"].startswith("clisigner-")
        assert output["x5u"].startswith(f"file://{signer_env}/clisigner-")
        assert len(list(signer_env.glob("*.chain"))) == 1

    def test_sign_then_verify(self, signer_env, tmp_path, capsys):
        payload = tmp_path / "payload.json"
        payload.write_bytes(b'{"data": []}')

        assert main(["sign", str(payload)]) == 0
        signature = json.loads(capsys.readouterr().out)
        assert signature["mode"] == "p384ecdsa"
        assert signature["hash_algorithm"] == "sha384"

        exit_code = main(
            [
                "verify",
                "--x5u",
                signature["x5u"],
                "--signature",
                signature["signature"],
                str(payload),
            ]
        )
        assert exit_code == 0
        assert capsys.readouterr().out.strip() == "OK"

    def test_sign_missing_file(self, signer_env, tmp_path):
        assert main(["sign", str(tmp_path / "missing.json")]) == 1

    def test_sign_short_input(self, signer_env, tmp_path):
        payload = tmp_path / "short.json"
        payload.write_bytes(b"{}")
        assert main(["sign", str(payload)]) == 1

    def test_init_with_bad_issuer_key(self, signer_env, monkeypatch):
        monkeypatch.setenv("CONTENTSIG_SIGNER__PRIVATE_KEY", "not a key")
        assert main(["init"]) == 1


# ---------------------------------------------------------------------------
# verify Tests
# ---------------------------------------------------------------------------
class TestVerifyCommand:
    """Tests for the verify command."""

    def test_verify_ok(self, signed_payload, capsys):
        payload, signature, x5u = signed_payload
        assert main(["verify", "--x5u", x5u, "--signature", signature, str(payload)]) == 0
        assert capsys.readouterr().out.strip() == "OK"

    def test_verify_tampered_payload(self, signed_payload, capsys):
        payload, signature, x5u = signed_payload
        payload.write_bytes(payload.read_bytes() + b" ")

        assert main(["verify", "--x5u", x5u, "--signature", signature, str(payload)]) == 1
        assert capsys.readouterr().out.startswith("FAILED: ")

    def test_verify_missing_chain(self, signed_payload, tmp_path, capsys):
        payload, signature, _x5u = signed_payload
        x5u = f"file://{tmp_path}/missing.chain"

        assert main(["verify", "--x5u", x5u, "--signature", signature, str(payload)]) == 1
        assert capsys.readouterr().out.startswith("ERROR: ")

    def test_verify_garbage_signature(self, signed_payload, capsys):
        payload, _signature, x5u = signed_payload
        assert main(["verify", "--x5u", x5u, "--signature", "nope", str(payload)]) == 1
        assert capsys.readouterr().out.startswith("ERROR: ")

    def test_verify_s3_chain(self, signed_payload, monkeypatch, capsys):
        payload, signature, x5u = signed_payload
        monkeypatch.setenv("CONTENTSIG_S3__ACCESS_KEY", "testing")
        monkeypatch.setenv("CONTENTSIG_S3__SECRET_KEY", "testing")
        monkeypatch.delenv("CONTENTSIG_S3__ENDPOINT", raising=False)
        monkeypatch.delenv("CONTENTSIG_ENVIRONMENT", raising=False)

        with mock_aws():
            store = ObjectStoreClient(None, "testing", "testing")
            store._client.create_bucket(Bucket="chains")
            store.upload("chains", "signer.chain", Path(urlparse(x5u).path).read_bytes())

            x5u = "s3://chains/signer.chain"
            exit_code = main(["verify", "--x5u", x5u, "--signature", signature, str(payload)])

        assert exit_code == 0
        assert capsys.readouterr().out.strip() == "OK"


# ---------------------------------------------------------------------------
# Logging Tests
# ---------------------------------------------------------------------------
class TestLogLevel:
    """Tests for log level configuration."""

    def test_log_level_from_settings(self, signer_env, monkeypatch):
        monkeypatch.setenv("CONTENTSIG_LOG_LEVEL", "warning")
        assert main(["init"]) == 0
        assert logging.getLogger().level == logging.WARNING

    def test_verify_log_level_from_settings(self, signed_payload, monkeypatch):
        payload, signature, x5u = signed_payload
        monkeypatch.setenv("CONTENTSIG_LOG_LEVEL", "debug")
        assert main(["verify", "--x5u", x5u, "--signature", signature, str(payload)]) == 0
        assert logging.getLogger().level == logging.DEBUG

    def test_invalid_log_level(self, signed_payload, monkeypatch):
        payload, signature, x5u = signed_payload
        monkeypatch.setenv("CONTENTSIG_LOG_LEVEL", "LOUD")
        assert main(["verify", "--x5u", x5u, "--signature", signature, str(payload)]) == 1
