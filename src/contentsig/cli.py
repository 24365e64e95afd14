"""Operator command line for the content signer.

Commands:
    contentsig init
        Resolve or make the signer's end-entity, publish its chain, print the x5u.
    contentsig sign FILE
        Sign FILE ("-" for stdin) and print the signature as JSON.
    contentsig verify --x5u URL --signature SIG FILE
        Verify a signature over FILE against the chain at URL.

Signer, registry and S3 settings come from CONTENTSIG_* environment
variables (see contentsig.core.config).
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from pydantic import ValidationError

from contentsig import __version__
from contentsig.core.config import Settings
from contentsig.core.settings import get_settings
from contentsig.services.signer import (
    ContentSignerError,
    SignatureMismatchError,
    VerificationError,
    create_content_signer,
    verify,
)
from contentsig.services.storage import ObjectStoreClient
from contentsig.services.x5u import ChainFetcher

logger = logging.getLogger(__name__)


def _read_input(path: str) -> bytes:
    if path == "-":
        return sys.stdin.buffer.read()
    return Path(path).read_bytes()


def _apply_log_level(settings: Settings) -> None:
    logging.getLogger().setLevel(settings.log_level)


def _cmd_init(_args: argparse.Namespace) -> int:
    settings = get_settings()
    _apply_log_level(settings)
    signer = create_content_signer(settings)
    print(
        json.dumps(
            {
                "signer_id": signer.signer_id,
                "mode": signer.mode.value if signer.mode else "",
                "end_entity": signer.end_entity_label,
                "x5u": signer.x5u,
            }
        )
    )
    return 0


def _cmd_sign(args: argparse.Namespace) -> int:
    data = _read_input(args.file)
    settings = get_settings()
    _apply_log_level(settings)
    signature = create_content_signer(settings).sign_data(data)
    print(json.dumps(signature.to_dict()))
    return 0


def _cmd_verify(args: argparse.Namespace) -> int:
    data = _read_input(args.file)
    # Verifying needs no signer, so the signer checks of get_settings() do not apply
    settings = Settings()
    _apply_log_level(settings)
    object_store = None
    if args.x5u.startswith("s3://"):
        object_store = ObjectStoreClient.from_settings(settings.s3)

    try:
        verify(args.x5u, args.signature, data, fetcher=ChainFetcher(object_store=object_store))
    except SignatureMismatchError as e:
        print(f"FAILED: {e}")
        return 1
    except VerificationError as e:
        print(f"ERROR: {e}")
        return 1
    print("OK")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="contentsig",
        description="Content-Signature signer: manage end-entities, sign and verify payloads",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser(
        "init",
        help="Resolve or make the end-entity and publish its chain",
    )
    init_parser.set_defaults(func=_cmd_init)

    sign_parser = subparsers.add_parser("sign", help="Sign a file")
    sign_parser.add_argument("file", help="File to sign, - for stdin")
    sign_parser.set_defaults(func=_cmd_sign)

    verify_parser = subparsers.add_parser("verify", help="Verify a signature over a file")
    verify_parser.add_argument("--x5u", required=True, help="Location of the certificate chain")
    verify_parser.add_argument(
        "--signature",
        required=True,
        help="base64url content signature",
    )
    verify_parser.add_argument("file", help="Signed file, - for stdin")
    verify_parser.set_defaults(func=_cmd_verify)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Run the command line.

    Logging starts at INFO and follows CONTENTSIG_LOG_LEVEL once settings load.

    Returns:
        Exit code (0 for success, 1 for failures).
    """
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except OSError as e:
        logger.error("Cannot read input: %s", e)
        return 1
    except ValidationError as e:
        logger.error("Invalid configuration: %s", e)
        return 1
    except ContentSignerError as e:
        logger.error("%s failed: %s", args.command, e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
