"""Content signature values: modes, templated hashing and wire encoding.

A content signature is an ECDSA (R, S) pair computed over the hash of
"Content-Signature:\\x00" || payload. On the wire, R and S are each written
big-endian and zero-padded to half of the mode's signature length, then the
concatenation is base64url-encoded without padding.

Supported modes:
- p256ecdsa: P-256 curve, SHA-256, 64-byte signatures
- p384ecdsa: P-384 curve, SHA-384, 96-byte signatures
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import (
    Prehashed,
    encode_dss_signature,
)

logger = logging.getLogger(__name__)

# Prepended to every payload before hashing. Must match byte-for-byte
# between signers and verifiers.
SIGNATURE_PREFIX = b"Content-Signature:\x00"

# Wire signatures shorter than this cannot hold a P-256 signature
MIN_WIRE_SIGNATURE_LENGTH = 30

# Digest sizes accepted for hash signing, mapped to the prehash algorithm
_PREHASH_BY_DIGEST_SIZE: dict[int, type[hashes.HashAlgorithm]] = {
    32: hashes.SHA256,
    48: hashes.SHA384,
    64: hashes.SHA512,
}


@dataclass(frozen=True, slots=True)
class ModeParameters:
    """Constants bound to a signing mode.

    Attributes:
        curve_name: Name of the elliptic curve as reported by cryptography.
        hash_name: Name of the hash applied to templated payloads.
        signature_length: Length in bytes of a full (R || S) signature.
    """

    curve_name: str
    hash_name: str
    signature_length: int


class Mode(str, Enum):
    """Content signature mode, always derived from the issuer key's curve."""

    P256ECDSA = "p256ecdsa"
    P384ECDSA = "p384ecdsa"

    @property
    def parameters(self) -> ModeParameters:
        return _MODE_PARAMETERS[self]

    @property
    def signature_length(self) -> int:
        return self.parameters.signature_length

    @property
    def hash_name(self) -> str:
        return self.parameters.hash_name

    @classmethod
    def from_curve(cls, curve: ec.EllipticCurve) -> Mode | None:
        """Map an elliptic curve to its mode, or None for unsupported curves."""
        for mode, params in _MODE_PARAMETERS.items():
            if params.curve_name == curve.name:
                return mode
        return None

    @classmethod
    def from_signature_length(cls, length: int) -> Mode | None:
        """Map a decoded signature length to its mode, or None if unknown."""
        for mode, params in _MODE_PARAMETERS.items():
            if params.signature_length == length:
                return mode
        return None


_MODE_PARAMETERS: dict[Mode, ModeParameters] = {
    Mode.P256ECDSA: ModeParameters(
        curve_name="secp256r1",
        hash_name="sha256",
        signature_length=64,
    ),
    Mode.P384ECDSA: ModeParameters(
        curve_name="secp384r1",
        hash_name="sha384",
        signature_length=96,
    ),
}


def _as_mode(mode: Mode | str | None) -> Mode | None:
    if isinstance(mode, Mode):
        return mode
    try:
        return Mode(mode)
    except ValueError:
        return None


def signature_byte_length(mode: Mode | str | None) -> int | None:
    """Return the signature length for a mode, or None if the mode is unknown."""
    resolved = _as_mode(mode)
    return resolved.signature_length if resolved else None


def hash_algorithm_name(mode: Mode | str | None) -> str:
    """Return the hash name for a mode, or an empty string if the mode is unknown."""
    resolved = _as_mode(mode)
    return resolved.hash_name if resolved else ""


def make_templated_hash(data: bytes, mode: Mode | str | None) -> tuple[str, bytes]:
    """Hash the templated payload for a mode.

    The template prepends SIGNATURE_PREFIX to the data. P-384 uses SHA-384;
    every other mode, including unknown ones, uses SHA-256.

    Args:
        data: Raw payload bytes.
        mode: Signing mode or its string tag.

    Returns:
        Tuple of (hash name, digest bytes).
    """
    if _as_mode(mode) is Mode.P384ECDSA:
        md = hashlib.sha384()
    else:
        md = hashlib.sha256()
    md.update(SIGNATURE_PREFIX)
    md.update(data)
    return md.name, md.digest()


def prehash_for_digest(digest: bytes) -> Prehashed:
    """Return the Prehashed wrapper matching a digest's size.

    Raises:
        ValueError: If the digest is not 32, 48 or 64 bytes long.
    """
    algorithm = _PREHASH_BY_DIGEST_SIZE.get(len(digest))
    if algorithm is None:
        msg = f"unsupported digest length {len(digest)}, expected 32, 48 or 64"
        raise ValueError(msg)
    return Prehashed(algorithm())


class ContentSignatureError(Exception):
    """Base exception for content signature encoding errors."""

    pass


class SignatureEncodeError(ContentSignatureError):
    """Raised when a signature value cannot be written to its wire form."""

    pass


class SignatureDecodeError(ContentSignatureError):
    """Raised when a wire-form signature cannot be decoded."""

    pass


@dataclass(frozen=True, slots=True)
class ContentSignature:
    """A content signature value.

    Attributes:
        r: ECDSA R value.
        s: ECDSA S value.
        mode: Mode the signature was made in.
        x5u: Location of the certificate chain of the signing key.
        signer_id: Identifier of the signer that produced the signature.
        hash_name: Hash applied to the templated payload, when known.
        finished: Whether the signature is complete and can be encoded.
    """

    r: int
    s: int
    mode: Mode
    x5u: str = ""
    signer_id: str = ""
    hash_name: str = ""
    finished: bool = True

    @property
    def length(self) -> int:
        return self.mode.signature_length

    def with_hash_name(self, hash_name: str) -> ContentSignature:
        """Return a copy recording the hash used over the templated payload."""
        return replace(self, hash_name=hash_name)

    def to_bytes(self) -> bytes:
        """Concatenate R and S, each zero-padded big-endian to half the length.

        Raises:
            SignatureEncodeError: If the signature is unfinished or R/S do not fit.
        """
        if not self.finished:
            msg = "content signature: unfinished signature cannot be encoded"
            raise SignatureEncodeError(msg)
        half = self.length // 2
        try:
            return self.r.to_bytes(half, "big") + self.s.to_bytes(half, "big")
        except OverflowError as exc:
            msg = f"content signature: R or S does not fit in {half} bytes for {self.mode.value}"
            raise SignatureEncodeError(msg) from exc

    def marshal(self) -> str:
        """Return the base64url wire form, without padding."""
        return base64.urlsafe_b64encode(self.to_bytes()).rstrip(b"=").decode("ascii")

    @classmethod
    def unmarshal(cls, signature: str) -> ContentSignature:
        """Decode a wire-form signature.

        The mode is inferred from the decoded length.

        Args:
            signature: base64url string, padding optional.

        Returns:
            Finished ContentSignature without x5u or signer id.

        Raises:
            SignatureDecodeError: If the string is malformed or has an unknown length.
        """
        if len(signature) < MIN_WIRE_SIGNATURE_LENGTH:
            msg = (
                "content signature: signature cannot be shorter than "
                f"{MIN_WIRE_SIGNATURE_LENGTH} characters, got {len(signature)}"
            )
            raise SignatureDecodeError(msg)
        if "+" in signature or "/" in signature:
            msg = "content signature: standard base64 alphabet used, expected base64url"
            raise SignatureDecodeError(msg)
        try:
            padded = signature + "=" * (-len(signature) % 4)
            data = base64.b64decode(padded, altchars=b"-_", validate=True)
        except (binascii.Error, ValueError) as exc:
            msg = f"content signature: invalid base64url encoding: {exc}"
            raise SignatureDecodeError(msg) from exc

        mode = Mode.from_signature_length(len(data))
        if mode is None:
            msg = f"content signature: unknown signature length {len(data)}"
            raise SignatureDecodeError(msg)

        half = len(data) // 2
        return cls(
            r=int.from_bytes(data[:half], "big"),
            s=int.from_bytes(data[half:], "big"),
            mode=mode,
        )

    def verify_hash(self, digest: bytes, public_key: ec.EllipticCurvePublicKey) -> bool:
        """Verify the signature over a precomputed digest.

        Returns:
            True if the signature matches, False otherwise.
        """
        try:
            public_key.verify(
                encode_dss_signature(self.r, self.s),
                digest,
                ec.ECDSA(prehash_for_digest(digest)),
            )
        except (InvalidSignature, ValueError) as e:
            logger.debug("Content signature verification failed: %s", e or "invalid signature")
            return False
        return True

    def verify_data(self, data: bytes, public_key: ec.EllipticCurvePublicKey) -> bool:
        """Verify the signature over raw payload bytes using the templated hash."""
        _, digest = make_templated_hash(data, self.mode)
        return self.verify_hash(digest, public_key)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON output."""
        return {
            "mode": self.mode.value,
            "x5u": self.x5u,
            "signer_id": self.signer_id,
            "hash_algorithm": self.hash_name,
            "signature": self.marshal(),
        }
