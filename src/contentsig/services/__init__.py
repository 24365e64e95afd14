"""Content signer service layer.

- content_signature: Modes, templated hashing and signature wire encoding
- keys: Issuer and end-entity key providers
- registry: End-entity registry transactions
- storage: S3-compatible object storage for published chains
- x5u: End-entity certificates, chain publication and retrieval
- signer: ContentSigner lifecycle, signing and verification
"""

from contentsig.services.content_signature import (
    ContentSignature,
    Mode,
    hash_algorithm_name,
    make_templated_hash,
    signature_byte_length,
)
from contentsig.services.signer import (
    ContentSigner,
    SignerConfiguration,
    SignerState,
    create_content_signer,
    verify,
)

__all__ = [
    "ContentSignature",
    "ContentSigner",
    "Mode",
    "SignerConfiguration",
    "SignerState",
    "create_content_signer",
    "hash_algorithm_name",
    "make_templated_hash",
    "signature_byte_length",
    "verify",
]
