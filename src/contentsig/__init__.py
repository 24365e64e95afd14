"""contentsig - Content-Signature issuance core.

Manages the end-entity signing key of a content signer under a fixed issuer
(intermediate CA) key, produces ECDSA content signatures over a templated hash
of arbitrary payloads, and verifies them against a published certificate chain.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
