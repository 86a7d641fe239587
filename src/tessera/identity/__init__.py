"""Agent identities and output attestation."""

from tessera.identity.provider import (
    Ed25519IdentityProvider,
    IdentityProvider,
    canonical_bytes,
    verify_signature,
)

__all__ = [
    "Ed25519IdentityProvider",
    "IdentityProvider",
    "canonical_bytes",
    "verify_signature",
]
