"""
Agent identity and output attestation.

Each agent owns an Ed25519 key pair. Keys are either loaded from a keystore
directory (``<agent_id>.key`` holding a hex seed), derived from a master
seed plus a derivation path, or generated ad hoc for ephemeral agents.

A Signature covers the sha256 digest of the exact bytes it accompanies, so a
verifier only needs the payload, the Signature and the embedded public key.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from pathlib import Path
from typing import Any, Mapping, Optional, Protocol, Sequence

from nacl.encoding import HexEncoder
from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

from tessera.core.types import Signature
from tessera.errors import KeyUnavailable

logger = logging.getLogger(__name__)

SCHEME = "ed25519"
_DERIVATION_PERSON = b"tessera-agent"


def canonical_bytes(value: Any) -> bytes:
    """Deterministic JSON encoding used for signed structured payloads."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def payload_digest(payload: bytes) -> bytes:
    return hashlib.sha256(payload).digest()


def verify_signature(signature: Signature, payload: bytes) -> bool:
    """Verify ``signature`` over ``payload`` using only the embedded public key."""
    if signature.scheme != SCHEME:
        return False
    digest = payload_digest(payload)
    if digest.hex() != signature.payload_hash:
        return False
    try:
        verify_key = VerifyKey(signature.public_key.encode(), encoder=HexEncoder)
        verify_key.verify(digest, signature.signature_bytes)
    except (BadSignatureError, ValueError, TypeError):
        return False
    return True


class IdentityProvider(Protocol):
    """Signs payloads on behalf of agents and verifies signatures."""

    async def sign(self, agent_id: str, payload: bytes) -> Signature:
        ...

    async def verify(self, signature: Signature, payload: bytes) -> bool:
        ...


class Ed25519IdentityProvider:
    """Local Ed25519 identity provider backed by PyNaCl."""

    def __init__(
        self,
        *,
        master_seed: Optional[bytes] = None,
        keystore_dir: Optional[Path] = None,
        keys: Optional[Mapping[str, SigningKey]] = None,
    ) -> None:
        if master_seed is not None and len(master_seed) > 64:
            master_seed = hashlib.sha512(master_seed).digest()
        self._master_seed = master_seed
        self.keystore_dir = keystore_dir
        self._keys: dict[str, SigningKey] = dict(keys or {})
        self._lock = threading.Lock()

    @classmethod
    def from_seed_hex(cls, seed_hex: str, **kwargs: Any) -> "Ed25519IdentityProvider":
        return cls(master_seed=bytes.fromhex(seed_hex), **kwargs)

    def generate_key(self, agent_id: str) -> str:
        """Create a fresh random key for ``agent_id``; returns the hex public key."""
        signing_key = SigningKey.generate()
        with self._lock:
            self._keys[agent_id] = signing_key
        return signing_key.verify_key.encode(encoder=HexEncoder).decode()

    def revoke(self, agent_id: str) -> None:
        """Forget a cached or generated key."""
        with self._lock:
            self._keys.pop(agent_id, None)

    def signing_key(self, agent_id: str, derivation_path: Sequence[bytes] = ()) -> SigningKey:
        """Return the signing key for ``agent_id``.

        Raises:
            KeyUnavailable: No keystore entry, cached key or master seed
        """
        cache_key = agent_id if not derivation_path else f"{agent_id}/{b'/'.join(derivation_path).hex()}"
        with self._lock:
            cached = self._keys.get(cache_key)
            if cached is not None:
                return cached

            signing_key = None
            if not derivation_path:
                signing_key = self._load_from_keystore(agent_id)
            if signing_key is None and self._master_seed is not None:
                signing_key = self._derive(agent_id, derivation_path)
            if signing_key is None:
                raise KeyUnavailable(f"No signing key available for agent '{agent_id}'")

            self._keys[cache_key] = signing_key
            return signing_key

    def public_key(self, agent_id: str) -> str:
        return self.signing_key(agent_id).verify_key.encode(encoder=HexEncoder).decode()

    async def sign(self, agent_id: str, payload: bytes) -> Signature:
        signing_key = self.signing_key(agent_id)
        digest = payload_digest(payload)
        signed = signing_key.sign(digest)
        return Signature(
            signer=agent_id,
            payload_hash=digest.hex(),
            signature=signed.signature.hex(),
            public_key=signing_key.verify_key.encode(encoder=HexEncoder).decode(),
            scheme=SCHEME,
        )

    async def verify(self, signature: Signature, payload: bytes) -> bool:
        """Verify a signature, also checking the key belongs to the signer when known."""
        if not verify_signature(signature, payload):
            return False
        try:
            expected = self.public_key(signature.signer)
        except KeyUnavailable:
            return True
        return expected == signature.public_key

    def _derive(self, agent_id: str, derivation_path: Sequence[bytes]) -> SigningKey:
        assert self._master_seed is not None
        hasher = hashlib.blake2b(
            digest_size=32, key=self._master_seed, person=_DERIVATION_PERSON
        )
        hasher.update(agent_id.encode("utf-8"))
        for part in derivation_path:
            hasher.update(b"/")
            hasher.update(part)
        return SigningKey(hasher.digest())

    def _load_from_keystore(self, agent_id: str) -> Optional[SigningKey]:
        if self.keystore_dir is None:
            return None
        key_path = self.keystore_dir / f"{agent_id}.key"
        if not key_path.exists():
            return None
        try:
            seed_hex = key_path.read_text(encoding="utf-8").strip()
            return SigningKey(seed_hex.encode(), encoder=HexEncoder)
        except (OSError, ValueError, TypeError) as exc:
            logger.error("Unreadable key file %s: %s", key_path, exc)
            raise KeyUnavailable(f"Key file for agent '{agent_id}' is unreadable") from exc


__all__ = [
    "Ed25519IdentityProvider",
    "IdentityProvider",
    "SCHEME",
    "canonical_bytes",
    "payload_digest",
    "verify_signature",
]
