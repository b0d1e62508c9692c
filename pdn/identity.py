"""
Node Identity
=============

[IDENTITY] Every node owns an Ed25519 key pair (PyNaCl).
Its DHT coordinate is the SHA-1 of the verify key, so ids are
uniformly spread over the key space and bound to a key.
"""

from pathlib import Path
from typing import Optional, Union

from nacl.signing import SigningKey

from pdn.dht.routing import hash_to_node_id


class NodeIdentity:
    """Key pair and derived node id."""

    def __init__(self, signing_key: Optional[SigningKey] = None):
        self._signing_key = signing_key or SigningKey.generate()
        self._verify_key = self._signing_key.verify_key

    @classmethod
    def from_seed(cls, seed: bytes) -> "NodeIdentity":
        """Deterministic identity from a 32-byte seed."""
        if len(seed) != 32:
            raise ValueError(f"seed must be 32 bytes, got {len(seed)}")
        return cls(SigningKey(seed))

    @property
    def public_key(self) -> bytes:
        return bytes(self._verify_key)

    @property
    def node_id(self) -> bytes:
        """20-byte id in the DHT key space."""
        return hash_to_node_id(self.public_key)

    def export_identity(self) -> bytes:
        """Seed bytes; keep secret."""
        return bytes(self._signing_key)

    @classmethod
    def import_identity(cls, key_bytes: bytes) -> "NodeIdentity":
        return cls.from_seed(key_bytes)

    @classmethod
    def load_or_create(cls, path: Union[str, Path]) -> "NodeIdentity":
        """Read the identity file, creating it on first start."""
        path = Path(path)
        if path.exists():
            return cls.import_identity(path.read_bytes())

        identity = cls()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(identity.export_identity())
        return identity
