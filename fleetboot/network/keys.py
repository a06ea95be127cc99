"""Deterministic ed25519 identities and their key-file encodings.

A KeyGenerator draws every secret from one seeded random source, so the
same seed consumed in the same order yields the same keys. It is strictly
sequential: one ``generate()`` call per key, in node-registration order.
"""

from __future__ import annotations

import base64
import hashlib
import json
import random
from dataclasses import dataclass
from typing import Any

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
)

DEFAULT_SEED = 42
SECRET_SIZE = 32
ADDRESS_SIZE = 20

PUB_KEY_TYPE = "tendermint/PubKeyEd25519"
PRIV_KEY_TYPE = "tendermint/PrivKeyEd25519"


@dataclass(frozen=True, slots=True)
class KeyPair:
    """An ed25519 identity, held as raw seed and public key bytes."""

    seed: bytes
    public_key: bytes

    @classmethod
    def from_seed(cls, seed: bytes) -> KeyPair:
        private = Ed25519PrivateKey.from_private_bytes(seed)
        public = private.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
        return cls(seed=seed, public_key=public)

    @property
    def private_key(self) -> Ed25519PrivateKey:
        return Ed25519PrivateKey.from_private_bytes(self.seed)

    @property
    def private_bytes(self) -> bytes:
        """64-byte private key: seed followed by public key."""
        raw = self.private_key.private_bytes(Encoding.Raw, PrivateFormat.Raw, NoEncryption())
        return raw + self.public_key

    @property
    def address(self) -> bytes:
        """First 20 bytes of SHA-256 over the public key."""
        return hashlib.sha256(self.public_key).digest()[:ADDRESS_SIZE]

    @property
    def node_id(self) -> str:
        return self.address.hex()

    def sign(self, message: bytes) -> bytes:
        return self.private_key.sign(message)


class KeyGenerator:
    """Seeded, sequential source of ed25519 key pairs.

    Args:
        seed: Seed of the underlying random source.

    Example:
        >>> gen = KeyGenerator(42)
        >>> signer, network = gen.generate(), gen.generate()
    """

    def __init__(self, seed: int = DEFAULT_SEED) -> None:
        self.seed = seed
        self._random = random.Random(seed)
        self._generated = 0

    @property
    def generated(self) -> int:
        return self._generated

    def generate(self) -> KeyPair:
        secret = self._random.randbytes(SECRET_SIZE)
        self._generated += 1
        return KeyPair.from_seed(hashlib.sha256(secret).digest())


# =============================================================================
# Key files
# =============================================================================


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode()


def encode_pub_key(key: KeyPair) -> dict[str, str]:
    return {"type": PUB_KEY_TYPE, "value": _b64(key.public_key)}


def encode_priv_key(key: KeyPair) -> dict[str, str]:
    return {"type": PRIV_KEY_TYPE, "value": _b64(key.private_bytes)}


def _dump(doc: Any) -> str:
    return json.dumps(doc, indent=2) + "\n"


def priv_validator_key_json(key: KeyPair) -> str:
    return _dump({
        "address": key.address.hex().upper(),
        "pub_key": encode_pub_key(key),
        "priv_key": encode_priv_key(key),
    })


def priv_validator_state_json() -> str:
    return _dump({"height": "0", "round": 0, "step": 0})


def node_key_json(key: KeyPair) -> str:
    return _dump({"priv_key": encode_priv_key(key)})
