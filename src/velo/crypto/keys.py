"""Ed25519 account keypairs."""

import json
from pathlib import Path
from typing import Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from cryptography.hazmat.primitives.serialization import Encoding, NoEncryption, PrivateFormat, PublicFormat

from velo.utils.encoding import b58decode, b58encode


class Keypair:
    """An Ed25519 signing key with a base58 account address."""

    def __init__(self, private_key: Ed25519PrivateKey):
        self._private_key = private_key
        self.public_bytes = private_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)

    @classmethod
    def generate(cls) -> "Keypair":
        return cls(Ed25519PrivateKey.generate())

    @classmethod
    def from_seed(cls, seed: bytes) -> "Keypair":
        if len(seed) != 32:
            raise ValueError("Seed must be 32 bytes")
        return cls(Ed25519PrivateKey.from_private_bytes(seed))

    @classmethod
    def from_json_file(cls, path: Union[str, Path]) -> "Keypair":
        """
        Load a keypair file holding a JSON array of 64 byte values.

        The first 32 bytes are the seed, the last 32 the public key.
        """
        raw = bytes(json.loads(Path(path).read_text()))
        if len(raw) != 64:
            raise ValueError("Keypair file must hold 64 bytes")
        keypair = cls.from_seed(raw[:32])
        if keypair.public_bytes != raw[32:]:
            raise ValueError("Keypair file public key does not match its seed")
        return keypair

    def to_json_file(self, path: Union[str, Path]) -> None:
        Path(path).write_text(json.dumps(list(self.seed + self.public_bytes)))

    @property
    def seed(self) -> bytes:
        return self._private_key.private_bytes(Encoding.Raw, PrivateFormat.Raw, NoEncryption())

    @property
    def address(self) -> str:
        return b58encode(self.public_bytes)

    def sign(self, message: bytes) -> bytes:
        return self._private_key.sign(message)

    def __repr__(self) -> str:
        return f"Keypair(address={self.address})"


def verify_signature(address: Union[str, bytes], message: bytes, signature: bytes) -> bool:
    """Check an Ed25519 signature against a base58 or raw 32-byte address."""
    try:
        public = b58decode(address, expected_length=32) if isinstance(address, str) else address
        Ed25519PublicKey.from_public_bytes(public).verify(signature, message)
    except (InvalidSignature, ValueError):
        return False
    return True


def is_valid_address(address: str) -> bool:
    """True if the text decodes to a 32-byte account address."""
    try:
        b58decode(address, expected_length=32)
    except ValueError:
        return False
    return True
