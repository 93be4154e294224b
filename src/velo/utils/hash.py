"""Byte-level hash helpers and field conversions."""

import hashlib
from typing import Union

# BN254 scalar field, shared by the native hash and the circuit
FIELD_MODULUS = 21888242871839275222246405745257275088548364400416034343698204186575808495617


def sha256(data: Union[bytes, str]) -> bytes:
    """
    Compute SHA-256 hash of data.

    Args:
        data: Bytes or string to hash

    Returns:
        bytes: 32-byte SHA-256 hash
    """
    if isinstance(data, str):
        data = data.encode('utf-8')
    return hashlib.sha256(data).digest()


def bytes_to_field(data: bytes) -> int:
    """Interpret bytes as a big-endian integer reduced into the scalar field."""
    return int.from_bytes(data, "big") % FIELD_MODULUS


def field_to_bytes(value: int) -> bytes:
    """Encode a field element as 32 big-endian bytes."""
    if not 0 <= value < FIELD_MODULUS:
        raise ValueError("Value is not a canonical field element")
    return value.to_bytes(32, "big")


def address_to_field(address: bytes) -> int:
    """
    Map a 32-byte account address into the scalar field.

    Addresses span the full 256-bit range, so reducing them mod p would let two
    accounts share one field value. Hashing and keeping 253 bits gives an
    injective-in-practice map that always lands below the modulus.
    """
    if not isinstance(address, bytes) or len(address) != 32:
        raise ValueError("Address must be 32 bytes")
    return int.from_bytes(sha256(address), "big") >> 3


def discriminator(namespace: str, name: str) -> bytes:
    """Eight-byte instruction or account discriminator, sha256("ns:name")[:8]."""
    return sha256(f"{namespace}:{name}")[:8]
