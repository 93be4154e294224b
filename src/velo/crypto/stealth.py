"""One-time stealth recipient addresses.

A recipient publishes a meta-address made of an X25519 view key and an
Ed25519 spend key. A sender (here: the relayer) draws an ephemeral X25519
key, derives a shared secret with the view key and offsets the spend key by
a scalar taken from that secret:

    stealth = spend + H(shared) * G

Only the holder of the view key can recognise the payment, and only the
holder of the spend key can compute the one-time private scalar, so the party
that derived the address never learns how to move the funds.
"""

import hashlib
import logging
import os
from dataclasses import dataclass
from typing import Optional

from Crypto.PublicKey import ECC
from Crypto.Signature import eddsa
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from velo.utils.encoding import b58decode, b58encode

logger = logging.getLogger(__name__)

# Ed25519 group order and base point
CURVE_ORDER = 2**252 + 27742317777372353535851937790883648493
BASE_X = 15112221349535400772501151409588531511454012693041857206046113283949847762202
BASE_Y = 46316835694926478169428394003475163141307993866256225615783033603165251855960

HKDF_INFO = b"velo-stealth-v1"


def _base_point() -> ECC.EccPoint:
    return ECC.EccPoint(BASE_X, BASE_Y, curve="Ed25519")


def encode_point(point: ECC.EccPoint) -> bytes:
    """RFC 8032 point encoding: little-endian y with the sign of x in the top bit."""
    y = int(point.y)
    x = int(point.x)
    encoded = bytearray(y.to_bytes(32, "little"))
    encoded[31] |= (x & 1) << 7
    return bytes(encoded)


def decode_point(encoded: bytes) -> ECC.EccPoint:
    return eddsa.import_public_key(encoded).pointQ


def spend_scalar_from_seed(seed: bytes) -> int:
    """Clamped secret scalar an Ed25519 seed expands to."""
    digest = bytearray(hashlib.sha512(seed).digest()[:32])
    digest[0] &= 248
    digest[31] &= 127
    digest[31] |= 64
    return int.from_bytes(bytes(digest), "little")


def _shared_tweak(shared_secret: bytes):
    material = HKDF(
        algorithm=hashes.SHA256(),
        length=40,
        salt=None,
        info=HKDF_INFO,
    ).derive(shared_secret)
    tweak = int.from_bytes(material[:32], "little") % CURVE_ORDER
    return tweak, material[32]


@dataclass
class StealthMetaAddress:
    """Public half of a recipient's stealth keys."""

    view_public: bytes
    spend_public: bytes

    def encode(self) -> str:
        return b58encode(self.view_public + self.spend_public)

    @classmethod
    def decode(cls, value: str) -> "StealthMetaAddress":
        """
        Parse a base58 meta-address.

        Raises:
            ValueError: If the text is not 64 bytes or the spend key is not a point
        """
        raw = b58decode(value, expected_length=64)
        meta = cls(view_public=raw[:32], spend_public=raw[32:])
        decode_point(meta.spend_public)
        return meta


@dataclass
class StealthPayment:
    """What the sender publishes so the recipient can find the payment."""

    stealth_address: str
    ephemeral_public: str
    view_tag: int


class StealthKeys:
    """Recipient-side key material for scanning and spending stealth payments."""

    def __init__(self, view_private: X25519PrivateKey, spend_seed: bytes):
        if len(spend_seed) != 32:
            raise ValueError("Spend seed must be 32 bytes")
        self._view_private = view_private
        self._spend_seed = spend_seed

    @classmethod
    def generate(cls) -> "StealthKeys":
        return cls(X25519PrivateKey.generate(), os.urandom(32))

    @property
    def spend_scalar(self) -> int:
        return spend_scalar_from_seed(self._spend_seed)

    @property
    def meta_address(self) -> StealthMetaAddress:
        view_public = self._view_private.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
        spend_public = encode_point(_base_point() * self.spend_scalar)
        return StealthMetaAddress(view_public=view_public, spend_public=spend_public)

    def scan(self, payment: StealthPayment) -> Optional[int]:
        """
        Check whether a payment belongs to these keys.

        Returns:
            The one-time private scalar for the stealth address, or None if
            the payment is addressed to someone else.
        """
        ephemeral = X25519PublicKey.from_public_bytes(b58decode(payment.ephemeral_public, 32))
        tweak, view_tag = _shared_tweak(self._view_private.exchange(ephemeral))
        if view_tag != payment.view_tag:
            return None

        scalar = (self.spend_scalar + tweak) % CURVE_ORDER
        expected = encode_point(_base_point() * scalar)
        if b58encode(expected) != payment.stealth_address:
            return None
        return scalar


def derive_stealth_payment(meta: StealthMetaAddress) -> StealthPayment:
    """Draw an ephemeral key and derive a fresh one-time address for meta."""
    ephemeral = X25519PrivateKey.generate()
    shared = ephemeral.exchange(X25519PublicKey.from_public_bytes(meta.view_public))
    tweak, view_tag = _shared_tweak(shared)

    stealth_point = decode_point(meta.spend_public) + _base_point() * tweak
    ephemeral_public = ephemeral.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)

    logger.debug("Derived stealth payment address")
    return StealthPayment(
        stealth_address=b58encode(encode_point(stealth_point)),
        ephemeral_public=b58encode(ephemeral_public),
        view_tag=view_tag,
    )
