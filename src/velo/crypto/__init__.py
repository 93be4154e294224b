"""Cryptographic primitives module"""

from velo.crypto.keys import Keypair, is_valid_address, verify_signature
from velo.crypto.poseidon import poseidon_hash
from velo.crypto.stealth import (
    StealthKeys,
    StealthMetaAddress,
    StealthPayment,
    derive_stealth_payment,
)

__all__ = [
    'Keypair',
    'is_valid_address',
    'verify_signature',
    'poseidon_hash',
    'StealthKeys',
    'StealthMetaAddress',
    'StealthPayment',
    'derive_stealth_payment',
]
