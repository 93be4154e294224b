"""Relayer channel authentication."""

from velo.security.auth import create_relay_token, verify_relay_token

__all__ = [
    "create_relay_token",
    "verify_relay_token",
]
