"""Encoding and decoding utilities."""

import base58


def b58encode(data: bytes) -> str:
    """Encode bytes using the Bitcoin base58 alphabet."""
    return base58.b58encode(data).decode("ascii")


def b58decode(value: str, expected_length: int = None) -> bytes:
    """
    Decode a base58 string.

    Args:
        value: base58 text
        expected_length: If given, the decoded length that must result

    Raises:
        ValueError: If the text is not base58 or has the wrong length
    """
    if not isinstance(value, str) or not value:
        raise ValueError("Expected a non-empty base58 string")
    decoded = base58.b58decode(value)
    if expected_length is not None and len(decoded) != expected_length:
        raise ValueError(f"Expected {expected_length} bytes, got {len(decoded)}")
    return decoded

