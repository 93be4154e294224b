"""Bearer tokens for the relayer channel.

Tokens identify a client application, never a depositor: they carry a client
id and an expiry and nothing about notes or recipients.
"""

import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

import jwt

ALGORITHM = "HS256"
DEFAULT_EXPIRE_MINUTES = 60


def create_relay_token(client_id: str, secret_key: str,
                       expires_delta: Optional[timedelta] = None) -> Tuple[str, datetime]:
    """
    Create a JWT for a relayer client.

    Returns:
        tuple: (token, expiry_datetime)
    """
    if expires_delta is None:
        expires_delta = timedelta(minutes=DEFAULT_EXPIRE_MINUTES)

    now = datetime.now(timezone.utc)
    expire = now + expires_delta

    to_encode = {
        "sub": client_id,
        "scope": "relay",
        "exp": expire,
        "iat": now,
        "jti": secrets.token_hex(8),
    }

    encoded_jwt = jwt.encode(to_encode, secret_key, algorithm=ALGORITHM)
    return encoded_jwt, expire


def verify_relay_token(token: str, secret_key: str) -> Optional[Dict[str, Any]]:
    """
    Verify and decode a relayer token.

    Returns:
        Dictionary with token payload if valid, None if invalid/expired
    """
    try:
        payload = jwt.decode(token, secret_key, algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError:
        return None
    if payload.get("scope") != "relay":
        return None
    return payload
