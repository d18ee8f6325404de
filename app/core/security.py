"""
Token verification for the real-time channel.

Tokens are issued elsewhere; this service only validates them with
python-jose and extracts the user identity.
"""
from typing import Optional, Dict, Any
from jose import jwt, JWTError
from core.config import settings


def decode_access_token(token: str) -> Optional[Dict[str, Any]]:
    """
    Decode and validate a JWT access token.

    Args:
        token: JWT token string

    Returns:
        Decoded payload if valid, None if invalid or expired
    """
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
        return payload
    except JWTError:
        return None


def user_id_from_token(token: str) -> Optional[str]:
    """
    Resolve the user id carried by an access token.

    Accepts ``sub`` or ``user_id`` claims; refresh tokens are rejected.
    """
    payload = decode_access_token(token)
    if payload is None:
        return None
    if payload.get("type", "access") != "access":
        return None
    user_id = payload.get("sub") or payload.get("user_id")
    return str(user_id) if user_id is not None else None
