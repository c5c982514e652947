import hashlib
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

import jwt  # PyJWT
from passlib.context import CryptContext

from config import get_settings
from errors import UnauthenticatedError

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

ACCESS = "access"
REFRESH = "refresh"


def verify_password(plain_password: str, hashed_password: Optional[str]) -> bool:
    if not plain_password or not hashed_password:
        return False
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except (ValueError, TypeError):
        return False


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def generate_token(nbytes: int = 20) -> Tuple[str, str]:
    """Return ``(raw, sha256)``; only the hash is ever persisted."""
    raw = secrets.token_hex(nbytes)
    return raw, hash_token(raw)


def _encode(subject: str, token_type: str, secret: str, expires_delta: timedelta) -> str:
    now = datetime.now(timezone.utc)
    payload = {"id": subject, "type": token_type, "iat": now, "exp": now + expires_delta}
    return jwt.encode(payload, secret, algorithm=get_settings().jwt_algorithm)


def create_access_token(user_id: str, expires_delta: Optional[timedelta] = None) -> str:
    settings = get_settings()
    return _encode(user_id, ACCESS, settings.jwt_secret,
                   expires_delta or timedelta(days=settings.jwt_expire_days))


def create_refresh_token(user_id: str, expires_delta: Optional[timedelta] = None) -> str:
    settings = get_settings()
    return _encode(user_id, REFRESH, settings.refresh_token_secret,
                   expires_delta or timedelta(days=settings.refresh_token_expire_days))


def _decode(token: str, secret: str, token_type: str) -> Dict[str, Any]:
    try:
        payload = jwt.decode(token, secret, algorithms=[get_settings().jwt_algorithm])
    except jwt.PyJWTError:
        raise UnauthenticatedError("Token is invalid or has expired. Please login again.")
    if payload.get("type") != token_type or not payload.get("id"):
        raise UnauthenticatedError("Token is invalid or has expired. Please login again.")
    return payload


def decode_access_token(token: str) -> Dict[str, Any]:
    return _decode(token, get_settings().jwt_secret, ACCESS)


def decode_refresh_token(token: str) -> Dict[str, Any]:
    return _decode(token, get_settings().refresh_token_secret, REFRESH)


def issue_session(user_id: str) -> Dict[str, str]:
    return {
        "token": create_access_token(user_id),
        "refreshToken": create_refresh_token(user_id),
    }
