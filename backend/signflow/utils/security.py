from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any
from uuid import UUID, uuid4
import hashlib
import hmac
import secrets

from jose import ExpiredSignatureError, JWTError, jwt

JWT_ALGORITHM = "HS256"


class TokenType(str, Enum):
    EXECUTED_FILE = "executed_file"


class AccessTokenExpired(ValueError):
    pass


def generate_signing_token() -> str:
    """Opaque high-entropy bearer token for a signing link (64 hex chars)."""
    return secrets.token_hex(32)


def hash_signing_token(token: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), token.encode("utf-8"), hashlib.sha256).hexdigest()


def _executed_file_key(secret: str) -> str:
    # never the raw signing secret, which also keys the token hashes
    return hmac.new(secret.encode("utf-8"), b"executed-file-link", hashlib.sha256).hexdigest()


def create_executed_file_token(file_id: UUID | str, expires_minutes: int, secret: str) -> str:
    if not secret:
        raise ValueError("Missing secret for executed file links")
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    to_encode: dict[str, Any] = {
        "sub": str(file_id),
        "exp": expire,
        "token_type": TokenType.EXECUTED_FILE.value,
        "jti": str(uuid4()),
    }
    return jwt.encode(to_encode, _executed_file_key(secret), algorithm=JWT_ALGORITHM)


def decode_executed_file_token(token: str, secret: str) -> UUID:
    if not secret:
        raise ValueError("Missing secret for executed file links")
    try:
        payload = jwt.decode(token, _executed_file_key(secret), algorithms=[JWT_ALGORITHM])
    except ExpiredSignatureError as exc:
        raise AccessTokenExpired("Executed document link has expired") from exc
    except JWTError as exc:
        raise ValueError("Invalid token") from exc
    if payload.get("token_type") != TokenType.EXECUTED_FILE.value:
        raise ValueError("Invalid token payload")
    try:
        return UUID(str(payload["sub"]))
    except (KeyError, TypeError, ValueError) as exc:
        raise ValueError("Invalid token subject") from exc
