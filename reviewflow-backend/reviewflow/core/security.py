from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import bcrypt
from jose import JWTError, jwt

from reviewflow.core.config import settings

ALGORITHM = "HS256"
# bcrypt only reads the first 72 bytes; newer releases reject longer input.
_BCRYPT_MAX_BYTES = 72


class TokenValidationError(ValueError):
    pass


@dataclass(frozen=True)
class AccessClaims:
    user_id: str
    business_id: str | None
    expires_at: datetime


def _password_bytes(password: str) -> bytes:
    return password.encode("utf-8")[:_BCRYPT_MAX_BYTES]


def hash_password(password: str) -> str:
    return bcrypt.hashpw(_password_bytes(password), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    return bcrypt.checkpw(_password_bytes(password), hashed.encode("utf-8"))


def create_access_token(user_id: str, *, business_id: str | None = None) -> str:
    """Signs a bearer token; ``bid`` pins the business the session acts for."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "type": "access",
        "jti": str(uuid4()),
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=settings.access_token_expire_minutes)).timestamp()),
    }
    if business_id:
        payload["bid"] = business_id
    return jwt.encode(payload, settings.secret_key, algorithm=ALGORITHM)


def decode_access_token(token: str) -> AccessClaims:
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[ALGORITHM])
    except JWTError as exc:
        raise TokenValidationError("Invalid token") from exc

    if not payload.get("sub"):
        raise TokenValidationError("Invalid token subject")
    if payload.get("type") != "access":
        raise TokenValidationError("Invalid token type")
    return AccessClaims(
        user_id=str(payload["sub"]),
        business_id=payload.get("bid"),
        expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
    )
