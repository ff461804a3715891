from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Union

from jose import jwt

from carewatch.core.config import settings

ALGORITHM = "HS256"
# Local runs fall back to a fixed key. Production MUST set SECRET_KEY.
SECRET_KEY = settings.SECRET_KEY or "carewatch-local-development-key"


def create_access_token(
    subject: Union[str, Any],
    expires_delta: Union[timedelta, None] = None,
    roles: Iterable[str] | None = None,
) -> str:
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=15)

    to_encode: dict[str, Any] = {"exp": expire, "sub": str(subject)}
    if roles:
        to_encode["roles"] = list(roles)
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_access_token(token: str) -> dict[str, Any]:
    """Decode and verify a bearer token. Raises ``jose.JWTError`` on failure."""
    return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
