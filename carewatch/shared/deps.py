from dataclasses import dataclass, field
from typing import List

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError

from carewatch.core import security
from carewatch.core.config import settings
from carewatch.shared.constants import Role

reusable_oauth2 = OAuth2PasswordBearer(
    tokenUrl=f"{settings.API_V1_STR}/login/access-token",
    auto_error=False,
)


@dataclass(frozen=True)
class Principal:
    """Opaque caller identity supplied by the host's auth layer."""

    id: str
    roles: frozenset[Role] = field(default_factory=frozenset)


def _parse_roles(raw: object) -> frozenset[Role]:
    if not isinstance(raw, list):
        return frozenset()
    roles = set()
    for value in raw:
        try:
            roles.add(Role(str(value).upper()))
        except ValueError:
            continue
    return frozenset(roles)


async def get_current_principal(
    token: str | None = Depends(reusable_oauth2),
) -> Principal:
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        payload = security.decode_access_token(token)
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Could not validate credentials",
        ) from None

    subject = payload.get("sub")
    if not subject:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Could not validate credentials",
        )
    return Principal(id=str(subject), roles=_parse_roles(payload.get("roles")))


class RoleChecker:
    def __init__(self, allowed_roles: List[Role], allow_admin: bool = True) -> None:
        self.allowed_roles = allowed_roles
        self.allow_admin = allow_admin

    def __call__(
        self, principal: Principal = Depends(get_current_principal)
    ) -> Principal:
        if self.allow_admin and Role.ADMIN in principal.roles:
            return principal

        if principal.roles.intersection(self.allowed_roles):
            return principal

        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not enough permissions",
        )
