from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt

from .config import (
    JWT_SECRET_KEY, JWT_ALGORITHM, ACCESS_TOKEN_EXPIRE_MINUTES,
    ADMIN_USERNAME, ADMIN_PASSWORD, SCANNER_USERNAME, SCANNER_PASSWORD,
)
from .errors import Unauthorized
from .helpers import ct_equal

ADMIN = "admin"
SCANNER = "scanner"

security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Actor:
    """Who is calling an admin or gate operation."""
    username: str
    role: str

    def require(self, *roles: str) -> "Actor":
        if self.role not in roles:
            raise Unauthorized(f"{self.role} may not do this")
        return self


def authenticate(username: str, password: str) -> Actor:
    username = (username or "").strip()
    password = password or ""
    # compare against every account so timing does not leak which matched
    is_admin = (ct_equal(username, ADMIN_USERNAME)
                & ct_equal(password, ADMIN_PASSWORD))
    is_scanner = (ct_equal(username, SCANNER_USERNAME)
                  & ct_equal(password, SCANNER_PASSWORD))
    if is_admin:
        return Actor(username=username, role=ADMIN)
    if is_scanner:
        return Actor(username=username, role=SCANNER)
    raise Unauthorized("invalid credentials")


def create_access_token(actor: Actor,
                        expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode = {
        "sub": actor.username,
        "role": actor.role,
        "exp": expire,
        "type": "access",
    }
    return jwt.encode(to_encode, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> Actor:
    try:
        payload = jwt.decode(token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except JWTError:
        raise Unauthorized("could not validate credentials")
    if payload.get("type") != "access":
        raise Unauthorized("invalid token type")
    sub = payload.get("sub")
    role = payload.get("role")
    if not sub or role not in (ADMIN, SCANNER):
        raise Unauthorized("could not validate credentials")
    return Actor(username=sub, role=role)


async def current_actor(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Actor:
    if credentials is None:
        raise Unauthorized("missing bearer token")
    return decode_token(credentials.credentials)


async def require_admin(actor: Actor = Depends(current_actor)) -> Actor:
    return actor.require(ADMIN)


async def require_scanner(actor: Actor = Depends(current_actor)) -> Actor:
    # admins can work the gate too
    return actor.require(SCANNER, ADMIN)
