import hmac
from dataclasses import dataclass
from typing import Optional

import jwt
from fastapi import Depends, Header
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from bookstore.core.config import settings
from bookstore.core.errors import Forbidden, Unauthorized

security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Identity:
    user_id: str
    role: str = "customer"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def get_current_identity(creds: HTTPAuthorizationCredentials = Depends(security)) -> Identity:
    if not creds:
        raise Unauthorized()
    try:
        payload = jwt.decode(creds.credentials, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.PyJWTError:
        raise Unauthorized("Invalid token")
    if payload.get("type") != "access" or not payload.get("sub"):
        raise Unauthorized("Invalid access token")
    return Identity(user_id=str(payload["sub"]), role=payload.get("role") or "customer")


def require_admin(identity: Identity = Depends(get_current_identity)) -> Identity:
    if not identity.is_admin:
        raise Forbidden("Admin only")
    return identity


def require_cron(authorization: Optional[str] = Header(default=None, alias="Authorization")) -> bool:
    # An unset secret must never match an empty bearer token.
    if not settings.CRON_SECRET or not authorization:
        raise Unauthorized()
    if not hmac.compare_digest(authorization.encode("utf-8"), f"Bearer {settings.CRON_SECRET}".encode("utf-8")):
        raise Unauthorized()
    return True
