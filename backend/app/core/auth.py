"""
Merchant dashboard authentication via JWT (X-Merchant-Token header).

Tokens carry the merchant id, the dashboard user id and a role
(owner or staff). Plan-changing operations require the owner role.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, Header

from backend.app.core.exceptions import InternalError, UnauthorizedError
from backend.app.core.settings import get_settings

JWT_ALGORITHM = "HS256"
ROLE_OWNER = "owner"
ROLE_STAFF = "staff"


@dataclass(frozen=True)
class MerchantPrincipal:
    merchant_id: int
    user_id: int
    role: str

    @property
    def is_owner(self) -> bool:
        return self.role == ROLE_OWNER


def _secret() -> str:
    secret = get_settings().JWT_SECRET
    if not secret:
        raise InternalError("JWT_SECRET is not configured", code="AUTH_NOT_CONFIGURED")
    return secret


def create_merchant_token(merchant_id: int, user_id: int, role: str = ROLE_OWNER) -> str:
    """Create JWT for a merchant dashboard session."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(merchant_id),
        "uid": str(user_id),
        "role": role,
        "exp": now + timedelta(hours=get_settings().JWT_EXPIRY_HOURS),
        "iat": now,
    }
    return jwt.encode(payload, _secret(), algorithm=JWT_ALGORITHM)


def decode_merchant_token(token: str) -> Optional[MerchantPrincipal]:
    """Decode JWT and return the principal, or None if invalid/expired."""
    try:
        payload = jwt.decode(token, _secret(), algorithms=[JWT_ALGORITHM])
        role = payload.get("role")
        if role not in (ROLE_OWNER, ROLE_STAFF):
            return None
        return MerchantPrincipal(
            merchant_id=int(payload["sub"]),
            user_id=int(payload["uid"]),
            role=role,
        )
    except (jwt.InvalidTokenError, KeyError, ValueError):
        return None


async def require_merchant(
    x_merchant_token: Optional[str] = Header(None, alias="X-Merchant-Token"),
) -> MerchantPrincipal:
    """Require a valid merchant token; any dashboard role."""
    if not x_merchant_token:
        raise UnauthorizedError("Missing X-Merchant-Token", code="MISSING_TOKEN")
    principal = decode_merchant_token(x_merchant_token)
    if principal is None:
        raise UnauthorizedError("Invalid or expired token", code="INVALID_TOKEN")
    return principal


async def require_owner(
    principal: MerchantPrincipal = Depends(require_merchant),
) -> MerchantPrincipal:
    """Require the owner role (plan switches and payment requests)."""
    if not principal.is_owner:
        raise UnauthorizedError("Owner role required", code="OWNER_REQUIRED", status_code=403)
    return principal
