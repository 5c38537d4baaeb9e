"""
Access guard
============

Every mutating endpoint resolves the caller the same way:

1. ``Authorization: Bearer <token>`` issued by the hosted auth provider;
2. python-jose verifies signature, expiry and audience;
3. the ``sub`` claim is looked up in ``profiles`` and its ``role`` is the
   caller's role.

``authorize`` holds the rule itself so it can be tested without HTTP.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch.api.dependencies import get_db
from dispatch.config import settings
from dispatch.domain.enums import STAFF_ROLES, Role
from dispatch.domain.errors import Forbidden, Unauthorized
from dispatch.infrastructure.models import ProfileModel
from dispatch.infrastructure.repositories import ProfileRepository

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Actor:
    user_id: str
    role: Role
    facility_id: Optional[str] = None

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES


def decode_token(token: str) -> dict[str, Any]:
    try:
        return jwt.decode(
            token,
            settings.supabase_jwt_secret,
            algorithms=[settings.supabase_jwt_algorithm],
            audience=settings.supabase_jwt_audience,
        )
    except JWTError as e:
        logger.warning("JWT verification failed: %s", e)
        raise Unauthorized("Invalid or expired token") from e


def authorize(claims: dict[str, Any], profile: Optional[ProfileModel]) -> Role:
    """Return the caller's role, or raise ``Unauthorized``."""
    subject = claims.get("sub")
    if not subject:
        raise Unauthorized("Token has no subject")
    if profile is None or profile.id != subject:
        raise Unauthorized("No profile for this account")
    if profile.role is None:
        raise Unauthorized("Profile has no role")
    return Role(profile.role)


async def get_current_actor(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> Actor:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise Unauthorized("Missing bearer token")
    claims = decode_token(credentials.credentials)
    profile = await ProfileRepository(db).get_by_id(claims.get("sub") or "")
    role = authorize(claims, profile)
    return Actor(user_id=profile.id, role=role, facility_id=profile.facility_id)


def require_roles(*roles: Role):
    allowed = frozenset(roles)

    async def role_dep(actor: Actor = Depends(get_current_actor)) -> Actor:
        if actor.role not in allowed:
            raise Forbidden(
                "Requires role: " + ", ".join(sorted(r.value for r in allowed))
            )
        return actor

    return role_dep


require_staff = require_roles(*STAFF_ROLES)
require_admin = require_roles(Role.ADMIN)
require_driver = require_roles(Role.DRIVER)
