"""
Identity provider: bearer token to Actor.

Inactive accounts are still resolved; whether they may act is the access
policy's decision, not the identity layer's.
"""

from __future__ import annotations

from typing import Protocol

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config.settings import Settings
from app.core.errors import AuthError, ErrorCode
from app.core.security import decode_token
from app.db.models.user import User
from app.services.notes.policy import Actor

_log = structlog.get_logger(__name__)


class IdentityProvider(Protocol):
    async def get_actor(self, token: str) -> Actor: ...


class TokenIdentityProvider:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings

    async def get_actor(self, token: str) -> Actor:
        """
        Raises:
            AuthError: token invalid/expired or its subject unknown.
        """
        payload = decode_token(token, self._settings)
        user_id = payload.get("sub")
        if not isinstance(user_id, str) or not user_id:
            raise AuthError(ErrorCode.AUTH_TOKEN_INVALID, "Token missing subject")

        async with self._session_factory() as db:
            user = await db.get(User, user_id)
        if user is None:
            raise AuthError(ErrorCode.AUTH_TOKEN_INVALID, "User not found")

        if not user.is_active:
            _log.info("inactive_actor_resolved", user_id=user.id)
        return Actor(id=user.id, role=user.role, is_active=user.is_active)
