"""
FastAPI dependency providers.

All authentication and authorization logic lives here, not in routes.
"""

from __future__ import annotations

from typing import Annotated

import structlog
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.errors import AuthError, ErrorCode, ForbiddenError
from app.db.models.user import RoleEnum
from app.services.audit.recorder import RequestContext
from app.services.container import Services
from app.services.notes.policy import Actor

_log = structlog.get_logger(__name__)
_bearer = HTTPBearer(auto_error=False)


def get_services(request: Request) -> Services:
    return request.app.state.services  # type: ignore[no-any-return]


ServicesDep = Annotated[Services, Depends(get_services)]


async def get_current_actor(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer)],
    services: ServicesDep,
) -> Actor:
    """
    Validate the JWT Bearer token and return the calling Actor.

    Inactive actors are returned as-is; the access policy denies them.
    """
    if credentials is None:
        raise AuthError(
            ErrorCode.AUTH_TOKEN_INVALID, "Authorization header missing or not Bearer type"
        )

    actor = await services.identity.get_actor(credentials.credentials)
    structlog.contextvars.bind_contextvars(actor_id=actor.id, role=actor.role.value)
    return actor


CurrentActor = Annotated[Actor, Depends(get_current_actor)]


def require_roles(*roles: RoleEnum):
    """Return a dependency callable that enforces role membership."""

    async def _check(actor: CurrentActor) -> Actor:
        if not actor.is_active:
            raise AuthError(ErrorCode.AUTH_USER_INACTIVE, "Account is deactivated")
        if actor.role not in roles:
            raise ForbiddenError(
                f"This action requires one of: {[r.value for r in roles]}. "
                f"Your role is: {actor.role.value}"
            )
        return actor

    return _check


AdminActor = Annotated[Actor, Depends(require_roles(RoleEnum.ADMIN))]


def get_request_context(request: Request) -> RequestContext:
    """Client address, user agent and correlation id for audit entries."""
    return RequestContext(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        correlation_id=getattr(request.state, "correlation_id", None),
    )


RequestCtx = Annotated[RequestContext, Depends(get_request_context)]
