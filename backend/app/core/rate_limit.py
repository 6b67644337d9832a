"""
Rate limiting.

The slowapi limiter is built per application from its Settings. Routes that
return plaintext take an extra, tighter bucket on top of the default limit.
"""

from __future__ import annotations

from fastapi import Request
from limits import parse
from slowapi import Limiter
from slowapi.util import get_remote_address

from app.config.settings import Settings
from app.core.errors import RateLimitedError

NOTE_ACCESS_SCOPE = "note_access"


def create_limiter(settings: Settings) -> Limiter:
    return Limiter(
        key_func=get_remote_address,
        default_limits=[settings.rate_limit_default],
    )


async def enforce_note_access_limit(request: Request) -> None:
    """FastAPI dependency charging one hit against the note-access bucket."""
    limiter: Limiter = request.app.state.limiter
    settings: Settings = request.app.state.settings
    item = parse(settings.rate_limit_note_access)
    if not limiter.limiter.hit(item, NOTE_ACCESS_SCOPE, get_remote_address(request)):
        raise RateLimitedError(settings.rate_limit_note_access)
