from __future__ import annotations

from dataclasses import dataclass

from starlette.requests import Request

from app.context import get_correlation_id
from app.core.config import get_settings
from app.core.context import parse_user_id


@dataclass(frozen=True)
class ActorUser:
    """The caller performing a mutation.

    There is no authentication layer: the id is trusted client input taken
    from the ``X-User-Id`` header and falls back to ``DEFAULT_USER_ID``.
    """

    user_id: int | None = None
    correlation_id: str | None = None


def get_current_user(request: Request) -> ActorUser:
    context = getattr(request.state, "context", None)
    user_id = getattr(context, "user_id", None)
    if user_id is None:
        user_id = parse_user_id(request.headers.get("x-user-id"))
    if user_id is None:
        user_id = get_settings().default_user_id
    correlation_id = get_correlation_id() or getattr(context, "request_id", None) or None
    return ActorUser(user_id=user_id, correlation_id=correlation_id)
