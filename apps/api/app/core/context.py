from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import reset_actor_user_id, set_actor_user_id


@dataclass
class RequestContext:
    request_id: str
    correlation_id: str
    user_id: int | None


def parse_user_id(raw: str | None) -> int | None:
    if raw is None or not raw.strip():
        return None
    try:
        return int(raw.strip())
    except ValueError:
        return None


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = getattr(request.state, "correlation_id", None)
        user_id = parse_user_id(request.headers.get("x-user-id"))
        request.state.context = RequestContext(
            request_id=correlation_id or "",
            correlation_id=correlation_id or "",
            user_id=user_id,
        )
        token = set_actor_user_id(user_id)
        try:
            response = await call_next(request)
        finally:
            reset_actor_user_id(token)
        response.headers["x-request-id"] = request.state.context.request_id
        return response
