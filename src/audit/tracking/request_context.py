"""Build an ActorContext from an incoming HTTP request."""

from typing import Any, Mapping, Optional

from starlette.requests import Request

from config.change_tracking import get_change_tracking_settings

from .context import ActorContext

FORWARDED_FOR_HEADER = "X-Forwarded-For"


def client_ip(request: Request) -> Optional[str]:
    """First address in X-Forwarded-For, else the socket peer."""
    forwarded = request.headers.get(FORWARDED_FOR_HEADER)
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else None


def actor_context_from_request(
    request: Request,
    actor_id: Optional[str] = None,
    extra: Optional[Mapping[str, Any]] = None,
    geo_location_header: Optional[str] = None,
) -> ActorContext:
    """
    Extract actor metadata from a Starlette/FastAPI request.

    Args:
        request: Incoming request
        actor_id: Authenticated user id (falls back to ``request.state.user_id``)
        extra: Additional metadata to store on change records
        geo_location_header: Header carrying the caller's location
    """
    if actor_id is None:
        actor_id = getattr(request.state, "user_id", None)

    header = geo_location_header or get_change_tracking_settings().geo_location_header

    return ActorContext(
        actor_id=str(actor_id) if actor_id is not None else None,
        ip=client_ip(request),
        user_agent=request.headers.get("user-agent"),
        location=request.headers.get(header),
        extra=dict(extra or {}),
    )
