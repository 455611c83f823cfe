"""Request-scoped helpers shared by the routers.

Authentication happens upstream; the gateway forwards the caller's identity
in the X-Actor-* headers and this service only authorizes against it.
"""

from typing import Optional

from fastapi import Header

from settlement.errors import PermissionDenied, ValidationFailed
from settlement.models import Actor, ActorType


def get_actor(
    x_actor_type: str = Header(...),
    x_actor_id: str = Header(...),
    x_business_id: Optional[str] = Header(default=None),
) -> Actor:
    """Build the calling actor from the forwarded identity headers."""
    try:
        actor_type = ActorType(x_actor_type)
    except ValueError as exc:
        raise ValidationFailed(
            f"Unknown actor type {x_actor_type!r}",
            code="INVALID_ACTOR",
            details={"allowed": [t.value for t in ActorType if t != ActorType.SYSTEM]},
        ) from exc
    if actor_type == ActorType.SYSTEM:
        # Only the service itself acts as the system
        raise PermissionDenied("The system actor cannot be assumed over HTTP")
    if actor_type == ActorType.BUSINESS_USER and not x_business_id:
        raise ValidationFailed("Business users must send X-Business-Id", code="INVALID_ACTOR")
    return Actor(actor_type=actor_type, actor_id=x_actor_id, business_id=x_business_id)


def require_admin(actor: Actor) -> None:
    if not actor.is_admin:
        raise PermissionDenied("Administrator access required")
