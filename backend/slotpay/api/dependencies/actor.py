# backend/slotpay/api/dependencies/actor.py
"""
Caller identity.

Authentication happens in the gateway in front of this service, which
forwards the authenticated identity as trusted headers.
"""

from typing import Optional

from fastapi import Header, HTTPException, status

from ...principal import Actor, ActorRole

_ALLOWED_ROLES = {ActorRole.CUSTOMER, ActorRole.PROVIDER, ActorRole.ADMIN}


def get_current_actor(
    x_actor_id: Optional[str] = Header(None, alias="X-Actor-Id"),
    x_actor_role: Optional[str] = Header(None, alias="X-Actor-Role"),
) -> Actor:
    if not x_actor_id or not x_actor_role:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"message": "Caller identity headers are missing", "code": "UNAUTHENTICATED"},
        )
    try:
        role = ActorRole(x_actor_role.strip().lower())
    except ValueError:
        role = None
    if role not in _ALLOWED_ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"message": f"Unsupported caller role: {x_actor_role}", "code": "INVALID_ROLE"},
        )
    return Actor(id=x_actor_id.strip()[:64], role=role)


def require_admin(actor: Actor) -> Actor:
    if not actor.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"message": "Admin access required", "code": "FORBIDDEN"},
        )
    return actor
