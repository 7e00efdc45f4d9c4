# backend/slotpay/models/audit_log.py
"""
Audit trail of status transitions for bookings, payments and refund requests.

Each row keeps the before/after snapshot so disputes can be reconstructed.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping

from sqlalchemy import Column, DateTime, Index, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from sqlalchemy.types import JSON
import ulid

from slotpay.database import Base


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class AuditLog(Base):
    """Persistence model for audit trail entries."""

    __tablename__ = "audit_log"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(64), nullable=False)
    action = Column(String(50), nullable=False)
    actor_id = Column(String(64), nullable=True)
    actor_role = Column(String(30), nullable=True)
    request_id = Column(String(64), nullable=True)
    occurred_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=_now_utc,
        server_default=func.now(),
    )
    before = Column(JSONB(astext_type=Text()).with_variant(JSON(), "sqlite"), nullable=True)
    after = Column(JSONB(astext_type=Text()).with_variant(JSON(), "sqlite"), nullable=True)

    __table_args__ = (Index("ix_audit_log_entity", "entity_type", "entity_id"),)

    @classmethod
    def from_change(
        cls,
        entity_type: str,
        entity_id: str,
        action: str,
        actor: Any | None,
        before: Mapping[str, Any] | None,
        after: Mapping[str, Any] | None,
        request_id: str | None = None,
    ) -> "AuditLog":
        """Build a row from change metadata; actor may be a Principal or a mapping."""
        actor_id: str | None = None
        actor_role: str | None = None
        if actor is not None:
            if isinstance(actor, Mapping):
                actor_id = actor.get("id")
                actor_role = actor.get("role")
            else:
                actor_id = getattr(actor, "id", None)
                actor_role = getattr(actor, "role", None)

        return cls(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            actor_id=actor_id,
            actor_role=_role_value(actor_role),
            request_id=request_id,
            before=dict(before) if before is not None else None,
            after=dict(after) if after is not None else None,
        )


def _role_value(role: Any | None) -> str | None:
    if role is None:
        return None
    return str(getattr(role, "value", role))
