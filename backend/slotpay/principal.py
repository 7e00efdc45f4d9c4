"""Caller identities passed into services for permission checks and audit rows."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ActorRole(str, Enum):
    CUSTOMER = "customer"
    PROVIDER = "provider"
    ADMIN = "admin"
    SYSTEM = "system"


@dataclass(frozen=True)
class Actor:
    """Who is asking. Authentication happens upstream; this is already trusted."""

    id: str
    role: ActorRole

    @property
    def is_admin(self) -> bool:
        return self.role == ActorRole.ADMIN

    @property
    def is_system(self) -> bool:
        return self.role == ActorRole.SYSTEM

    @property
    def is_staff(self) -> bool:
        """Admins and the system itself may act on any record."""
        return self.role in (ActorRole.ADMIN, ActorRole.SYSTEM)

    @classmethod
    def system(cls, component: str = "slotpay") -> "Actor":
        return cls(id=f"system:{component}", role=ActorRole.SYSTEM)

    @classmethod
    def customer(cls, customer_id: str) -> "Actor":
        return cls(id=customer_id, role=ActorRole.CUSTOMER)

    @classmethod
    def provider(cls, provider_id: str) -> "Actor":
        return cls(id=provider_id, role=ActorRole.PROVIDER)

    @classmethod
    def admin(cls, admin_id: str) -> "Actor":
        return cls(id=admin_id, role=ActorRole.ADMIN)
