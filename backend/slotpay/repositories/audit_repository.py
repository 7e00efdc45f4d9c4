"""Audit trail persistence."""

from typing import List

from sqlalchemy.orm import Session

from ..models.audit_log import AuditLog
from .base_repository import BaseRepository


class AuditRepository(BaseRepository[AuditLog]):
    def __init__(self, db: Session):
        super().__init__(db, AuditLog)

    def write(self, entry: AuditLog) -> AuditLog:
        return self.add(entry)

    def list_for_entity(self, entity_type: str, entity_id: str) -> List[AuditLog]:
        query = (
            self._build_query()
            .filter(AuditLog.entity_type == entity_type, AuditLog.entity_id == entity_id)
            .order_by(AuditLog.occurred_at.asc(), AuditLog.id.asc())
        )
        return self._execute_query(query)
