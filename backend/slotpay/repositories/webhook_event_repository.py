"""Webhook delivery ledger access."""

from __future__ import annotations

from typing import Any, Optional

from sqlalchemy.orm import Session

from ..models.webhook_event import WebhookEvent
from .base_repository import BaseRepository


class WebhookEventRepository(BaseRepository[WebhookEvent]):
    def __init__(self, db: Session):
        super().__init__(db, WebhookEvent)

    def get_by_source_event(self, source: str, event_id: str) -> Optional[WebhookEvent]:
        return self.find_one_by(source=source, event_id=event_id)

    def record(
        self, *, source: str, event_id: str, event_type: str, payload: dict[str, Any]
    ) -> WebhookEvent:
        return self.create(
            source=source, event_id=event_id, event_type=event_type, payload=payload
        )
