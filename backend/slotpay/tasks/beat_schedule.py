# backend/slotpay/tasks/beat_schedule.py
"""
Celery Beat schedule for SlotPay.

Each period is an upper bound on how long an expired hold keeps its slot
blocked, or how long a staged refund waits before reaching the gateway.
"""

from datetime import timedelta
from typing import Any

CELERYBEAT_SCHEDULE: dict[str, dict[str, Any]] = {
    "release-expired-reservations": {
        "task": "slotpay.tasks.booking_tasks.release_expired_reservations",
        "schedule": timedelta(seconds=60),
        "options": {"queue": "payments", "expires": 55},
    },
    "dispatch-outbox-events": {
        "task": "slotpay.tasks.booking_tasks.dispatch_outbox_events",
        "schedule": timedelta(seconds=30),
        "options": {"queue": "payments", "expires": 25},
    },
    "poll-processing-refunds": {
        "task": "slotpay.tasks.booking_tasks.poll_processing_refunds",
        "schedule": timedelta(minutes=5),
        "options": {"queue": "payments", "expires": 240},
    },
}


def get_beat_schedule() -> dict[str, dict[str, Any]]:
    return {name: dict(entry) for name, entry in CELERYBEAT_SCHEDULE.items()}
