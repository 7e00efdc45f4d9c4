"""
Cross-instance Redis mutex around slot claiming.

The database conditional write is what guarantees correctness; this claim
only keeps competing instances from piling onto the same provider row.
Redis being unavailable never blocks a claim (fail open).
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
import logging
import threading
import time
from typing import Iterator, Optional

from redis import Redis

from slotpay.core.config import settings
from slotpay.monitoring.prometheus_metrics import prometheus_metrics

logger = logging.getLogger(__name__)

_SYNC_REDIS: Optional[Redis] = None
_SYNC_REDIS_LOCK = threading.Lock()


def _claim_key(provider_id: str, start_at: datetime, end_at: datetime) -> str:
    return f"slotpay:claim:{provider_id}:{start_at.isoformat()}:{end_at.isoformat()}"


def _get_sync_redis() -> Optional[Redis]:
    global _SYNC_REDIS
    if _SYNC_REDIS is not None:
        return _SYNC_REDIS
    with _SYNC_REDIS_LOCK:
        if _SYNC_REDIS is not None:
            return _SYNC_REDIS
        try:
            client = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
            client.ping()
        except Exception as exc:
            logger.warning("slot_claim_redis_unavailable: %s", exc)
            return None
        _SYNC_REDIS = client
        return _SYNC_REDIS


def acquire_slot_claim(provider_id: str, start_at: datetime, end_at: datetime) -> bool:
    if not settings.slot_claim_redis_enabled:
        return True
    client = _get_sync_redis()
    if client is None:
        prometheus_metrics.record_slot_mutex("acquire", "redis_unavailable")
        return True
    key = _claim_key(provider_id, start_at, end_at)
    try:
        acquired = bool(
            client.set(key, str(time.time()), nx=True, ex=settings.slot_claim_ttl_seconds)
        )
    except Exception as exc:
        prometheus_metrics.record_slot_mutex("acquire", "error")
        logger.warning(
            "slot_claim_acquire_failed",
            extra={"provider_id": provider_id, "error": str(exc), "error_type": type(exc).__name__},
        )
        return True
    prometheus_metrics.record_slot_mutex("acquire", "success" if acquired else "blocked")
    return acquired


def release_slot_claim(provider_id: str, start_at: datetime, end_at: datetime) -> None:
    if not settings.slot_claim_redis_enabled:
        return
    client = _get_sync_redis()
    if client is None:
        return
    try:
        client.delete(_claim_key(provider_id, start_at, end_at))
        prometheus_metrics.record_slot_mutex("release", "success")
    except Exception as exc:
        prometheus_metrics.record_slot_mutex("release", "error")
        logger.warning(
            "slot_claim_release_failed",
            extra={"provider_id": provider_id, "error": str(exc), "error_type": type(exc).__name__},
        )


@contextmanager
def slot_claim(provider_id: str, start_at: datetime, end_at: datetime) -> Iterator[bool]:
    """Yield whether the claim was taken; callers treat False as a slot conflict."""
    acquired = acquire_slot_claim(provider_id, start_at, end_at)
    try:
        yield acquired
    finally:
        if acquired:
            release_slot_claim(provider_id, start_at, end_at)
