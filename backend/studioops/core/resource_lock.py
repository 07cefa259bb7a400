"""
Redis locks on contested scheduling resources.

A booking acquires one lock per (tenant, resource type, resource id, local
day) before re-validating and committing. When Redis is unreachable the lock
degrades to a logged pass-through; the database row lock taken inside the
transaction still serializes writers.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import date
import logging
import threading
import time
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple

from redis import Redis

from ..monitoring.prometheus_metrics import prometheus_metrics
from .config import settings

logger = logging.getLogger(__name__)

_SYNC_REDIS: Optional[Redis] = None
_SYNC_REDIS_LOCK = threading.Lock()


class ResourceBusyError(Exception):
    """Another writer holds a lock on one of the requested resources."""


def _lock_key(tenant_id: str, resource_type: str, resource_id: str, day: date) -> str:
    return f"{tenant_id}:{resource_type}:{resource_id}:{day.isoformat()}"


def _namespaced_key(key: str) -> str:
    return f"{settings.resource_lock_namespace}:lock:{key}"


def _get_sync_redis() -> Optional[Redis]:
    global _SYNC_REDIS
    if _SYNC_REDIS is not None:
        return _SYNC_REDIS
    with _SYNC_REDIS_LOCK:
        if _SYNC_REDIS is not None:
            return _SYNC_REDIS
        try:
            client = Redis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            client.ping()
        except Exception as exc:
            logger.warning("resource_lock_redis_unavailable: %s", exc)
            return None
        _SYNC_REDIS = client
        return _SYNC_REDIS


def set_redis_client(client: Optional[Redis]) -> None:
    """Install (or clear) the Redis client used for resource locks."""
    global _SYNC_REDIS
    with _SYNC_REDIS_LOCK:
        _SYNC_REDIS = client


def acquire_resource_lock(
    tenant_id: str,
    resource_type: str,
    resource_id: str,
    day: date,
    ttl_s: Optional[int] = None,
) -> bool:
    """
    Try to take the lock for one resource-day.

    Returns True when the lock is held or locking is unavailable, False only
    when another writer holds it.
    """
    if not settings.resource_lock_enabled:
        return True
    key = _lock_key(tenant_id, resource_type, resource_id, day)
    client = _get_sync_redis()
    if client is None:
        prometheus_metrics.record_resource_lock(resource_type, "acquire", "redis_unavailable")
        logger.warning("resource_lock_redis_unavailable", extra={"lock_key": key})
        return True
    ttl = ttl_s or settings.resource_lock_ttl_seconds
    try:
        acquired = bool(client.set(_namespaced_key(key), str(time.time()), nx=True, ex=ttl))
    except Exception as exc:
        prometheus_metrics.record_resource_lock(resource_type, "acquire", "error")
        logger.warning(
            "resource_lock_acquire_failed",
            extra={"lock_key": key, "error": str(exc), "error_type": type(exc).__name__},
        )
        return True
    prometheus_metrics.record_resource_lock(
        resource_type, "acquire", "success" if acquired else "blocked"
    )
    return acquired


def release_resource_lock(tenant_id: str, resource_type: str, resource_id: str, day: date) -> None:
    if not settings.resource_lock_enabled:
        return
    key = _lock_key(tenant_id, resource_type, resource_id, day)
    client = _get_sync_redis()
    if client is None:
        prometheus_metrics.record_resource_lock(resource_type, "release", "redis_unavailable")
        return
    try:
        deleted = client.delete(_namespaced_key(key))
        prometheus_metrics.record_resource_lock(
            resource_type, "release", "success" if deleted else "not_found"
        )
    except Exception as exc:
        prometheus_metrics.record_resource_lock(resource_type, "release", "error")
        logger.warning(
            "resource_lock_release_failed",
            extra={"lock_key": key, "error": str(exc), "error_type": type(exc).__name__},
        )


@contextmanager
def resource_locks(tenant_id: str, resources: Iterable[Tuple[str, str, date]]) -> Iterator[bool]:
    """
    Acquire locks for several resource-days in a stable order.

    Yields False when any lock is held elsewhere, so the caller can treat it
    as a contended write. Locks taken are released on exit.
    """
    ordered: Sequence[Tuple[str, str, date]] = sorted(set(resources))
    held: List[Tuple[str, str, date]] = []
    try:
        for resource_type, resource_id, day in ordered:
            if not acquire_resource_lock(tenant_id, resource_type, resource_id, day):
                break
            held.append((resource_type, resource_id, day))
        yield len(held) == len(ordered)
    finally:
        for resource_type, resource_id, day in reversed(held):
            release_resource_lock(tenant_id, resource_type, resource_id, day)
