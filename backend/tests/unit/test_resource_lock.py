"""
Unit tests for resource_lock.py.

Coverage:
1) Key generation
2) Acquire/release against a fake Redis
3) Graceful degradation when Redis is unavailable or errors
4) Multi-resource context manager ordering and cleanup
"""

from datetime import date
from unittest.mock import MagicMock, patch

import pytest

from studioops.core import resource_lock
from studioops.core.config import settings
from studioops.core.resource_lock import (
    _lock_key,
    _namespaced_key,
    acquire_resource_lock,
    release_resource_lock,
    resource_locks,
    set_redis_client,
)

DAY = date(2030, 1, 7)


class FakeRedis:
    def __init__(self):
        self.store: dict[str, str] = {}
        self.set_calls: list[str] = []

    def set(self, key, value, nx=False, ex=None):
        self.set_calls.append(key)
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    def delete(self, key):
        return 1 if self.store.pop(key, None) is not None else 0


@pytest.fixture
def fake_redis(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(settings, "resource_lock_enabled", True)
    fake = FakeRedis()
    set_redis_client(fake)
    yield fake
    set_redis_client(None)


class TestKeyGeneration:
    def test_lock_key_format(self):
        assert _lock_key("T1", "room", "R1", DAY) == "T1:room:R1:2030-01-07"

    def test_namespaced_key_format(self):
        namespaced = _namespaced_key("T1:room:R1:2030-01-07")
        assert namespaced == f"{settings.resource_lock_namespace}:lock:T1:room:R1:2030-01-07"


class TestAcquireRelease:
    def test_acquire_then_blocked_then_released(self, fake_redis):
        assert acquire_resource_lock("T1", "room", "R1", DAY) is True
        assert acquire_resource_lock("T1", "room", "R1", DAY) is False
        release_resource_lock("T1", "room", "R1", DAY)
        assert acquire_resource_lock("T1", "room", "R1", DAY) is True

    def test_different_days_do_not_contend(self, fake_redis):
        assert acquire_resource_lock("T1", "room", "R1", DAY) is True
        assert acquire_resource_lock("T1", "room", "R1", date(2030, 1, 8)) is True

    def test_disabled_locks_always_succeed(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setattr(settings, "resource_lock_enabled", False)
        with patch.object(resource_lock, "_get_sync_redis") as get_redis:
            assert acquire_resource_lock("T1", "room", "R1", DAY) is True
        get_redis.assert_not_called()

    def test_redis_unavailable_fails_open(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setattr(settings, "resource_lock_enabled", True)
        with patch.object(resource_lock, "_get_sync_redis", return_value=None):
            assert acquire_resource_lock("T1", "room", "R1", DAY) is True

    def test_redis_error_fails_open(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setattr(settings, "resource_lock_enabled", True)
        broken = MagicMock()
        broken.set.side_effect = ConnectionError("boom")
        with patch.object(resource_lock, "_get_sync_redis", return_value=broken):
            assert acquire_resource_lock("T1", "room", "R1", DAY) is True

    def test_ttl_is_passed_to_redis(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setattr(settings, "resource_lock_enabled", True)
        mock_redis = MagicMock()
        mock_redis.set.return_value = True
        with patch.object(resource_lock, "_get_sync_redis", return_value=mock_redis):
            acquire_resource_lock("T1", "coach", "C1", DAY, ttl_s=45)
        assert mock_redis.set.call_args.kwargs["ex"] == 45
        assert mock_redis.set.call_args.kwargs["nx"] is True


class TestResourceLocks:
    def test_acquires_in_sorted_order_and_releases(self, fake_redis):
        resources = [("room", "R2", DAY), ("coach", "C1", DAY), ("room", "R1", DAY)]
        with resource_locks("T1", resources) as acquired:
            assert acquired is True
            assert len(fake_redis.store) == 3
        assert fake_redis.store == {}
        assert fake_redis.set_calls == [
            _namespaced_key(_lock_key("T1", "coach", "C1", DAY)),
            _namespaced_key(_lock_key("T1", "room", "R1", DAY)),
            _namespaced_key(_lock_key("T1", "room", "R2", DAY)),
        ]

    def test_contended_resource_yields_false_and_releases_partial(self, fake_redis):
        assert acquire_resource_lock("T1", "room", "R1", DAY) is True
        with resource_locks("T1", [("coach", "C1", DAY), ("room", "R1", DAY)]) as acquired:
            assert acquired is False
        # Only the lock held before the context remains
        assert list(fake_redis.store) == [_namespaced_key(_lock_key("T1", "room", "R1", DAY))]

    def test_releases_on_exception(self, fake_redis):
        with pytest.raises(RuntimeError):
            with resource_locks("T1", [("room", "R1", DAY)]):
                raise RuntimeError("fail inside")
        assert fake_redis.store == {}

    def test_duplicates_are_locked_once(self, fake_redis):
        with resource_locks("T1", [("room", "R1", DAY), ("room", "R1", DAY)]) as acquired:
            assert acquired is True
        assert len(fake_redis.set_calls) == 1
