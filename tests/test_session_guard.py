import json
from datetime import datetime, timedelta

import pytest
import redis

from examhub.errors import DependencyUnavailable
from examhub.services import session_guard as guard_module
from examhub.services.session_guard import (
    LATE,
    MISSING,
    ON_TIME,
    UNAVAILABLE,
    RedisSessionStore,
    SessionGuard,
    build_session_guard,
    session_key,
)

from conftest import MemorySessionStore, UnavailableSessionStore

STARTED = datetime(2026, 3, 1, 9, 0, 0)


def test_record_start_stores_epoch_and_duration_with_ttl():
    store = MemorySessionStore()
    guard = SessionGuard(store)

    assert guard.record_start(7, 3, started_at=STARTED, duration_seconds=1800) is True

    key = session_key(7, 3)
    assert key == "exam_session:7:3"
    assert store.ttls[key] == 1800
    record = json.loads(store.values[key])
    assert record["duration"] == 1800
    assert isinstance(record["started_at"], int)


def test_check_reports_on_time_and_late():
    guard = SessionGuard(MemorySessionStore())
    guard.record_start(1, 1, started_at=STARTED, duration_seconds=600)

    on_time = guard.check(1, 1, now=STARTED + timedelta(seconds=600))
    assert on_time.status == ON_TIME
    assert on_time.elapsed_seconds == 600
    assert not on_time.is_late

    late = guard.check(1, 1, now=STARTED + timedelta(seconds=601))
    assert late.status == LATE
    assert late.is_late
    assert late.duration_seconds == 600


def test_missing_and_malformed_records_are_not_late():
    store = MemorySessionStore()
    guard = SessionGuard(store)
    assert guard.check(1, 2, now=STARTED).status == MISSING

    store.values[session_key(1, 2)] = "{not json"
    assert guard.check(1, 2, now=STARTED).status == MISSING


def test_unavailable_store_fails_open():
    guard = SessionGuard(UnavailableSessionStore())
    assert guard.record_start(1, 1, started_at=STARTED, duration_seconds=60) is False
    assert guard.check(1, 1, now=STARTED).status == UNAVAILABLE
    guard.clear(1, 1)


def test_guard_without_store_is_disabled():
    guard = SessionGuard(None)
    assert not guard.enabled
    assert guard.record_start(1, 1, started_at=STARTED, duration_seconds=60) is False
    assert guard.check(1, 1, now=STARTED).status == UNAVAILABLE


def test_clear_removes_record():
    store = MemorySessionStore()
    guard = SessionGuard(store)
    guard.record_start(4, 5, started_at=STARTED, duration_seconds=60)
    guard.clear(4, 5)
    assert store.values == {}


class _BrokenRedis:
    def setex(self, *args, **kwargs):
        raise redis.ConnectionError("connection refused")

    def get(self, *args, **kwargs):
        raise redis.TimeoutError("timed out")

    def delete(self, *args, **kwargs):
        raise redis.ConnectionError("connection refused")


def test_redis_store_wraps_client_errors():
    store = RedisSessionStore(_BrokenRedis())
    with pytest.raises(DependencyUnavailable):
        store.put("k", "v", 10)
    with pytest.raises(DependencyUnavailable):
        store.get("k")
    with pytest.raises(DependencyUnavailable):
        store.delete("k")


def test_redis_outage_does_not_break_guard():
    guard = SessionGuard(RedisSessionStore(_BrokenRedis()))
    assert guard.check(1, 1, now=STARTED).status == UNAVAILABLE


def test_build_session_guard_follows_config(app, monkeypatch):
    assert build_session_guard(app).enabled is False

    created = {}

    def fake_from_url(cls, url, *, socket_timeout=None):
        created["url"] = url
        created["timeout"] = socket_timeout
        return MemorySessionStore()

    monkeypatch.setattr(guard_module.RedisSessionStore, "from_url", classmethod(fake_from_url))
    app.config["REDIS_URL"] = "redis://cache:6379/2"
    guard = build_session_guard(app)
    assert guard.enabled
    assert created == {"url": "redis://cache:6379/2", "timeout": 0.5}
