"""Server-side exam timer kept in Redis.

When an exam starts we store ``{"started_at", "duration"}`` under
``exam_session:{user_id}:{exam_id}`` with a TTL equal to the exam duration.
At submit time the record tells us how long the attempt really took, regardless
of what the client reports. The guard is a secondary signal only: a missing
record or an unreachable store never blocks a submission.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol

import redis
from flask import Flask, current_app

from ..errors import DependencyUnavailable

logger = logging.getLogger(__name__)

KEY_TEMPLATE = "exam_session:{user_id}:{exam_id}"

ON_TIME = "on_time"
LATE = "late"
MISSING = "missing"
UNAVAILABLE = "unavailable"


class SessionStore(Protocol):
    def put(self, key: str, value: str, ttl_seconds: int) -> None: ...

    def get(self, key: str) -> str | None: ...

    def delete(self, key: str) -> None: ...


class RedisSessionStore:
    """Key/value-with-TTL adapter over redis-py."""

    def __init__(self, client: redis.Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str, *, socket_timeout: float | None = None) -> "RedisSessionStore":
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client)

    def put(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            self._client.setex(key, ttl_seconds, value)
        except redis.RedisError as exc:
            raise DependencyUnavailable(f"Session store write failed: {exc}") from exc

    def get(self, key: str) -> str | None:
        try:
            return self._client.get(key)
        except redis.RedisError as exc:
            raise DependencyUnavailable(f"Session store read failed: {exc}") from exc

    def delete(self, key: str) -> None:
        try:
            self._client.delete(key)
        except redis.RedisError as exc:
            raise DependencyUnavailable(f"Session store delete failed: {exc}") from exc


@dataclass(frozen=True, slots=True)
class GuardCheck:
    status: str
    elapsed_seconds: int | None = None
    duration_seconds: int | None = None

    @property
    def is_late(self) -> bool:
        return self.status == LATE


def _epoch(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return int(moment.timestamp())


def session_key(user_id: int, exam_id: int) -> str:
    return KEY_TEMPLATE.format(user_id=user_id, exam_id=exam_id)


class SessionGuard:
    def __init__(self, store: SessionStore | None) -> None:
        self.store = store

    @property
    def enabled(self) -> bool:
        return self.store is not None

    def record_start(
        self, user_id: int, exam_id: int, *, started_at: datetime, duration_seconds: int
    ) -> bool:
        if self.store is None:
            return False
        payload = json.dumps({"started_at": _epoch(started_at), "duration": duration_seconds})
        try:
            self.store.put(session_key(user_id, exam_id), payload, duration_seconds)
        except DependencyUnavailable:
            logger.warning(
                "Failed to store exam session",
                extra={"user_id": user_id, "exam_id": exam_id},
                exc_info=True,
            )
            return False
        return True

    def check(self, user_id: int, exam_id: int, *, now: datetime) -> GuardCheck:
        if self.store is None:
            return GuardCheck(UNAVAILABLE)
        try:
            raw = self.store.get(session_key(user_id, exam_id))
        except DependencyUnavailable:
            logger.warning(
                "Exam session store unavailable; accepting submission ungated",
                extra={"user_id": user_id, "exam_id": exam_id},
                exc_info=True,
            )
            return GuardCheck(UNAVAILABLE)
        if raw is None:
            return GuardCheck(MISSING)

        try:
            data = json.loads(raw)
            started_at = int(data["started_at"])
            duration = int(data["duration"])
        except (TypeError, ValueError, KeyError):
            logger.warning(
                "Ignoring malformed exam session record",
                extra={"user_id": user_id, "exam_id": exam_id},
            )
            return GuardCheck(MISSING)

        elapsed = _epoch(now) - started_at
        status = LATE if elapsed > duration else ON_TIME
        return GuardCheck(status, elapsed_seconds=elapsed, duration_seconds=duration)

    def clear(self, user_id: int, exam_id: int) -> None:
        if self.store is None:
            return
        try:
            self.store.delete(session_key(user_id, exam_id))
        except DependencyUnavailable:
            logger.warning(
                "Failed to remove exam session",
                extra={"user_id": user_id, "exam_id": exam_id},
                exc_info=True,
            )


def build_session_guard(app: Flask) -> SessionGuard:
    url = app.config.get("REDIS_URL")
    if not url:
        app.logger.info("REDIS_URL not configured; exam session guard disabled")
        return SessionGuard(None)
    store = RedisSessionStore.from_url(
        url, socket_timeout=app.config.get("SESSION_GUARD_SOCKET_TIMEOUT")
    )
    return SessionGuard(store)


def get_session_guard() -> SessionGuard:
    return current_app.extensions["session_guard"]


__all__ = [
    "GuardCheck",
    "LATE",
    "MISSING",
    "ON_TIME",
    "RedisSessionStore",
    "SessionGuard",
    "SessionStore",
    "UNAVAILABLE",
    "build_session_guard",
    "get_session_guard",
    "session_key",
]
