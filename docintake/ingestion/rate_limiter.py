"""
Sliding-window admission control per (subject, action).

Protocol
--------
Callers ask ``check_limit`` and, if allowed, call ``record_request``. The
two steps are *not* atomic: concurrent callers on the same key may both
pass the check before either records, overshooting the quota briefly. The
limiter is advisory (it protects a shared backend from one chatty client,
it is not a security boundary), so this is tolerated. ``acquire`` offers an
atomic check-and-record for callers that need strict enforcement.

State lives in a ``RateLimitStore`` owned by the caller, so several limiters
(or schedulers) can share one store or keep their own.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from datetime import datetime, timezone
from typing import Callable

from docintake.ingestion.config import ingest_settings
from docintake.ingestion.schemas import RateLimitQuota, RateLimitResult, RequestRecord

logger = logging.getLogger(__name__)

_UNLIMITED_RESET_SECONDS = 60.0

WindowKey = tuple[str, str]


class RateLimitStore:
    """Request timestamps keyed by (subject_id, action), oldest first."""

    def __init__(self) -> None:
        self._windows: dict[WindowKey, list[float]] = {}
        self.lock = threading.RLock()

    def get(self, key: WindowKey) -> list[float]:
        with self.lock:
            return list(self._windows.get(key, ()))

    def put(self, key: WindowKey, timestamps: list[float]) -> None:
        with self.lock:
            if timestamps:
                self._windows[key] = list(timestamps)
            else:
                self._windows.pop(key, None)

    def append(self, key: WindowKey, timestamp: float) -> None:
        with self.lock:
            self._windows.setdefault(key, []).append(timestamp)

    def delete(self, key: WindowKey) -> None:
        with self.lock:
            self._windows.pop(key, None)

    def keys(self) -> list[WindowKey]:
        with self.lock:
            return list(self._windows)

    def items(self) -> list[tuple[WindowKey, list[float]]]:
        with self.lock:
            return [(k, list(v)) for k, v in self._windows.items()]

    def clear(self) -> None:
        with self.lock:
            self._windows.clear()

    def __len__(self) -> int:
        with self.lock:
            return len(self._windows)


class RateLimiter:
    """Client-side sliding-window rate limiter."""

    def __init__(
        self,
        limits: dict[str, RateLimitQuota] | None = None,
        *,
        store: RateLimitStore | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        source = ingest_settings.rate_limits if limits is None else limits
        self._limits: dict[str, RateLimitQuota] = dict(source)
        self.store = store if store is not None else RateLimitStore()
        self._clock = clock

    # ── Core protocol ────────────────────────────────────────────────────

    def check_limit(self, subject_id: str, action: str) -> RateLimitResult:
        """Return whether one more request would be allowed right now.

        Does not record anything; repeated calls give the same answer until
        time passes or ``record_request`` is called.
        """
        limit = self._limits.get(action)
        now = self._clock()
        if limit is None:
            return RateLimitResult(
                allowed=True,
                remaining_requests=math.inf,
                reset_time=_to_datetime(now + _UNLIMITED_RESET_SECONDS),
            )

        with self.store.lock:
            recent = self._purge((subject_id, action), limit, now)
        return _evaluate(recent, limit, now)

    def record_request(self, subject_id: str, action: str) -> None:
        """Append a request timestamp for (subject_id, action)."""
        self.store.append((subject_id, action), self._clock())
        self.sweep()

    def acquire(self, subject_id: str, action: str) -> RateLimitResult:
        """Atomic check-and-record: records only when the check allows it."""
        limit = self._limits.get(action)
        if limit is None:
            return self.check_limit(subject_id, action)
        with self.store.lock:
            now = self._clock()
            recent = self._purge((subject_id, action), limit, now)
            result = _evaluate(recent, limit, now)
            if result.allowed:
                self.store.append((subject_id, action), now)
                result = result.model_copy(
                    update={"remaining_requests": result.remaining_requests - 1}
                )
        return result

    def sweep(self) -> int:
        """Drop entries older than twice the longest window and empty keys.

        Returns the number of keys removed.
        """
        if not self._limits:
            return 0
        now = self._clock()
        max_age = max(q.window_seconds for q in self._limits.values()) * 2
        removed = 0
        with self.store.lock:
            for key, timestamps in self.store.items():
                fresh = [t for t in timestamps if now - t < max_age]
                if not fresh:
                    self.store.delete(key)
                    removed += 1
                elif len(fresh) != len(timestamps):
                    self.store.put(key, fresh)
        if removed:
            logger.debug("Rate limiter sweep removed %d idle keys.", removed)
        return removed

    # ── Configuration ────────────────────────────────────────────────────

    def get_limit_config(self, action: str) -> RateLimitQuota | None:
        return self._limits.get(action)

    def set_limit_config(self, action: str, quota: RateLimitQuota) -> None:
        self._limits[action] = quota

    @property
    def actions(self) -> list[str]:
        return list(self._limits)

    # ── Convenience queries ──────────────────────────────────────────────

    def remaining_requests(self, subject_id: str, action: str) -> float:
        return self.check_limit(subject_id, action).remaining_requests

    def time_until_reset(self, subject_id: str, action: str) -> int:
        """Seconds until a denied subject may retry (0 when allowed)."""
        result = self.check_limit(subject_id, action)
        if result.allowed:
            return 0
        return result.retry_after_seconds or 0

    def subject_status(self, subject_id: str) -> dict[str, RateLimitResult]:
        return {action: self.check_limit(subject_id, action) for action in self._limits}

    def is_subject_limited(self, subject_id: str) -> bool:
        return any(not r.allowed for r in self.subject_status(subject_id).values())

    def request_records(
        self,
        subject_id: str | None = None,
        action: str | None = None,
    ) -> list[RequestRecord]:
        """All recorded requests, newest first, optionally filtered."""
        records: list[RequestRecord] = []
        for (key_subject, key_action), timestamps in self.store.items():
            if subject_id and key_subject != subject_id:
                continue
            if action and key_action != action:
                continue
            records.extend(
                RequestRecord(timestamp=t, subject_id=key_subject, action=key_action)
                for t in timestamps
            )
        return sorted(records, key=lambda r: r.timestamp, reverse=True)

    def clear_subject(self, subject_id: str) -> None:
        for key in self.store.keys():
            if key[0] == subject_id:
                self.store.delete(key)

    def clear_all(self) -> None:
        self.store.clear()

    def memory_stats(self) -> dict[str, int]:
        entries = self.store.items()
        return {
            "total_records": sum(len(ts) for _, ts in entries),
            "total_subjects": len({k[0] for k, _ in entries}),
            "total_actions": len({k[1] for k, _ in entries}),
        }

    @staticmethod
    def format_message(result: RateLimitResult, action: str) -> str:
        """Human-readable status line for a check result."""
        if result.allowed:
            remaining = result.remaining_requests
            shown = "unlimited" if math.isinf(remaining) else str(int(remaining))
            return f"{shown} {action} requests remaining"
        retry_after = result.retry_after_seconds or 0
        minutes, seconds = divmod(retry_after, 60)
        if minutes > 0:
            return f"Rate limit exceeded. Try again in {minutes}m {seconds}s"
        return f"Rate limit exceeded. Try again in {seconds} seconds"

    # ── Internals ────────────────────────────────────────────────────────

    def _purge(self, key: WindowKey, limit: RateLimitQuota, now: float) -> list[float]:
        window_start = now - limit.window_seconds
        timestamps = self.store.get(key)
        recent = [t for t in timestamps if t > window_start]
        if len(recent) != len(timestamps):
            self.store.put(key, recent)
        return recent


def _evaluate(recent: list[float], limit: RateLimitQuota, now: float) -> RateLimitResult:
    allowed = len(recent) < limit.requests
    retry_after: int | None = None
    if not allowed and recent:
        retry_after = math.ceil(recent[0] + limit.window_seconds - now)
    return RateLimitResult(
        allowed=allowed,
        remaining_requests=max(0, limit.requests - len(recent)),
        reset_time=_to_datetime(now + limit.window_seconds),
        retry_after_seconds=retry_after,
    )


def _to_datetime(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)
