from __future__ import annotations

import math
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable

from invoicebot.config import Settings

_MINUTE = 60.0
_HOUR = 3600.0


@dataclass(frozen=True)
class AuthResult:
    authorized: bool
    user_id: int
    reason: str | None = None


class Whitelist:
    """User whitelist; an empty whitelist means every user is allowed."""

    def __init__(self, allowed_user_ids: tuple[int, ...] | list[int] = ()) -> None:
        self._allowed = set(allowed_user_ids)
        self._open_mode = not self._allowed

    @classmethod
    def from_settings(cls, settings: Settings) -> "Whitelist":
        return cls(settings.allowed_user_ids)

    @property
    def is_open(self) -> bool:
        return self._open_mode

    def is_authorized(self, user_id: int) -> AuthResult:
        if self._open_mode or user_id in self._allowed:
            return AuthResult(authorized=True, user_id=user_id)
        return AuthResult(authorized=False, user_id=user_id, reason="User not in whitelist")

    def add_user(self, user_id: int) -> None:
        self._allowed.add(user_id)
        self._open_mode = False

    def remove_user(self, user_id: int) -> None:
        self._allowed.discard(user_id)

    def authorized_users(self) -> list[int]:
        return sorted(self._allowed)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining_requests: float
    retry_after_seconds: int | None = None


@dataclass
class _History:
    requests: deque[float] = field(default_factory=deque)


class RateLimiter:
    """Sliding-window limiter per user. A limit of 0 disables that window."""

    def __init__(
        self,
        max_per_minute: int = 0,
        max_per_hour: int = 0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._limits = [(w, n) for w, n in ((_MINUTE, max_per_minute), (_HOUR, max_per_hour)) if n > 0]
        self._clock = clock
        self._history: dict[int, _History] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "RateLimiter":
        return cls(settings.rate_limit_per_minute, settings.rate_limit_per_hour)

    @property
    def enabled(self) -> bool:
        return bool(self._limits)

    def _prune(self, history: _History, now: float) -> None:
        while history.requests and now - history.requests[0] >= _HOUR:
            history.requests.popleft()

    def _in_window(self, history: _History, now: float, window: float) -> list[float]:
        return [t for t in history.requests if now - t < window]

    def check(self, user_id: int) -> RateLimitResult:
        """Record a request for ``user_id`` if it fits within every configured window."""
        if not self.enabled:
            return RateLimitResult(allowed=True, remaining_requests=math.inf)
        now = self._clock()
        with self._lock:
            history = self._history.setdefault(user_id, _History())
            self._prune(history, now)
            remaining: list[int] = []
            for window, limit in self._limits:
                recent = self._in_window(history, now, window)
                if len(recent) >= limit:
                    retry_after = math.ceil(window - (now - recent[0]))
                    return RateLimitResult(
                        allowed=False,
                        remaining_requests=0,
                        retry_after_seconds=max(1, retry_after),
                    )
                remaining.append(limit - len(recent) - 1)
            history.requests.append(now)
        return RateLimitResult(allowed=True, remaining_requests=min(remaining))

    def reset_user(self, user_id: int) -> None:
        with self._lock:
            self._history.pop(user_id, None)

    def cleanup(self) -> int:
        now = self._clock()
        with self._lock:
            for history in self._history.values():
                self._prune(history, now)
            idle = [user_id for user_id, history in self._history.items() if not history.requests]
            for user_id in idle:
                del self._history[user_id]
        return len(idle)

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {"tracked_users": len(self._history)}
