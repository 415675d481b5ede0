"""
In-memory login rate limiter for the admin login.

Three failed attempts lock a client identifier until 24 hours after its
first failed attempt. State lives in process memory and is lost on restart.
Sync handlers run in a threadpool, so every access to the attempt table
holds the limiter's lock.
"""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

MAX_ATTEMPTS = 3
WINDOW_SECONDS = 24 * 60 * 60
SWEEP_SECONDS = 60 * 60


@dataclass
class _Attempt:
    count: int
    first_attempt: float
    locked_until: Optional[float] = None


@dataclass
class RateLimitStatus:
    allowed: bool
    remaining_attempts: int
    locked_until: Optional[float] = None


class LoginRateLimiter:
    def __init__(
        self,
        max_attempts: int = MAX_ATTEMPTS,
        window: float = WINDOW_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._max = max_attempts
        self._window = window
        self._clock = clock
        self._attempts: Dict[str, _Attempt] = {}
        self._last_sweep = clock()
        self._lock = threading.Lock()

    def _sweep(self, now: float) -> None:
        # caller holds self._lock
        if now - self._last_sweep < SWEEP_SECONDS:
            return
        for key in [k for k, a in self._attempts.items() if now - a.first_attempt > self._window]:
            del self._attempts[key]
        self._last_sweep = now

    def check(self, identifier: str) -> RateLimitStatus:
        with self._lock:
            now = self._clock()
            self._sweep(now)
            attempt = self._attempts.get(identifier)
            if attempt is None:
                return RateLimitStatus(True, self._max)

            if attempt.locked_until and now < attempt.locked_until:
                return RateLimitStatus(False, 0, attempt.locked_until)

            if now - attempt.first_attempt > self._window:
                del self._attempts[identifier]
                return RateLimitStatus(True, self._max)

            if attempt.count >= self._max:
                attempt.locked_until = attempt.first_attempt + self._window
                return RateLimitStatus(False, 0, attempt.locked_until)

            return RateLimitStatus(True, self._max - attempt.count)

    def record_failure(self, identifier: str) -> None:
        with self._lock:
            now = self._clock()
            self._sweep(now)
            attempt = self._attempts.get(identifier)
            if attempt is None or now - attempt.first_attempt > self._window:
                self._attempts[identifier] = _Attempt(count=1, first_attempt=now)
                return
            attempt.count += 1
            if attempt.count >= self._max:
                attempt.locked_until = attempt.first_attempt + self._window

    def record_success(self, identifier: str) -> None:
        with self._lock:
            self._attempts.pop(identifier, None)

    def remaining_lock_time(self, locked_until: float) -> str:
        remaining = locked_until - self._clock()
        if remaining <= 0:
            return "0 minutes"
        hours = int(remaining // 3600)
        minutes = int((remaining % 3600) // 60)
        mins = f"{minutes} minute{'' if minutes == 1 else 's'}"
        if hours > 0:
            return f"{hours} hour{'s' if hours > 1 else ''} {mins}"
        return mins


login_limiter = LoginRateLimiter()
