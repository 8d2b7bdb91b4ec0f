"""Failed-attempt throttling.

Used twice, both off by default: authorization attempts per client IP
and PIN verification attempts per email. A limiter with
``max_attempts=0`` is disabled and always allows.
"""

import asyncio
import logging
import time
from typing import Optional

log = logging.getLogger(__name__)


class AttemptLimiter:
    """Sliding-window failure counter with a fixed lockout.

    After ``max_attempts`` failures inside ``window_seconds`` the key is
    locked for ``lockout_seconds``. A success clears the key unless
    ``reset_on_success`` is False, as for the per-IP authorization
    limiter.
    """

    def __init__(
        self,
        name: str,
        max_attempts: int,
        window_seconds: int,
        lockout_seconds: int,
        reset_on_success: bool = True,
    ):
        self.name = name
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self.lockout_seconds = lockout_seconds
        self.reset_on_success = reset_on_success
        self._failures: dict[str, list[float]] = {}
        self._locked_until: dict[str, float] = {}
        self._lock = asyncio.Lock()

    @property
    def enabled(self) -> bool:
        return self.max_attempts > 0

    @property
    def tracked_keys(self) -> int:
        return len(self._failures)

    async def check_rate_limit(self, key: str) -> bool:
        """True if another attempt is allowed for ``key``."""
        if not self.enabled:
            return True
        async with self._lock:
            until = self._locked_until.get(key)
            if until is None:
                return True
            if time.monotonic() >= until:
                del self._locked_until[key]
                self._failures.pop(key, None)
                return True
            return False

    async def get_lockout_remaining(self, key: str) -> int:
        """Seconds until ``key`` may try again (0 if not locked)."""
        async with self._lock:
            until = self._locked_until.get(key)
        if until is None:
            return 0
        return max(0, int(until - time.monotonic()) + 1)

    async def record_attempt(self, key: str, success: bool) -> None:
        if not self.enabled:
            return
        async with self._lock:
            if success:
                if self.reset_on_success:
                    self._failures.pop(key, None)
                    self._locked_until.pop(key, None)
                return

            now = time.monotonic()
            self._prune(now)
            recent = [t for t in self._failures.get(key, []) if now - t < self.window_seconds]
            recent.append(now)
            self._failures[key] = recent

            if len(recent) >= self.max_attempts:
                self._locked_until[key] = now + self.lockout_seconds
                log.warning(
                    f"{self.name}: {key} locked for {self.lockout_seconds}s "
                    f"after {len(recent)} failed attempts"
                )

    def _prune(self, now: float) -> None:
        """Drop keys whose failures all fell out of the window. Caller holds the lock."""
        stale = [
            k
            for k, times in self._failures.items()
            if k not in self._locked_until and all(now - t >= self.window_seconds for t in times)
        ]
        for k in stale:
            del self._failures[k]
        expired = [k for k, until in self._locked_until.items() if now >= until]
        for k in expired:
            del self._locked_until[k]
            self._failures.pop(k, None)


_authorize_limiter: Optional[AttemptLimiter] = None
_pin_limiter: Optional[AttemptLimiter] = None


def get_authorize_limiter() -> AttemptLimiter:
    """Per-IP limiter for identity authorization."""
    global _authorize_limiter
    if _authorize_limiter is None:
        from expense_auth.config import AUTHORIZE_MAX_ATTEMPTS, AUTHORIZE_WINDOW_SECONDS

        _authorize_limiter = AttemptLimiter(
            name="authorize",
            max_attempts=AUTHORIZE_MAX_ATTEMPTS,
            window_seconds=AUTHORIZE_WINDOW_SECONDS,
            lockout_seconds=AUTHORIZE_WINDOW_SECONDS,
            reset_on_success=False,
        )
    return _authorize_limiter


def get_pin_limiter() -> AttemptLimiter:
    """Per-email limiter for PIN verification."""
    global _pin_limiter
    if _pin_limiter is None:
        from expense_auth.config import PIN_LOCKOUT_SECONDS, PIN_MAX_ATTEMPTS

        _pin_limiter = AttemptLimiter(
            name="pin",
            max_attempts=PIN_MAX_ATTEMPTS,
            window_seconds=PIN_LOCKOUT_SECONDS,
            lockout_seconds=PIN_LOCKOUT_SECONDS,
        )
    return _pin_limiter


def reset_rate_limiters() -> None:
    """Reset both limiters (for testing)."""
    global _authorize_limiter, _pin_limiter
    _authorize_limiter = None
    _pin_limiter = None
