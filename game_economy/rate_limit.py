"""
Rate Limiting Module

In-memory per-account limits on economy operations. Counters live per
(account_id, operation_class) key; updates to one key are atomic under
that key's lock stripe. State is lost on restart.
"""

import math
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, List, Optional, Tuple

from .errors import RateLimitExceeded
from .logging_config import get_logger


logger = get_logger("game_economy.rate_limit")

Key = Tuple[str, str]

LOCK_STRIPES = 64


@dataclass(frozen=True)
class RateLimitRule:
    """At most max_requests operations per window_seconds"""
    max_requests: int
    window_seconds: float

    def __post_init__(self):
        if self.max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

    @classmethod
    def parse(cls, text: str) -> "RateLimitRule":
        """Parse "max_requests/window_seconds", e.g. "10/60" """
        try:
            count, window = text.split("/")
            return cls(int(count), float(window))
        except ValueError:
            raise ValueError(f"Invalid rate limit rule: {text!r}")


DEFAULT_RULES = {
    "transfer": RateLimitRule(10, 60),
}


class RateLimiter(ABC):
    """
    Base rate limiter; subclasses decide how a window is counted

    Keys hash onto a fixed set of locks, and keys whose window has passed
    are swept out at most once per longest window.
    """

    def __init__(self, rules: Optional[Dict[str, RateLimitRule]] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.rules = dict(DEFAULT_RULES if rules is None else rules)
        self.clock = clock
        self.sweep_interval = max((rule.window_seconds for rule in self.rules.values()), default=60.0)
        self._stripes = [threading.Lock() for _ in range(LOCK_STRIPES)]
        self._sweep_guard = threading.Lock()
        self._last_sweep = clock()

    def _lock_for(self, key: Key) -> threading.Lock:
        return self._stripes[hash(key) % len(self._stripes)]

    def check(self, account_id: str, operation_class: str) -> None:
        """
        Count one operation, or refuse it

        Raises:
            RateLimitExceeded: If the account used up its allowance for the
                operation class; nothing is counted in that case
        """
        rule = self.rules.get(operation_class)
        if rule is None:
            return

        key = (account_id, operation_class)
        now = self.clock()
        with self._lock_for(key):
            retry_after = self._acquire(key, rule, now)
        self._maybe_sweep(now)

        if retry_after is not None:
            seconds = max(1, math.ceil(retry_after))
            logger.warning(f"Rate limit exceeded for {account_id} on {operation_class}")
            raise RateLimitExceeded(
                f"Too many {operation_class} requests. Please wait {seconds} seconds and try again.",
                retry_after_seconds=seconds
            )

    def _maybe_sweep(self, now: float) -> None:
        if now - self._last_sweep < self.sweep_interval:
            return
        # One sweeper at a time; others carry on without waiting
        if not self._sweep_guard.acquire(blocking=False):
            return
        try:
            self._last_sweep = now
            evicted = 0
            for key in self._keys():
                rule = self.rules.get(key[1])
                with self._lock_for(key):
                    if rule is None or self._expired(key, rule, now):
                        self._forget(key)
                        evicted += 1
            if evicted:
                logger.debug(f"Evicted {evicted} idle rate limit keys")
        finally:
            self._sweep_guard.release()

    @abstractmethod
    def _acquire(self, key: Key, rule: RateLimitRule, now: float) -> Optional[float]:
        """Record the operation and return None, or return seconds until allowed"""
        pass

    @abstractmethod
    def _keys(self) -> List[Key]:
        pass

    @abstractmethod
    def _expired(self, key: Key, rule: RateLimitRule, now: float) -> bool:
        """True once nothing recorded for the key still counts"""
        pass

    @abstractmethod
    def _forget(self, key: Key) -> None:
        pass

    def reset(self, account_id: str) -> None:
        """Reset all limits for an account (admin function)"""
        for key in self._keys():
            if key[0] == account_id:
                with self._lock_for(key):
                    self._forget(key)


class SlidingWindowRateLimiter(RateLimiter):
    """Counts operations within the last window_seconds"""

    def __init__(self, rules: Optional[Dict[str, RateLimitRule]] = None,
                 clock: Callable[[], float] = time.monotonic):
        super().__init__(rules, clock)
        self._events: Dict[Key, Deque[float]] = {}

    def _acquire(self, key: Key, rule: RateLimitRule, now: float) -> Optional[float]:
        events = self._events.setdefault(key, deque())
        cutoff = now - rule.window_seconds
        while events and events[0] <= cutoff:
            events.popleft()

        if len(events) >= rule.max_requests:
            return events[0] + rule.window_seconds - now

        events.append(now)
        return None

    def _keys(self) -> List[Key]:
        return list(self._events)

    def _expired(self, key: Key, rule: RateLimitRule, now: float) -> bool:
        events = self._events.get(key)
        return not events or events[-1] <= now - rule.window_seconds

    def _forget(self, key: Key) -> None:
        self._events.pop(key, None)


class FixedWindowRateLimiter(RateLimiter):
    """Counts operations per aligned window of window_seconds"""

    def __init__(self, rules: Optional[Dict[str, RateLimitRule]] = None,
                 clock: Callable[[], float] = time.monotonic):
        super().__init__(rules, clock)
        self._windows: Dict[Key, Tuple[float, int]] = {}

    def _acquire(self, key: Key, rule: RateLimitRule, now: float) -> Optional[float]:
        window_start = now - (now % rule.window_seconds)
        start, count = self._windows.get(key, (window_start, 0))
        if start != window_start:
            start, count = window_start, 0

        if count >= rule.max_requests:
            return start + rule.window_seconds - now

        self._windows[key] = (start, count + 1)
        return None

    def _keys(self) -> List[Key]:
        return list(self._windows)

    def _expired(self, key: Key, rule: RateLimitRule, now: float) -> bool:
        window = self._windows.get(key)
        return window is None or window[0] + rule.window_seconds <= now

    def _forget(self, key: Key) -> None:
        self._windows.pop(key, None)


def create_rate_limiter(strategy: str, rules: Dict[str, str],
                        clock: Callable[[], float] = time.monotonic) -> RateLimiter:
    """Build a limiter from configuration ("sliding" or "fixed")"""
    parsed = {operation: RateLimitRule.parse(text) for operation, text in rules.items()}
    if strategy == "sliding":
        return SlidingWindowRateLimiter(parsed, clock)
    if strategy == "fixed":
        return FixedWindowRateLimiter(parsed, clock)
    raise ValueError(f"Unknown rate limit strategy: {strategy}")
