"""Per-key circuit breaker around flaky outbound providers."""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

T = TypeVar("T")


class CircuitOpenError(Exception):
    """Raised instead of calling the provider while the breaker is open."""


@dataclass
class _CircuitState:
    failures: int = 0
    opened_at: Optional[float] = None


class CircuitBreaker:
    def __init__(self, failure_threshold: int = 3, cooldown_seconds: float = 60, clock=time.monotonic) -> None:
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._states: dict[str, _CircuitState] = {}
        self._lock = threading.Lock()

    def is_open(self, key: str) -> bool:
        with self._lock:
            state = self._states.get(key)
            return bool(
                state
                and state.opened_at is not None
                and self._clock() - state.opened_at < self.cooldown_seconds
            )

    def call(self, key: str, handler: Callable[[], T]) -> T:
        """Run ``handler``; after ``failure_threshold`` consecutive failures refuse calls for the cooldown."""
        if self.is_open(key):
            raise CircuitOpenError(f"Circuit breaker for {key} is open")

        try:
            result = handler()
        except Exception:
            with self._lock:
                state = self._states.get(key) or _CircuitState()
                failures = state.failures + 1
                opened_at = self._clock() if failures >= self.failure_threshold else None
                self._states[key] = _CircuitState(failures=failures, opened_at=opened_at)
            raise

        with self._lock:
            self._states[key] = _CircuitState()
        return result

    def reset(self) -> None:
        with self._lock:
            self._states.clear()


mail_breaker = CircuitBreaker(failure_threshold=3, cooldown_seconds=60)
