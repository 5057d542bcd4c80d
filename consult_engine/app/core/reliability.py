"""
Reliability utilities.

Circuit breaker used around fire-and-forget collaborators (notifications)
so that a failing dependency is skipped quickly instead of being retried on
every billing event.
"""

import time
from typing import Awaitable, Callable, Any


class CircuitOpenError(Exception):
    pass


class CircuitBreaker:
    """
    If 'failure_threshold' consecutive failures occur, the circuit opens and
    rejects calls for 'reset_timeout' seconds. The next call after that is a
    trial (HALF_OPEN): success closes the circuit, failure re-opens it.
    """

    def __init__(self, name: str, failure_threshold: int = 5, reset_timeout: float = 60):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.failures = 0
        self.last_failure_time = 0.0
        self.state = "CLOSED"  # CLOSED, OPEN, HALF_OPEN

    @property
    def is_open(self) -> bool:
        return self.state == "OPEN" and time.monotonic() - self.last_failure_time <= self.reset_timeout

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        if self.state == "OPEN":
            if time.monotonic() - self.last_failure_time > self.reset_timeout:
                self.state = "HALF_OPEN"
            else:
                raise CircuitOpenError(f"Circuit '{self.name}' is OPEN")

        try:
            result = await func(*args, **kwargs)
        except Exception:
            self.record_failure()
            raise
        self.reset_state()
        return result

    def record_failure(self):
        self.failures += 1
        self.last_failure_time = time.monotonic()
        if self.state == "HALF_OPEN" or self.failures >= self.failure_threshold:
            self.state = "OPEN"

    def reset_state(self):
        self.failures = 0
        self.state = "CLOSED"


notification_circuit_breaker = CircuitBreaker("notifications", failure_threshold=5, reset_timeout=30)
