"""
ProviderCircuitBreaker - protects the paid model tiers

Repeated paid-provider failures open the circuit; while it is open the
routing engine sends every call to the free tier instead of hammering a
failing provider.

States:
- CLOSED: paid calls allowed
- OPEN: paid calls skipped (free tier forced) until recovery_timeout passes
- HALF_OPEN: one trial call allowed; success closes, failure reopens

Configuration:
- failure_threshold: failures within failure_window that open the circuit
- recovery_timeout: seconds before a trial call is allowed
"""
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List
import logging

logger = logging.getLogger(__name__)

CLOSED = "CLOSED"
OPEN = "OPEN"
HALF_OPEN = "HALF_OPEN"


@dataclass
class FailureRecord:
    timestamp: float
    error_type: str = "unknown"


class ProviderCircuitBreaker:
    """
    Thread-safe circuit breaker keyed to one provider.

    Usage:
        breaker = ProviderCircuitBreaker(failure_threshold=5, recovery_timeout=60.0)

        if not breaker.allows_request():
            # route to the free tier
        try:
            result = await provider.invoke(request)
            breaker.record_success()
        except ProviderError as e:
            breaker.record_failure(type(e).__name__)
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        name: str = "paid_provider",
        failure_window: float = 60.0,
        clock: Callable[[], float] = time.time
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.name = name
        self.failure_window = failure_window
        self.clock = clock

        self._state = CLOSED
        self._failures: List[FailureRecord] = []
        self._opened_at = 0.0
        self._total_failures = 0
        self._total_successes = 0
        self._lock = threading.RLock()

    @property
    def state(self) -> str:
        """Current state; an expired OPEN moves to HALF_OPEN on read."""
        with self._lock:
            if self._state == OPEN and self.clock() - self._opened_at >= self.recovery_timeout:
                self._state = HALF_OPEN
                logger.info(f"CircuitBreaker '{self.name}' HALF_OPEN after {self.recovery_timeout}s")
            return self._state

    @property
    def is_open(self) -> bool:
        return self.state == OPEN

    def allows_request(self) -> bool:
        return self.state != OPEN

    def record_failure(self, error_type: str = "unknown") -> None:
        with self._lock:
            now = self.clock()
            self._failures.append(FailureRecord(timestamp=now, error_type=error_type))
            self._total_failures += 1
            cutoff = now - self.failure_window
            self._failures = [f for f in self._failures if f.timestamp >= cutoff]

            if self._state == HALF_OPEN:
                self._state = OPEN
                self._opened_at = now
                logger.warning(f"CircuitBreaker '{self.name}' REOPENED: {error_type}")
            elif self._state == CLOSED and len(self._failures) >= self.failure_threshold:
                self._state = OPEN
                self._opened_at = now
                logger.warning(
                    f"🔌 CircuitBreaker '{self.name}' OPENED after {len(self._failures)} "
                    f"failures (last: {error_type}) - forcing free tier"
                )

    def record_success(self) -> None:
        with self._lock:
            self._total_successes += 1
            if self._state == HALF_OPEN:
                logger.info(f"CircuitBreaker '{self.name}' CLOSED after successful trial call")
            if self._state in (HALF_OPEN, CLOSED):
                self._state = CLOSED
                self._failures.clear()

    def reset(self) -> None:
        with self._lock:
            self._state = CLOSED
            self._failures.clear()
            self._opened_at = 0.0

    def get_metrics(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "name": self.name,
                "state": self.state,
                "failure_count": len(self._failures),
                "failure_threshold": self.failure_threshold,
                "total_failures": self._total_failures,
                "total_successes": self._total_successes,
            }

    def __repr__(self) -> str:
        return (
            f"ProviderCircuitBreaker(name='{self.name}', state='{self.state}', "
            f"failures={len(self._failures)}/{self.failure_threshold})"
        )
