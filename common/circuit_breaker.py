# common/circuit_breaker.py
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

logger = logging.getLogger(__name__)


class CircuitBreaker:
    """
    In-memory circuit breaker for outbound calls between services.

    States:
    - closed: all requests pass, failures are counted
    - open: requests are blocked immediately
    - half_open: one trial request is allowed after the reset timeout
    """

    def __init__(self, name: str, max_failures: int = 3, reset_timeout_seconds: int = 30):
        self.name = name
        self.max_failures = max_failures
        self.reset_timeout = timedelta(seconds=reset_timeout_seconds)
        self.failure_count = 0
        self.state = "closed"  # "closed" | "open" | "half_open"
        self.last_failure_time: Optional[datetime] = None

    def allow_request(self) -> bool:
        """
        Return True if a request may go through, False while the circuit is open.
        """
        if self.state == "open":
            if self.last_failure_time is None:
                return False
            elapsed = datetime.now(timezone.utc) - self.last_failure_time
            if elapsed >= self.reset_timeout:
                self.state = "half_open"
                logger.info(f"Circuit {self.name} half-open, allowing a trial request")
                return True
            return False

        return True

    def record_success(self) -> None:
        if self.state != "closed":
            logger.info(f"Circuit {self.name} closed again")
        self.failure_count = 0
        self.state = "closed"
        self.last_failure_time = None

    def record_failure(self) -> None:
        """
        Count a failed call and open the circuit once max_failures is reached.
        A failed trial request in half_open re-opens immediately.
        """
        self.failure_count += 1
        self.last_failure_time = datetime.now(timezone.utc)
        if self.state == "half_open" or self.failure_count >= self.max_failures:
            if self.state != "open":
                logger.warning(
                    f"Circuit {self.name} opened after {self.failure_count} failures"
                )
            self.state = "open"

    def reset(self) -> None:
        self.failure_count = 0
        self.state = "closed"
        self.last_failure_time = None


reservations_circuit_breaker = CircuitBreaker(
    name="reservations_service",
    max_failures=3,
    reset_timeout_seconds=30,
)

rooms_circuit_breaker = CircuitBreaker(
    name="rooms_service",
    max_failures=3,
    reset_timeout_seconds=30,
)
