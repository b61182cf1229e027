"""Per-gateway circuit breaker.

  - CLOSED: normal operation, transmissions pass through
  - OPEN: too many consecutive failures, transmissions are refused
  - HALF_OPEN: cooldown elapsed, the next transmission is a probe

A probe success closes the circuit; a probe failure reopens it and
restarts the cooldown.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from navigator.efile.types import Gateway

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class _CircuitStats:
    """Failure tracking for a single gateway's circuit."""

    consecutive_failures: int = 0
    total_failures: int = 0
    total_successes: int = 0
    last_failure_time: float = 0.0
    state: CircuitState = CircuitState.CLOSED
    opened_at: float = 0.0


DEFAULT_FAILURE_THRESHOLD = 5
DEFAULT_COOLDOWN_SECONDS = 300.0


class CircuitBreaker:
    """Circuit breaker keyed by gateway.

    Usage:
        cb = CircuitBreaker(failure_threshold=5, cooldown_seconds=300)

        if not cb.allow_request(Gateway.IRS_MEF):
            ...  # refuse without calling the gateway

        cb.record_success(Gateway.IRS_MEF)
        cb.record_failure(Gateway.IRS_MEF)
    """

    def __init__(
        self,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._circuits: dict[Gateway, _CircuitStats] = {}

    def _get_circuit(self, gateway: Gateway) -> _CircuitStats:
        if gateway not in self._circuits:
            self._circuits[gateway] = _CircuitStats()
        return self._circuits[gateway]

    def allow_request(self, gateway: Gateway) -> bool:
        """True if the circuit is closed, or open long enough to probe."""
        circuit = self._get_circuit(gateway)

        if circuit.state == CircuitState.OPEN:
            if self._clock() - circuit.opened_at >= self.cooldown_seconds:
                circuit.state = CircuitState.HALF_OPEN
                logger.info("Circuit for %s transitioning to HALF_OPEN", gateway.value)
                return True
            return False

        return True

    def is_open(self, gateway: Gateway) -> bool:
        """Non-mutating check used by queue passes before selecting work."""
        circuit = self._get_circuit(gateway)
        return (
            circuit.state == CircuitState.OPEN
            and self._clock() - circuit.opened_at < self.cooldown_seconds
        )

    def record_success(self, gateway: Gateway) -> None:
        circuit = self._get_circuit(gateway)
        circuit.consecutive_failures = 0
        circuit.total_successes += 1

        if circuit.state != CircuitState.CLOSED:
            logger.info("Circuit for %s CLOSED (recovered)", gateway.value)
            circuit.state = CircuitState.CLOSED

    def record_failure(self, gateway: Gateway) -> None:
        circuit = self._get_circuit(gateway)
        circuit.consecutive_failures += 1
        circuit.total_failures += 1
        circuit.last_failure_time = self._clock()

        if circuit.state == CircuitState.HALF_OPEN:
            circuit.state = CircuitState.OPEN
            circuit.opened_at = self._clock()
            logger.warning("Circuit for %s re-OPENED: probe failed", gateway.value)
            return

        if circuit.consecutive_failures >= self.failure_threshold and circuit.state != CircuitState.OPEN:
            circuit.state = CircuitState.OPEN
            circuit.opened_at = self._clock()
            logger.warning(
                "Circuit for %s OPENED after %d consecutive failures",
                gateway.value,
                circuit.consecutive_failures,
            )

    def get_state(self, gateway: Gateway) -> dict:
        circuit = self._get_circuit(gateway)
        retry_in = 0.0
        if circuit.state == CircuitState.OPEN:
            retry_in = max(0.0, self.cooldown_seconds - (self._clock() - circuit.opened_at))
        return {
            "gateway": gateway.value,
            "state": circuit.state.value,
            "is_open": circuit.state == CircuitState.OPEN,
            "consecutive_failures": circuit.consecutive_failures,
            "total_failures": circuit.total_failures,
            "total_successes": circuit.total_successes,
            "failure_threshold": self.failure_threshold,
            "retry_in_seconds": round(retry_in, 1),
        }

    def reset(self, gateway: Gateway) -> None:
        """Manually reset a gateway's circuit to CLOSED."""
        circuit = self._get_circuit(gateway)
        circuit.state = CircuitState.CLOSED
        circuit.consecutive_failures = 0
        circuit.opened_at = 0.0
        logger.info("Circuit for %s manually RESET", gateway.value)
