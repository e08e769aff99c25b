"""
Circuit breaker for management API calls.

Stops calling the API for a (tenant, action type) pair after repeated
failures, so one broken tenant or endpoint cannot absorb every retry budget.
"""

import logging
import threading
import time
from collections import defaultdict
from typing import Any, Callable, Dict, List, Tuple


logger = logging.getLogger(__name__)


CircuitKey = Tuple[str, str]


class CircuitBreaker:
    """
    Circuit breaker keyed by (tenant_id, action_type).

    Invariants:
    - If failure threshold exceeded within the window, circuit opens
    - While circuit open, execution for that key is blocked
    - Circuit closes after open duration expires
    - Other keys are unaffected
    """

    def __init__(
        self,
        failure_threshold: int = 3,
        failure_window: int = 300,
        circuit_open_duration: int = 600,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening (default: 3)
            failure_window: Time window for counting failures in seconds (default: 300)
            circuit_open_duration: How long circuit stays open in seconds (default: 600)
            clock: Monotonic time source (injectable for tests)
        """
        self.failure_threshold = failure_threshold
        self.failure_window = failure_window
        self.circuit_open_duration = circuit_open_duration
        self._clock = clock
        self._lock = threading.Lock()

        self._failures: Dict[CircuitKey, List[float]] = defaultdict(list)
        self._circuit_opened: Dict[CircuitKey, float] = {}

    def record_failure(self, tenant_id: str, action_type: str) -> None:
        key = (tenant_id, action_type)
        with self._lock:
            now = self._clock()
            cutoff = now - self.failure_window
            failures = [ts for ts in self._failures[key] if ts > cutoff]
            failures.append(now)
            self._failures[key] = failures

            if len(failures) >= self.failure_threshold and key not in self._circuit_opened:
                logger.error(
                    f"Circuit breaker OPENED for {action_type} on tenant {tenant_id}: "
                    f"{len(failures)} failures in {self.failure_window}s"
                )
                self._circuit_opened[key] = now

    def record_success(self, tenant_id: str, action_type: str) -> None:
        """Clears failure history for the key."""
        with self._lock:
            self._failures[(tenant_id, action_type)].clear()

    def is_open(self, tenant_id: str, action_type: str) -> bool:
        """
        Check if circuit is open for the key.

        Returns:
            True if circuit is open (execution blocked), False otherwise
        """
        key = (tenant_id, action_type)
        with self._lock:
            opened_at = self._circuit_opened.get(key)
            if opened_at is None:
                return False

            elapsed = self._clock() - opened_at
            if elapsed >= self.circuit_open_duration:
                logger.info(
                    f"Circuit breaker CLOSED for {action_type} on tenant {tenant_id} "
                    f"after {elapsed:.1f}s"
                )
                del self._circuit_opened[key]
                self._failures[key].clear()
                return False

            return True

    def get_state(self, tenant_id: str, action_type: str) -> Dict[str, Any]:
        """Observable state for the key."""
        is_open = self.is_open(tenant_id, action_type)
        key = (tenant_id, action_type)
        with self._lock:
            state: Dict[str, Any] = {
                "tenant_id": tenant_id,
                "action_type": action_type,
                "circuit_open": is_open,
                "failure_count": len(self._failures.get(key, [])),
                "failure_threshold": self.failure_threshold,
            }
            if is_open and key in self._circuit_opened:
                elapsed = self._clock() - self._circuit_opened[key]
                state["circuit_remaining_seconds"] = max(
                    0.0, self.circuit_open_duration - elapsed
                )
        return state
