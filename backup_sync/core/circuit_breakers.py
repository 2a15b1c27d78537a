"""
Circuit Breakers and Retry Logic
Keeps one unreachable or misconfigured PBX from eating every sync cycle.

- CircuitBreakerRegistry: per-tenant closed / open / half-open state
- with_fixed_retry: tenacity wrapper used for the SSH handshake
"""
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

logger = logging.getLogger(__name__)


# ============================================================================
# TENANT CIRCUIT BREAKER
# ============================================================================

class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


@dataclass
class CircuitInfo:
    """Snapshot of one tenant's circuit."""
    tenant_id: str
    state: CircuitState = CircuitState.CLOSED
    failures: int = 0
    successes: int = 0
    last_failure_at: Optional[float] = None
    last_transition_at: Optional[float] = None
    last_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "state": self.state.value,
            "failures": self.failures,
            "successes": self.successes,
            "last_failure_at": self.last_failure_at,
            "last_transition_at": self.last_transition_at,
            "last_reason": self.last_reason,
        }


@dataclass
class CircuitDecision:
    allowed: bool
    state: CircuitState
    reason: Optional[str] = None
    retry_in_seconds: Optional[float] = field(default=None)


class CircuitBreakerRegistry:
    """
    In-memory per-tenant circuit breaker.

    TRANSITIONS:
    - closed -> open after `failure_threshold` consecutive failures
    - open -> half-open once `cooldown_seconds` passed since the last failure
      (evaluated lazily on can_execute / get_state)
    - half-open -> closed after `success_threshold` consecutive successes
    - half-open -> open on any failure
    - closed: failure count forgotten after `reset_seconds` without failures

    All mutations happen under one lock so updates for a tenant are atomic.
    """

    def __init__(
        self,
        failure_threshold: int = 3,
        success_threshold: int = 2,
        cooldown_seconds: float = 300,
        reset_seconds: float = 600,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.success_threshold = success_threshold
        self.cooldown_seconds = cooldown_seconds
        self.reset_seconds = reset_seconds
        self._clock = clock
        self._circuits: Dict[str, CircuitInfo] = {}
        self._lock = threading.Lock()

    def _circuit(self, tenant_id: str) -> CircuitInfo:
        circuit = self._circuits.get(tenant_id)
        if circuit is None:
            circuit = CircuitInfo(tenant_id=tenant_id)
            self._circuits[tenant_id] = circuit
        return circuit

    def _transition(self, circuit: CircuitInfo, state: CircuitState, now: float):
        if circuit.state != state:
            logger.info(f"🔌 Circuit {circuit.tenant_id}: {circuit.state.value} -> {state.value}")
        circuit.state = state
        circuit.last_transition_at = now

    def _refresh(self, circuit: CircuitInfo, now: float):
        """Apply elapsed-time transitions."""
        if circuit.last_failure_at is None:
            return
        elapsed = now - circuit.last_failure_at

        if circuit.state == CircuitState.OPEN and elapsed >= self.cooldown_seconds:
            self._transition(circuit, CircuitState.HALF_OPEN, now)
            circuit.successes = 0
        elif circuit.state == CircuitState.CLOSED and circuit.failures and elapsed >= self.reset_seconds:
            circuit.failures = 0

    def can_execute(self, tenant_id: str) -> CircuitDecision:
        with self._lock:
            now = self._clock()
            circuit = self._circuit(tenant_id)
            self._refresh(circuit, now)

            if circuit.state == CircuitState.OPEN:
                remaining = self.cooldown_seconds - (now - (circuit.last_failure_at or now))
                return CircuitDecision(
                    allowed=False,
                    state=circuit.state,
                    reason=f"circuit open after {circuit.failures} failures: {circuit.last_reason}",
                    retry_in_seconds=max(remaining, 0.0),
                )
            return CircuitDecision(allowed=True, state=circuit.state)

    def record_success(self, tenant_id: str) -> CircuitState:
        with self._lock:
            now = self._clock()
            circuit = self._circuit(tenant_id)
            self._refresh(circuit, now)

            if circuit.state == CircuitState.HALF_OPEN:
                circuit.successes += 1
                if circuit.successes >= self.success_threshold:
                    self._transition(circuit, CircuitState.CLOSED, now)
                    circuit.failures = 0
                    circuit.successes = 0
            elif circuit.state == CircuitState.CLOSED:
                circuit.failures = 0
            return circuit.state

    def record_failure(self, tenant_id: str, reason: Optional[str] = None) -> CircuitState:
        with self._lock:
            now = self._clock()
            circuit = self._circuit(tenant_id)
            self._refresh(circuit, now)

            circuit.failures += 1
            circuit.successes = 0
            circuit.last_failure_at = now
            circuit.last_reason = reason

            if circuit.state == CircuitState.HALF_OPEN:
                self._transition(circuit, CircuitState.OPEN, now)
            elif circuit.state == CircuitState.CLOSED and circuit.failures >= self.failure_threshold:
                self._transition(circuit, CircuitState.OPEN, now)
                logger.warning(f"⚠️  Circuit opened for tenant {tenant_id}: {reason}")
            return circuit.state

    def get_state(self, tenant_id: str) -> CircuitInfo:
        with self._lock:
            circuit = self._circuit(tenant_id)
            self._refresh(circuit, self._clock())
            return CircuitInfo(**circuit.__dict__)

    def all_states(self) -> Dict[str, CircuitInfo]:
        with self._lock:
            now = self._clock()
            snapshot = {}
            for tenant_id, circuit in self._circuits.items():
                self._refresh(circuit, now)
                snapshot[tenant_id] = CircuitInfo(**circuit.__dict__)
            return snapshot

    def reset(self, tenant_id: str):
        with self._lock:
            self._circuits.pop(tenant_id, None)

    def reset_all(self):
        with self._lock:
            count = len(self._circuits)
            self._circuits.clear()
        logger.info(f"🔄 Reset {count} tenant circuits")


# ============================================================================
# FIXED-DELAY RETRY
# ============================================================================

async def with_fixed_retry(
    operation: Callable[[], Awaitable[Any]],
    attempts: int,
    delay: float,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    label: str = "operation",
) -> Any:
    """
    Run `operation` up to `attempts` times with a fixed delay between tries.

    Strategy:
    - Fixed wait (the remote end is either coming back or it is not)
    - Logs before each retry
    - Re-raises the last exception once attempts are exhausted
    """
    retrying = AsyncRetrying(
        retry=retry_if_exception_type(retry_on),
        stop=stop_after_attempt(attempts),
        wait=wait_fixed(delay),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    try:
        async for attempt in retrying:
            with attempt:
                return await operation()
    except retry_on:
        logger.error(f"❌ {label} failed after {attempts} attempts")
        raise
