"""
Circuit Breaker for upstream dependencies (AI backend, cluster API).

Implements fail-fast protection with:
- Three states: CLOSED (normal) -> OPEN (blocking) -> HALF_OPEN (probe)
- Consecutive failure counting against a threshold
- Cooldown before a limited number of half-open probe calls
- One "circuit open" warning per open period
- A factory holding independent, named breakers with shared defaults
- Optional sqlite audit trail of state transitions
"""

import asyncio
import logging
import math
import sqlite3
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar, Union


logger = logging.getLogger(__name__)

T = TypeVar("T")


# ============================================================================
# Enums and Constants
# ============================================================================

class CircuitState(Enum):
    """Circuit breaker states following the standard pattern."""
    CLOSED = "closed"        # Normal operation - all requests pass through
    OPEN = "open"            # Blocking - requests rejected until cooldown elapses
    HALF_OPEN = "half_open"  # Probe - limited requests allowed to test recovery


# Default configuration
DEFAULT_CONFIG = {
    "failure_threshold": 3,         # Consecutive failures before tripping
    "cooldown_period_ms": 30000,    # Time in OPEN before a probe is allowed
    "half_open_max_attempts": 1,    # Probe calls admitted per half-open period
}

StateChangeListener = Callable[[CircuitState, CircuitState, str], None]


class CircuitOpenError(Exception):
    """Raised instead of running an operation while the circuit blocks calls."""

    def __init__(self, circuit_name: str, remaining_cooldown_ms: float):
        self.circuit_name = circuit_name
        self.remaining_cooldown_ms = max(0.0, remaining_cooldown_ms)
        self.state = CircuitState.OPEN
        super().__init__(
            f"Circuit '{circuit_name}' is open. "
            f"Retry after {math.ceil(self.remaining_cooldown_ms)}ms"
        )


def validate_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """Merge config over DEFAULT_CONFIG and check value ranges."""
    cfg = {**DEFAULT_CONFIG, **{k: v for k, v in config.items() if v is not None}}

    for key in DEFAULT_CONFIG:
        try:
            cfg[key] = int(cfg[key])
        except (TypeError, ValueError):
            raise ValueError(f"{key} must be an integer, got {cfg[key]!r}")

    if cfg["failure_threshold"] <= 0:
        raise ValueError("failure_threshold must be greater than 0")
    if cfg["cooldown_period_ms"] < 0:
        raise ValueError("cooldown_period_ms must not be negative")
    if cfg["half_open_max_attempts"] <= 0:
        raise ValueError("half_open_max_attempts must be greater than 0")

    return cfg


# ============================================================================
# Data Classes
# ============================================================================

@dataclass
class CircuitBreakerState:
    """Complete state of one circuit breaker."""
    name: str
    state: CircuitState = CircuitState.CLOSED
    consecutive_failures: int = 0
    total_failures: int = 0
    total_successes: int = 0
    half_open_attempts: int = 0
    last_failure_time: Optional[datetime] = None
    last_success_time: Optional[datetime] = None
    opened_at: Optional[datetime] = None
    open_log_emitted: bool = False
    config: Dict[str, Any] = field(default_factory=lambda: DEFAULT_CONFIG.copy())

    def remaining_cooldown_ms(self, now: Optional[datetime] = None) -> float:
        """Milliseconds left before an OPEN circuit admits a probe."""
        if self.opened_at is None:
            return 0.0
        now = now or datetime.now()
        elapsed_ms = (now - self.opened_at).total_seconds() * 1000
        return max(0.0, self.config["cooldown_period_ms"] - elapsed_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "consecutive_failures": self.consecutive_failures,
            "total_failures": self.total_failures,
            "total_successes": self.total_successes,
            "half_open_attempts": self.half_open_attempts,
            "last_failure_time": self.last_failure_time.isoformat() if self.last_failure_time else None,
            "last_success_time": self.last_success_time.isoformat() if self.last_success_time else None,
            "opened_at": self.opened_at.isoformat() if self.opened_at else None,
            "remaining_cooldown_ms": (
                int(math.ceil(self.remaining_cooldown_ms()))
                if self.state == CircuitState.OPEN else 0
            ),
            "config": self.config
        }


# ============================================================================
# Circuit Breaker Implementation
# ============================================================================

class CircuitBreaker:
    """
    Circuit Breaker for a single named dependency.

    State Machine:
        CLOSED --[consecutive failures >= threshold]--> OPEN
        OPEN --[cooldown elapsed]--> HALF_OPEN
        HALF_OPEN --[probe success]--> CLOSED
        HALF_OPEN --[probe failure]--> OPEN

    Usage:
        breaker = CircuitBreaker("ai-backend", failure_threshold=3)
        try:
            response = await breaker.execute(lambda: provider.send_message(prompt))
        except CircuitOpenError as e:
            ...  # retry after e.remaining_cooldown_ms
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 3,
        cooldown_period_ms: int = 30000,
        half_open_max_attempts: int = 1,
        on_state_change: Optional[StateChangeListener] = None
    ):
        self.name = name
        self.state = CircuitBreakerState(
            name=name,
            config=validate_config({
                "failure_threshold": failure_threshold,
                "cooldown_period_ms": cooldown_period_ms,
                "half_open_max_attempts": half_open_max_attempts,
            })
        )
        self.on_state_change = on_state_change
        # Reentrant so listeners may read the breaker they are notified about
        self._lock = threading.RLock()
        # Incremented on every trip; tells current slot holders from earlier calls
        self._open_period = 0

    # ------------------------------------------------------------------
    # Guarded execution
    # ------------------------------------------------------------------

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Run operation through the breaker.

        Raises CircuitOpenError without calling operation when the circuit
        denies admission; otherwise re-raises whatever operation raised
        after recording the failure.
        """
        holds_slot, open_period = self._admit()

        try:
            result = await operation()
        except asyncio.CancelledError:
            if holds_slot:
                self._release_slot(open_period)
            raise
        except Exception as e:
            self._settle(holds_slot, open_period, error=e)
            raise

        self._settle(holds_slot, open_period)
        return result

    def _admit(self) -> Tuple[bool, int]:
        """
        Admit one call or raise CircuitOpenError. Atomic per breaker.

        Returns (took a half-open slot, open period at admission).
        """
        with self._lock:
            now = datetime.now()

            if self.state.state == CircuitState.OPEN:
                remaining = self.state.remaining_cooldown_ms(now)
                if remaining > 0:
                    if not self.state.open_log_emitted:
                        self.state.open_log_emitted = True
                        logger.warning(
                            f"Circuit '{self.name}' is open, blocking requests "
                            f"(retry in {math.ceil(remaining)}ms)"
                        )
                    raise CircuitOpenError(self.name, remaining)
                self._transition_to_half_open()

            if self.state.state == CircuitState.HALF_OPEN:
                max_attempts = self.state.config["half_open_max_attempts"]
                if self.state.half_open_attempts >= max_attempts:
                    raise CircuitOpenError(self.name, 0)
                self.state.half_open_attempts += 1
                logger.info(
                    f"Circuit '{self.name}' probing in half-open state "
                    f"(attempt {self.state.half_open_attempts}/{max_attempts})"
                )
                return True, self._open_period

            return False, self._open_period

    def _owns_slot(self, holds_slot: bool, open_period: int) -> bool:
        return (
            holds_slot
            and open_period == self._open_period
            and self.state.state == CircuitState.HALF_OPEN
        )

    def _release_slot(self, open_period: int) -> None:
        """Give back the half-open slot held by a cancelled call."""
        with self._lock:
            if self._owns_slot(True, open_period) and self.state.half_open_attempts > 0:
                self.state.half_open_attempts -= 1

    def _settle(self, holds_slot: bool, open_period: int, error: Optional[BaseException] = None) -> None:
        """
        Record the outcome of an executed call.

        While HALF_OPEN only the current period's slot holders decide the state;
        late outcomes of calls admitted earlier are counted and nothing more.
        """
        with self._lock:
            if self.state.state == CircuitState.HALF_OPEN and not self._owns_slot(holds_slot, open_period):
                now = datetime.now()
                if error is None:
                    self.state.total_successes += 1
                    self.state.last_success_time = now
                else:
                    self.state.total_failures += 1
                    self.state.last_failure_time = now
                logger.debug(
                    f"Circuit '{self.name}' ignoring late outcome of a call admitted "
                    f"before the current half-open period: {error or 'success'}"
                )
                return

            if error is None:
                self.record_success()
            else:
                self.record_failure(error)

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def record_success(self) -> None:
        """Record a successful call."""
        with self._lock:
            self.state.consecutive_failures = 0
            self.state.total_successes += 1
            self.state.last_success_time = datetime.now()

            if self.state.state == CircuitState.HALF_OPEN:
                self._transition(CircuitState.CLOSED)
                self.state.half_open_attempts = 0
                self.state.opened_at = None
                self.state.open_log_emitted = False
                logger.info(f"Circuit '{self.name}': HALF_OPEN -> CLOSED (recovered)")

    def record_failure(self, error: Optional[BaseException] = None) -> None:
        """Record a failed call and trip the circuit when warranted."""
        with self._lock:
            now = datetime.now()
            self.state.consecutive_failures += 1
            self.state.total_failures += 1
            self.state.last_failure_time = now

            logger.debug(
                f"Circuit '{self.name}' recorded failure "
                f"{self.state.consecutive_failures}/{self.state.config['failure_threshold']}: {error}"
            )

            if self.state.state == CircuitState.HALF_OPEN:
                self._trip(now)
                logger.warning(f"Circuit '{self.name}': HALF_OPEN -> OPEN (probe failed)")
            elif (
                self.state.state == CircuitState.CLOSED
                and self.state.consecutive_failures >= self.state.config["failure_threshold"]
            ):
                self._trip(now)
                logger.error(
                    f"Circuit '{self.name}' opened after "
                    f"{self.state.consecutive_failures} consecutive failures"
                )

    def reset(self) -> None:
        """Force the circuit back to CLOSED."""
        with self._lock:
            previous = self.state.state
            self.state.state = CircuitState.CLOSED
            self.state.consecutive_failures = 0
            self.state.half_open_attempts = 0
            self.state.opened_at = None
            self.state.open_log_emitted = False

            if previous != CircuitState.CLOSED:
                logger.info(f"Circuit '{self.name}' manually reset to closed")
                self._notify(previous, CircuitState.CLOSED)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def current_state(self) -> CircuitState:
        return self.get_state()

    def get_state(self) -> CircuitState:
        """Current state, moving OPEN to HALF_OPEN once cooldown has elapsed."""
        with self._lock:
            self._check_state_transitions()
            return self.state.state

    def get_stats(self) -> CircuitBreakerState:
        """Snapshot of counters, timestamps and state."""
        with self._lock:
            self._check_state_transitions()
            return replace(self.state, config=dict(self.state.config))

    def is_open(self) -> bool:
        """True only in OPEN; HALF_OPEN does not count."""
        return self.get_state() == CircuitState.OPEN

    def get_name(self) -> str:
        return self.name

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _check_state_transitions(self) -> None:
        if (
            self.state.state == CircuitState.OPEN
            and self.state.opened_at is not None
            and self.state.remaining_cooldown_ms() <= 0
        ):
            self._transition_to_half_open()

    def _transition_to_half_open(self) -> None:
        self._transition(CircuitState.HALF_OPEN)
        self.state.half_open_attempts = 0
        logger.info(f"Circuit '{self.name}': OPEN -> HALF_OPEN (cooldown elapsed)")

    def _trip(self, now: datetime) -> None:
        self._open_period += 1
        self._transition(CircuitState.OPEN)
        self.state.opened_at = now
        self.state.half_open_attempts = 0
        self.state.open_log_emitted = False

    def _transition(self, new_state: CircuitState) -> None:
        previous = self.state.state
        self.state.state = new_state
        if previous != new_state:
            self._notify(previous, new_state)

    def _notify(self, previous: CircuitState, new_state: CircuitState) -> None:
        if not self.on_state_change:
            return
        try:
            self.on_state_change(previous, new_state, self.name)
        except Exception:
            logger.exception(f"State change listener failed for circuit '{self.name}'")


# ============================================================================
# Circuit Breaker Factory
# ============================================================================

class CircuitBreakerFactory:
    """
    Registry of named circuit breakers sharing a default configuration.

    Breakers are created lazily by get_or_create and live as long as the
    factory. With a db_path, every state transition is written to the
    circuit_events table for later inspection.
    """

    def __init__(
        self,
        default_config: Optional[Dict[str, Any]] = None,
        db_path: Optional[Union[str, Path]] = None,
        on_state_change: Optional[StateChangeListener] = None
    ):
        self.default_config = validate_config(default_config or {})
        self.on_state_change = on_state_change
        self.breakers: Dict[str, CircuitBreaker] = {}
        self.db_path = str(db_path) if db_path else None
        self._lock = threading.Lock()

        if self.db_path:
            self._init_database()

    def _init_database(self) -> None:
        """Initialize circuit event audit table."""
        conn = sqlite3.connect(self.db_path)
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS circuit_events (
                event_id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                from_state TEXT NOT NULL,
                to_state TEXT NOT NULL,
                timestamp TEXT NOT NULL
            )
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_circuit_events_name
            ON circuit_events(name, event_id)
        """)

        conn.commit()
        conn.close()
        logger.info(f"Circuit breaker audit database initialized at {self.db_path}")

    def get_or_create(
        self,
        name: str,
        config: Optional[Dict[str, Any]] = None
    ) -> CircuitBreaker:
        """Get the breaker for name, creating it from defaults plus config once."""
        with self._lock:
            breaker = self.breakers.get(name)
            if breaker is None:
                overrides = dict(config or {})
                listener = overrides.pop("on_state_change", None) or self.on_state_change
                cfg = {**self.default_config, **overrides}
                breaker = CircuitBreaker(
                    name=name,
                    failure_threshold=cfg["failure_threshold"],
                    cooldown_period_ms=cfg["cooldown_period_ms"],
                    half_open_max_attempts=cfg["half_open_max_attempts"],
                    on_state_change=self._wrap_listener(listener)
                )
                self.breakers[name] = breaker
                logger.debug(f"Created circuit breaker '{name}' with config {breaker.state.config}")

            return breaker

    def get(self, name: str) -> Optional[CircuitBreaker]:
        """Registered breaker for name, or None."""
        return self.breakers.get(name)

    def reset_all(self) -> int:
        """Reset every breaker; returns how many were not already CLOSED."""
        count = 0
        for breaker in list(self.breakers.values()):
            if breaker.get_state() != CircuitState.CLOSED:
                count += 1
            breaker.reset()
        return count

    def get_all_stats(self) -> Dict[str, CircuitBreakerState]:
        """Stats snapshot for every registered breaker."""
        return {
            name: breaker.get_stats()
            for name, breaker in list(self.breakers.items())
        }

    def get_open_circuits(self) -> List[str]:
        """Names of breakers currently OPEN."""
        return [
            name
            for name, breaker in list(self.breakers.items())
            if breaker.is_open()
        ]

    # ------------------------------------------------------------------
    # Audit trail
    # ------------------------------------------------------------------

    def _wrap_listener(self, listener: Optional[StateChangeListener]) -> Optional[StateChangeListener]:
        if not self.db_path:
            return listener

        def audited(previous: CircuitState, new_state: CircuitState, name: str) -> None:
            self.record_event(name, previous, new_state)
            if listener:
                listener(previous, new_state, name)

        return audited

    def record_event(self, name: str, previous: CircuitState, new_state: CircuitState) -> None:
        """Append a state transition to the audit trail."""
        if not self.db_path:
            return

        conn = sqlite3.connect(self.db_path)
        cursor = conn.cursor()

        cursor.execute("""
            INSERT INTO circuit_events (name, from_state, to_state, timestamp)
            VALUES (?, ?, ?, ?)
        """, (name, previous.value, new_state.value, datetime.now().isoformat()))

        conn.commit()
        conn.close()

    def get_events(self, name: str, limit: int = 20) -> List[Dict[str, Any]]:
        """Most recent transitions for name, newest first."""
        if not self.db_path:
            return []

        conn = sqlite3.connect(self.db_path)
        cursor = conn.cursor()

        cursor.execute("""
            SELECT from_state, to_state, timestamp
            FROM circuit_events
            WHERE name = ?
            ORDER BY event_id DESC
            LIMIT ?
        """, (name, limit))

        events = [
            {
                "from_state": row[0],
                "to_state": row[1],
                "timestamp": row[2]
            }
            for row in cursor.fetchall()
        ]

        conn.close()
        return events
