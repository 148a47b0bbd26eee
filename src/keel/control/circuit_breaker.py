"""Circuit breakers for Keel.

One breaker guards one source (a worker, or a repair strategy). After
``failure_threshold`` consecutive failures the breaker opens and every call
fails fast with :class:`CircuitOpenError` without touching the source. Once
``timeout_seconds`` have passed, the next call moves the breaker to
HALF_OPEN and at most ``half_open_max`` probes are let through; the first
probe result closes or re-opens it.

The OPEN -> HALF_OPEN transition is lazy (observed on the next call, no
background timer) and happens under the same lock as probe admission, so
``half_open_max`` is a hard bound.
"""

import inspect
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from ..exceptions import CircuitOpenError
from ..types import CircuitSnapshot, CircuitState

logger = logging.getLogger(__name__)

StateChangeCallback = Callable[[str, CircuitState, CircuitState], None]
TripCallback = Callable[[str, str], None]


@dataclass
class CircuitBreakerConfig:
    """Configuration for a circuit breaker."""

    failure_threshold: int = 3  # Consecutive failures before opening
    timeout_seconds: float = 60.0  # Time in OPEN before a probe is allowed
    half_open_max: int = 1  # Concurrent probes allowed in HALF_OPEN

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.timeout_seconds < 0:
            raise ValueError("timeout_seconds must be >= 0")
        if self.half_open_max < 1:
            raise ValueError("half_open_max must be >= 1")


@dataclass
class CircuitStats:
    """Mutable state of a circuit breaker."""

    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    half_open_in_flight: int = 0
    last_failure_time: float | None = None
    last_failure_error: str | None = None
    last_state_change: float = field(default_factory=time.monotonic)


class CircuitBreaker:
    """Circuit breaker for one unreliable source.

    Example:
        breaker = CircuitBreaker(
            breaker_id="worker:planner",
            config=CircuitBreakerConfig(failure_threshold=3),
        )

        result = await breaker.execute(call_model, prompt)
    """

    def __init__(
        self,
        breaker_id: str,
        config: CircuitBreakerConfig | None = None,
        on_state_change: StateChangeCallback | None = None,
        on_trip: TripCallback | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize circuit breaker.

        Args:
            breaker_id: Unique identifier for this breaker.
            config: Circuit breaker configuration.
            on_state_change: Callback on state change (id, old_state, new_state).
            on_trip: Callback when circuit trips open (id, reason).
            clock: Monotonic time source, in seconds.
        """
        self._id = breaker_id
        self._config = config or CircuitBreakerConfig()
        self._on_state_change = on_state_change
        self._on_trip = on_trip
        self._clock = clock
        self._stats = CircuitStats(last_state_change=clock())
        self._lock = threading.RLock()

    @property
    def breaker_id(self) -> str:
        return self._id

    @property
    def config(self) -> CircuitBreakerConfig:
        return self._config

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._stats.state

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    # =========================================================================
    # Guarded execution
    # =========================================================================

    async def execute(self, operation: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run ``operation`` under breaker protection.

        ``operation`` may be a coroutine function or a plain callable. Its own
        exception is re-raised after being recorded.

        Raises:
            CircuitOpenError: If the breaker refuses the call. The operation
                is not invoked.
        """
        probe = self._admit()
        try:
            result = operation(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            self._record(success=False, probe=probe, error=e)
            raise
        except BaseException:
            # Cancelled probes give their slot back without deciding anything
            self._release_probe(probe)
            raise

        self._record(success=True, probe=probe)
        return result

    def execute_sync(self, operation: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Synchronous twin of :meth:`execute`."""
        probe = self._admit()
        try:
            result = operation(*args, **kwargs)
        except Exception as e:
            self._record(success=False, probe=probe, error=e)
            raise
        except BaseException:
            self._release_probe(probe)
            raise

        self._record(success=True, probe=probe)
        return result

    def _admit(self) -> bool:
        """Decide whether a call may proceed.

        Returns:
            True if the call is a half-open probe.

        Raises:
            CircuitOpenError: If the call is refused.
        """
        with self._lock:
            if self._stats.state == CircuitState.OPEN:
                elapsed = self._clock() - self._stats.last_state_change
                if elapsed < self._config.timeout_seconds:
                    remaining = self._config.timeout_seconds - elapsed
                    raise CircuitOpenError(
                        self._id,
                        f"Waiting {remaining:.1f}s before probing",
                        retry_in=remaining,
                    )
                self._transition_to(CircuitState.HALF_OPEN)

            if self._stats.state == CircuitState.HALF_OPEN:
                if self._stats.half_open_in_flight >= self._config.half_open_max:
                    raise CircuitOpenError(
                        self._id,
                        "Half-open probe already in flight; additional calls refused",
                    )
                self._stats.half_open_in_flight += 1
                return True

            return False

    def _release_probe(self, probe: bool) -> None:
        if not probe:
            return
        with self._lock:
            if self._stats.half_open_in_flight > 0:
                self._stats.half_open_in_flight -= 1

    def _record(self, success: bool, probe: bool, error: Exception | None = None) -> None:
        with self._lock:
            self._release_probe(probe)
            if success:
                self._stats.success_count += 1
                if self._stats.state == CircuitState.HALF_OPEN and probe:
                    logger.info("Circuit '%s' recovered after probe success", self._id)
                    self._transition_to(CircuitState.CLOSED)
                elif self._stats.state == CircuitState.CLOSED:
                    self._stats.failure_count = 0
                return

            self._stats.failure_count += 1
            self._stats.last_failure_time = self._clock()
            self._stats.last_failure_error = str(error) if error is not None else None

            if self._stats.state == CircuitState.HALF_OPEN and probe:
                self._trip("Probe failed in half-open state")
            elif (
                self._stats.state == CircuitState.CLOSED
                and self._stats.failure_count >= self._config.failure_threshold
            ):
                self._trip(f"Consecutive failures: {self._stats.failure_count}")

    # =========================================================================
    # Manual recording (for callers that cannot wrap the operation)
    # =========================================================================

    def record_success(self) -> None:
        """Record a successful call made outside :meth:`execute`."""
        with self._lock:
            self._record(success=True, probe=self._stats.state == CircuitState.HALF_OPEN)

    def record_failure(self, error: Exception | None = None) -> None:
        """Record a failed call made outside :meth:`execute`."""
        with self._lock:
            self._record(
                success=False,
                probe=self._stats.state == CircuitState.HALF_OPEN,
                error=error,
            )

    # =========================================================================
    # Transitions
    # =========================================================================

    def _trip(self, reason: str) -> None:
        """Trip the circuit to OPEN state."""
        self._transition_to(CircuitState.OPEN)
        logger.warning("Circuit '%s' tripped OPEN: %s", self._id, reason)
        if self._on_trip:
            self._on_trip(self._id, reason)

    def _transition_to(self, new_state: CircuitState) -> None:
        old_state = self._stats.state
        if old_state == new_state:
            return

        self._stats.state = new_state
        self._stats.last_state_change = self._clock()

        if new_state == CircuitState.HALF_OPEN:
            self._stats.half_open_in_flight = 0
        if new_state == CircuitState.CLOSED:
            self._stats.failure_count = 0

        logger.debug(
            "Circuit '%s' state change: %s -> %s", self._id, old_state.value, new_state.value
        )
        if self._on_state_change:
            self._on_state_change(self._id, old_state, new_state)

    def reset(self) -> None:
        """Force the breaker CLOSED with zeroed counters."""
        with self._lock:
            old_state = self._stats.state
            self._stats = CircuitStats(last_state_change=self._clock())
            logger.info("Circuit '%s' reset (was %s)", self._id, old_state.value)
            if self._on_state_change and old_state != CircuitState.CLOSED:
                self._on_state_change(self._id, old_state, CircuitState.CLOSED)

    def force_open(self, reason: str = "Manual override") -> None:
        """Force circuit to open state."""
        with self._lock:
            if self._stats.state != CircuitState.OPEN:
                self._trip(reason)

    # =========================================================================
    # Observability
    # =========================================================================

    def get_state(self) -> CircuitSnapshot:
        """Snapshot of the breaker. Never changes state."""
        with self._lock:
            retry_in = None
            if self._stats.state == CircuitState.OPEN:
                elapsed = self._clock() - self._stats.last_state_change
                retry_in = max(0.0, self._config.timeout_seconds - elapsed)

            return CircuitSnapshot(
                breaker_id=self._id,
                state=self._stats.state,
                failure_count=self._stats.failure_count,
                success_count=self._stats.success_count,
                failure_threshold=self._config.failure_threshold,
                half_open_in_flight=self._stats.half_open_in_flight,
                last_failure_time=self._stats.last_failure_time,
                last_failure_error=self._stats.last_failure_error,
                last_state_change=self._stats.last_state_change,
                retry_in=retry_in,
            )


class CircuitBreakerRegistry:
    """One circuit breaker per source, created on first use.

    Example:
        registry = CircuitBreakerRegistry()

        # Lazily creates "worker:planner" with the default config
        await registry.execute("worker:planner", call_model, prompt)

        # Emergency stop
        registry.trip_all("Budget exhausted")
    """

    def __init__(
        self,
        default_config: CircuitBreakerConfig | None = None,
        on_any_trip: TripCallback | None = None,
        on_state_change: StateChangeCallback | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize registry.

        Args:
            default_config: Config for breakers created by :meth:`get`.
            on_any_trip: Callback when any breaker trips.
            on_state_change: Callback on any breaker's state change.
            clock: Time source handed to every breaker.
        """
        self._default_config = default_config or CircuitBreakerConfig()
        self._on_any_trip = on_any_trip
        self._on_state_change = on_state_change
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.RLock()

    def _build(self, breaker_id: str, config: CircuitBreakerConfig | None) -> CircuitBreaker:
        return CircuitBreaker(
            breaker_id=breaker_id,
            config=config or self._default_config,
            on_state_change=self._on_state_change,
            on_trip=self._on_any_trip,
            clock=self._clock,
        )

    def register(
        self,
        breaker_id: str,
        config: CircuitBreakerConfig | None = None,
    ) -> CircuitBreaker:
        """Register a breaker with its own config, replacing any existing one."""
        with self._lock:
            breaker = self._build(breaker_id, config)
            self._breakers[breaker_id] = breaker
            return breaker

    def get(self, breaker_id: str) -> CircuitBreaker:
        """Get the breaker for ``breaker_id``, creating it if needed."""
        with self._lock:
            breaker = self._breakers.get(breaker_id)
            if breaker is None:
                breaker = self._build(breaker_id, None)
                self._breakers[breaker_id] = breaker
            return breaker

    def __contains__(self, breaker_id: object) -> bool:
        with self._lock:
            return breaker_id in self._breakers

    def __len__(self) -> int:
        with self._lock:
            return len(self._breakers)

    async def execute(
        self,
        breaker_id: str,
        operation: Callable[..., Any],
        *args: Any,
        **kwargs: Any,
    ) -> Any:
        """Run ``operation`` through the breaker for ``breaker_id``."""
        return await self.get(breaker_id).execute(operation, *args, **kwargs)

    def _snapshot(self) -> list[CircuitBreaker]:
        with self._lock:
            return list(self._breakers.values())

    def get_all_states(self) -> dict[str, CircuitSnapshot]:
        """Snapshots of every known breaker."""
        return {breaker.breaker_id: breaker.get_state() for breaker in self._snapshot()}

    def get_open_breakers(self) -> list[str]:
        """IDs of breakers currently OPEN."""
        return [breaker.breaker_id for breaker in self._snapshot() if breaker.is_open]

    def reset_all(self) -> None:
        """Reset all circuit breakers."""
        for breaker in self._snapshot():
            breaker.reset()

    def trip_all(self, reason: str = "Global trip") -> None:
        """Trip all circuit breakers (emergency stop)."""
        for breaker in self._snapshot():
            breaker.force_open(reason)
