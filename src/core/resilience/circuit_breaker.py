"""
Circuit Breaker

STAGE-I: Circuit breaking for downstream dependencies

MECHANISM OF ACTION:
-------------------
1.  **Counting window (CLOSED)**:
    Requests, successes and failures are counted per *generation*. Every
    ``interval`` seconds the closed breaker starts a new generation with fresh
    counts, so old failures stop mattering.

2.  **State Transitions**:
    - **CLOSED** → **OPEN**: when, within one generation, at least
      ``min_requests`` requests were seen and failures / requests reached
      ``failure_ratio``.
    - **OPEN**: every call is rejected with CircuitBreakerOpenError until
      ``timeout`` seconds have passed, then the breaker becomes HALF-OPEN.
    - **HALF-OPEN**: at most ``max_requests`` probe calls are admitted
      (further calls get CircuitBreakerHalfOpenLimitError). One failure
      re-opens the breaker; ``max_requests`` consecutive successes close it.

3.  **Generations**:
    Each transition starts a new generation. A call that began in an older
    generation reports its outcome into nothing, so a slow call from before
    a trip cannot close or re-open the breaker.

State lives in-process; each replica trips independently.
"""

import asyncio
import inspect
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from src.core.clock import SYSTEM_CLOCK, Clock
from src.core.config.constants import CircuitState, Stage
from src.core.exceptions import CircuitBreakerHalfOpenLimitError, CircuitBreakerOpenError
from src.core.logging.logger import get_logger
from src.infrastructure.monitoring.metrics_collector import MetricsCollector, get_metrics_collector

logger = get_logger(__name__)


@dataclass
class BreakerConfig:
    max_requests: int = 5
    interval: float = 10.0
    timeout: float = 30.0
    failure_ratio: float = 0.5
    min_requests: int = 10
    excluded_exceptions: tuple[type[BaseException], ...] = field(default_factory=tuple)

    @classmethod
    def from_settings(cls, settings) -> "BreakerConfig":
        cfg = settings.circuit_breaker
        return cls(
            max_requests=cfg.CB_MAX_REQUESTS,
            interval=cfg.CB_INTERVAL,
            timeout=cfg.CB_TIMEOUT,
            failure_ratio=cfg.CB_FAILURE_RATIO,
            min_requests=cfg.CB_MIN_REQUESTS,
        )


@dataclass
class Counts:
    requests: int = 0
    total_successes: int = 0
    total_failures: int = 0
    consecutive_successes: int = 0
    consecutive_failures: int = 0

    def on_request(self) -> None:
        self.requests += 1

    def on_success(self) -> None:
        self.total_successes += 1
        self.consecutive_successes += 1
        self.consecutive_failures = 0

    def on_failure(self) -> None:
        self.total_failures += 1
        self.consecutive_failures += 1
        self.consecutive_successes = 0

    def clear(self) -> None:
        self.requests = 0
        self.total_successes = 0
        self.total_failures = 0
        self.consecutive_successes = 0
        self.consecutive_failures = 0


class CircuitBreaker:
    """
    Usage:
        breaker = CircuitBreaker("mysql", BreakerConfig())
        rows = await breaker.call(repo.fetch_page, ctx, 1, 20)

    Low-level use (when the outcome is not an exception, e.g. an HTTP status):
        generation = breaker.before_request()
        ...
        breaker.after_request(generation, success=status < 500)
    """

    def __init__(
        self,
        name: str,
        config: BreakerConfig | None = None,
        clock: Clock = SYSTEM_CLOCK,
        metrics: MetricsCollector | None = None,
    ):
        self.name = name
        self.config = config or BreakerConfig()
        self._clock = clock
        self._metrics = metrics or get_metrics_collector()
        self._lock = threading.Lock()

        self._state = CircuitState.CLOSED
        self._generation = 0
        self._counts = Counts()
        self._expiry = 0.0
        self._new_generation(self._clock.monotonic())
        self._metrics.set_circuit_state(self.name, self._state)

    # -------------------------------------------------------------------------
    # State machine
    # -------------------------------------------------------------------------

    def _new_generation(self, now: float) -> None:
        self._generation += 1
        self._counts.clear()
        if self._state == CircuitState.CLOSED:
            self._expiry = now + self.config.interval if self.config.interval > 0 else 0.0
        elif self._state == CircuitState.OPEN:
            self._expiry = now + self.config.timeout
        else:
            self._expiry = 0.0

    def _set_state(self, state: CircuitState, now: float) -> None:
        if self._state == state:
            return
        previous = self._state
        self._state = state
        self._new_generation(now)
        self._metrics.set_circuit_state(self.name, state)
        level = "warning" if state == CircuitState.OPEN else "info"
        getattr(logger, level)(
            "Circuit breaker state changed",
            stage=Stage.CIRCUIT_BREAKER.value,
            breaker=self.name,
            from_state=previous.value,
            to_state=state.value,
        )

    def _current_state(self, now: float) -> CircuitState:
        if self._state == CircuitState.CLOSED:
            if self._expiry and self._expiry <= now:
                self._new_generation(now)
        elif self._state == CircuitState.OPEN:
            if self._expiry <= now:
                self._set_state(CircuitState.HALF_OPEN, now)
        return self._state

    def _ready_to_trip(self) -> bool:
        counts = self._counts
        if counts.requests < self.config.min_requests:
            return False
        return counts.total_failures / counts.requests >= self.config.failure_ratio

    def before_request(self) -> int:
        """
        Admit a call or raise.

        Returns:
            The generation the call belongs to (pass it to after_request)

        Raises:
            CircuitBreakerOpenError: The breaker is open
            CircuitBreakerHalfOpenLimitError: The half-open probe quota is used up
        """
        with self._lock:
            now = self._clock.monotonic()
            state = self._current_state(now)
            if state == CircuitState.OPEN:
                raise CircuitBreakerOpenError(
                    f"circuit '{self.name}' is open", details={"breaker": self.name}
                )
            if state == CircuitState.HALF_OPEN and self._counts.requests >= self.config.max_requests:
                raise CircuitBreakerHalfOpenLimitError(
                    f"circuit '{self.name}' is half-open and at its probe limit",
                    details={"breaker": self.name, "max_requests": self.config.max_requests},
                )
            self._counts.on_request()
            return self._generation

    def after_request(self, generation: int, success: bool) -> None:
        with self._lock:
            now = self._clock.monotonic()
            state = self._current_state(now)
            if generation != self._generation:
                return
            if success:
                self._on_success(state, now)
            else:
                self._metrics.record_circuit_failure(self.name)
                self._on_failure(state, now)

    def _on_success(self, state: CircuitState, now: float) -> None:
        self._counts.on_success()
        if state == CircuitState.CLOSED:
            # The ratio is judged on every recorded outcome, not only failures
            if self._ready_to_trip():
                self._set_state(CircuitState.OPEN, now)
        elif self._counts.consecutive_successes >= self.config.max_requests:
            self._set_state(CircuitState.CLOSED, now)

    def _on_failure(self, state: CircuitState, now: float) -> None:
        if state == CircuitState.CLOSED:
            self._counts.on_failure()
            if self._ready_to_trip():
                self._set_state(CircuitState.OPEN, now)
        elif state == CircuitState.HALF_OPEN:
            self._set_state(CircuitState.OPEN, now)

    def _is_success(self, exc: BaseException | None) -> bool:
        return exc is None or isinstance(exc, self.config.excluded_exceptions)

    # -------------------------------------------------------------------------
    # Call wrappers
    # -------------------------------------------------------------------------

    async def call(self, fn: Callable[..., Any], *args, **kwargs) -> Any:
        """Run ``fn`` (sync or async) through the breaker."""
        generation = self.before_request()
        try:
            result = fn(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
        except asyncio.CancelledError:
            # A cancelled caller says nothing about the dependency
            self.after_request(generation, success=True)
            raise
        except Exception as e:
            self.after_request(generation, success=self._is_success(e))
            raise
        self.after_request(generation, success=True)
        return result

    def call_sync(self, fn: Callable[..., Any], *args, **kwargs) -> Any:
        generation = self.before_request()
        try:
            result = fn(*args, **kwargs)
        except Exception as e:
            self.after_request(generation, success=self._is_success(e))
            raise
        self.after_request(generation, success=True)
        return result

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._current_state(self._clock.monotonic())

    @property
    def counts(self) -> Counts:
        with self._lock:
            self._current_state(self._clock.monotonic())
            return Counts(**vars(self._counts))

    @property
    def generation(self) -> int:
        return self._generation


class CircuitBreakerRegistry:
    """
    Named breakers created on first use with a shared default config.

    Usage:
        registry = CircuitBreakerRegistry(BreakerConfig.from_settings(settings))
        result = await registry.execute("mysql", repo.fetch, ctx, 42)
    """

    def __init__(
        self,
        default_config: BreakerConfig | None = None,
        clock: Clock = SYSTEM_CLOCK,
        metrics: MetricsCollector | None = None,
    ):
        self._default_config = default_config or BreakerConfig()
        self._clock = clock
        self._metrics = metrics
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, name: str, config: BreakerConfig | None = None) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(name, config or self._default_config, self._clock, self._metrics)
                self._breakers[name] = breaker
            return breaker

    async def execute(self, name: str, fn: Callable[..., Any], *args, **kwargs) -> Any:
        return await self.get(name).call(fn, *args, **kwargs)

    def states(self) -> dict[str, str]:
        with self._lock:
            breakers = list(self._breakers.values())
        return {b.name: b.state.value for b in breakers}

    def __len__(self) -> int:
        return len(self._breakers)
