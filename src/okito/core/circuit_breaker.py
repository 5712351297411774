"""
Connection health monitor built as a circuit breaker.

Состояния:
- CLOSED: проверки выполняются, ошибки считаются
- OPEN: проверки отклоняются без сетевого вызова
- HALF_OPEN: пропускаем пробные проверки

The monitor is long-lived: construct one per process (or per endpoint) and
pass it to every executor that talks to the same network.
"""
from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, List, Optional

from okito.utils.logger import get_logger

logger = get_logger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    """Конфигурация Circuit Breaker (seconds unless noted)"""
    failure_threshold: int = 5
    success_threshold: int = 3
    timeout: float = 60.0
    monitoring_period: float = 300.0
    latency_ceiling_ms: float = 10_000.0
    max_history: int = 100


@dataclass
class HealthCheckResult:
    is_healthy: bool
    response_time_ms: float
    timestamp: float
    error: Optional[str] = None


@dataclass
class CircuitBreakerStats:
    """Статистика Circuit Breaker"""
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    last_failure_time: Optional[float] = None
    last_state_change: float = field(default_factory=time.monotonic)
    total_checks: int = 0
    total_failures: int = 0
    total_rejections: int = 0


@dataclass
class HealthMetrics:
    state: CircuitState
    average_response_time_ms: float
    healthy_rate: float
    checks_in_window: int
    consecutive_failures: int
    last_failure_time: Optional[float]


class ConnectionHealthMonitor:
    """
    Circuit breaker gating network health checks.

    Использование:
        monitor = ConnectionHealthMonitor("mainnet")
        result = await monitor.check_health(network)
        if not result.is_healthy:
            ...

    State transitions happen under a lock, so concurrent checks never trip
    the breaker twice, and only one probe runs while HALF_OPEN.
    """

    def __init__(
        self,
        name: str = "rpc",
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._stats = CircuitBreakerStats(last_state_change=clock())
        self._history: Deque[HealthCheckResult] = deque(maxlen=self.config.max_history)
        self._lock = asyncio.Lock()
        self._probe_in_flight = False

    @property
    def state(self) -> CircuitState:
        return self._stats.state

    @property
    def is_open(self) -> bool:
        return self._stats.state == CircuitState.OPEN

    async def check_health(self, network: Any) -> HealthCheckResult:
        """
        Run the network's health primitive if the breaker admits it.

        Healthy iff the primitive succeeds under the latency ceiling. A
        rejected check returns an unhealthy result without touching the
        network.
        """
        async with self._lock:
            probe = self._stats.state != CircuitState.CLOSED
            admitted = self._admit()
            if not admitted:
                self._stats.total_rejections += 1

        if not admitted:
            return HealthCheckResult(
                is_healthy=False,
                response_time_ms=0.0,
                timestamp=self._clock(),
                error=f"Circuit breaker '{self.name}' is open",
            )

        try:
            result = await self._probe(network)
            async with self._lock:
                self._probe_in_flight = False
                self._history.append(result)
                self._stats.total_checks += 1
                if result.is_healthy:
                    self._record_success()
                else:
                    self._record_failure()
        except BaseException:
            # cancelled mid-probe: free the HALF_OPEN slot, record nothing
            if probe:
                self._probe_in_flight = False
            raise

        return result

    async def _probe(self, network: Any) -> HealthCheckResult:
        """Вызвать health primitive, ограничив его latency ceiling"""
        ceiling = self.config.latency_ceiling_ms
        started = self._clock()
        error: Optional[str] = None
        try:
            reported = await asyncio.wait_for(network.health_check_primitive(), timeout=ceiling / 1000)
            latency = float(reported) if reported is not None else (self._clock() - started) * 1000
        except asyncio.TimeoutError:
            latency = ceiling
            error = f"Health check did not complete within {ceiling:.0f}ms"
        except Exception as e:
            latency = (self._clock() - started) * 1000
            error = str(e) or type(e).__name__

        if error is None and latency >= ceiling:
            error = f"Latency {latency:.0f}ms exceeds {ceiling:.0f}ms"

        return HealthCheckResult(
            is_healthy=error is None,
            response_time_ms=latency,
            timestamp=self._clock(),
            error=error,
        )

    async def record_failure(self, error: Optional[str] = None) -> None:
        """Report a network failure observed outside a health check."""
        async with self._lock:
            self._history.append(HealthCheckResult(False, 0.0, self._clock(), error))
            self._record_failure()

    async def record_success(self) -> None:
        async with self._lock:
            self._record_success()

    def _admit(self) -> bool:
        """Решить, пропускать ли проверку (под lock)"""
        stats = self._stats
        if stats.state == CircuitState.OPEN:
            elapsed = self._clock() - (stats.last_failure_time or 0.0)
            if elapsed < self.config.timeout:
                return False
            self._transition_to(CircuitState.HALF_OPEN)

        if stats.state == CircuitState.HALF_OPEN:
            if self._probe_in_flight:
                return False
            self._probe_in_flight = True

        return True

    def _record_success(self) -> None:
        stats = self._stats
        if stats.state == CircuitState.HALF_OPEN:
            stats.success_count += 1
            if stats.success_count >= self.config.success_threshold:
                self._transition_to(CircuitState.CLOSED)
        elif stats.state == CircuitState.CLOSED:
            stats.failure_count = 0

    def _record_failure(self) -> None:
        stats = self._stats
        stats.total_failures += 1
        stats.last_failure_time = self._clock()

        if stats.state == CircuitState.HALF_OPEN:
            self._transition_to(CircuitState.OPEN)
        elif stats.state == CircuitState.CLOSED:
            stats.failure_count += 1
            if stats.failure_count >= self.config.failure_threshold:
                self._transition_to(CircuitState.OPEN)

    def _transition_to(self, new_state: CircuitState) -> None:
        old_state = self._stats.state
        self._stats.state = new_state
        self._stats.last_state_change = self._clock()

        if new_state == CircuitState.CLOSED:
            self._stats.failure_count = 0
            self._stats.success_count = 0
        elif new_state == CircuitState.HALF_OPEN:
            self._stats.success_count = 0
        elif new_state == CircuitState.OPEN:
            self._stats.success_count = 0

        log = logger.warning if new_state == CircuitState.OPEN else logger.info
        log(f"Circuit breaker '{self.name}': {old_state.value} -> {new_state.value}")

    def get_metrics(self) -> HealthMetrics:
        """Метрики за monitoring_period (на state machine не влияют)"""
        cutoff = self._clock() - self.config.monitoring_period
        recent = [r for r in self._history if r.timestamp >= cutoff]
        if recent:
            average = sum(r.response_time_ms for r in recent) / len(recent)
            healthy_rate = sum(1 for r in recent if r.is_healthy) / len(recent) * 100
        else:
            average = 0.0
            healthy_rate = 0.0
        return HealthMetrics(
            state=self._stats.state,
            average_response_time_ms=average,
            healthy_rate=healthy_rate,
            checks_in_window=len(recent),
            consecutive_failures=self._stats.failure_count,
            last_failure_time=self._stats.last_failure_time,
        )

    def get_stats(self) -> dict:
        return {
            "name": self.name,
            "state": self._stats.state.value,
            "failure_count": self._stats.failure_count,
            "success_count": self._stats.success_count,
            "total_checks": self._stats.total_checks,
            "total_failures": self._stats.total_failures,
            "total_rejections": self._stats.total_rejections,
            "last_failure_time": self._stats.last_failure_time,
        }

    def reset(self) -> None:
        """Сбросить в начальное состояние"""
        self._stats = CircuitBreakerStats(last_state_change=self._clock())
        self._history.clear()
        self._probe_in_flight = False
        logger.info(f"Circuit breaker '{self.name}' reset")


@dataclass
class StabilityReport:
    stable: bool
    latencies_ms: List[float]
    average_ms: float
    max_ms: float
    reason: Optional[str] = None


NETWORK_CHECK_SAMPLES = 3


async def check_network_stability(
    network: Any,
    samples: int = NETWORK_CHECK_SAMPLES,
    interval: float = 0.5,
    max_average_ms: float = 2000.0,
    max_latency_ms: float = 5000.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> StabilityReport:
    """
    Sample the health primitive ``samples`` times and judge stability.

    Stable iff every sample succeeds, the average stays under
    ``max_average_ms`` and no sample exceeds ``max_latency_ms``.
    """
    latencies: List[float] = []
    for i in range(samples):
        try:
            latencies.append(float(await network.health_check_primitive()))
        except Exception as e:
            logger.warning(f"Network stability sample {i + 1}/{samples} failed: {e}")
            return StabilityReport(False, latencies, 0.0, 0.0, reason=f"Health check failed: {e}")
        if i < samples - 1:
            await sleep(interval)

    average = sum(latencies) / len(latencies) if latencies else 0.0
    peak = max(latencies) if latencies else 0.0
    if average >= max_average_ms or peak >= max_latency_ms:
        return StabilityReport(
            False, latencies, average, peak,
            reason=f"Network unstable: avg {average:.0f}ms, max {peak:.0f}ms",
        )
    return StabilityReport(True, latencies, average, peak)
