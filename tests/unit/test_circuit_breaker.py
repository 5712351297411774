"""Тесты для Circuit Breaker (ConnectionHealthMonitor)"""
import asyncio

import pytest

from okito.core.circuit_breaker import (
    CircuitBreakerConfig,
    CircuitState,
    ConnectionHealthMonitor,
    check_network_stability,
)
from okito.core.errors import NetworkError


class ScriptedNetwork:
    """Health primitive, отвечающий по сценарию"""

    def __init__(self, outcomes=None, default=50.0):
        self.outcomes = list(outcomes or [])
        self.default = default
        self.calls = 0

    async def health_check_primitive(self):
        self.calls += 1
        outcome = self.outcomes.pop(0) if self.outcomes else self.default
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture
def monitor(clock):
    config = CircuitBreakerConfig(
        failure_threshold=3,
        success_threshold=2,
        timeout=30.0,
        monitoring_period=60.0,
        latency_ceiling_ms=1000.0,
    )
    return ConnectionHealthMonitor("test", config, clock=clock)


def down():
    return NetworkError("connection refused", code="connection")


@pytest.mark.asyncio
async def test_stays_closed_on_success(monitor):
    """Тест: CB остаётся закрытым при успехах"""
    result = await monitor.check_health(ScriptedNetwork())

    assert result.is_healthy
    assert result.response_time_ms == 50.0
    assert monitor.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_opens_after_threshold(monitor):
    """Тест: CB открывается после N ошибок подряд"""
    network = ScriptedNetwork([down(), down(), down()])
    for _ in range(3):
        result = await monitor.check_health(network)
        assert not result.is_healthy

    assert monitor.state == CircuitState.OPEN
    assert monitor.get_stats()["total_failures"] == 3


@pytest.mark.asyncio
async def test_success_resets_failure_count(monitor):
    network = ScriptedNetwork([down(), down(), 20.0, down(), down()])
    for _ in range(5):
        await monitor.check_health(network)

    assert monitor.state == CircuitState.CLOSED
    assert monitor.get_stats()["failure_count"] == 2


@pytest.mark.asyncio
async def test_open_rejects_without_network_call(monitor):
    """Тест: CB отклоняет проверки в открытом состоянии"""
    network = ScriptedNetwork([down(), down(), down()])
    for _ in range(3):
        await monitor.check_health(network)
    assert network.calls == 3

    result = await monitor.check_health(network)

    assert not result.is_healthy
    assert "open" in result.error
    assert network.calls == 3
    assert monitor.get_stats()["total_rejections"] == 1


@pytest.mark.asyncio
async def test_half_open_recovery(monitor, clock):
    """Тест: OPEN -> HALF_OPEN -> CLOSED после success_threshold успехов"""
    network = ScriptedNetwork([down(), down(), down()])
    for _ in range(3):
        await monitor.check_health(network)

    clock.advance(31.0)
    first = await monitor.check_health(network)
    assert first.is_healthy
    assert monitor.state == CircuitState.HALF_OPEN

    await monitor.check_health(network)
    assert monitor.state == CircuitState.CLOSED
    assert monitor.get_stats()["failure_count"] == 0


@pytest.mark.asyncio
async def test_half_open_failure_reopens(monitor, clock):
    network = ScriptedNetwork([down(), down(), down(), down()])
    for _ in range(3):
        await monitor.check_health(network)

    clock.advance(31.0)
    await monitor.check_health(network)

    assert monitor.state == CircuitState.OPEN
    rejected = await monitor.check_health(network)
    assert not rejected.is_healthy
    assert network.calls == 4


@pytest.mark.asyncio
async def test_latency_ceiling_counts_as_failure(monitor):
    result = await monitor.check_health(ScriptedNetwork([1500.0]))

    assert not result.is_healthy
    assert "exceeds" in result.error
    assert monitor.get_stats()["failure_count"] == 1


@pytest.mark.asyncio
async def test_concurrent_failures_trip_once(clock):
    """Тест: параллельные проверки не переводят CB в OPEN дважды"""
    monitor = ConnectionHealthMonitor("concurrent", CircuitBreakerConfig(failure_threshold=2), clock=clock)
    transitions = []
    original = monitor._transition_to

    def spy(state):
        transitions.append(state)
        original(state)

    monitor._transition_to = spy
    network = ScriptedNetwork([down() for _ in range(10)])

    await asyncio.gather(*(monitor.check_health(network) for _ in range(10)))

    assert transitions == [CircuitState.OPEN]
    assert monitor.state == CircuitState.OPEN


@pytest.mark.asyncio
async def test_single_probe_in_half_open(monitor, clock):
    for _ in range(3):
        await monitor.record_failure("down")
    clock.advance(31.0)

    release = asyncio.Event()

    class SlowNetwork:
        calls = 0

        async def health_check_primitive(self):
            SlowNetwork.calls += 1
            await release.wait()
            return 10.0

    network = SlowNetwork()
    probe = asyncio.ensure_future(monitor.check_health(network))
    await asyncio.sleep(0)
    second = await monitor.check_health(network)
    release.set()
    first = await probe

    assert first.is_healthy
    assert not second.is_healthy
    assert SlowNetwork.calls == 1


class HangingNetwork:
    """Health primitive, который никогда не отвечает"""

    def __init__(self):
        self.calls = 0

    async def health_check_primitive(self):
        self.calls += 1
        await asyncio.sleep(3600)


@pytest.mark.asyncio
async def test_cancelled_half_open_probe_frees_the_slot(monitor, clock):
    """Тест: отменённая пробная проверка не блокирует HALF_OPEN навсегда"""
    for _ in range(3):
        await monitor.record_failure("down")
    clock.advance(31.0)

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(monitor.check_health(HangingNetwork()), 0.05)
    assert monitor.state == CircuitState.HALF_OPEN

    network = ScriptedNetwork()
    result = await monitor.check_health(network)

    assert result.is_healthy
    assert network.calls == 1
    assert monitor.get_stats()["total_rejections"] == 0


@pytest.mark.asyncio
async def test_hanging_primitive_is_cut_at_latency_ceiling(clock):
    """Тест: зависший health primitive даёт unhealthy, а не висит"""
    monitor = ConnectionHealthMonitor(
        "hang", CircuitBreakerConfig(failure_threshold=1, latency_ceiling_ms=20.0), clock=clock
    )
    network = HangingNetwork()

    result = await asyncio.wait_for(monitor.check_health(network), 1.0)

    assert not result.is_healthy
    assert "did not complete within 20ms" in result.error
    assert result.response_time_ms == 20.0
    assert monitor.state == CircuitState.OPEN
    assert network.calls == 1


@pytest.mark.asyncio
async def test_metrics_window(monitor, clock):
    network = ScriptedNetwork([100.0, down()])
    await monitor.check_health(network)
    clock.advance(120.0)
    await monitor.check_health(network)

    metrics = monitor.get_metrics()
    assert metrics.checks_in_window == 1
    assert metrics.healthy_rate == 0.0
    assert metrics.consecutive_failures == 1
    assert metrics.last_failure_time == clock.now


@pytest.mark.asyncio
async def test_reset(monitor):
    for _ in range(3):
        await monitor.record_failure()
    assert monitor.is_open

    monitor.reset()

    assert monitor.state == CircuitState.CLOSED
    assert monitor.get_metrics().checks_in_window == 0


class TestNetworkStability:
    """Tests for check_network_stability"""

    @pytest.mark.asyncio
    async def test_stable(self, sleep):
        report = await check_network_stability(ScriptedNetwork([100.0, 200.0, 300.0]), sleep=sleep)

        assert report.stable
        assert report.average_ms == pytest.approx(200.0)
        assert report.max_ms == 300.0
        assert sleep.delays == [0.5, 0.5]

    @pytest.mark.asyncio
    async def test_slow_average(self, sleep):
        report = await check_network_stability(ScriptedNetwork([2500.0, 2500.0, 2500.0]), sleep=sleep)
        assert not report.stable
        assert "unstable" in report.reason

    @pytest.mark.asyncio
    async def test_single_spike(self, sleep):
        report = await check_network_stability(ScriptedNetwork([100.0, 6000.0, 100.0]), sleep=sleep)
        assert not report.stable

    @pytest.mark.asyncio
    async def test_failed_sample(self, sleep):
        network = ScriptedNetwork([100.0, down()])
        report = await check_network_stability(network, sleep=sleep)

        assert not report.stable
        assert network.calls == 2
        assert "Health check failed" in report.reason
