"""
健康监控测试
"""
import asyncio
import time

import httpx
import pytest

from llm_failover.core.deadline import run_with_deadline
from llm_failover.core.errors import ConfigurationInvalid, ProbeErrorKind, ProbeTimeout, ServiceUnreachable
from llm_failover.providers.base import ProviderKind
from llm_failover.services.health_check import (
    HealthCheckResult,
    HealthMonitor,
    HealthStatus,
    advance_health,
)

from fakes import FakeClient, FakeClock, HangingClient, StubbornClient, make_provider


class CountingClient(FakeClient):
    """记录同时进行中的探测数量的客户端"""

    def __init__(self, provider, gauge):
        super().__init__(provider)
        self.gauge = gauge

    async def probe(self, timeout: float):
        self.gauge["in_flight"] += 1
        self.gauge["peak"] = max(self.gauge["peak"], self.gauge["in_flight"])
        try:
            await asyncio.sleep(0.02)
            return await super().probe(timeout)
        finally:
            self.gauge["in_flight"] -= 1


def _result(success: bool, at: float = 0.0) -> HealthCheckResult:
    return HealthCheckResult(timestamp=at, success=success, latency_ms=1.0)


def _run(results, failure_threshold=3, success_threshold=3):
    health = None
    statuses = []
    for i, success in enumerate(results):
        health = advance_health(
            health, "p", _result(success, float(i)),
            failure_threshold=failure_threshold,
            success_threshold=success_threshold,
            history_size=20
        )
        statuses.append(health.status)
    return health, statuses


class TestStateMachine:
    """健康状态机测试"""

    def test_first_result_seeds_status(self):
        """测试首次结果决定初始状态"""
        health, _ = _run([True])
        assert health.status == HealthStatus.HEALTHY

        health, _ = _run([False])
        assert health.status == HealthStatus.UNHEALTHY

    def test_failures_degrade_one_step_at_a_time(self):
        """测试连续失败逐级降级"""
        _, statuses = _run([True, False, False, False, False, False, False])
        assert statuses == [
            HealthStatus.HEALTHY,
            HealthStatus.HEALTHY,
            HealthStatus.HEALTHY,
            HealthStatus.DEGRADED,
            HealthStatus.DEGRADED,
            HealthStatus.DEGRADED,
            HealthStatus.UNHEALTHY,
        ]

    def test_single_success_never_jumps_to_healthy(self):
        """测试单次成功不会从不健康直接变为健康"""
        health, statuses = _run([False, True])
        assert health.status == HealthStatus.UNHEALTHY

        _, statuses = _run([False] + [True] * 6, success_threshold=3)
        assert HealthStatus.DEGRADED in statuses
        first_healthy = statuses.index(HealthStatus.HEALTHY)
        assert statuses[first_healthy - 1] == HealthStatus.DEGRADED

    def test_counters_reset_on_direction_change(self):
        """测试方向改变时计数重置"""
        _, statuses = _run([True, False, False, True, False, False])
        assert all(s == HealthStatus.HEALTHY for s in statuses)

    def test_history_is_bounded(self):
        """测试历史记录有上限"""
        health = None
        for i in range(50):
            health = advance_health(
                health, "p", _result(i % 2 == 0, float(i)),
                failure_threshold=3, success_threshold=3, history_size=20
            )
        assert len(health.history) == 20
        assert health.success_rate == 0.5

    def test_latency_recorded_for_failures(self):
        """测试失败时也记录延迟"""
        health = advance_health(
            None, "p",
            HealthCheckResult(timestamp=0.0, success=False, latency_ms=250.0),
            failure_threshold=3, success_threshold=3, history_size=20
        )
        assert health.avg_latency_ms == 250.0
        assert health.consecutive_failures == 1


@pytest.mark.asyncio
class TestProbe:
    """探测测试"""

    async def test_probe_success(self, monitor):
        """测试成功探测"""
        provider = make_provider("cloud")
        monitor.register(provider, FakeClient(provider))

        result = await monitor.probe(provider)

        assert result.success is True
        assert result.status == HealthStatus.HEALTHY
        assert result.info.models_available == 1
        assert monitor.status("cloud") == HealthStatus.HEALTHY

    async def test_hanging_client_is_bounded(self, monitor):
        """测试永不返回的客户端在外层超时内结束"""
        provider = make_provider("hung")
        monitor.register(provider, HangingClient(provider))

        start = time.monotonic()
        result = await monitor.probe(provider)
        elapsed = time.monotonic() - start

        assert elapsed < monitor.outer_timeout + 0.5
        assert result.success is False
        assert result.error_kind == ProbeErrorKind.PROBE_TIMEOUT
        assert monitor.health("hung").history[-1].error_kind == ProbeErrorKind.PROBE_TIMEOUT

    async def test_client_ignoring_cancellation_is_not_awaited(self, monitor):
        """测试忽略取消的客户端不会阻塞探测"""
        provider = make_provider("stubborn")
        client = StubbornClient(provider, linger=0.5)
        monitor.register(provider, client)

        start = time.monotonic()
        result = await monitor.probe(provider)
        elapsed = time.monotonic() - start

        assert elapsed < 0.45
        assert result.error_kind == ProbeErrorKind.PROBE_TIMEOUT
        assert client.finished is False

        # 被放弃的调用稍后完成，其结果被丢弃
        await asyncio.sleep(0.7)
        assert client.finished is True
        assert len(monitor.health("stubborn").history) == 1

    @pytest.mark.parametrize("error, kind", [
        (ServiceUnreachable("http://x"), ProbeErrorKind.CONNECTION_REFUSED),
        (httpx.ConnectError("refused"), ProbeErrorKind.CONNECTION_REFUSED),
        (httpx.ReadTimeout("slow"), ProbeErrorKind.PROBE_TIMEOUT),
        (ValueError("bad json"), ProbeErrorKind.PROTOCOL_ERROR),
    ])
    async def test_errors_are_classified_not_raised(self, monitor, error, kind):
        """测试探测错误被分类记录而不是抛出"""
        provider = make_provider("flaky")
        monitor.register(provider, FakeClient(provider, error=error))

        result = await monitor.probe(provider)

        assert result.success is False
        assert result.error_kind == kind
        assert monitor.status("flaky") == HealthStatus.UNHEALTHY

    async def test_per_provider_thresholds(self, monitor):
        """测试提供商级别的阈值覆盖"""
        provider = make_provider("strict", failure_threshold=1)
        client = FakeClient(provider)
        monitor.register(provider, client)

        await monitor.probe(provider)
        client.error = ServiceUnreachable(provider.endpoint)
        result = await monitor.probe(provider)

        assert result.status == HealthStatus.DEGRADED

    async def test_check_all_runs_concurrently(self, monitor):
        """测试并发检查所有提供商"""
        for i in range(5):
            provider = make_provider(f"slow-{i}")
            monitor.register(provider, FakeClient(provider, delay=0.1))

        start = time.monotonic()
        results = await monitor.check_all()

        assert time.monotonic() - start < 0.4
        assert len(results) == 5
        assert all(r.success for r in results.values())

    async def test_check_due_honours_interval(self, monitor, clock):
        """测试按间隔检查"""
        provider = make_provider("periodic", health_check_interval=30)
        client = FakeClient(provider)
        monitor.register(provider, client)

        await monitor.check_due()
        await monitor.check_due()
        assert client.probe_calls == 1

        clock.advance(31)
        await monitor.check_due()
        assert client.probe_calls == 2

    async def test_check_all_concurrency_is_bounded(self, clock):
        """测试并发探测数量不超过上限"""
        monitor = HealthMonitor(probe_timeout=1.0, outer_timeout=1.0, max_concurrency=4, clock=clock)
        gauge = {"in_flight": 0, "peak": 0}
        for i in range(20):
            provider = make_provider(f"p-{i}")
            monitor.register(provider, CountingClient(provider, gauge))

        results = await monitor.check_all()

        assert len(results) == 20
        assert all(r.success for r in results.values())
        assert gauge["peak"] == 4

    async def test_check_due_concurrency_is_bounded(self, clock):
        """测试定期检查同样受并发上限约束"""
        monitor = HealthMonitor(probe_timeout=1.0, outer_timeout=1.0, max_concurrency=2, clock=clock)
        gauge = {"in_flight": 0, "peak": 0}
        for i in range(6):
            provider = make_provider(f"p-{i}")
            monitor.register(provider, CountingClient(provider, gauge))

        results = await monitor.check_due()

        assert len(results) == 6
        assert gauge["peak"] == 2

    async def test_unregister_closes_client(self, monitor):
        """测试注销时关闭客户端"""
        provider = make_provider("temp")
        client = FakeClient(provider)
        monitor.register(provider, client)
        await monitor.probe(provider)

        await monitor.unregister("temp")

        assert client.closed is True
        assert monitor.health("temp") is None
        assert provider not in monitor.providers


class TestMonitorOptions:
    """监控器参数测试"""

    def test_explicit_values_are_kept(self):
        """测试显式传入的参数不会被配置覆盖"""
        monitor = HealthMonitor(
            failure_threshold=1, success_threshold=5, probe_timeout=0.5,
            outer_timeout=0.5, history_size=1, check_interval=1, max_concurrency=1,
            clock=FakeClock()
        )

        assert monitor.failure_threshold == 1
        assert monitor.success_threshold == 5
        assert monitor.history_size == 1
        assert monitor.max_concurrency == 1

    @pytest.mark.parametrize("options", [
        {"failure_threshold": 0},
        {"success_threshold": 0},
        {"max_concurrency": 0},
        {"probe_timeout": 0.0},
        {"probe_timeout": 5.0, "outer_timeout": 1.0},
    ])
    def test_invalid_values_rejected(self, options):
        """测试无效参数被拒绝而不是回退到配置"""
        with pytest.raises(ConfigurationInvalid):
            HealthMonitor(**options)


class TestReaders:
    """只读接口测试"""

    def test_never_probed_is_unhealthy(self, monitor):
        """测试从未探测的提供商视为不健康"""
        assert monitor.status("unknown") == HealthStatus.UNHEALTHY
        assert monitor.is_usable("unknown") is False

    def test_snapshot_is_immutable(self, monitor):
        """测试快照不可修改"""
        monitor.record_result("a", success=True, latency_ms=1.0)
        snapshot = monitor.snapshot()

        with pytest.raises(TypeError):
            snapshot["a"] = None

        monitor.record_result("b", success=True, latency_ms=1.0)
        assert "b" not in snapshot
        assert "b" in monitor.snapshot()

    def test_providers_by_health(self, monitor):
        """测试按健康状态排序"""
        for provider_id in ("x", "y", "z"):
            provider = make_provider(provider_id, ProviderKind.CLOUD)
            monitor.register(provider, FakeClient(provider))
        monitor.record_result("x", success=False, latency_ms=1.0)
        monitor.record_result("y", success=True, latency_ms=1.0)

        ordered = monitor.providers_by_health()

        assert ordered[0] == ("y", HealthStatus.HEALTHY)
        assert {pid for pid, _ in ordered[1:]} == {"x", "z"}


@pytest.mark.asyncio
class TestDeadline:
    """外层超时测试"""

    async def test_returns_result_in_time(self):
        """测试按时返回结果"""
        async def quick():
            return 42

        assert await run_with_deadline(quick(), 1.0) == 42

    async def test_raises_probe_timeout(self):
        """测试超时抛出 ProbeTimeout"""
        with pytest.raises(ProbeTimeout):
            await run_with_deadline(asyncio.sleep(5), 0.05)

    async def test_propagates_errors(self):
        """测试传播内部错误"""
        async def broken():
            raise ValueError("boom")

        with pytest.raises(ValueError):
            await run_with_deadline(broken(), 1.0)
