"""
模型发现服务测试
"""
import asyncio
import time

import pytest

from llm_failover.core.cache import health_cache_key, model_list_cache_key
from llm_failover.core.errors import ConfigurationInvalid, ModelNotFound, ProbeErrorKind, ServiceUnreachable
from llm_failover.providers.base import ModelInfo, ProbeInfo, ProviderKind
from llm_failover.providers.factory import ProviderFactory
from llm_failover.services.discovery import ModelDiscoveryService
from llm_failover.services.health_check import HealthMonitor, HealthStatus

from fakes import FakeClient, HangingClient, make_provider


class SlowListingClient(FakeClient):
    """探测成功但列出模型时挂起的客户端"""

    async def list_models(self, timeout: float):
        self.list_calls += 1
        await asyncio.Event().wait()
        return []


class FakeOllama(FakeClient):
    """只在 11434 端口应答的本地服务"""

    def __init__(self, provider):
        super().__init__(provider, models=["llama3:8b"])

    async def probe(self, timeout: float) -> ProbeInfo:
        self.probe_calls += 1
        if not self.provider.endpoint.endswith(":11434"):
            raise ServiceUnreachable(self.provider.endpoint, "connection refused")
        if self.error is not None:
            raise self.error
        return ProbeInfo(version="0.5.0")


class RecordingCache:
    """记录写入内容的缓存"""

    available = True

    def __init__(self):
        self.values = {}

    async def set(self, key, value, ttl=None):
        self.values[key] = value
        return True


@pytest.mark.asyncio
class TestDiscoveryRound:
    """发现轮次测试"""

    async def test_catalog_in_configuration_order(self, discovery):
        """测试目录按配置顺序排列"""
        catalog = await discovery.discover()

        assert [e.provider_id for e in catalog.providers] == ["local", "cloud-b", "cloud-a"]
        assert [m.provider_id for m in catalog.models] == ["local", "cloud-b", "cloud-a"]
        assert all(m.available for m in catalog.models)
        assert catalog.generation == 1

    async def test_cached_catalog_is_reused_within_ttl(self, discovery, clients, clock):
        """测试 TTL 内复用同一目录且不再探测"""
        first = await discovery.discover()
        second = await discovery.discover()

        assert second is first
        assert all(c.probe_calls == 1 for c in clients.values())

        clock.advance(301)
        third = await discovery.discover()

        assert third is not first
        assert all(c.probe_calls == 2 for c in clients.values())

    async def test_concurrent_callers_join_one_round(self, discovery, clients):
        """测试并发调用共享同一轮发现"""
        for client in clients.values():
            client.delay = 0.05

        first, second = await asyncio.gather(discovery.discover(), discovery.discover())

        assert first is second
        assert all(c.probe_calls == 1 for c in clients.values())

    async def test_newest_refresh_wins(self, discovery, clients):
        """测试最新一轮发现生效"""
        for client in clients.values():
            client.delay = 0.05

        first, second = await asyncio.gather(discovery.refresh(), discovery.refresh())

        assert first.generation == 2
        assert second is first
        assert discovery.catalog.generation == 2

    async def test_unhealthy_provider_listed_as_unavailable(self, discovery, clients):
        """测试不健康提供商的模型标记为不可用"""
        clients["cloud-b"].error = ServiceUnreachable("https://cloud-b.example.com")

        catalog = await discovery.refresh()

        entry = catalog.provider("cloud-b")
        assert entry.status == HealthStatus.UNHEALTHY
        assert entry.error is not None
        model = catalog.models_named("chat-model")[1]
        assert model.provider_id == "cloud-b"
        assert model.available is False
        assert discovery.providers_for_model("chat-model") == ["local", "cloud-b", "cloud-a"]
        assert discovery.is_model_available("chat-model") is True

    async def test_degraded_provider_has_reduced_confidence(self, discovery, monitor):
        """测试降级提供商的模型置信度降低"""
        monitor.record_result("cloud-a", success=True, latency_ms=1.0)
        for _ in range(3):
            monitor.record_result("cloud-a", success=False, latency_ms=1.0)
        assert monitor.status("cloud-a") == HealthStatus.DEGRADED

        catalog = await discovery.refresh()

        model = [m for m in catalog.models if m.provider_id == "cloud-a"][0]
        assert model.available is True
        assert model.reduced_confidence is True

    async def test_listed_models_replace_configured_models(self, discovery, clients):
        """测试实际列出的模型优先于配置"""
        clients["cloud-a"].models = ["gpt-x", "gpt-y", "gpt-x"]

        await discovery.refresh()

        assert discovery.provider_models("cloud-a") == ("gpt-x", "gpt-y")

    async def test_listing_failure_uses_configured_models(self, discovery, clients):
        """测试列出模型失败时使用配置的模型并给出警告"""
        clients["cloud-a"].list_error = ValueError("unexpected payload")

        catalog = await discovery.refresh()

        entry = catalog.provider("cloud-a")
        assert entry.models == ("chat-model",)
        assert entry.status == HealthStatus.HEALTHY
        assert any("model listing failed" in w for w in entry.warnings)
        assert any(w.startswith("cloud-a:") for w in catalog.warnings)

    async def test_empty_listing_uses_configured_models(self, discovery, clients):
        """测试提供商未报告模型时使用配置的模型"""
        clients["local"].models = []

        catalog = await discovery.refresh()

        entry = catalog.provider("local")
        assert entry.models == ("chat-model",)
        assert entry.warnings == ("provider reported no models; using configured models",)

    async def test_disabled_providers_are_skipped(self, monitor, clock):
        """测试跳过禁用的提供商"""
        enabled = make_provider("on")
        disabled = make_provider("off", enabled=False)
        monitor.register(enabled, FakeClient(enabled))
        service = ModelDiscoveryService(monitor, [enabled, disabled], auto_discovery=False, clock=clock)

        catalog = await service.refresh()

        assert [e.provider_id for e in catalog.providers] == ["on"]

    async def test_stats(self, discovery, clients):
        """测试目录统计"""
        clients["cloud-b"].error = ServiceUnreachable("https://cloud-b.example.com")
        await discovery.refresh()

        stats = discovery.stats()

        assert stats.total_providers == 3
        assert stats.healthy_providers == 2
        assert stats.unhealthy_providers == 1
        assert stats.total_models == 3
        assert stats.available_models == 2
        assert stats.models_per_provider["cloud-b"] == 1


@pytest.mark.asyncio
class TestDiscoveryCeiling:
    """发现轮次总时限测试"""

    async def test_hanging_providers_bounded_by_ceiling(self, clock):
        """测试挂起的提供商不会拖住整轮发现"""
        monitor = HealthMonitor(probe_timeout=5.0, outer_timeout=5.0, clock=clock)
        providers = [make_provider(f"hung-{i}") for i in range(8)]
        for provider in providers:
            monitor.register(provider, HangingClient(provider))
        service = ModelDiscoveryService(
            monitor, providers, ceiling=0.2, max_concurrency=2, auto_discovery=False, clock=clock
        )

        start = time.monotonic()
        catalog = await service.refresh()
        elapsed = time.monotonic() - start

        assert elapsed < 1.0
        assert len(catalog.providers) == 8
        for entry in catalog.providers:
            assert entry.status == HealthStatus.UNHEALTHY
            assert "probe abandoned at discovery ceiling" in entry.warnings
            last = monitor.health(entry.provider_id).history[-1]
            assert last.error_kind == ProbeErrorKind.PROBE_TIMEOUT
        assert not any(m.available for m in catalog.models)

    async def test_slow_listing_after_probe_keeps_health(self, clock):
        """测试探测完成但列出模型超时时保留健康状态"""
        monitor = HealthMonitor(probe_timeout=5.0, outer_timeout=5.0, clock=clock)
        provider = make_provider("slow-list", models=("fallback-model",))
        monitor.register(provider, SlowListingClient(provider))
        service = ModelDiscoveryService(monitor, [provider], ceiling=0.2, auto_discovery=False, clock=clock)

        catalog = await service.refresh()

        entry = catalog.provider("slow-list")
        assert entry.status == HealthStatus.HEALTHY
        assert entry.models == ("fallback-model",)
        assert any("abandoned" in w for w in entry.warnings)
        assert service.is_model_available("fallback-model") is True


@pytest.mark.asyncio
class TestAutoDiscovery:
    """本地服务自动发现测试"""

    async def test_skipped_when_local_provider_configured(self, monitor, providers, clients, clock):
        """测试已配置本地提供商时不做自动发现"""
        service = ModelDiscoveryService(monitor, providers, auto_discovery=True, clock=clock)

        assert service.auto_candidates() == []

    async def test_detects_responding_servers(self, monitor, clock, monkeypatch):
        """测试只保留应答的本地服务，同一端口只保留一个"""
        monkeypatch.setitem(ProviderFactory._providers, "ollama", FakeOllama)
        cloud = make_provider("cloud")
        monitor.register(cloud, FakeClient(cloud))
        service = ModelDiscoveryService(
            monitor,
            [cloud],
            auto_discovery=True,
            auto_hosts=["localhost", "127.0.0.1"],
            auto_ports=[11434, 11435],
            clock=clock
        )

        assert len(service.auto_candidates()) == 4

        catalog = await service.refresh()

        assert [e.provider_id for e in catalog.providers] == ["cloud", "ollama-auto-localhost-11434"]
        detected = catalog.provider("ollama-auto-localhost-11434")
        assert detected.auto_discovered is True
        assert detected.kind == ProviderKind.LOCAL
        assert detected.models == ("llama3:8b",)
        assert [p.id for p in service.providers] == ["cloud", "ollama-auto-localhost-11434"]
        assert {p.id for p in monitor.providers} == {"cloud", "ollama-auto-localhost-11434"}

    async def test_detected_server_keeps_health_history(self, monitor, clock, monkeypatch):
        """测试已发现的本地服务断开后仍被列出，并逐级恢复"""
        monkeypatch.setitem(ProviderFactory._providers, "ollama", FakeOllama)
        service = ModelDiscoveryService(
            monitor,
            [],
            auto_discovery=True,
            auto_hosts=["localhost", "127.0.0.1"],
            auto_ports=[11434],
            clock=clock
        )
        provider_id = "ollama-auto-localhost-11434"

        await service.refresh()
        client = monitor.client(provider_id)
        assert [p.id for p in service.auto_candidates()] == [provider_id]

        client.error = ServiceUnreachable(client.base_url)
        statuses = []
        for _ in range(6):
            catalog = await service.refresh()
            statuses.append(catalog.provider(provider_id).status)

        assert statuses == [HealthStatus.HEALTHY] * 2 + [HealthStatus.DEGRADED] * 3 + [HealthStatus.UNHEALTHY]
        assert monitor.health(provider_id) is not None
        assert monitor.client(provider_id) is client
        assert client.closed is False
        assert [p.id for p in service.providers] == [provider_id]
        assert not service.is_model_available("llama3:8b")

        client.error = None
        statuses = []
        for _ in range(4):
            catalog = await service.refresh()
            statuses.append(catalog.provider(provider_id).status)

        assert statuses == [
            HealthStatus.UNHEALTHY,
            HealthStatus.DEGRADED,
            HealthStatus.DEGRADED,
            HealthStatus.HEALTHY,
        ]
        assert service.is_model_available("llama3:8b")

    async def test_undetected_candidates_are_dropped(self, monitor, clock, monkeypatch):
        """测试从未应答的候选端点被移除"""
        monkeypatch.setitem(ProviderFactory._providers, "ollama", FakeOllama)
        service = ModelDiscoveryService(
            monitor, [], auto_discovery=True, auto_hosts=["localhost"], auto_ports=[11435], clock=clock
        )

        catalog = await service.refresh()

        assert catalog.providers == ()
        assert monitor.health("ollama-auto-localhost-11435") is None
        assert [p.id for p in service.auto_candidates()] == ["ollama-auto-localhost-11435"]


@pytest.mark.asyncio
class TestReaders:
    """目录读取测试"""

    async def test_empty_before_first_round(self, discovery):
        """测试首轮发现之前目录为空"""
        assert discovery.catalog.models == ()
        assert discovery.list_models() == []
        assert discovery.provider_models("cloud-a") == ("chat-model",)

    async def test_get_model(self, discovery, clients):
        """测试按名称获取模型"""
        clients["local"].error = ServiceUnreachable("http://localhost:11434")
        await discovery.refresh()

        model = discovery.get_model("chat-model")

        assert model.provider_id == "cloud-b"
        assert model.available is True

        with pytest.raises(ModelNotFound):
            discovery.get_model("missing-model")

    async def test_list_models_filters_unavailable(self, discovery, clients):
        """测试默认只列出可用模型"""
        clients["cloud-a"].models = ["only-on-a"]
        clients["cloud-a"].error = ServiceUnreachable("https://cloud-a.example.com")
        await discovery.refresh()

        names = {m.name for m in discovery.list_models()}
        all_names = {m.name for m in discovery.list_models(available_only=False)}

        assert "chat-model" in names
        assert "chat-model" in all_names
        assert not discovery.is_model_available("only-on-a")

    async def test_publishes_catalog_to_cache(self, monitor, providers, clients, clock):
        """测试将目录发布到缓存"""
        cache = RecordingCache()
        service = ModelDiscoveryService(
            monitor, providers, cache=cache, auto_discovery=False, clock=clock
        )

        await service.refresh()
        await asyncio.sleep(0.05)

        assert len(cache.values[model_list_cache_key()]) == 3
        assert cache.values[health_cache_key("local")] == {"status": "healthy", "models": 1}
        await service.close()


class TestDiscoveryOptions:
    """发现服务参数测试"""

    def test_zero_concurrency_rejected(self, monitor):
        """测试并发上限必须至少为 1"""
        with pytest.raises(ConfigurationInvalid):
            ModelDiscoveryService(monitor, [], max_concurrency=0)
