"""
Pytest 配置和共享 fixtures
"""
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine

from llm_failover.core.database import init_db, session_factory
from llm_failover.providers.base import ProviderKind
from llm_failover.services.budget import BudgetTracker
from llm_failover.services.discovery import ModelDiscoveryService
from llm_failover.services.health_check import HealthMonitor
from llm_failover.services.patterns import UsagePatternLearner
from llm_failover.services.performance import PerformanceTracker
from llm_failover.services.router import RoutingService
from llm_failover.services.selector import FallbackStrategy, ProviderSelector
from llm_failover.services.usage_store import UsageStore

from fakes import FakeClient, FakeClock, make_provider


@pytest.fixture
def clock():
    """可控时钟"""
    return FakeClock()


@pytest.fixture
def monitor(clock):
    """阈值 N=3, M=2 的健康监控器"""
    return HealthMonitor(
        failure_threshold=3,
        success_threshold=2,
        probe_timeout=0.05,
        outer_timeout=0.2,
        history_size=20,
        check_interval=60,
        clock=clock
    )


@pytest.fixture
def providers():
    """一个本地提供商和两个云提供商"""
    return [
        make_provider("local", ProviderKind.LOCAL),
        make_provider("cloud-b"),
        make_provider("cloud-a"),
    ]


@pytest.fixture
def clients(monitor, providers):
    """为每个提供商注册假客户端"""
    registered = {}
    for provider in providers:
        client = FakeClient(provider)
        monitor.register(provider, client)
        registered[provider.id] = client
    return registered


@pytest.fixture
def discovery(monitor, providers, clients, clock):
    """不做自动探测的发现服务"""
    return ModelDiscoveryService(
        monitor,
        providers,
        ttl=300,
        ceiling=1.0,
        max_concurrency=4,
        auto_discovery=False,
        clock=clock
    )


@pytest.fixture
def tracker(clock):
    return PerformanceTracker(alpha=0.2, trend_window=3, trend_multiplier=2.0, trend_min_baseline=5, clock=clock)


@pytest.fixture
def budget(clock):
    return BudgetTracker(daily_limit=None, clock=clock)


@pytest.fixture
def make_selector(discovery, monitor, tracker, budget, clock):
    """按需创建选择器"""
    def _make(**overrides):
        options = dict(
            patterns=UsagePatternLearner(enabled=False, clock=clock),
            budget=budget,
            strategy=FallbackStrategy.GRACEFUL,
            cost_ranking=["cloud-a", "cloud-b"],
            prefer_local=True,
            auto_return=True,
            recovery_delay=0.0,
            preemptive=True,
            clock=clock,
            random_fn=lambda: 0.5,
        )
        options.update(overrides)
        return ProviderSelector(discovery, monitor, tracker, **options)
    return _make


@pytest.fixture
def routing(providers, monitor, discovery, tracker, budget, make_selector, clock):
    """组装好的路由服务"""
    selector = make_selector()
    return RoutingService(
        providers,
        monitor=monitor,
        discovery=discovery,
        tracker=tracker,
        patterns=selector.patterns,
        budget=budget,
        selector=selector,
        clock=clock
    )


@pytest_asyncio.fixture
async def usage_store(tmp_path):
    """基于临时 SQLite 文件的用量存储"""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'usage.db'}")
    await init_db(engine)
    yield UsageStore(session_factory(engine))
    await engine.dispose()


@pytest_asyncio.fixture
async def test_client(routing):
    """创建测试客户端"""
    from llm_failover.main import create_app

    app = create_app(routing)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
