"""
数据模型与配置测试
"""
from datetime import date, datetime, timezone

import pytest
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from llm_failover.core.config import ProviderDefinition, Settings
from llm_failover.core.errors import ConfigurationInvalid
from llm_failover.models.usage import ProviderUsage
from llm_failover.providers.base import Provider, ProviderKind
from llm_failover.services.performance import RequestOutcome

AT = datetime(2025, 3, 1, 12, 30, tzinfo=timezone.utc)


@pytest.mark.asyncio
class TestProviderUsageModel:
    """ProviderUsage 模型测试"""

    async def test_record_creates_daily_row(self, usage_store):
        """测试首次记录创建当天的行"""
        outcome = RequestOutcome(success=True, latency_ms=80.0, prompt_tokens=120, completion_tokens=30)

        assert await usage_store.record("cloud-a", outcome, 0.01, at=AT) is True

        async with usage_store.sessionmaker() as session:
            rows = (await session.execute(select(ProviderUsage))).scalars().all()

        assert len(rows) == 1
        row = rows[0]
        assert row.provider_id == "cloud-a"
        assert row.date == date(2025, 3, 1)
        assert row.total_requests == 1
        assert row.prompt_tokens == 120
        assert row.completion_tokens == 30
        assert row.cost_usd == pytest.approx(0.01)
        assert row.last_used_at == AT.replace(tzinfo=None)

    async def test_rows_split_by_day(self, usage_store):
        """测试不同日期分开统计"""
        outcome = RequestOutcome(success=True, latency_ms=10.0)
        await usage_store.record("cloud-a", outcome, 0.5, at=AT)
        await usage_store.record("cloud-a", outcome, 0.25, at=AT.replace(day=2))
        await usage_store.record("cloud-b", outcome, 0.5, at=AT)

        total, by_provider = await usage_store.spend_for_day(date(2025, 3, 1))

        assert total == pytest.approx(1.0)
        assert by_provider == {"cloud-a": 0.5, "cloud-b": 0.5}
        assert list(await usage_store.usage_for_day(date(2025, 3, 1))) == ["cloud-a", "cloud-b"]

    async def test_empty_day(self, usage_store):
        """测试没有记录的日期"""
        assert await usage_store.spend_for_day(date(2025, 1, 1)) == (0.0, {})
        assert await usage_store.usage_for_day(date(2025, 1, 1)) == {}

    async def test_provider_date_unique(self, usage_store):
        """测试同一提供商同一天只有一行"""
        async with usage_store.sessionmaker() as session:
            session.add(ProviderUsage(provider_id="p", date=date(2025, 3, 1)))
            session.add(ProviderUsage(provider_id="p", date=date(2025, 3, 1)))
            with pytest.raises(IntegrityError):
                await session.commit()


class TestProviderDescriptor:
    """Provider 描述对象测试"""

    def test_endpoint_normalised(self):
        """测试去除末尾斜杠"""
        provider = Provider(id="p", kind=ProviderKind.CLOUD, endpoint="https://api.example.com/v1/")

        assert provider.endpoint == "https://api.example.com/v1"
        assert provider.is_cloud and not provider.is_local

    @pytest.mark.parametrize("endpoint", ["not a url", "ftp://example.com", "localhost:11434"])
    def test_malformed_endpoint(self, endpoint):
        """测试无效的端点"""
        with pytest.raises(ConfigurationInvalid):
            Provider(id="p", kind=ProviderKind.LOCAL, endpoint=endpoint)

    def test_empty_id(self):
        """测试空 ID"""
        with pytest.raises(ConfigurationInvalid):
            Provider(id="", kind=ProviderKind.LOCAL, endpoint="http://localhost:11434")

    def test_api_key_hidden_from_repr(self):
        """测试 repr 不包含密钥"""
        provider = Provider(
            id="p", kind=ProviderKind.CLOUD, endpoint="https://api.example.com",
            api_key="sk-secret", credential_required=True
        )

        assert "sk-secret" not in repr(provider)


class TestSettings:
    """配置测试"""

    def test_outer_timeout_must_cover_probe_timeout(self):
        """测试外层超时不能小于探测超时"""
        with pytest.raises(ValidationError):
            Settings(probe_timeout=5.0, probe_outer_timeout=1.0)

    def test_provider_definition_defaults(self):
        """测试提供商配置默认值"""
        definition = ProviderDefinition(id="p")

        assert definition.kind == "cloud"
        assert definition.provider_type == "openai"
        assert definition.enabled is True
        assert definition.models == []

    def test_cors_origins_list(self):
        """测试 CORS 来源解析"""
        assert Settings(cors_origins="*").cors_origins_list == ["*"]
        assert Settings(cors_origins="http://a.test, http://b.test").cors_origins_list == [
            "http://a.test", "http://b.test"
        ]
