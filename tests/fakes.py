"""
测试用的假提供商客户端和时钟
"""
import asyncio
from typing import List, Optional, Sequence

from llm_failover.providers.base import BaseProvider, ModelInfo, ProbeInfo, Provider, ProviderKind


class FakeClock:
    """可手动推进的时钟"""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeClient(BaseProvider):
    """可配置成功/失败的客户端"""

    provider_type = "fake"

    def __init__(
        self,
        provider: Provider,
        models: Optional[Sequence[str]] = None,
        error: Optional[BaseException] = None,
        list_error: Optional[BaseException] = None,
        delay: float = 0.0
    ):
        super().__init__(provider)
        self.models = list(provider.models if models is None else models)
        self.error = error
        self.list_error = list_error
        self.delay = delay
        self.probe_calls = 0
        self.list_calls = 0
        self.closed = False

    async def probe(self, timeout: float) -> ProbeInfo:
        self.probe_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return ProbeInfo(models_available=len(self.models))

    async def list_models(self, timeout: float) -> List[ModelInfo]:
        self.list_calls += 1
        if self.list_error is not None:
            raise self.list_error
        return [ModelInfo(name=name) for name in self.models]

    async def close(self) -> None:
        self.closed = True


class HangingClient(FakeClient):
    """永远不返回的客户端"""

    async def probe(self, timeout: float) -> ProbeInfo:
        self.probe_calls += 1
        await asyncio.Event().wait()
        return ProbeInfo()


class StubbornClient(FakeClient):
    """忽略一次取消请求并继续运行的客户端"""

    def __init__(self, provider: Provider, linger: float = 0.5, **kwargs):
        super().__init__(provider, **kwargs)
        self.linger = linger
        self.finished = False

    async def probe(self, timeout: float) -> ProbeInfo:
        self.probe_calls += 1
        try:
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            await asyncio.sleep(self.linger)
        self.finished = True
        return ProbeInfo()


def make_provider(
    provider_id: str,
    kind: ProviderKind = ProviderKind.CLOUD,
    models: Sequence[str] = ("chat-model",),
    **kwargs
) -> Provider:
    """创建测试提供商"""
    endpoint = kwargs.pop(
        "endpoint",
        "http://localhost:11434" if kind == ProviderKind.LOCAL else f"https://{provider_id}.example.com"
    )
    provider_type = kwargs.pop("provider_type", "ollama" if kind == ProviderKind.LOCAL else "openai")
    return Provider(
        id=provider_id,
        kind=kind,
        endpoint=endpoint,
        provider_type=provider_type,
        models=tuple(models),
        **kwargs
    )
