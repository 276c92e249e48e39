"""LLM Provider 集成层。

该包下的模块负责：
- 定义 Provider 抽象接口 (base)。
- 维护 Provider 默认配置与模型目录 (registry)。
- 限流 (rate_limiter) 与流式事件解析 (sse)。
- 提供各厂商的具体实现 (如 qwen_client、openai_client)。
"""

from typing import Any, Mapping, Optional

from chat_core.config.settings import settings
from chat_core.domain.exceptions import UnknownProviderError
from chat_core.providers.base import ProviderClient, ProviderFactory
from chat_core.providers.openai_client import OpenAIClient
from chat_core.providers.qwen_client import QwenClient
from chat_core.providers.registry import resolve_config


PROVIDER_FACTORIES: Mapping[str, ProviderFactory] = {
    "qwen": QwenClient,
    "openai": OpenAIClient,
}


def create_provider(name: Optional[str] = None, config: Optional[Mapping[str, Any]] = None) -> ProviderClient:
    """根据名称创建 Provider 实例，默认取配置中的 provider。"""

    provider_name = (name or getattr(settings, "default_provider", "qwen")).lower()
    factory = PROVIDER_FACTORIES.get(provider_name)
    if factory is None:
        raise UnknownProviderError(provider_name)
    return factory(resolve_config(provider_name, config, cfg=settings))
