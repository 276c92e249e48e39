"""Provider 默认配置与模型目录。

ProviderConfig 在 Provider 实例构造后不可变。调用方传入的配置只需包含
想要覆盖的字段，其余字段依次取自 settings 与本模块中的默认值。"""

from dataclasses import asdict, dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional

from chat_core.config.settings import settings
from chat_core.domain.models import ModelInfo


@dataclass(frozen=True)
class RateLimitConfig:
    """滑动窗口限流配置：window_ms 内最多 requests 次请求。"""

    requests: int = 60
    window_ms: int = 60000


@dataclass(frozen=True)
class ProviderConfig:
    """某个 Provider 的整体配置。"""

    name: str
    base_url: str
    default_model: str
    api_key: Optional[str] = None
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


QWEN_DEFAULTS = ProviderConfig(
    name="qwen",
    base_url="https://dashscope.aliyuncs.com/api/v1/services/aigc/text-generation/generation",
    default_model="qwen-plus",
    rate_limit=RateLimitConfig(requests=60, window_ms=60000),
)

OPENAI_DEFAULTS = ProviderConfig(
    name="openai",
    base_url="https://api.openai.com/v1/chat/completions",
    default_model="gpt-3.5-turbo",
    rate_limit=RateLimitConfig(requests=20, window_ms=60000),
)

QWEN_MODELS: List[ModelInfo] = [
    ModelInfo(id="qwen-plus", name="Qwen Plus", description="通义千问Plus模型"),
    ModelInfo(id="qwen-turbo", name="Qwen Turbo", description="通义千问Turbo模型"),
    ModelInfo(id="qwen-max", name="Qwen Max", description="通义千问Max模型"),
]

OPENAI_MODELS: List[ModelInfo] = [
    ModelInfo(id="gpt-3.5-turbo", name="GPT-3.5 Turbo", description="Fast and efficient model"),
    ModelInfo(id="gpt-4", name="GPT-4", description="Most capable model"),
    ModelInfo(id="gpt-4-turbo", name="GPT-4 Turbo", description="Latest GPT-4 model"),
]


PROVIDER_DEFAULTS: Mapping[str, ProviderConfig] = {
    "qwen": QWEN_DEFAULTS,
    "openai": OPENAI_DEFAULTS,
}

# 兼容旧版导出数据中的驼峰字段名
_FIELD_ALIASES = {
    "baseUrl": "base_url",
    "apiKey": "api_key",
    "defaultModel": "default_model",
    "rateLimit": "rate_limit",
}


def _rate_limit_from(raw: Any, fallback: RateLimitConfig) -> RateLimitConfig:
    if isinstance(raw, RateLimitConfig):
        return raw
    if not isinstance(raw, Mapping):
        return fallback
    requests = raw.get("requests", raw.get("requests_per_window", fallback.requests))
    window_ms = raw.get("window_ms", raw.get("window", fallback.window_ms))
    return RateLimitConfig(requests=int(requests), window_ms=int(window_ms))


def resolve_config(name: str, overrides: Optional[Mapping[str, Any]] = None, cfg=settings) -> ProviderConfig:
    """合并默认值、settings 与调用方覆盖项，得到最终的 ProviderConfig。"""

    key = name.lower()
    base = PROVIDER_DEFAULTS.get(key) or ProviderConfig(name=key, base_url="", default_model="")
    base = replace(
        base,
        base_url=getattr(cfg, f"{key}_base_url", None) or base.base_url,
        api_key=getattr(cfg, f"{key}_api_key", None),
    )
    changes: Dict[str, Any] = {}
    for raw_key, value in (overrides or {}).items():
        field_name = _FIELD_ALIASES.get(raw_key, raw_key)
        if field_name == "rate_limit":
            changes["rate_limit"] = _rate_limit_from(value, base.rate_limit)
        elif field_name in ("base_url", "api_key", "default_model") and value is not None:
            changes[field_name] = value
    return replace(base, **changes)
