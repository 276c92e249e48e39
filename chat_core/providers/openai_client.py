"""OpenAI Provider 适配器。

接口使用 chat/completions 端点：
- URL: {base_url}（默认 https://api.openai.com/v1/chat/completions）
- 认证: Authorization: Bearer <api_key>

本实现只依赖公共字段：model/messages/temperature/max_tokens/stream。
"""

import threading
from typing import Any, Callable, Dict, Iterator, List, Optional

from chat_core.config.settings import settings
from chat_core.domain.exceptions import ConfigValidationError, ResponseFormatError
from chat_core.domain.models import ChatResult, ChatUsage, ModelInfo, RequestOptions
from chat_core.providers.base import format_messages
from chat_core.providers.http_utils import bearer_headers, deliver, iter_sse, post_json
from chat_core.providers.rate_limiter import RateLimiter
from chat_core.providers.registry import OPENAI_MODELS, ProviderConfig
from chat_core.providers.sse import StreamDecoder


class OpenAIClient:
    """OpenAI Provider 客户端实现。"""

    name = "openai"

    def __init__(self, config: ProviderConfig, cfg=settings, rate_limiter: Optional[RateLimiter] = None):
        if not config.api_key:
            raise ConfigValidationError("OpenAI API key is required", provider=self.name)
        self.config = config
        self.rate_limiter = rate_limiter or RateLimiter.from_config(config.rate_limit)
        self._settings = cfg

    def is_configured(self) -> bool:
        return bool(self.config.api_key and self.config.base_url)

    def get_models(self) -> List[ModelInfo]:
        return list(OPENAI_MODELS)

    def build_payload(self, message: str, options: RequestOptions) -> dict:
        return {
            "model": options.model or self.config.default_model,
            "messages": format_messages(message, options),
            "temperature": options.temperature,
            "max_tokens": options.max_tokens,
            "stream": options.stream,
        }

    # ---- 非流式 ----

    def send(self, payload: dict) -> ChatResult:
        self.rate_limiter.admit()
        data = post_json(
            self.name,
            self.config.base_url,
            bearer_headers(self.config.api_key),
            payload,
            self._settings.http_timeout,
        )
        return self.parse_response(data)

    # ---- 流式 ----

    def iter_stream(self, payload: dict) -> Iterator[str]:
        self.rate_limiter.admit()
        decoder = StreamDecoder(self.extract_delta, source=self.name)
        yield from iter_sse(
            self.name,
            self.config.base_url,
            bearer_headers(self.config.api_key),
            {**payload, "stream": True},
            self._settings.http_timeout,
            decoder,
        )

    def stream(
        self,
        payload: dict,
        on_delta: Callable[[str], None],
        cancel: Optional[threading.Event] = None,
    ) -> None:
        deliver(self.iter_stream(payload), on_delta, cancel)

    # ---- 解析 ----

    def parse_response(self, data: Dict[str, Any]) -> ChatResult:
        try:
            choice = data["choices"][0]
            content = choice["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise ResponseFormatError("Invalid response format from OpenAI API", provider=self.name) from e
        if content is None:
            content = ""
        if not isinstance(content, str):
            raise ResponseFormatError("Invalid response format from OpenAI API", provider=self.name)
        usage_raw = data.get("usage")
        usage = None
        if isinstance(usage_raw, dict) and usage_raw:
            usage = ChatUsage(
                prompt_tokens=usage_raw.get("prompt_tokens", 0),
                completion_tokens=usage_raw.get("completion_tokens", 0),
                total_tokens=usage_raw.get("total_tokens", 0),
            )
        return ChatResult(
            content=content,
            finish_reason=choice.get("finish_reason"),
            usage=usage,
            provider=self.name,
            model=data.get("model") or self.config.default_model,
            raw=data,
        )

    @staticmethod
    def extract_delta(data: Dict[str, Any]) -> Optional[str]:
        choices = data.get("choices") or []
        if not choices:
            return None
        return (choices[0].get("delta") or {}).get("content")
