"""通义千问（DashScope）Provider 适配器。

本模块负责：

1. 接收用户消息与统一的 RequestOptions。
2. 将其转换为 DashScope text-generation 接口的请求格式
   （消息位于 input.messages，采样参数位于 parameters）。
3. 调用 HTTP 接口，非流式与流式分别通过 X-DashScope-SSE 头切换。
4. 将响应 JSON 解析为统一的 ChatResult。

DashScope 的流式输出开启 incremental_output 后，每个事件的
output.choices[0].message.content 即为本次增量。
"""

import threading
from typing import Any, Callable, Dict, Iterator, List, Optional

from chat_core.config.settings import settings
from chat_core.domain.exceptions import ConfigValidationError, ResponseFormatError
from chat_core.domain.models import ChatResult, ChatUsage, ModelInfo, RequestOptions
from chat_core.providers.base import format_messages
from chat_core.providers.http_utils import bearer_headers, deliver, iter_sse, post_json
from chat_core.providers.rate_limiter import RateLimiter
from chat_core.providers.registry import QWEN_MODELS, ProviderConfig
from chat_core.providers.sse import StreamDecoder


class QwenClient:
    """通义千问提供方客户端实现。"""

    name = "qwen"

    def __init__(self, config: ProviderConfig, cfg=settings, rate_limiter: Optional[RateLimiter] = None):
        if not config.api_key:
            # 构造期校验，避免生成一个无法使用的实例
            raise ConfigValidationError("Qwen API key is required", provider=self.name)
        self.config = config
        self.rate_limiter = rate_limiter or RateLimiter.from_config(config.rate_limit)
        self._settings = cfg

    def is_configured(self) -> bool:
        return bool(self.config.api_key and self.config.base_url)

    def get_models(self) -> List[ModelInfo]:
        return list(QWEN_MODELS)

    def build_payload(self, message: str, options: RequestOptions) -> dict:
        return {
            "model": options.model or self.config.default_model,
            "input": {
                "messages": format_messages(message, options),
            },
            "parameters": {
                "temperature": options.temperature,
                "max_tokens": options.max_tokens,
                "result_format": "message",
                "incremental_output": options.stream,
            },
        }

    # ---- 非流式 ----

    def send(self, payload: dict) -> ChatResult:
        self.rate_limiter.admit()
        data = post_json(
            self.name,
            self.config.base_url,
            bearer_headers(self.config.api_key, {"X-DashScope-SSE": "disable"}),
            payload,
            self._settings.http_timeout,
        )
        return self.parse_response(data)

    # ---- 流式 ----

    def iter_stream(self, payload: dict) -> Iterator[str]:
        self.rate_limiter.admit()
        headers = bearer_headers(
            self.config.api_key,
            {"Accept": "text/event-stream", "X-DashScope-SSE": "enable"},
        )
        decoder = StreamDecoder(self.extract_delta, source=self.name)
        yield from iter_sse(self.name, self.config.base_url, headers, payload, self._settings.http_timeout, decoder)

    def stream(
        self,
        payload: dict,
        on_delta: Callable[[str], None],
        cancel: Optional[threading.Event] = None,
    ) -> None:
        deliver(self.iter_stream(payload), on_delta, cancel)

    # ---- 解析 ----

    def parse_response(self, data: Dict[str, Any]) -> ChatResult:
        """将 DashScope 的原始响应 JSON 解析为统一的 ChatResult。"""

        try:
            choice = data["output"]["choices"][0]
            content = choice["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise ResponseFormatError("Invalid response format from Qwen API", provider=self.name) from e
        if not isinstance(content, str):
            raise ResponseFormatError("Invalid response format from Qwen API", provider=self.name)
        return ChatResult(
            content=content,
            finish_reason=choice.get("finish_reason"),
            usage=self._parse_usage(data.get("usage")),
            provider=self.name,
            model=data.get("model") or self.config.default_model,
            raw=data,
        )

    @staticmethod
    def extract_delta(data: Dict[str, Any]) -> Optional[str]:
        choices = (data.get("output") or {}).get("choices") or []
        if not choices:
            return None
        return (choices[0].get("message") or {}).get("content")

    @staticmethod
    def _parse_usage(raw: Any) -> Optional[ChatUsage]:
        # DashScope 使用 input_tokens/output_tokens 命名
        if not isinstance(raw, dict) or not raw:
            return None
        prompt = raw.get("input_tokens", raw.get("prompt_tokens", 0))
        completion = raw.get("output_tokens", raw.get("completion_tokens", 0))
        return ChatUsage(
            prompt_tokens=prompt,
            completion_tokens=completion,
            total_tokens=raw.get("total_tokens", prompt + completion),
        )
