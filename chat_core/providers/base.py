"""Provider 抽象接口。

上层 AIService 不直接依赖具体厂商的 HTTP 细节，而是依赖此协议：

- 每个厂商实现一个 ProviderClient（如 QwenClient、OpenAIClient）。
- 负责：将消息与 RequestOptions 转成具体 API 请求体，并把响应 JSON 解析为 ChatResult。

新增厂商只需实现该协议并在 AIService 中注册工厂，无需继承任何基类。
"""

import threading
from typing import Callable, Iterator, List, Optional, Protocol

from chat_core.domain.models import ChatMessage, ChatResult, ModelInfo, RequestOptions
from chat_core.providers.rate_limiter import RateLimiter
from chat_core.providers.registry import ProviderConfig


class ProviderClient(Protocol):
    """LLM Provider 客户端协议。

    实现者需要提供：
    - name / config / rate_limiter: 名称、不可变配置与该实例共享的限流器。
    - build_payload: 系统提示词 -> 历史消息 -> 当前用户消息，依次写入请求体。
    - send: 执行一次非流式调用，返回统一的 ChatResult。
    - stream: 执行一次流式调用，每个增量回调一次 on_delta。
    """

    name: str
    config: ProviderConfig
    rate_limiter: RateLimiter

    def is_configured(self) -> bool:
        ...

    def build_payload(self, message: str, options: RequestOptions) -> dict:
        ...

    def parse_response(self, data: dict) -> ChatResult:
        ...

    def send(self, payload: dict) -> ChatResult:
        ...

    def iter_stream(self, payload: dict) -> Iterator[str]:
        ...

    def stream(
        self,
        payload: dict,
        on_delta: Callable[[str], None],
        cancel: Optional[threading.Event] = None,
    ) -> None:
        ...

    def get_models(self) -> List[ModelInfo]:
        ...


ProviderFactory = Callable[[ProviderConfig], ProviderClient]


def format_messages(message: str, options: RequestOptions) -> List[dict]:
    """按 系统提示词 -> 历史消息 -> 当前用户消息 的顺序组装消息列表。"""

    messages: List[dict] = []
    if options.system_prompt:
        messages.append({"role": "system", "content": options.system_prompt})
    for m in options.conversation_history:
        if isinstance(m, ChatMessage):
            messages.append(m.to_payload())
        else:
            messages.append({"role": m["role"], "content": m["content"]})
    messages.append({"role": "user", "content": message})
    return messages
