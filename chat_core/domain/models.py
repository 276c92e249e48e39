"""统一的对话与结果数据模型。

本模块定义了在不同 Provider 之间共享的标准数据结构：

- ChatMessage: 一条对话消息（system/user/assistant）。
- RequestOptions: 构造 Provider 请求体时使用的参数。
- ChatResult: 从 Provider 解析后的统一响应结果。

所有 Provider 适配器（如 QwenClient）都必须只依赖这些模型，
并负责在各自的 API JSON 和这些模型之间做转换。
"""

from dataclasses import dataclass, field
from typing import Literal, Optional, Dict, Any, List


# LLM 消息角色类型（与 OpenAI / DashScope 的 role 字段对应）
Role = Literal["system", "user", "assistant"]


@dataclass
class ChatMessage:
    """一条对话消息，既可用于请求，也可用于历史记录。"""

    role: Role
    content: str

    def to_payload(self) -> Dict[str, Any]:
        return {"role": self.role, "content": self.content}


@dataclass
class RequestOptions:
    """一次请求的参数。

    - model: 为空时使用 Provider 的 default_model。
    - system_prompt: 助手人格的系统提示词，位于消息列表最前。
    - conversation_history: 按时间顺序排列的历史消息，位于系统提示词之后、当前消息之前。
    """

    model: Optional[str] = None
    temperature: float = 0.7
    max_tokens: int = 2000
    system_prompt: Optional[str] = None
    conversation_history: List[ChatMessage] = field(default_factory=list)
    stream: bool = False


@dataclass
class ChatUsage:
    """Provider 返回的 token 统计信息（统一格式）。"""

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


@dataclass
class ChatResult:
    """一次对话调用的最终结果。

    - content: 助手回复文本。
    - finish_reason: 结束原因（流式调用时可能为空）。
    - usage: 可选的 token 使用统计。
    - raw: 原始响应 JSON，用于调试或日志记录。
    """

    content: str
    finish_reason: Optional[str] = None
    usage: Optional[ChatUsage] = None
    provider: Optional[str] = None
    model: Optional[str] = None
    raw: Optional[dict] = None


@dataclass(frozen=True)
class ModelInfo:
    """Provider 可用模型的静态描述。"""

    id: str
    name: str
    description: str
