"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在调用方做统一捕获与用户提示。

除流式响应中单条事件解析失败（仅记录日志并跳过）外，
其余错误均原样向 send_message / stream_message 的调用方传播，本层不做自动重试。
"""

from typing import Optional


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "TRANSPORT_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 provider、status_code 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class ConfigValidationError(BusinessError):
    """Provider 构造时配置校验失败（如缺少 API 密钥）。"""

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(code="CONFIG_INVALID", message=message, provider=provider)
        self.provider = provider


class UnknownProviderError(BusinessError):
    """请求的 Provider 名称未注册。"""

    def __init__(self, name: str):
        super().__init__(code="UNKNOWN_PROVIDER", message=f"AI provider '{name}' not found", provider=name)
        self.provider = name


class UnknownAssistantError(BusinessError):
    """请求的助手人格不在目录中。"""

    def __init__(self, assistant_id: str):
        super().__init__(
            code="UNKNOWN_ASSISTANT",
            message=f"AI assistant '{assistant_id}' not found",
            assistant_id=assistant_id,
        )
        self.assistant_id = assistant_id


class NoProviderConfiguredError(BusinessError):
    """尚未选择任何 Provider。"""

    def __init__(self):
        super().__init__(code="NO_PROVIDER", message="No AI provider configured")


class ProviderNotConfiguredError(BusinessError):
    """已选择 Provider，但缺少密钥或地址。"""

    def __init__(self, provider: str):
        super().__init__(
            code="PROVIDER_NOT_CONFIGURED",
            message=f"AI provider '{provider}' not properly configured",
            provider=provider,
        )
        self.provider = provider


class NotFoundError(BusinessError):
    """会话 ID 不存在。"""

    def __init__(self, conversation_id: str):
        super().__init__(
            code="CONVERSATION_NOT_FOUND",
            message=f"Conversation {conversation_id} not found",
            http_status=404,
            conversation_id=conversation_id,
        )
        self.conversation_id = conversation_id


class TransportError(BusinessError):
    """HTTP 非 2xx 响应，或连接层失败（此时 status_code 为 None）。"""

    def __init__(self, message: str, provider: str, status_code: Optional[int] = None):
        super().__init__(
            code="TRANSPORT_ERROR",
            message=message,
            http_status=502,
            provider=provider,
            status_code=status_code,
        )
        self.provider = provider
        self.status_code = status_code


class ResponseFormatError(BusinessError):
    """HTTP 成功，但响应体无法解析或结构不符合预期。"""

    def __init__(self, message: str, provider: str):
        super().__init__(code="RESPONSE_FORMAT_ERROR", message=message, http_status=502, provider=provider)
        self.provider = provider


class StreamInterruptedError(BusinessError):
    """流式连接在已输出部分内容后中断。

    已经通过 on_delta 交付给调用方的内容不会被撤回，delivered 记录已交付的增量条数。
    """

    def __init__(self, message: str, provider: str, delivered: int):
        super().__init__(
            code="STREAM_INTERRUPTED",
            message=message,
            http_status=502,
            provider=provider,
            delivered=delivered,
        )
        self.provider = provider
        self.delivered = delivered
