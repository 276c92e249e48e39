"""对外 AI 服务模块。

AIService 组合 Provider、限流、会话存储与助手人格：

1. 选择当前 Provider 与助手人格；
2. 把人格系统提示词与会话历史注入每次请求；
3. 调用 Provider 的 send / stream，并在成功后把用户消息与助手回复写入会话；
4. 在关键节点向事件总线发布通知（provider 切换、流式增量、错误等）。

事件总线与持久化存储都是可选的外部协作者，缺省时服务照常工作。
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, List, Mapping, Optional
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.conversation import Conversation, ConversationStore
from chat_core.domain.exceptions import (
    BusinessError,
    NoProviderConfiguredError,
    ProviderNotConfiguredError,
    UnknownAssistantError,
    UnknownProviderError,
)
from chat_core.domain.models import ChatResult, ModelInfo, RequestOptions
from chat_core.domain.storage import KeyValueStore
from chat_core.infrastructure.events import EventBus
from chat_core.infrastructure.logging.logger import logger
from chat_core.infrastructure.storage.json_store import JsonKeyValueStore
from chat_core.prompts import ASSISTANTS, DEFAULT_ASSISTANT, AssistantPersona
from chat_core.providers import PROVIDER_FACTORIES
from chat_core.providers.base import ProviderClient, ProviderFactory
from chat_core.providers.registry import resolve_config


CONFIG_KEY = "ai-config"
CONVERSATIONS_KEY = "ai-conversations"

EVENT_INITIALIZED = "ai:initialized"
EVENT_PROVIDER_CHANGED = "ai:provider-changed"
EVENT_ASSISTANT_CHANGED = "ai:assistant-changed"
EVENT_CONVERSATION_CREATED = "ai:conversation-created"
EVENT_CONVERSATION_DELETED = "ai:conversation-deleted"
EVENT_STREAM_CHUNK = "ai:stream-chunk"
EVENT_STREAM_COMPLETE = "ai:stream-complete"
EVENT_ERROR = "ai:error"


class AIService:
    def __init__(
        self,
        event_bus: Optional[EventBus] = None,
        store: Optional[KeyValueStore] = None,
        conversations: Optional[ConversationStore] = None,
        cfg=settings,
        assistants: Mapping[str, AssistantPersona] = ASSISTANTS,
    ):
        self._events = event_bus
        self._store = store
        self._settings = cfg
        self._assistants = assistants
        self._conversations = conversations or ConversationStore(
            max_history_length=cfg.max_history_length,
            compression_threshold=cfg.compression_threshold,
        )
        self._factories: Dict[str, ProviderFactory] = dict(PROVIDER_FACTORIES)
        self._provider: Optional[ProviderClient] = None
        self._provider_name: Optional[str] = None
        default_assistant = getattr(cfg, "default_assistant", DEFAULT_ASSISTANT)
        self._assistant_id = default_assistant if default_assistant in assistants else DEFAULT_ASSISTANT
        self._lock = threading.Lock()
        self._initialized = False

    # ---- 初始化与注册 ----

    def initialize(self) -> None:
        """恢复保存的 Provider、助手与会话；重复调用无副作用。"""
        if self._initialized:
            return
        self._load_configuration()
        self._load_conversations()
        self._initialized = True
        logger.info("AI Service initialized successfully")
        self._emit(EVENT_INITIALIZED)

    def register_provider(self, name: str, factory: ProviderFactory) -> None:
        self._factories[name.lower()] = factory

    # ---- Provider / 助手选择 ----

    def set_provider(self, name: str, config: Optional[Mapping[str, Any]] = None) -> None:
        """切换当前 Provider。

        新实例构造成功后才替换旧实例，构造失败（如缺少密钥）时旧 Provider 保持不变。
        """
        key = name.lower()
        factory = self._factories.get(key)
        if factory is None:
            raise UnknownProviderError(name)
        try:
            provider = factory(resolve_config(key, config, cfg=self._settings))
        except BusinessError as e:
            logger.error(f"Failed to set provider '{key}'", extra={"extra": {"provider": key, "error": e.message}})
            raise
        with self._lock:
            self._provider = provider
            self._provider_name = key
        self._save_configuration()
        logger.info(f"AI provider switched to: {key}", extra={"extra": {"provider": key}})
        self._emit(EVENT_PROVIDER_CHANGED, {"provider": key})

    def set_assistant(self, assistant_id: str) -> None:
        if assistant_id not in self._assistants:
            raise UnknownAssistantError(assistant_id)
        self._assistant_id = assistant_id
        self._save_configuration()
        self._emit(EVENT_ASSISTANT_CHANGED, {"assistant": assistant_id})

    # ---- 对话 ----

    def send_message(
        self,
        message: str,
        conversation_id: Optional[str] = None,
        stream: bool = False,
        on_delta: Optional[Callable[[str], None]] = None,
        cancel: Optional[threading.Event] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        system_prompt: Optional[str] = None,
    ) -> ChatResult:
        """发送一条消息并返回统一的 ChatResult。

        Args:
            message: 用户输入文本
            conversation_id: 会话ID（可选，提供时注入历史并在成功后记录本轮对话）
            stream: 是否使用流式调用
            on_delta: 流式调用时每个增量的回调
            cancel: 流式调用的取消信号，设置后不再回调 on_delta 并释放连接
            model / temperature / max_tokens / system_prompt: 覆盖默认请求参数

        Raises:
            NoProviderConfiguredError / ProviderNotConfiguredError: Provider 未就绪
            以及 Provider 抛出的 TransportError / ResponseFormatError / StreamInterruptedError
        """
        provider = self._provider
        if provider is None:
            raise NoProviderConfiguredError()
        if not provider.is_configured():
            raise ProviderNotConfiguredError(provider.name)

        start_time = time.time()
        log_ctx: Dict[str, Any] = {
            "trace_id": f"tr-{uuid4().hex}",
            "provider": provider.name,
            "assistant": self._assistant_id,
            "conversation_id": conversation_id,
            "stream": stream,
        }
        try:
            history = []
            if conversation_id:
                history = self._conversations.history(conversation_id, self._settings.history_limit)
            assistant = self._assistants[self._assistant_id]
            options = RequestOptions(
                model=model,
                temperature=self._settings.default_temperature if temperature is None else temperature,
                max_tokens=max_tokens or self._settings.default_max_tokens,
                system_prompt=assistant.system_prompt if system_prompt is None else system_prompt,
                conversation_history=history,
                stream=stream,
            )
            payload = provider.build_payload(message, options)
            if stream:
                result = self._stream(provider, message, payload, conversation_id, on_delta, cancel)
            else:
                result = provider.send(payload)
                if conversation_id:
                    self._record_turn(conversation_id, message, result.content)
        except Exception as e:
            self._log(logging.ERROR, "Chat failed", log_ctx, error=str(e))
            self._emit(EVENT_ERROR, {"error": e, "message": message, "conversation_id": conversation_id})
            raise
        self._log(
            logging.INFO,
            "Completed chat call",
            log_ctx,
            elapsed_seconds=round(time.time() - start_time, 2),
            finish_reason=result.finish_reason,
        )
        return result

    def stream_message(
        self,
        message: str,
        conversation_id: Optional[str] = None,
        on_delta: Optional[Callable[[str], None]] = None,
        cancel: Optional[threading.Event] = None,
        **options: Any,
    ) -> ChatResult:
        return self.send_message(
            message,
            conversation_id=conversation_id,
            stream=True,
            on_delta=on_delta,
            cancel=cancel,
            **options,
        )

    def _stream(
        self,
        provider: ProviderClient,
        message: str,
        payload: dict,
        conversation_id: Optional[str],
        on_delta: Optional[Callable[[str], None]],
        cancel: Optional[threading.Event],
    ) -> ChatResult:
        parts: List[str] = []

        def handle(chunk: str) -> None:
            parts.append(chunk)
            self._emit(
                EVENT_STREAM_CHUNK,
                {"chunk": chunk, "full_response": "".join(parts), "conversation_id": conversation_id},
            )
            if on_delta is not None:
                on_delta(chunk)

        provider.stream(payload, handle, cancel)
        full_response = "".join(parts)
        model = payload.get("model")
        if cancel is not None and cancel.is_set():
            # 调用方已放弃本次流式调用，不记录到会话
            logger.info("Stream cancelled", extra={"extra": {"provider": provider.name, "chars": len(full_response)}})
            return ChatResult(content=full_response, finish_reason="cancelled", provider=provider.name, model=model)
        if conversation_id:
            self._record_turn(conversation_id, message, full_response)
        self._emit(EVENT_STREAM_COMPLETE, {"full_response": full_response, "conversation_id": conversation_id})
        return ChatResult(content=full_response, provider=provider.name, model=model)

    def _record_turn(self, conversation_id: str, message: str, reply: str) -> None:
        self._conversations.append_turn(conversation_id, message, reply)
        self._save_conversations()

    # ---- 会话管理 ----

    def create_conversation(self, assistant_id: Optional[str] = None) -> str:
        actual_assistant_id = assistant_id or self._assistant_id
        if actual_assistant_id not in self._assistants:
            raise UnknownAssistantError(actual_assistant_id)
        conversation_id = self._conversations.create(actual_assistant_id)
        self._save_conversations()
        self._emit(EVENT_CONVERSATION_CREATED, {"conversation_id": conversation_id, "assistant_id": actual_assistant_id})
        return conversation_id

    def delete_conversation(self, conversation_id: str) -> bool:
        success = self._conversations.delete(conversation_id)
        if success:
            self._save_conversations()
            self._emit(EVENT_CONVERSATION_DELETED, {"conversation_id": conversation_id})
        return success

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        return self._conversations.get(conversation_id)

    def get_conversations(self) -> List[Conversation]:
        return self._conversations.list()

    # ---- 查询 ----

    def get_assistants(self) -> List[AssistantPersona]:
        return list(self._assistants.values())

    def get_current_assistant(self) -> AssistantPersona:
        return self._assistants[self._assistant_id]

    def get_current_provider(self) -> Optional[ProviderClient]:
        return self._provider

    def get_available_providers(self) -> List[str]:
        return sorted(self._factories)

    def get_provider_models(self, name: str) -> List[ModelInfo]:
        """返回某个 Provider 的静态模型目录；未注册的名称返回空列表。"""
        key = name.lower()
        factory = self._factories.get(key)
        if factory is None:
            return []
        # 模型目录是静态的，用占位密钥构造临时实例即可
        probe = factory(resolve_config(key, {"api_key": "placeholder-key"}, cfg=self._settings))
        return probe.get_models()

    # ---- 导入导出 ----

    def export_data(self) -> Dict[str, Any]:
        return {
            "provider": self._provider_name,
            "assistant": self._assistant_id,
            "conversations": self._conversations.export(),
        }

    def import_data(self, data: Mapping[str, Any]) -> bool:
        """导入会话与助手选择，缺失的字段保持现状。

        先校验再写入：返回 False 时内存与存储中的状态均保持不变。
        """
        try:
            conversations = data.get("conversations")
            # 兼容 {configuration: {assistant}} 形式的旧导出数据
            assistant = data.get("assistant") or (data.get("configuration") or {}).get("assistant")
            if assistant and assistant not in self._assistants:
                raise UnknownAssistantError(assistant)
            if conversations is not None:
                self._conversations.import_(conversations)
            if assistant:
                self.set_assistant(assistant)
            self._save_configuration()
            self._save_conversations()
            return True
        except (BusinessError, AttributeError, KeyError, TypeError, ValueError) as e:
            logger.error("AI data import failed", extra={"extra": {"error": str(e)}})
            return False

    # ---- 持久化 ----

    def _load_configuration(self) -> None:
        if self._store is None:
            return
        config = self._store.get(CONFIG_KEY, {})
        if not isinstance(config, dict):
            config = {}
        provider = config.get("provider")
        if provider:
            try:
                self.set_provider(provider, config.get("provider_config") or {})
            except BusinessError as e:
                logger.warning(f"Failed to restore AI provider: {e.message}")
        assistant = config.get("assistant")
        if assistant:
            try:
                self.set_assistant(assistant)
            except UnknownAssistantError as e:
                logger.warning(f"Failed to restore AI assistant: {e.message}")
        if self._provider is None and self._settings.default_provider:
            try:
                self.set_provider(self._settings.default_provider)
            except BusinessError as e:
                logger.info(f"Default provider not available: {e.message}")

    def _save_configuration(self) -> None:
        if self._store is None:
            return
        provider = self._provider
        config = {
            "provider": self._provider_name,
            "provider_config": provider.config.to_dict() if provider is not None else None,
            "assistant": self._assistant_id,
        }
        if not self._store.set(CONFIG_KEY, config):
            logger.warning("Failed to save AI configuration")

    def _load_conversations(self) -> None:
        if self._store is None:
            return
        conversations = self._store.get(CONVERSATIONS_KEY, []) or []
        count = self._conversations.import_(conversations)
        logger.info(f"Loaded {count} conversations")

    def _save_conversations(self) -> None:
        if self._store is None:
            return
        if not self._store.set(CONVERSATIONS_KEY, self._conversations.export()):
            logger.warning("Failed to save conversations")

    def _emit(self, event: str, payload: Any = None) -> None:
        if self._events is None:
            return
        try:
            self._events.emit(event, payload)
        except Exception as e:
            logger.warning(f"Event emission failed for '{event}'", extra={"extra": {"error": str(e)}})

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})


def build_default_service() -> AIService:
    """按 settings 构造带 JSON 存储与事件总线的 AIService，并完成初始化。"""
    service = AIService(
        event_bus=EventBus(),
        store=JsonKeyValueStore(root=settings.storage_root, prefix=settings.storage_prefix),
    )
    service.initialize()
    return service
