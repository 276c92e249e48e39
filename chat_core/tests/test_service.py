import threading

import pytest

from chat_core.api.service import AIService
from chat_core.domain.exceptions import (
    ConfigValidationError,
    NoProviderConfiguredError,
    NotFoundError,
    ProviderNotConfiguredError,
    TransportError,
    UnknownAssistantError,
    UnknownProviderError,
)
from chat_core.domain.models import ChatResult, ModelInfo
from chat_core.infrastructure.events import EventBus
from chat_core.infrastructure.storage.json_store import JsonKeyValueStore
from chat_core.prompts import ASSISTANTS
from chat_core.providers.base import format_messages
from chat_core.providers.rate_limiter import RateLimiter


class DummySettings:
    default_provider = None
    default_assistant = "eggcat"
    qwen_api_key = None
    qwen_base_url = None
    openai_api_key = None
    openai_base_url = None
    http_timeout = 1.0
    max_history_length = 50
    compression_threshold = 30
    history_limit = 10
    default_temperature = 0.7
    default_max_tokens = 2000


class StubProvider:
    name = "stub"

    def __init__(self, config, reply="hello", chunks=("hel", "lo"), error=None, configured=True):
        self.config = config
        self.rate_limiter = RateLimiter.from_config(config.rate_limit)
        self.reply = reply
        self.chunks = list(chunks)
        self.error = error
        self.configured = configured
        self.payloads = []

    def is_configured(self):
        return self.configured

    def build_payload(self, message, options):
        return {"model": options.model or "stub-1", "messages": format_messages(message, options)}

    def parse_response(self, data):
        return ChatResult(content=data["text"])

    def send(self, payload):
        self.payloads.append(payload)
        if self.error is not None:
            raise self.error
        return self.parse_response({"text": self.reply})

    def iter_stream(self, payload):
        self.payloads.append(payload)
        yield from self.chunks

    def stream(self, payload, on_delta, cancel=None):
        for chunk in self.iter_stream(payload):
            if cancel is not None and cancel.is_set():
                return
            on_delta(chunk)

    def get_models(self):
        return [ModelInfo(id="stub-1", name="Stub", description="stub model")]


def make_service(bus=None, store=None, **stub_kwargs):
    service = AIService(event_bus=bus, store=store, cfg=DummySettings())
    holder = {}

    def factory(config):
        holder["provider"] = StubProvider(config, **stub_kwargs)
        return holder["provider"]

    service.register_provider("stub", factory)
    return service, holder


def test_send_message_records_two_turns():
    service, holder = make_service()
    service.set_provider("stub", {"api_key": "sk-stub-key"})
    cid = service.create_conversation()

    result = service.send_message("hi", conversation_id=cid)

    assert result.content == "hello"
    messages = service.get_conversation(cid).messages
    assert [(m.role, m.content) for m in messages] == [("user", "hi"), ("assistant", "hello")]


def test_send_message_injects_persona_and_history():
    service, holder = make_service()
    service.set_provider("stub", {"api_key": "sk-stub-key"})
    service.set_assistant("technical")
    cid = service.create_conversation()
    service.send_message("first", conversation_id=cid)
    service.send_message("second", conversation_id=cid)

    messages = holder["provider"].payloads[-1]["messages"]
    assert messages[0] == {"role": "system", "content": ASSISTANTS["technical"].system_prompt}
    assert [m["content"] for m in messages[1:]] == ["first", "hello", "second"]


def test_send_message_without_conversation_records_nothing():
    service, holder = make_service()
    service.set_provider("stub", {"api_key": "sk-stub-key"})
    assert service.send_message("hi").content == "hello"
    assert service.get_conversations() == []


def test_send_message_requires_provider():
    service, _ = make_service()
    with pytest.raises(NoProviderConfiguredError):
        service.send_message("hi")


def test_send_message_requires_configured_provider():
    service, _ = make_service(configured=False)
    service.set_provider("stub", {"api_key": "sk-stub-key"})
    with pytest.raises(ProviderNotConfiguredError):
        service.send_message("hi")


def test_unknown_conversation_fails_before_network():
    service, holder = make_service()
    service.set_provider("stub", {"api_key": "sk-stub-key"})
    with pytest.raises(NotFoundError):
        service.send_message("hi", conversation_id="c-missing")
    assert holder["provider"].payloads == []


def test_provider_error_propagates_after_event():
    bus = EventBus()
    errors = []
    bus.on("ai:error", errors.append)
    failure = TransportError("HTTP 500", provider="stub", status_code=500)
    service, _ = make_service(bus=bus, error=failure)
    service.set_provider("stub", {"api_key": "sk-stub-key"})
    cid = service.create_conversation()

    with pytest.raises(TransportError) as exc:
        service.send_message("hi", conversation_id=cid)

    assert exc.value is failure
    assert errors[0]["error"] is failure
    assert service.get_conversation(cid).messages == []


def test_broken_listener_does_not_affect_result():
    bus = EventBus()

    def broken(_):
        raise RuntimeError("listener failure")

    bus.on("ai:provider-changed", broken)
    bus.on("ai:stream-chunk", broken)
    service, _ = make_service(bus=bus)
    service.set_provider("stub", {"api_key": "sk-stub-key"})
    assert service.stream_message("hi").content == "hello"


def test_stream_message_accumulates_and_records():
    bus = EventBus()
    chunks, completed = [], []
    bus.on("ai:stream-chunk", chunks.append)
    bus.on("ai:stream-complete", completed.append)
    service, _ = make_service(bus=bus)
    service.set_provider("stub", {"api_key": "sk-stub-key"})
    cid = service.create_conversation()
    received = []

    result = service.send_message("hi", conversation_id=cid, stream=True, on_delta=received.append)

    assert result.content == "hello"
    assert received == ["hel", "lo"]
    assert [c["full_response"] for c in chunks] == ["hel", "hello"]
    assert completed == [{"full_response": "hello", "conversation_id": cid}]
    messages = service.get_conversation(cid).messages
    assert [(m.role, m.content) for m in messages] == [("user", "hi"), ("assistant", "hello")]


def test_cancelled_stream_is_not_recorded():
    service, _ = make_service(chunks=("a", "b", "c"))
    service.set_provider("stub", {"api_key": "sk-stub-key"})
    cid = service.create_conversation()
    cancel = threading.Event()
    received = []

    def on_delta(text):
        received.append(text)
        cancel.set()

    result = service.stream_message("hi", conversation_id=cid, on_delta=on_delta, cancel=cancel)

    assert received == ["a"]
    assert result.finish_reason == "cancelled"
    assert result.content == "a"
    assert service.get_conversation(cid).messages == []


def test_set_provider_unknown():
    service, _ = make_service()
    with pytest.raises(UnknownProviderError):
        service.set_provider("nope")


def test_failed_set_provider_keeps_previous():
    service, holder = make_service()
    service.set_provider("stub", {"api_key": "sk-stub-key"})
    previous = service.get_current_provider()

    with pytest.raises(ConfigValidationError):
        service.set_provider("qwen")

    assert service.get_current_provider() is previous
    assert service.export_data()["provider"] == "stub"


def test_set_provider_builtin_and_events():
    bus = EventBus()
    changes = []
    bus.on("ai:provider-changed", changes.append)
    service, _ = make_service(bus=bus)
    service.set_provider("qwen", {"api_key": "sk-qwen-1234567"})
    assert service.get_current_provider().name == "qwen"
    assert service.get_current_provider().rate_limiter.requests == 60
    assert changes == [{"provider": "qwen"}]


def test_set_assistant():
    bus = EventBus()
    changes = []
    bus.on("ai:assistant-changed", changes.append)
    service, _ = make_service(bus=bus)
    service.set_assistant("creative")
    assert service.get_current_assistant().id == "creative"
    assert changes == [{"assistant": "creative"}]
    with pytest.raises(UnknownAssistantError):
        service.set_assistant("ghost")
    assert service.get_current_assistant().id == "creative"


def test_conversation_events():
    bus = EventBus()
    created, deleted = [], []
    bus.on("ai:conversation-created", created.append)
    bus.on("ai:conversation-deleted", deleted.append)
    service, _ = make_service(bus=bus)
    cid = service.create_conversation("creative")
    assert created == [{"conversation_id": cid, "assistant_id": "creative"}]
    assert service.delete_conversation(cid) is True
    assert service.delete_conversation(cid) is False
    assert deleted == [{"conversation_id": cid}]
    with pytest.raises(UnknownAssistantError):
        service.create_conversation("ghost")


def test_catalog_queries():
    service, _ = make_service()
    assert {a.id for a in service.get_assistants()} == {"eggcat", "creative", "technical"}
    assert service.get_available_providers() == ["openai", "qwen", "stub"]
    assert [m.id for m in service.get_provider_models("openai")] == ["gpt-3.5-turbo", "gpt-4", "gpt-4-turbo"]
    assert service.get_provider_models("nope") == []


def test_export_import_is_idempotent():
    service, _ = make_service()
    service.set_provider("stub", {"api_key": "sk-stub-key"})
    service.set_assistant("creative")
    for text in ("one", "two"):
        cid = service.create_conversation()
        service.send_message(text, conversation_id=cid)

    before = service.export_data()
    assert service.import_data(before) is True
    after = service.export_data()

    assert after["conversations"] == before["conversations"]
    assert after["assistant"] == before["assistant"] == "creative"


def test_import_data_is_tolerant():
    service, _ = make_service()
    assert service.import_data({}) is True
    assert service.import_data({"configuration": {"assistant": "technical"}}) is True
    assert service.get_current_assistant().id == "technical"
    assert service.import_data({"assistant": "ghost"}) is False
    assert service.import_data(None) is False


def test_state_survives_restart(tmp_path):
    store = JsonKeyValueStore(root=tmp_path, prefix="t_")
    service = AIService(store=store, cfg=DummySettings())
    service.set_provider("openai", {"api_key": "sk-openai-1234567"})
    service.set_assistant("technical")
    cid = service.create_conversation()

    bus = EventBus()
    initialized = []
    bus.on("ai:initialized", initialized.append)
    restored = AIService(event_bus=bus, store=JsonKeyValueStore(root=tmp_path, prefix="t_"), cfg=DummySettings())
    restored.initialize()
    restored.initialize()

    assert restored.get_current_provider().name == "openai"
    assert restored.get_current_provider().config.api_key == "sk-openai-1234567"
    assert restored.get_current_assistant().id == "technical"
    assert [c.id for c in restored.get_conversations()] == [cid]
    assert initialized == [None]


def test_initialize_without_saved_provider(tmp_path):
    service = AIService(store=JsonKeyValueStore(root=tmp_path, prefix="t_"), cfg=DummySettings())
    service.initialize()
    assert service.get_current_provider() is None


class EchoProvider(StubProvider):
    def __init__(self, config, barrier):
        super().__init__(config)
        self.barrier = barrier

    def send(self, payload):
        self.barrier.wait(timeout=5)
        question = payload["messages"][-1]["content"]
        return ChatResult(content=f"re:{question}")


def test_concurrent_sends_record_whole_turns():
    service = AIService(cfg=DummySettings())
    barrier = threading.Barrier(2)
    service.register_provider("echo", lambda config: EchoProvider(config, barrier))
    service.set_provider("echo", {"api_key": "sk-echo-key"})
    cid = service.create_conversation()

    threads = [
        threading.Thread(target=service.send_message, args=(text,), kwargs={"conversation_id": cid})
        for text in ("left", "right")
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    messages = service.get_conversation(cid).messages
    assert [m.role for m in messages] == ["user", "assistant", "user", "assistant"]
    for user, assistant in zip(messages[::2], messages[1::2]):
        assert assistant.content == f"re:{user.content}"


def test_rejected_import_leaves_state_untouched(tmp_path):
    store = JsonKeyValueStore(root=tmp_path, prefix="t_")
    service = AIService(store=store, cfg=DummySettings())
    cid = service.create_conversation()
    saved = store.get("ai-conversations")

    assert service.import_data({"conversations": [], "assistant": "ghost"}) is False

    assert service.get_conversation(cid) is not None
    assert store.get("ai-conversations") == saved
    assert service.get_current_assistant().id == "eggcat"
