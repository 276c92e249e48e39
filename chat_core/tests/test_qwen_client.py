import threading

import httpx
import pytest

from chat_core.domain.exceptions import (
    ConfigValidationError,
    ResponseFormatError,
    StreamInterruptedError,
    TransportError,
)
from chat_core.domain.models import ChatMessage, RequestOptions
from chat_core.providers.qwen_client import QwenClient
from chat_core.providers.registry import QWEN_DEFAULTS, ProviderConfig


def make_client(**overrides) -> QwenClient:
    fields = {
        "name": "qwen",
        "base_url": QWEN_DEFAULTS.base_url,
        "default_model": "qwen-plus",
        "api_key": "sk-qwen-test",
    }
    fields.update(overrides)
    return QwenClient(ProviderConfig(**fields))


QWEN_FIXTURE = {
    "output": {
        "choices": [
            {"finish_reason": "stop", "message": {"role": "assistant", "content": "你好喵"}},
        ]
    },
    "usage": {"input_tokens": 5, "output_tokens": 3, "total_tokens": 8},
    "request_id": "req-1",
}


class Resp:
    def __init__(self, status_code=200, body=None, text=""):
        self.status_code = status_code
        self._body = body
        self.text = text

    def read(self):
        return self.text.encode("utf-8")

    def json(self):
        if self._body is None:
            raise ValueError("no json")
        return self._body


class FakeStreamResponse:
    status_code = 200
    text = ""

    def __init__(self, chunks, fail_after=None):
        self._chunks = list(chunks)
        self._fail_after = fail_after

    def read(self):
        return b""

    def iter_text(self):
        for i, chunk in enumerate(self._chunks):
            if self._fail_after is not None and i == self._fail_after:
                raise httpx.ReadError("connection reset")
            yield chunk


class StreamContext:
    def __init__(self, response, state):
        self._response = response
        self._state = state

    def __enter__(self):
        return self._response

    def __exit__(self, *args):
        self._state["closed"] = True
        return False


def install_client(monkeypatch, response=None, stream_response=None, error=None):
    captured = {}

    class Client:
        def __init__(self, *a, **kw):
            captured["timeout"] = kw.get("timeout")

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def post(self, url, json=None, headers=None, **_):
            captured.update(url=url, payload=json, headers=headers)
            if error is not None:
                raise error
            return response

        def stream(self, method, url, json=None, headers=None, **_):
            captured.update(method=method, url=url, payload=json, headers=headers)
            if error is not None:
                raise error
            return StreamContext(stream_response, captured)

    monkeypatch.setattr("httpx.Client", Client)
    return captured


def test_missing_api_key_fails_construction():
    with pytest.raises(ConfigValidationError):
        make_client(api_key=None)


def test_is_configured_requires_base_url():
    assert make_client().is_configured()
    assert not make_client(base_url="").is_configured()


def test_build_payload_orders_messages():
    qc = make_client()
    options = RequestOptions(
        system_prompt="sys",
        conversation_history=[ChatMessage(role="user", content="q1"), ChatMessage(role="assistant", content="a1")],
        temperature=0.3,
        max_tokens=100,
    )
    payload = qc.build_payload("q2", options)
    assert payload["model"] == "qwen-plus"
    assert [m["role"] for m in payload["input"]["messages"]] == ["system", "user", "assistant", "user"]
    assert payload["input"]["messages"][-1]["content"] == "q2"
    assert payload["parameters"] == {
        "temperature": 0.3,
        "max_tokens": 100,
        "result_format": "message",
        "incremental_output": False,
    }


def test_send_round_trip(monkeypatch):
    qc = make_client()
    captured = install_client(monkeypatch, response=Resp(body=QWEN_FIXTURE))
    payload = qc.build_payload("hi", RequestOptions(model="qwen-max"))
    res = qc.send(payload)
    assert res.content == "你好喵"
    assert res.finish_reason == "stop"
    assert res.usage.total_tokens == 8
    assert res.usage.prompt_tokens == 5
    assert captured["payload"]["model"] == "qwen-max"
    assert captured["headers"]["Authorization"] == "Bearer sk-qwen-test"
    assert captured["headers"]["X-DashScope-SSE"] == "disable"


def test_send_non_success_status(monkeypatch):
    qc = make_client()
    install_client(monkeypatch, response=Resp(status_code=401, text="unauthorized"))
    with pytest.raises(TransportError) as exc:
        qc.send(qc.build_payload("hi", RequestOptions()))
    assert exc.value.status_code == 401
    assert exc.value.provider == "qwen"


def test_send_network_failure(monkeypatch):
    qc = make_client()
    install_client(monkeypatch, error=httpx.ConnectError("refused"))
    with pytest.raises(TransportError) as exc:
        qc.send(qc.build_payload("hi", RequestOptions()))
    assert exc.value.status_code is None


def test_send_unexpected_body(monkeypatch):
    qc = make_client()
    install_client(monkeypatch, response=Resp(body={"output": {"text": "legacy"}}))
    with pytest.raises(ResponseFormatError):
        qc.send(qc.build_payload("hi", RequestOptions()))


def test_send_invalid_json(monkeypatch):
    qc = make_client()
    install_client(monkeypatch, response=Resp(body=None, text="<html>"))
    with pytest.raises(ResponseFormatError):
        qc.send(qc.build_payload("hi", RequestOptions()))


def _event(text):
    return 'data: {"output": {"choices": [{"message": {"role": "assistant", "content": "%s"}}]}}\n' % text


def test_stream_delivers_deltas(monkeypatch):
    qc = make_client()
    captured = install_client(
        monkeypatch,
        stream_response=FakeStreamResponse([_event("你"), _event("好"), "data: [DONE]\n"]),
    )
    received = []
    qc.stream(qc.build_payload("hi", RequestOptions(stream=True)), received.append)
    assert received == ["你", "好"]
    assert captured["payload"]["parameters"]["incremental_output"] is True
    assert captured["headers"]["X-DashScope-SSE"] == "enable"
    assert captured["headers"]["Accept"] == "text/event-stream"
    assert captured["closed"]


def test_stream_interrupted_after_partial_content(monkeypatch):
    qc = make_client()
    install_client(
        monkeypatch,
        stream_response=FakeStreamResponse([_event("a"), _event("b")], fail_after=1),
    )
    received = []
    with pytest.raises(StreamInterruptedError) as exc:
        qc.stream(qc.build_payload("hi", RequestOptions(stream=True)), received.append)
    assert received == ["a"]
    assert exc.value.delivered == 1


def test_stream_failure_before_any_delta(monkeypatch):
    qc = make_client()
    install_client(monkeypatch, stream_response=FakeStreamResponse([_event("a")], fail_after=0))
    with pytest.raises(TransportError):
        qc.stream(qc.build_payload("hi", RequestOptions(stream=True)), lambda _: None)


def test_stream_cancel_releases_connection(monkeypatch):
    qc = make_client()
    captured = install_client(
        monkeypatch,
        stream_response=FakeStreamResponse([_event("a"), _event("b"), _event("c")]),
    )
    cancel = threading.Event()
    received = []

    def on_delta(text):
        received.append(text)
        cancel.set()

    qc.stream(qc.build_payload("hi", RequestOptions(stream=True)), on_delta, cancel)
    assert received == ["a"]
    assert captured["closed"]


def test_get_models():
    assert [m.id for m in make_client().get_models()] == ["qwen-plus", "qwen-turbo", "qwen-max"]
