"""Provider 适配器共用的 HTTP 辅助函数。

统一了状态码到 TransportError 的映射、JSON 解析失败到 ResponseFormatError
的映射，以及流式请求的连接管理，保证各 Provider 对外的错误类型一致。
"""

import threading
from typing import Any, Callable, Dict, Iterator, Optional

import httpx

from chat_core.domain.exceptions import ResponseFormatError, StreamInterruptedError, TransportError
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers.sse import StreamDecoder


def bearer_headers(api_key: str, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    headers = {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
    }
    if extra:
        headers.update(extra)
    return headers


def raise_for_status(response: Any, provider: str) -> None:
    status = response.status_code
    if 200 <= status < 300:
        return
    body = _safe_body(response)
    logger.error(
        f"Provider HTTP error: {status}",
        extra={"extra": {"provider": provider, "status_code": status, "body": body}},
    )
    raise TransportError(f"HTTP {status}: {body}", provider=provider, status_code=status)


def parse_json(response: Any, provider: str) -> Any:
    try:
        return response.json()
    except ValueError as e:
        raise ResponseFormatError(f"Invalid JSON from {provider} API: {e}", provider=provider) from e


def post_json(provider: str, url: str, headers: Dict[str, str], payload: dict, timeout: float) -> Any:
    """发送一次非流式请求并返回解析后的 JSON。"""
    try:
        with httpx.Client(timeout=timeout, trust_env=False) as client:
            resp = client.post(url, json=payload, headers=headers)
    except httpx.RequestError as e:
        logger.error("Provider network error", extra={"extra": {"provider": provider, "error": str(e)}})
        raise TransportError(str(e), provider=provider) from e
    raise_for_status(resp, provider)
    return parse_json(resp, provider)


def iter_sse(
    provider: str,
    url: str,
    headers: Dict[str, str],
    payload: dict,
    timeout: float,
    decoder: StreamDecoder,
) -> Iterator[str]:
    """打开流式连接并逐个产出增量文本。

    生成器被关闭（调用方放弃迭代）时，连接随 with 块一起释放。
    已产出增量后连接中断会抛出 StreamInterruptedError。
    """
    delivered = 0
    try:
        with httpx.Client(timeout=timeout, trust_env=False) as client:
            with client.stream("POST", url, json=payload, headers=headers) as resp:
                raise_for_status(resp, provider)
                for delta in decoder.decode(resp.iter_text()):
                    delivered += 1
                    yield delta
    except httpx.RequestError as e:
        logger.error(
            "Provider stream error",
            extra={"extra": {"provider": provider, "delivered": delivered, "error": str(e)}},
        )
        if delivered:
            raise StreamInterruptedError(
                f"Stream from {provider} interrupted: {e}", provider=provider, delivered=delivered
            ) from e
        raise TransportError(str(e), provider=provider) from e


def deliver(
    deltas: Iterator[str],
    on_delta: Callable[[str], None],
    cancel: Optional[threading.Event] = None,
) -> bool:
    """把增量逐个交给 on_delta。返回 False 表示因 cancel 被设置而提前结束。"""
    try:
        for delta in deltas:
            if cancel is not None and cancel.is_set():
                return False
            on_delta(delta)
            if cancel is not None and cancel.is_set():
                return False
        return True
    finally:
        close = getattr(deltas, "close", None)
        if close is not None:
            close()


def _safe_body(response: Any) -> str:
    try:
        response.read()
        return (response.text or "")[:300]
    except (httpx.HTTPError, UnicodeDecodeError):
        return ""
