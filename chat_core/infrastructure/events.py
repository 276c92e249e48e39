"""进程内事件总线。

仅用于通知：AIService 的正确性不依赖任何订阅者。单个监听器抛出的异常
只记录日志，不影响其余监听器继续收到事件。
"""

import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from chat_core.infrastructure.logging.logger import logger


Handler = Callable[[Any], None]

MAX_LISTENERS = 50


@dataclass
class _Listener:
    callback: Handler
    once: bool = False
    priority: int = 0


class EventBus:
    def __init__(self, max_listeners: int = MAX_LISTENERS):
        self._events: Dict[str, List[_Listener]] = {}
        self._max_listeners = max_listeners
        self._lock = threading.Lock()

    def on(self, event: str, handler: Handler, priority: int = 0, once: bool = False) -> None:
        """注册监听器，priority 越大越先执行。"""
        with self._lock:
            listeners = self._events.setdefault(event, [])
            if len(listeners) >= self._max_listeners:
                logger.warning(f"EventBus: Too many listeners for event '{event}'")
            listeners.append(_Listener(callback=handler, once=once, priority=priority))
            listeners.sort(key=lambda l: l.priority, reverse=True)

    def once(self, event: str, handler: Handler, priority: int = 0) -> None:
        self.on(event, handler, priority=priority, once=True)

    def off(self, event: str, handler: Handler) -> None:
        with self._lock:
            listeners = self._events.get(event) or []
            for i, listener in enumerate(listeners):
                if listener.callback == handler:
                    del listeners[i]
                    break

    def clear(self, event: Optional[str] = None) -> None:
        with self._lock:
            if event is None:
                self._events.clear()
            else:
                self._events.pop(event, None)

    def emit(self, event: str, payload: Any = None) -> None:
        with self._lock:
            listeners = list(self._events.get(event) or [])
            fired_once = {id(l) for l in listeners if l.once}
            if fired_once:
                self._events[event] = [l for l in listeners if id(l) not in fired_once]
        for listener in listeners:
            try:
                listener.callback(payload)
            except Exception as e:
                logger.error(
                    f"EventBus error in '{event}' listener",
                    exc_info=True,
                    extra={"extra": {"event": event, "error": str(e)}},
                )

    def listener_count(self, event: str) -> int:
        return len(self._events.get(event) or [])
