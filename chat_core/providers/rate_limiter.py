"""滑动窗口限流器。

每个 Provider 实例持有一个 RateLimiter，并发调用共享同一组时间戳。
"清理过期记录 -> 判断容量 -> 记录时间戳" 在锁内完成；需要等待时在锁外
休眠，醒来后重新清理并判断，不假设有名额为自己保留。
"""

import threading
import time
from collections import deque
from typing import Callable, Deque

from chat_core.infrastructure.logging.logger import logger
from chat_core.providers.registry import RateLimitConfig


class RateLimiter:
    def __init__(
        self,
        requests: int = 60,
        window_ms: int = 60000,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if requests < 1 or window_ms <= 0:
            raise ValueError("requests and window_ms must be positive")
        self.requests = requests
        self.window_ms = window_ms
        self._window = window_ms / 1000.0
        self._clock = clock
        self._sleep = sleep
        self._timestamps: Deque[float] = deque()
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, cfg: RateLimitConfig, **kwargs) -> "RateLimiter":
        return cls(requests=cfg.requests, window_ms=cfg.window_ms, **kwargs)

    def admit(self) -> None:
        """阻塞直到窗口内有空闲名额，然后记录本次请求。"""
        while True:
            with self._lock:
                now = self._clock()
                self._prune(now)
                if len(self._timestamps) < self.requests:
                    self._timestamps.append(now)
                    return
                wait = self._window - (now - self._timestamps[0])
            logger.info(
                f"Rate limit reached, waiting {wait * 1000:.0f}ms",
                extra={"extra": {"wait_ms": round(wait * 1000), "capacity": self.requests}},
            )
            self._sleep(max(wait, 0.0))

    def available(self) -> int:
        with self._lock:
            self._prune(self._clock())
            return self.requests - len(self._timestamps)

    def _prune(self, now: float) -> None:
        while self._timestamps and now - self._timestamps[0] >= self._window:
            self._timestamps.popleft()
