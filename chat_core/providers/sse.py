"""Server-Sent Events 增量解析。

StreamDecoder 接收连接上陆续到达的原始文本块，按行切分，识别以
"data:" 开头的事件行；遇到 "[DONE]" 视为流结束，其余内容按 JSON 解析后
交给 Provider 提供的 extract_delta 取出增量文本。

单条事件解析失败只记录警告并跳过，不会中断整个流。一个实例只对应一次
流式调用，不可复用。
"""

import codecs
import json
from typing import Any, Callable, Iterable, Iterator, List, Optional, Union

from chat_core.infrastructure.logging.logger import logger


DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


class StreamDecoder:
    def __init__(
        self,
        extract_delta: Callable[[Any], Optional[str]],
        prefix: str = DATA_PREFIX,
        sentinel: str = DONE_SENTINEL,
        source: str = "stream",
    ):
        self._extract_delta = extract_delta
        self._prefix = prefix
        self._sentinel = sentinel
        self._source = source
        self._buffer = ""
        self._bytes = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._done = False
        self._consumed = False

    @property
    def done(self) -> bool:
        return self._done

    def feed(self, chunk: Union[str, bytes]) -> List[str]:
        """处理一个原始文本块，返回其中完整事件行产出的增量。"""
        if self._done:
            return []
        if isinstance(chunk, bytes):
            chunk = self._bytes.decode(chunk)
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        deltas: List[str] = []
        for line in lines:
            delta = self._handle_line(line)
            if self._done:
                break
            if delta:
                deltas.append(delta)
        return deltas

    def finish(self) -> List[str]:
        """连接关闭时调用：处理缓冲区中最后一行未换行的事件。"""
        tail, self._buffer = self._buffer + self._bytes.decode(b"", final=True), ""
        deltas: List[str] = []
        if tail and not self._done:
            delta = self._handle_line(tail)
            if delta and not self._done:
                deltas.append(delta)
        self._done = True
        return deltas

    def decode(self, chunks: Iterable[Union[str, bytes]]) -> Iterator[str]:
        """惰性地把原始文本块序列转换为增量序列。"""
        if self._consumed:
            raise RuntimeError("StreamDecoder instances cannot be reused")
        self._consumed = True
        for chunk in chunks:
            yield from self.feed(chunk)
            if self._done:
                return
        yield from self.finish()

    def _handle_line(self, line: str) -> Optional[str]:
        line = line.rstrip("\r")
        if not line.startswith(self._prefix):
            return None
        data = line[len(self._prefix):].strip()
        if not data:
            return None
        if data == self._sentinel:
            self._done = True
            return None
        try:
            payload = json.loads(data)
        except json.JSONDecodeError as e:
            logger.warning(
                "Failed to parse stream chunk",
                extra={"extra": {"source": self._source, "error": str(e), "data": data[:200]}},
            )
            return None
        try:
            delta = self._extract_delta(payload)
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            logger.warning(
                "Unexpected stream event shape",
                extra={"extra": {"source": self._source, "error": str(e)}},
            )
            return None
        return delta if isinstance(delta, str) else None
