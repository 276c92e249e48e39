from typing import Any, Protocol


class KeyValueStore(Protocol):
    """外部持久化协作者：按键读写任意可 JSON 序列化的值。"""

    def get(self, key: str, default: Any = None) -> Any:
        ...

    def set(self, key: str, value: Any) -> bool:
        ...
