"""会话与消息模型，以及内存版 ConversationStore。

ConversationStore 独占所有会话数据：外部只能通过 append 追加消息，
读取接口返回的都是副本。当单个会话的消息数超过 max_history_length 时，
在 append 内同步执行压缩：最早的若干条消息合并为一条摘要消息，
只保留最近 compression_threshold 条原始消息。
"""

import copy
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4

from .exceptions import NotFoundError
from .models import ChatMessage, Role


SUMMARY_TEMPLATE = "[对话摘要] 之前的对话中讨论了{count}条消息，主要内容包括游戏创意讨论、设计建议等。"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _format_ts(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_ts(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)):
        # 毫秒时间戳
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if value:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return _utcnow()


@dataclass
class MessageRecord:
    id: str
    role: Role
    content: str
    created_at: datetime
    is_summary: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "created_at": _format_ts(self.created_at),
        }
        if self.is_summary:
            data["is_summary"] = True
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MessageRecord":
        return cls(
            id=data.get("id") or f"m-{uuid4().hex}",
            role=data.get("role") or "user",
            content=data.get("content") or "",
            created_at=_parse_ts(data.get("created_at") or data.get("timestamp")),
            is_summary=bool(data.get("is_summary") or data.get("isSummary")),
        )


@dataclass
class Conversation:
    id: str
    assistant_id: str
    created_at: datetime
    updated_at: datetime
    messages: List[MessageRecord] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "assistant_id": self.assistant_id,
            "messages": [m.to_dict() for m in self.messages],
            "created_at": _format_ts(self.created_at),
            "updated_at": _format_ts(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Conversation":
        created_at = _parse_ts(data.get("created_at") or data.get("createdAt"))
        return cls(
            id=data["id"],
            assistant_id=data.get("assistant_id") or data.get("assistantId") or "eggcat",
            created_at=created_at,
            updated_at=_parse_ts(data.get("updated_at") or data.get("updatedAt") or created_at),
            messages=[MessageRecord.from_dict(m) for m in data.get("messages") or [] if isinstance(m, dict)],
        )


class ConversationStore:
    """内存会话存储。

    同一会话的 append / append_turn 通过该会话独占的锁串行化；不同会话之间互不阻塞。
    """

    def __init__(self, max_history_length: int = 50, compression_threshold: int = 30):
        if compression_threshold < 1:
            raise ValueError("compression_threshold must be at least 1")
        if compression_threshold >= max_history_length:
            raise ValueError("compression_threshold must be smaller than max_history_length")
        self.max_history_length = max_history_length
        self.compression_threshold = compression_threshold
        self._conversations: Dict[str, Conversation] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._conversations)

    def __contains__(self, conversation_id: object) -> bool:
        return conversation_id in self._conversations

    def create(self, assistant_id: str) -> str:
        cid = f"c-{uuid4().hex}"
        now = _utcnow()
        with self._registry_lock:
            self._conversations[cid] = Conversation(id=cid, assistant_id=assistant_id, created_at=now, updated_at=now)
            self._locks[cid] = threading.Lock()
        return cid

    def append(self, conversation_id: str, role: Role, content: str) -> str:
        conv, lock = self._lookup(conversation_id)
        with lock:
            return self._append_locked(conv, role, content)

    def append_turn(self, conversation_id: str, user_content: str, assistant_content: str) -> List[str]:
        """在同一把锁内依次追加用户消息与助手回复，保证一轮对话不被拆开。"""
        conv, lock = self._lookup(conversation_id)
        with lock:
            return [
                self._append_locked(conv, "user", user_content),
                self._append_locked(conv, "assistant", assistant_content),
            ]

    def _append_locked(self, conv: Conversation, role: Role, content: str) -> str:
        message = MessageRecord(id=f"m-{uuid4().hex}", role=role, content=content, created_at=_utcnow())
        conv.messages.append(message)
        conv.updated_at = message.created_at
        if len(conv.messages) > self.max_history_length:
            self._compact(conv)
        return message.id

    def history(self, conversation_id: str, limit: int = 10) -> List[ChatMessage]:
        """返回最近 limit 条消息（按时间正序）。"""
        conv, lock = self._lookup(conversation_id)
        with lock:
            recent = conv.messages[-limit:] if limit > 0 else []
            return [ChatMessage(role=m.role, content=m.content) for m in recent]

    def get(self, conversation_id: str) -> Optional[Conversation]:
        try:
            conv, lock = self._lookup(conversation_id)
        except NotFoundError:
            return None
        with lock:
            return copy.deepcopy(conv)

    def list(self) -> List[Conversation]:
        items: List[Conversation] = []
        with self._registry_lock:
            for cid, conv in self._conversations.items():
                with self._locks[cid]:
                    items.append(copy.deepcopy(conv))
        items.sort(key=lambda c: c.updated_at, reverse=True)
        return items

    def delete(self, conversation_id: str) -> bool:
        with self._registry_lock:
            self._locks.pop(conversation_id, None)
            return self._conversations.pop(conversation_id, None) is not None

    def export(self) -> List[Dict[str, Any]]:
        return [c.to_dict() for c in self.list()]

    def import_(self, items: Iterable[Dict[str, Any]]) -> int:
        """用导出的数据整体替换当前会话集合，返回成功导入的会话数。

        缺少 id 的条目会被跳过，其余缺失字段使用默认值。
        """
        loaded: Dict[str, Conversation] = {}
        for item in items or []:
            if not isinstance(item, dict) or not item.get("id"):
                continue
            conv = Conversation.from_dict(item)
            if len(conv.messages) > self.max_history_length:
                self._compact(conv)
            loaded[conv.id] = conv
        with self._registry_lock:
            self._conversations = loaded
            self._locks = {cid: threading.Lock() for cid in loaded}
        return len(loaded)

    def _lookup(self, conversation_id: str) -> tuple[Conversation, threading.Lock]:
        with self._registry_lock:
            conv = self._conversations.get(conversation_id)
            if conv is None:
                raise NotFoundError(conversation_id)
            return conv, self._locks[conversation_id]

    def _compact(self, conv: Conversation) -> None:
        recent = conv.messages[-self.compression_threshold:]
        old = conv.messages[: -self.compression_threshold]
        if not old:
            return
        summary = MessageRecord(
            id=f"m-{uuid4().hex}",
            role="system",
            content=SUMMARY_TEMPLATE.format(count=len(old)),
            created_at=_utcnow(),
            is_summary=True,
        )
        conv.messages = [summary, *recent]
