"""会话存储：有序的消息日志 + 持久化。

ConversationStore 是会话中唯一的共享可变状态：
- 写入方只有会话控制器（在同一把锁/同一个调度线程上串行执行）；
- 读取方（展示层）通过 messages 拿到不可变快照，每次重新读取完整序列。

每次成功的写操作后，都会把完整序列序列化并写入 BlobStore。
"""

import json
import logging
import threading
from typing import Any, Dict, List, Optional, Protocol, Tuple

from chat_core.domain.exceptions import ValidationError
from chat_core.domain.models import Message
from chat_core.infrastructure.logging.logger import logger


class BlobStore(Protocol):
    """按 key 存取字节串的持久化协作者。"""

    def load(self, key: str) -> Optional[bytes]:
        ...

    def save(self, key: str, data: bytes) -> None:
        ...


def serialize_messages(messages: List[Message]) -> bytes:
    return json.dumps([m.to_dict() for m in messages], ensure_ascii=False).encode("utf-8")


def deserialize_messages(data: bytes) -> List[Message]:
    raw = json.loads(data.decode("utf-8"))
    if not isinstance(raw, list):
        raise TypeError("Serialized conversation is not a list")
    return [Message.from_dict(item) for item in raw]


class ConversationStore:
    def __init__(self, blob_store: BlobStore, key: str = "conversation"):
        self._blob_store = blob_store
        self._key = key
        self._messages: List[Message] = []
        self._open_id: Optional[str] = None
        self._lock = threading.RLock()

    # ---- 读 ----

    @property
    def messages(self) -> Tuple[Message, ...]:
        """当前序列的快照（消息对象为副本，观察者修改不会影响存储）。"""
        with self._lock:
            return tuple(Message(id=m.id, content=m.content, is_user=m.is_user) for m in self._messages)

    @property
    def open_message_id(self) -> Optional[str]:
        with self._lock:
            return self._open_id

    def __len__(self) -> int:
        with self._lock:
            return len(self._messages)

    # ---- 加载 ----

    def load(self) -> None:
        """从持久化存储恢复会话；数据缺失或损坏时以空会话开始。"""
        try:
            data = self._blob_store.load(self._key)
        except Exception as e:
            self._log(logging.WARNING, "Conversation load failed, starting empty", error=str(e))
            data = None
        restored: List[Message] = []
        if data:
            try:
                restored = deserialize_messages(data)
            except (ValueError, TypeError, KeyError) as e:
                self._log(logging.WARNING, "Stored conversation is invalid, starting empty", error=str(e))
                restored = []
        with self._lock:
            self._messages = restored
            self._open_id = None
        self._log(logging.INFO, "Conversation loaded", message_count=len(restored))

    # ---- 写 ----

    def append_user_message(self, text: str) -> Message:
        msg = Message(content=text, is_user=True)
        with self._lock:
            self._messages.append(msg)
            self._persist()
        return msg

    def append_assistant_placeholder(self) -> str:
        """追加一条空的助手消息并将其标记为“正在接收增量”，返回其 id。"""
        with self._lock:
            if self._open_id is not None:
                raise ValidationError(
                    code="PLACEHOLDER_OPEN",
                    message="An assistant message is already streaming",
                    open_message_id=self._open_id,
                )
            msg = Message(content="", is_user=False)
            self._messages.append(msg)
            self._open_id = msg.id
            self._persist()
        return msg.id

    def update_content(self, message_id: str, text: str) -> bool:
        """覆盖当前打开的助手消息的内容。

        id 不存在或不是当前打开的消息时不做任何修改，记录日志并返回 False。
        """
        with self._lock:
            if message_id != self._open_id:
                self._log(
                    logging.WARNING,
                    "Rejected content update",
                    message_id=message_id,
                    open_message_id=self._open_id,
                )
                return False
            msg = self._find(message_id)
            if msg is None:
                self._log(logging.WARNING, "Open message vanished", message_id=message_id)
                self._open_id = None
                return False
            msg.content = text
            self._persist()
        return True

    def close_open_message(self) -> Optional[str]:
        """结束当前助手消息的增量接收，之后其内容不可再修改。"""
        with self._lock:
            closed, self._open_id = self._open_id, None
        return closed

    # ---- 序列化 ----

    def serialize(self) -> bytes:
        with self._lock:
            return serialize_messages(self._messages)

    def restore(self, data: bytes) -> None:
        messages = deserialize_messages(data)
        with self._lock:
            self._messages = messages
            self._open_id = None

    # ---- 内部 ----

    def _find(self, message_id: str) -> Optional[Message]:
        for m in self._messages:
            if m.id == message_id:
                return m
        return None

    def _persist(self) -> None:
        data = serialize_messages(self._messages)
        try:
            self._blob_store.save(self._key, data)
        except Exception as e:
            # 保存失败只记日志，不打断对话
            self._log(logging.ERROR, "Conversation save failed", error=str(e), size=len(data))

    def _log(self, level: int, message: str, **fields: Any) -> None:
        payload: Dict[str, Any] = {"conversation_key": self._key}
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
