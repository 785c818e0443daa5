"""聊天核心的领域数据模型。

- Message: 会话中的一条消息（用户或助手），按在 ConversationStore 中的顺序展示。
- StreamFrame: Frame Decoder 从传输层字节流中解出的一个逻辑帧。

请求/响应的线上 JSON 结构见 chat_core.providers.schemas。
"""

from dataclasses import dataclass, field
from typing import Literal, Optional
from uuid import uuid4


# 线上消息角色（与 chat/completions 接口的 role 字段对应）
Role = Literal["system", "user", "assistant"]


def new_message_id() -> str:
    return f"m-{uuid4().hex}"


@dataclass
class Message:
    """一条会话消息。

    - id: 创建后不再变化的不透明标识。
    - content: 文本内容；只有仍在接收增量的助手消息才会被改写。
    - is_user: True 为用户消息，False 为助手消息。
    """

    content: str
    is_user: bool
    id: str = field(default_factory=new_message_id)

    @property
    def role(self) -> Role:
        return "user" if self.is_user else "assistant"

    def to_dict(self) -> dict:
        return {"id": self.id, "content": self.content, "isUser": self.is_user}

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        msg_id = data["id"]
        content = data["content"]
        is_user = data["isUser"]
        if not isinstance(msg_id, str) or not isinstance(content, str) or not isinstance(is_user, bool):
            raise TypeError(f"Malformed message record: {data!r}")
        return cls(id=msg_id, content=content, is_user=is_user)


@dataclass(frozen=True)
class StreamFrame:
    """流式响应中的一个帧。

    role/content 均可缺省：首帧通常只带 role，终止帧（[DONE]）两者都没有。
    """

    role: Optional[str] = None
    content: Optional[str] = None
    terminal: bool = False

    @classmethod
    def done(cls) -> "StreamFrame":
        return cls(terminal=True)
