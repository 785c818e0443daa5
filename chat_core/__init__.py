"""Chat Core 顶层包。

该包提供流式 chat-completion 客户端的核心实现，
包括配置加载、领域模型、HTTP 传输、SSE 帧解码、
增量拼接、会话控制与会话持久化等能力。
"""

from chat_core.agents.session import ChatSession, SessionState
from chat_core.domain.conversation import ConversationStore

__all__ = ["ChatSession", "ConversationStore", "SessionState"]
