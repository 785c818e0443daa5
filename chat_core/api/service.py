"""对外 API 服务模块。

提供简化的函数接口供上层应用（UI、命令行）调用。
"""

from typing import Any, Dict, List, Optional

from chat_core.agents.session import ChatSession
from chat_core.config.settings import settings
from chat_core.domain.conversation import ConversationStore
from chat_core.infrastructure.logging.logger import logger
from chat_core.infrastructure.storage.blob_store import FileBlobStore
from chat_core.providers import create_client


_session: Optional[ChatSession] = None


def get_default_session() -> ChatSession:
    """获取默认会话实例（单例），首次调用时从存储恢复历史。"""
    global _session
    if _session is None:
        store = ConversationStore(FileBlobStore(root=settings.storage_root), key=settings.conversation_key)
        store.load()
        _session = ChatSession(store=store, client=create_client())
    return _session


def send_message(text: str, wait: bool = True, timeout: Optional[float] = None) -> Dict[str, Any]:
    """提交一条用户消息。

    Args:
        text: 用户输入
        wait: 是否阻塞到本轮结束
        timeout: 阻塞等待的最长秒数（None 表示不限）

    Returns:
        包含 accepted、busy 以及当前完整消息列表的字典
    """
    session = get_default_session()
    accepted = session.submit(text)
    if accepted and wait:
        session.wait(timeout)
    if not accepted:
        logger.info("Message not accepted", extra={"extra": {"busy": session.busy}})
    return {
        "accepted": accepted,
        "busy": session.busy,
        "messages": list_messages(),
    }


def list_messages() -> List[Dict[str, Any]]:
    """获取会话的所有消息（按展示顺序）。"""
    session = get_default_session()
    return [
        {"id": m.id, "content": m.content, "isUser": m.is_user}
        for m in session.messages
    ]


def is_busy() -> bool:
    return get_default_session().busy


def shutdown() -> None:
    """关闭默认会话；进行中的请求被丢弃，不会再写入存储。"""
    global _session
    if _session is not None:
        _session.close()
        _session = None
