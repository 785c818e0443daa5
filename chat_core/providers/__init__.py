"""chat/completions 集成层。

该包下的模块负责：
- 传输层 (transport)：发起 HTTP 请求，暴露完整响应体或字节块流。
- 帧解码 (sse)：把字节块拆成 StreamFrame。
- 线上结构 (schemas) 与端点配置 (registry)。
- 客户端 (chat_client)：把 RequestEnvelope 交给传输层。
"""

from typing import Optional

from chat_core.config.settings import settings
from chat_core.providers.base import ChatClient, Transport
from chat_core.providers.chat_client import ChatCompletionClient
from chat_core.providers.transport import HttpTransport, TrustPolicy


def create_client(transport: Optional[Transport] = None) -> ChatClient:
    """根据当前配置创建客户端，默认使用 HttpTransport。"""

    return ChatCompletionClient(settings, transport=transport or HttpTransport(settings, TrustPolicy.from_settings(settings)))


__all__ = ["ChatClient", "ChatCompletionClient", "HttpTransport", "Transport", "TrustPolicy", "create_client"]
