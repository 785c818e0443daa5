"""传输层与客户端的抽象接口。

会话控制器只依赖 ChatClient 协议：
- build_envelope(history): 由完整历史构建请求体；
- open(envelope): 发起请求，按到达顺序产出原始字节块；
- new_decoder(envelope): 返回与请求模式匹配的解码器（SSE 或整包）；
- close(): 让进行中的请求失效。

这样测试中可以用假的客户端直接喂字节块，不需要真实网络。
"""

from typing import Any, Dict, Iterator, List, Optional, Protocol

from chat_core.domain.models import Message
from chat_core.providers.schemas import RequestEnvelope
from chat_core.providers.sse import ResponseDecoder


class Transport(Protocol):
    def post(self, url: str, payload: Dict[str, Any], headers: Dict[str, str]) -> bytes:
        ...

    def stream(self, url: str, payload: Dict[str, Any], headers: Dict[str, str]) -> Iterator[bytes]:
        ...

    def close(self) -> None:
        ...


class ChatClient(Protocol):
    name: str

    def build_envelope(self, history: List[Message], system_prompt: Optional[str] = None) -> RequestEnvelope:
        ...

    def open(self, envelope: RequestEnvelope) -> Iterator[bytes]:
        ...

    def new_decoder(self, envelope: RequestEnvelope) -> ResponseDecoder:
        ...

    def close(self) -> None:
        ...
