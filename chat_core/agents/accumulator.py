"""增量拼接器：把流式帧中的内容片段折叠成一条完整回复。"""

from typing import Optional

from chat_core.domain.models import StreamFrame
from chat_core.infrastructure.logging.logger import logger


class DeltaAccumulator:
    """按到达顺序累积内容片段。

    - 带 content 的非终止帧：原样追加到缓冲区，返回当前完整文本（快照）；
    - 不带 content 的帧（如首帧只有 role）：不产生快照，返回 None；
    - 终止帧：结束累积，之后的帧一律忽略。

    追加后的片段不会被回滚或改写，最终文本完全由帧的到达顺序决定。
    """

    def __init__(self) -> None:
        self._text = ""
        self._closed = False
        self.role: Optional[str] = None

    @property
    def text(self) -> str:
        return self._text

    @property
    def closed(self) -> bool:
        return self._closed

    def feed(self, frame: StreamFrame) -> Optional[str]:
        if self._closed:
            logger.warning("Frame after end of stream ignored", extra={"extra": {"terminal": frame.terminal}})
            return None
        if frame.terminal:
            self._closed = True
            return None
        if frame.role and self.role is None:
            self.role = frame.role
        if frame.content is None:
            return None
        self._text += frame.content
        return self._text
