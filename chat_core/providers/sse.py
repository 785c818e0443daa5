"""响应帧解码。

FrameDecoder 处理 SSE（text/event-stream）流：
- 传输层回调给出的字节块边界与行边界无关，可能一次只有一个字节；
- 解码器内部维护字节缓冲，只在拿到完整的一行后才做 UTF-8 解码与 JSON 校验；
- "data:" 前缀存在才去掉，缺失不是错误；
- "[DONE]" 产出终止帧，此后该解码器不再处理任何输入；
- 单行 JSON 解析失败只记录日志并丢弃，不中断整个流。

CompletionDecoder 用于非流式响应：缓冲完整响应体，结束时一次性解析出一个帧。
两者提供相同的 feed()/finish() 接口，会话控制器不需要区分模式。
"""

import json
import logging
from typing import Iterable, Iterator, List, Optional, Protocol

from pydantic import ValidationError as SchemaError

from chat_core.domain.exceptions import EnvelopeDecodeError
from chat_core.domain.models import StreamFrame
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers.schemas import ChoicePayload, CompletionPayload, StreamChunkPayload


DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


class ResponseDecoder(Protocol):
    @property
    def finished(self) -> bool:
        ...

    def feed(self, chunk: bytes) -> List[StreamFrame]:
        ...

    def finish(self) -> List[StreamFrame]:
        ...


def _frame_from_choices(choices: List[ChoicePayload]) -> StreamFrame:
    if not choices or choices[0].body is None:
        return StreamFrame()
    body = choices[0].body
    return StreamFrame(role=body.role, content=body.content)


class FrameDecoder:
    """SSE 字节流 -> StreamFrame 序列。"""

    def __init__(self) -> None:
        self._buffer = bytearray()
        self._finished = False
        self.dropped_lines = 0

    @property
    def finished(self) -> bool:
        """是否已经遇到终止帧。"""
        return self._finished

    def feed(self, chunk: bytes) -> List[StreamFrame]:
        if self._finished or not chunk:
            return []
        self._buffer.extend(chunk)
        frames: List[StreamFrame] = []
        while not self._finished:
            idx = self._buffer.find(b"\n")
            if idx < 0:
                break
            raw = bytes(self._buffer[:idx])
            del self._buffer[: idx + 1]
            frame = self._decode_line(raw)
            if frame is not None:
                frames.append(frame)
        return frames

    def finish(self) -> List[StreamFrame]:
        """传输结束时处理缓冲区里最后一行（没有换行结尾的情况）。"""
        if self._finished or not self._buffer:
            self._buffer.clear()
            return []
        raw = bytes(self._buffer)
        self._buffer.clear()
        frame = self._decode_line(raw)
        return [frame] if frame is not None else []

    def _decode_line(self, raw: bytes) -> Optional[StreamFrame]:
        if raw.endswith(b"\r"):
            raw = raw[:-1]
        try:
            line = raw.decode("utf-8").strip()
        except UnicodeDecodeError as e:
            self._drop(raw, f"utf-8: {e}")
            return None
        if not line or line.startswith(":"):
            return None
        if line.startswith(DATA_PREFIX):
            line = line[len(DATA_PREFIX):].strip()
            if not line:
                return None
        if line == DONE_SENTINEL:
            self._finished = True
            self._buffer.clear()
            return StreamFrame.done()
        try:
            payload = StreamChunkPayload.model_validate_json(line)
        except SchemaError as e:
            self._drop(raw, str(e.errors()[0]["msg"]) if e.errors() else str(e))
            return None
        return _frame_from_choices(payload.choices)

    def _drop(self, raw: bytes, reason: str) -> None:
        self.dropped_lines += 1
        logger.warning(
            "Dropped malformed stream line",
            extra={"extra": {"reason": reason, "line_bytes": len(raw)}},
        )


class CompletionDecoder:
    """非流式响应：整个响应体就是一个帧，不做 SSE 拆行，也没有增量拼接。"""

    def __init__(self) -> None:
        self._buffer = bytearray()
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    def feed(self, chunk: bytes) -> List[StreamFrame]:
        if not self._finished:
            self._buffer.extend(chunk)
        return []

    def finish(self) -> List[StreamFrame]:
        if self._finished:
            return []
        self._finished = True
        body = bytes(self._buffer)
        self._buffer.clear()
        return [decode_completion(body)]


def decode_completion(body: bytes) -> StreamFrame:
    """解析非流式响应体，取 choices[0].message.content。"""
    if not body.strip():
        raise EnvelopeDecodeError(code="EMPTY_RESPONSE", message="无数据返回")
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise EnvelopeDecodeError(code="RESPONSE_DECODE_ERROR", message=f"JSON解析错误: {e}")
    try:
        payload = CompletionPayload.model_validate(data)
    except SchemaError as e:
        raise EnvelopeDecodeError(code="RESPONSE_SCHEMA_ERROR", message="无法解析API响应", detail=str(e))
    frame = _frame_from_choices(payload.choices)
    if frame.content is None:
        raise EnvelopeDecodeError(code="RESPONSE_SCHEMA_ERROR", message="无法解析API响应")
    return frame


def decode_stream(chunks: Iterable[bytes], decoder: Optional[FrameDecoder] = None) -> Iterator[StreamFrame]:
    """惰性地把字节块序列转成帧序列，遇到终止帧即停止。"""
    decoder = decoder or FrameDecoder()
    for chunk in chunks:
        for frame in decoder.feed(chunk):
            yield frame
            if frame.terminal:
                return
    for frame in decoder.finish():
        yield frame
