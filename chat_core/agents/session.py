"""会话控制器。

把一次用户提交变成一次请求，并把传输层的回调接到解码器/拼接器/存储上。

状态机：
    IDLE --submit--> AWAITING_RESPONSE --complete/terminal/fail--> IDLE

传输层在后台线程执行，只产生三类命名事件：chunk / complete / fail。
所有事件都经 dispatch 回到同一个串行上下文（默认是会话锁；UI 可传入
自己的调度函数，例如 tkinter 的 root.after），再去修改 ConversationStore，
从而保证“同一时间最多一条打开的助手消息”。

每轮请求带一个 generation 令牌，过期轮次或 close() 之后到达的事件
会被直接丢弃，不会写入存储。
"""

import functools
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from chat_core.agents.accumulator import DeltaAccumulator
from chat_core.domain.conversation import ConversationStore
from chat_core.domain.exceptions import BusinessError
from chat_core.domain.models import Message, StreamFrame
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers.base import ChatClient
from chat_core.providers.schemas import RequestEnvelope
from chat_core.providers.sse import ResponseDecoder


Dispatch = Callable[[Callable[[], None]], None]
Listener = Callable[[str, Tuple[Message, ...]], None]


class SessionState(str, Enum):
    IDLE = "idle"
    AWAITING_RESPONSE = "awaiting_response"


@dataclass
class _Turn:
    token: int
    message_id: str
    decoder: Optional[ResponseDecoder]
    accumulator: DeltaAccumulator = field(default_factory=DeltaAccumulator)
    done: threading.Event = field(default_factory=threading.Event)
    snapshots: int = 0
    chunks: int = 0


class ChatSession:
    def __init__(
        self,
        store: ConversationStore,
        client: ChatClient,
        *,
        dispatch: Optional[Dispatch] = None,
        background: bool = True,
        system_prompt: Optional[str] = None,
    ):
        self._store = store
        self._client = client
        self._dispatch: Dispatch = dispatch or self._run_locked
        self._background = background
        self._system_prompt = system_prompt
        self._lock = threading.RLock()
        self._state = SessionState.IDLE
        self._turn: Optional[_Turn] = None
        self._generation = 0
        self._closed = False
        self._idle = threading.Event()
        self._idle.set()
        self._listeners: List[Listener] = []

    # ---- 对展示层暴露的状态 ----

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def busy(self) -> bool:
        """是否有请求在途，展示层据此禁用发送按钮。"""
        return self._state is SessionState.AWAITING_RESPONSE

    @property
    def store(self) -> ConversationStore:
        return self._store

    @property
    def messages(self) -> Tuple[Message, ...]:
        return self._store.messages

    def add_listener(self, listener: Listener) -> None:
        """注册观察者；每次存储变化后以 (事件名, 完整消息快照) 回调。"""
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # ---- 提交 ----

    def submit(self, text: str) -> bool:
        """提交一条用户消息；被拒绝（空输入/已有请求在途/已关闭）时返回 False。"""
        with self._lock:
            if self._closed:
                self._log(logging.WARNING, "Submit after close rejected", {})
                return False
            if not text or not text.strip():
                return False
            if self._state is not SessionState.IDLE:
                self._log(logging.INFO, "Submit rejected, request in flight", {"turn_id": self._generation})
                return False

            user_msg = self._store.append_user_message(text)
            self._notify("user")

            envelope: Optional[RequestEnvelope] = None
            error: Optional[BusinessError] = None
            try:
                envelope = self._client.build_envelope(list(self._store.messages), self._system_prompt)
            except BusinessError as e:
                error = e

            message_id = self._store.append_assistant_placeholder()
            self._generation += 1
            turn = _Turn(
                token=self._generation,
                message_id=message_id,
                decoder=self._client.new_decoder(envelope) if envelope is not None else None,
            )
            self._turn = turn
            self._state = SessionState.AWAITING_RESPONSE
            self._idle.clear()
            self._notify("placeholder")
            self._log(
                logging.INFO,
                "Turn started",
                self._ctx(turn),
                user_message_id=user_msg.id,
                history=len(self._store) - 1,
            )

            if error is not None:
                self._fail(turn, error)
                return True

        if self._background:
            worker = threading.Thread(
                target=self._run_transport,
                args=(turn, envelope),
                name=f"chat-turn-{turn.token}",
                daemon=True,
            )
            worker.start()
        else:
            self._run_transport(turn, envelope)
        return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        """阻塞直到当前轮次结束（使用默认 dispatch 时可用）。"""
        return self._idle.wait(timeout)

    def close(self) -> None:
        """结束会话：使在途请求失效并关闭传输，之后不会再有回调写入存储。"""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._generation += 1
            turn, self._turn = self._turn, None
            if turn is not None:
                self._store.close_open_message()
                turn.done.set()
                self._log(logging.INFO, "Turn abandoned on close", self._ctx(turn))
            self._state = SessionState.IDLE
            self._idle.set()
        self._client.close()

    # ---- 传输线程 ----

    def _run_transport(self, turn: _Turn, envelope: RequestEnvelope) -> None:
        chunks: Optional[Iterable[bytes]] = None
        try:
            chunks = self._client.open(envelope)
            for chunk in chunks:
                if not self._is_current(turn.token):
                    return
                self._post(self._on_chunk, turn.token, chunk)
        except BusinessError as e:
            self._post(self._on_fail, turn.token, e)
            return
        except Exception as e:
            logger.exception("Unexpected transport failure", extra={"extra": self._ctx(turn)})
            self._post(self._on_fail, turn.token, e)
            return
        finally:
            close = getattr(chunks, "close", None)
            if close is not None:
                close()
        self._post(self._on_complete, turn.token)

    def _post(self, handler: Callable[..., None], *args: Any) -> None:
        self._dispatch(functools.partial(handler, *args))

    def _run_locked(self, callback: Callable[[], None]) -> None:
        with self._lock:
            callback()

    # ---- 事件处理（串行上下文） ----

    def _on_chunk(self, token: int, chunk: bytes) -> None:
        turn = self._current(token)
        if turn is None or turn.decoder is None:
            return
        turn.chunks += 1
        self._apply(turn, turn.decoder.feed(chunk))

    def _on_complete(self, token: int) -> None:
        turn = self._current(token)
        if turn is None or turn.decoder is None:
            return
        try:
            frames = turn.decoder.finish()
        except BusinessError as e:
            self._fail(turn, e)
            return
        self._apply(turn, frames)
        if self._turn is turn:
            self._finish(turn, "complete")

    def _on_fail(self, token: int, error: Exception) -> None:
        turn = self._current(token)
        if turn is None:
            return
        self._fail(turn, error)

    def _apply(self, turn: _Turn, frames: List[StreamFrame]) -> None:
        for frame in frames:
            snapshot = turn.accumulator.feed(frame)
            if snapshot is not None:
                if self._store.update_content(turn.message_id, snapshot):
                    turn.snapshots += 1
                    self._notify("snapshot")
            if frame.terminal:
                self._finish(turn, "complete")
                return

    def _fail(self, turn: _Turn, error: Union[BusinessError, Exception]) -> None:
        if isinstance(error, BusinessError):
            diagnostic = error.message
            code = error.code
        else:
            diagnostic = f"未知错误: {error}"
            code = "UNEXPECTED_ERROR"
        self._store.update_content(turn.message_id, diagnostic)
        self._log(logging.WARNING, "Turn failed", self._ctx(turn), code=code, error=diagnostic)
        self._finish(turn, "failed")

    def _finish(self, turn: _Turn, outcome: str) -> None:
        self._store.close_open_message()
        self._turn = None
        self._state = SessionState.IDLE
        turn.done.set()
        self._idle.set()
        self._log(
            logging.INFO,
            "Turn finished",
            self._ctx(turn),
            outcome=outcome,
            chunks=turn.chunks,
            snapshots=turn.snapshots,
        )
        self._notify(outcome)

    # ---- 辅助方法 ----

    def _is_current(self, token: int) -> bool:
        turn = self._turn
        return not self._closed and turn is not None and turn.token == token

    def _current(self, token: int) -> Optional[_Turn]:
        if not self._is_current(token):
            self._log(logging.INFO, "Stale transport event dropped", {"turn_id": token})
            return None
        return self._turn

    def _notify(self, event: str) -> None:
        if not self._listeners:
            return
        snapshot = self._store.messages
        for listener in list(self._listeners):
            try:
                listener(event, snapshot)
            except Exception:
                logger.exception("Session listener failed", extra={"extra": {"event": event}})

    @staticmethod
    def _ctx(turn: _Turn) -> Dict[str, Any]:
        return {"turn_id": turn.token, "message_id": turn.message_id}

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
