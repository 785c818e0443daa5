import json

import httpx

from chat_core.agents.session import ChatSession, SessionState
from chat_core.domain.conversation import ConversationStore
from chat_core.domain.exceptions import NetworkError
from chat_core.infrastructure.storage.blob_store import MemoryBlobStore
from chat_core.providers.chat_client import ChatCompletionClient
from chat_core.providers.transport import HttpTransport


class SettingsStub:
    api_key = "sk-test-0123456789"
    provider = "openai-next"
    base_url = None
    model = "gpt-4o-mini"
    stream = True
    system_prompt = "You are a helpful assistant."
    system_prompt_file = None
    http_timeout = 1.0
    http_total_timeout = 5.0
    accept_any_certificate = False
    ca_bundle = None


class NonStreamSettings(SettingsStub):
    stream = False


HELLO_LINES = [
    b'data: {"choices":[{"delta":{"role":"assistant"}}]}\n\n',
    b'data: {"choices":[{"delta":{"content":"Hi"}}]}\n\n',
    b'data: {"choices":[{"delta":{"content":" there"}}]}\n\n',
    b"data: [DONE]\n\n",
]


class FakeTransport:
    """按脚本产出字节块；error 在 fail_at 处抛出（None 表示正常结束）。"""

    def __init__(self, chunks=(), body=b"", error=None, fail_at=None):
        self.chunks = list(chunks)
        self.body = body
        self.error = error
        self.fail_at = fail_at
        self.requests = []
        self.closed = False

    def post(self, url, payload, headers):
        self.requests.append(payload)
        if self.error is not None:
            raise self.error
        return self.body

    def stream(self, url, payload, headers):
        self.requests.append(payload)
        for i, chunk in enumerate(self.chunks):
            if self.error is not None and self.fail_at == i:
                raise self.error
            yield chunk
        if self.error is not None and (self.fail_at is None or self.fail_at >= len(self.chunks)):
            raise self.error

    def close(self):
        self.closed = True


def _session(transport, cfg=None, **kwargs):
    store = ConversationStore(MemoryBlobStore())
    client = ChatCompletionClient(cfg or SettingsStub(), transport=transport)
    kwargs.setdefault("background", False)
    return ChatSession(store, client, **kwargs)


def _contents(session):
    return [(m.content, m.is_user) for m in session.messages]


def test_hello_scenario_streams_snapshots():
    transport = FakeTransport(chunks=HELLO_LINES)
    session = _session(transport)
    events = []
    session.add_listener(lambda event, messages: events.append((event, messages[-1].content)))

    assert session.submit("hello")

    assert _contents(session) == [("hello", True), ("Hi there", False)]
    assert [text for event, text in events if event == "snapshot"] == ["Hi", "Hi there"]
    assert events[-1] == ("complete", "Hi there")
    assert session.state is SessionState.IDLE
    assert session.store.open_message_id is None


def test_snapshots_arrive_for_one_byte_chunks():
    data = b"".join(HELLO_LINES)
    transport = FakeTransport(chunks=[data[i : i + 1] for i in range(len(data))])
    session = _session(transport)
    snapshots = []
    session.add_listener(lambda event, messages: event == "snapshot" and snapshots.append(messages[-1].content))
    session.submit("hello")
    assert snapshots == ["Hi", "Hi there"]


def test_request_carries_full_history():
    transport = FakeTransport(chunks=HELLO_LINES)
    session = _session(transport)
    session.submit("hello")
    session.submit("how are you?")
    payload = transport.requests[-1]
    assert payload["model"] == "gpt-4o-mini"
    assert payload["stream"] is True
    assert payload["messages"] == [
        {"role": "system", "content": "You are a helpful assistant."},
        {"role": "user", "content": "hello"},
        {"role": "assistant", "content": "Hi there"},
        {"role": "user", "content": "how are you?"},
    ]


def test_connection_failure_before_any_fragment():
    transport = FakeTransport(
        chunks=HELLO_LINES,
        error=NetworkError(code="NETWORK_ERROR", message="网络错误: connection reset"),
        fail_at=0,
    )
    session = _session(transport)
    session.submit("hello")
    messages = session.messages
    assert messages[0].content == "hello" and messages[0].is_user
    assert not messages[1].is_user
    assert messages[1].content == "网络错误: connection reset"
    assert session.state is SessionState.IDLE


def test_failure_mid_stream_overwrites_partial_text():
    transport = FakeTransport(
        chunks=HELLO_LINES,
        error=NetworkError(code="TIMEOUT", message="网络错误: 请求超时"),
        fail_at=2,
    )
    session = _session(transport)
    session.submit("hello")
    assert session.messages[-1].content == "网络错误: 请求超时"
    assert not session.busy


def test_stream_without_done_completes_on_transport_end():
    transport = FakeTransport(chunks=HELLO_LINES[:3])
    session = _session(transport)
    session.submit("hello")
    assert session.messages[-1].content == "Hi there"
    assert session.state is SessionState.IDLE


def test_malformed_line_does_not_abort_turn():
    chunks = [HELLO_LINES[1], b"data: {broken\n\n", HELLO_LINES[2], HELLO_LINES[3]]
    session = _session(FakeTransport(chunks=chunks))
    session.submit("hello")
    assert session.messages[-1].content == "Hi there"


def test_non_stream_429_reports_status_without_decoding(monkeypatch):
    class Resp:
        status_code = 429

        def iter_bytes(self):
            raise AssertionError("body must not be decoded on error status")

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

    class Client:
        def __init__(self, *a, **kw):
            pass

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def stream(self, *a, **kw):
            return Resp()

    monkeypatch.setattr("httpx.Client", Client)
    cfg = NonStreamSettings()
    session = _session(HttpTransport(cfg), cfg=cfg)
    snapshots = []
    session.add_listener(lambda event, messages: event == "snapshot" and snapshots.append(messages[-1].content))
    session.submit("hello")
    assert snapshots == []
    assert "429" in session.messages[-1].content
    assert session.state is SessionState.IDLE


def test_non_stream_success():
    body = json.dumps({"choices": [{"message": {"role": "assistant", "content": "整段回复"}}]}).encode("utf-8")
    transport = FakeTransport(body=body)
    session = _session(transport, cfg=NonStreamSettings())
    session.submit("hello")
    assert session.messages[-1].content == "整段回复"
    assert transport.requests[0]["stream"] is False


def test_non_stream_bad_body_is_diagnosed():
    session = _session(FakeTransport(body=b"<html>gateway</html>"), cfg=NonStreamSettings())
    session.submit("hello")
    assert session.messages[-1].content.startswith("JSON解析错误")


def test_missing_api_key_sends_no_request():
    class NoKey(SettingsStub):
        api_key = None

    transport = FakeTransport(chunks=HELLO_LINES)
    session = _session(transport, cfg=NoKey())
    assert session.submit("hello")
    assert transport.requests == []
    assert session.messages[-1].content == "API_KEY 环境变量未设置"
    assert session.state is SessionState.IDLE


def test_short_api_key_is_reported_in_conversation():
    class ShortKey(SettingsStub):
        api_key = "short"

    transport = FakeTransport(chunks=HELLO_LINES)
    session = _session(transport, cfg=ShortKey())
    assert session.submit("hello")
    assert transport.requests == []
    assert _contents(session) == [("hello", True), ("API_KEY 无效（长度不足）", False)]
    assert session.state is SessionState.IDLE


def test_unexpected_transport_exception_is_contained():
    session = _session(FakeTransport(chunks=HELLO_LINES, error=RuntimeError("boom"), fail_at=1))
    session.submit("hello")
    assert session.messages[-1].content == "未知错误: boom"
    assert session.state is SessionState.IDLE


def test_empty_input_is_rejected():
    transport = FakeTransport(chunks=HELLO_LINES)
    session = _session(transport)
    assert not session.submit("")
    assert not session.submit("   \n\t")
    assert session.messages == ()
    assert transport.requests == []


def test_concurrent_submit_is_rejected_and_stale_events_dropped():
    queued = []
    transport = FakeTransport(chunks=HELLO_LINES)
    session = _session(transport, dispatch=queued.append)

    assert session.submit("hello")
    assert session.busy
    assert not session.submit("second")
    assert len(session.messages) == 2

    for callback in queued:
        callback()
    assert session.messages[-1].content == "Hi there"
    assert not session.busy


def test_close_drops_pending_callbacks():
    queued = []
    transport = FakeTransport(chunks=HELLO_LINES)
    session = _session(transport, dispatch=queued.append)
    session.submit("hello")
    assert queued

    session.close()
    assert transport.closed
    for callback in queued:
        callback()
    assert _contents(session) == [("hello", True), ("", False)]
    assert not session.submit("after close")


def test_background_worker_and_wait():
    session = _session(FakeTransport(chunks=HELLO_LINES), background=True)
    assert session.submit("hello")
    assert session.wait(5)
    assert session.messages[-1].content == "Hi there"


def test_history_persisted_after_every_mutation():
    blobs = MemoryBlobStore()
    store = ConversationStore(blobs)
    session = ChatSession(store, ChatCompletionClient(SettingsStub(), transport=FakeTransport(chunks=HELLO_LINES)), background=False)
    session.submit("hello")
    # user + placeholder + 2 snapshots
    assert blobs.save_count == 4

    restored = ConversationStore(blobs)
    restored.load()
    assert [(m.content, m.is_user) for m in restored.messages] == [("hello", True), ("Hi there", False)]


def test_listener_failure_does_not_break_turn():
    session = _session(FakeTransport(chunks=HELLO_LINES))

    def bad_listener(event, messages):
        raise ValueError("ui exploded")

    session.add_listener(bad_listener)
    session.submit("hello")
    assert session.messages[-1].content == "Hi there"


def test_read_timeout_through_http_transport(monkeypatch):
    class Client:
        def __init__(self, *a, **kw):
            pass

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def stream(self, *a, **kw):
            raise httpx.ConnectTimeout("connect timed out")

    monkeypatch.setattr("httpx.Client", Client)
    cfg = SettingsStub()
    session = _session(HttpTransport(cfg), cfg=cfg)
    session.submit("hello")
    assert session.messages[-1].content.startswith("网络错误")
    assert session.state is SessionState.IDLE
