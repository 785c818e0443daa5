import pytest

from chat_core.domain.exceptions import EnvelopeDecodeError
from chat_core.domain.models import StreamFrame
from chat_core.providers.sse import CompletionDecoder, FrameDecoder, decode_completion, decode_stream


STREAM = (
    b'data: {"choices":[{"delta":{"role":"assistant"}}]}\n\n'
    b'data: {"choices":[{"delta":{"content":"Hi"}}]}\n\n'
    + 'data: {"choices":[{"delta":{"content":" thére 你好"}}]}\n\n'.encode("utf-8")
    + b"data: [DONE]\n\n"
)


def _chunked(data: bytes, size: int):
    return [data[i : i + size] for i in range(0, len(data), size)]


def _feed_all(chunks):
    decoder = FrameDecoder()
    frames = []
    for chunk in chunks:
        frames.extend(decoder.feed(chunk))
    frames.extend(decoder.finish())
    return frames


def test_decoder_basic_stream():
    frames = _feed_all([STREAM])
    assert frames == [
        StreamFrame(role="assistant"),
        StreamFrame(content="Hi"),
        StreamFrame(content=" thére 你好"),
        StreamFrame.done(),
    ]


@pytest.mark.parametrize("size", [1, 2, 3, 7, 16, 61, 4096])
def test_decoder_chunking_invariance(size):
    assert _feed_all(_chunked(STREAM, size)) == _feed_all([STREAM])


def test_decoder_waits_for_line_terminator():
    decoder = FrameDecoder()
    assert decoder.feed(b'data: {"choices":[{"delta":{"content":"a"}}]}') == []
    assert decoder.feed(b"\r\n") == [StreamFrame(content="a")]


def test_decoder_drops_malformed_line():
    data = (
        b'data: {"choices":[{"delta":{"content":"a"}}]}\n'
        b"data: {not json\n"
        b'data: {"choices":[{"delta":{"content":"b"}}]}\n'
        b"data: [DONE]\n"
    )
    decoder = FrameDecoder()
    frames = decoder.feed(data)
    assert [f.content for f in frames] == ["a", "b", None]
    assert frames[-1].terminal
    assert decoder.dropped_lines == 1


def test_decoder_skips_blank_and_comment_lines():
    decoder = FrameDecoder()
    frames = decoder.feed(b"\n\n: keep-alive\n\r\ndata:\n")
    assert frames == []
    assert decoder.dropped_lines == 0


def test_decoder_stops_after_done():
    decoder = FrameDecoder()
    frames = decoder.feed(b'data: [DONE]\ndata: {"choices":[{"delta":{"content":"late"}}]}\n')
    assert frames == [StreamFrame.done()]
    assert decoder.finished
    assert decoder.feed(b'data: {"choices":[{"delta":{"content":"x"}}]}\n') == []


def test_decoder_line_without_prefix():
    decoder = FrameDecoder()
    frames = decoder.feed(b'{"choices":[{"message":{"role":"assistant","content":"full"}}]}\n')
    assert frames == [StreamFrame(role="assistant", content="full")]


def test_decoder_empty_choices_yields_empty_frame():
    decoder = FrameDecoder()
    assert decoder.feed(b'data: {"choices":[]}\n') == [StreamFrame()]


def test_decoder_finish_flushes_trailing_line():
    decoder = FrameDecoder()
    assert decoder.feed(b'data: {"choices":[{"delta":{"content":"tail"}}]}') == []
    assert decoder.finish() == [StreamFrame(content="tail")]


def test_decode_stream_is_lazy_and_stops_at_terminal():
    consumed = []

    def source():
        for chunk in [b'data: {"choices":[{"delta":{"content":"a"}}]}\n', b"data: [DONE]\n", b"never"]:
            consumed.append(chunk)
            yield chunk

    frames = list(decode_stream(source()))
    assert [f.terminal for f in frames] == [False, True]
    assert b"never" not in consumed


def test_completion_decoder_single_frame():
    decoder = CompletionDecoder()
    body = b'{"id":"x","choices":[{"index":0,"message":{"role":"assistant","content":"hello world"}}]}'
    assert decoder.feed(body[:10]) == []
    assert decoder.feed(body[10:]) == []
    assert decoder.finish() == [StreamFrame(role="assistant", content="hello world")]
    assert decoder.finish() == []


def test_decode_completion_errors():
    with pytest.raises(EnvelopeDecodeError) as exc:
        decode_completion(b"")
    assert exc.value.message == "无数据返回"

    with pytest.raises(EnvelopeDecodeError) as exc:
        decode_completion(b"{oops")
    assert exc.value.message.startswith("JSON解析错误")

    with pytest.raises(EnvelopeDecodeError) as exc:
        decode_completion(b'{"choices": []}')
    assert exc.value.message == "无法解析API响应"

    with pytest.raises(EnvelopeDecodeError):
        decode_completion(b'{"error": {"message": "bad"}}')
