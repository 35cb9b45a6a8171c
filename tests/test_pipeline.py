from __future__ import annotations

import asyncio
import json

import pytest

from claude_relay.errors import DecodeFailure
from claude_relay.runners.pipeline import (
    JSONLineStats,
    JsonLineDecoder,
    iter_json_line_pipeline,
    iter_structured,
    parse_line,
)

MESSAGES = [
    {"type": "system", "subtype": "init", "session_id": "abc"},
    {"type": "assistant", "message": {"content": [{"type": "text", "text": "héllo ✓ 日本"}]}},
    {"type": "result", "subtype": "success", "usage": {"input_tokens": 3}},
]


def _payload() -> bytes:
    return "".join(json.dumps(m, ensure_ascii=False) + "\n" for m in MESSAGES).encode("utf-8")


def _decode_in_chunks(data: bytes, size: int) -> list:
    decoder = JsonLineDecoder()
    frames = []
    for i in range(0, len(data), size):
        frames.extend(decoder.feed(data[i : i + size]))
    frames.extend(decoder.flush())
    return frames


def test_single_chunk_decodes_every_message():
    frames = _decode_in_chunks(_payload(), len(_payload()))
    assert frames == [("message", m) for m in MESSAGES]


@pytest.mark.parametrize("size", [1, 2, 3, 7, 16, 33])
def test_chunk_boundaries_do_not_change_result(size):
    # Sizes of 1..3 bytes split multibyte characters as well as lines.
    assert _decode_in_chunks(_payload(), size) == [("message", m) for m in MESSAGES]


def test_incomplete_line_is_held_back():
    decoder = JsonLineDecoder()
    assert decoder.feed('{"type": "sys') == []
    assert decoder.feed('tem"}\n') == [("message", {"type": "system"})]
    assert decoder.flush() == []


def test_malformed_line_is_raw_and_decoding_continues():
    decoder = JsonLineDecoder()
    frames = decoder.feed('{"a": 1}\nnot json at all\n{"b": 2}\n')
    assert frames == [
        ("message", {"a": 1}),
        ("raw", "not json at all"),
        ("message", {"b": 2}),
    ]


def test_non_object_json_is_raw():
    decoder = JsonLineDecoder()
    assert decoder.feed("42\n[1, 2]\n") == [("raw", "42"), ("raw", "[1, 2]")]


def test_parse_line_raises_decode_failure():
    assert parse_line('{"a": 1}') == {"a": 1}
    with pytest.raises(DecodeFailure) as exc:
        parse_line("not json")
    assert exc.value.line_preview == "not json"
    with pytest.raises(DecodeFailure, match="not an object"):
        parse_line("[1]")


def test_blank_and_crlf_lines():
    decoder = JsonLineDecoder()
    assert decoder.feed('\n\r\n{"a": 1}\r\n  \n') == [("message", {"a": 1})]


def test_flush_decodes_unterminated_tail():
    decoder = JsonLineDecoder()
    assert decoder.feed('{"a": 1}\n{"b": 2}') == [("message", {"a": 1})]
    assert decoder.flush() == [("message", {"b": 2})]
    assert decoder.flush() == []


@pytest.mark.asyncio
async def test_stream_pipeline_records_stats():
    reader = asyncio.StreamReader()
    reader.feed_data(b'{"type": "system", "session_id": "x"}\ngarbage\n')
    reader.feed_data(b'{"type": "res')
    reader.feed_data(b'ult"}')
    reader.feed_eof()

    stats = JSONLineStats()
    frames = [f async for f in iter_json_line_pipeline(byte_stream=reader, stats=stats, chunk_size=5)]

    assert frames == [
        ("message", {"type": "system", "session_id": "x"}),
        ("raw", "garbage"),
        ("message", {"type": "result"}),
    ]
    assert stats.emitted_any is True
    assert stats.non_json_lines == ["garbage"]


@pytest.mark.asyncio
async def test_structured_messages_pass_through_unchanged():
    async def source():
        for m in MESSAGES:
            yield m

    frames = [f async for f in iter_structured(source())]

    assert [kind for kind, _ in frames] == ["message"] * len(MESSAGES)
    assert all(payload is original for (_, payload), original in zip(frames, MESSAGES))
