"""Tests for marker decoding, SSE framing and the stream relay."""

import json
import shutil
import tempfile
from pathlib import Path

import pytest

from agentdeck.system.conversation_store import ConversationStore
from agentdeck.system.stream_codec import (
    StreamDecoder,
    StreamingProtocolCodec,
    chunk_event,
    decode_marker,
    encode_marker,
    parse_events,
)
from agentdeck.system.state import MessageRole
from agentdeck.utils.errors import BackendError


def _split(segments):
    content = "".join(s.text for s in segments if s.kind == "content")
    metadata = [(s.marker_type, s.payload) for s in segments if s.kind == "metadata"]
    return content, metadata


async def _units(items, fail_with=None):
    for item in items:
        yield item
    if fail_with is not None:
        raise fail_with


def test_encode_and_decode_marker():
    marker = encode_marker("TOOL_USE", {"name": "grep"})
    assert marker == '<<<TOOL_USE:{"name": "grep"}>>>'
    assert decode_marker('<<<TOOL_USE:{"name":"grep"}>>>') == ("TOOL_USE", {"name": "grep"})
    assert decode_marker("plain text") is None


def test_payload_containing_closer_round_trips():
    payload = {"tool_use_id": "t1", "content": ">>> 1 + 1\n2", "is_error": False}
    marker = encode_marker("TOOL_RESULT", payload)
    assert marker.count(">>>") == 1
    assert decode_marker(marker) == ("TOOL_RESULT", payload)

    content, metadata = StreamingProtocolCodec(store=None).decode_text("Hi " + marker + " bye")
    assert content == "Hi  bye"
    assert metadata.tool_results == [payload]


def test_unescaped_closer_inside_payload_is_recovered():
    decoder = StreamDecoder()
    unit = 'a <<<TOOL_RESULT:{"content": "x >>> y"}>>> b'
    content, metadata = _split(decoder.feed(unit) + decoder.flush())
    assert content == "a  b"
    assert metadata == [("TOOL_RESULT", {"content": "x >>> y"})]
    assert decoder.dropped_markers == 0


def test_encode_rejects_unknown_type():
    with pytest.raises(ValueError):
        encode_marker("BOGUS", {})


def test_decode_legacy_prefix():
    assert decode_marker('<<<CLAUDE_METADATA:SYSTEM:{"session_id": "s1"}>>>') == ("SYSTEM", {"session_id": "s1"})


def test_decode_marker_with_malformed_payload_raises():
    with pytest.raises(json.JSONDecodeError):
        decode_marker("<<<USAGE:{oops}>>>")


def test_marker_inside_unit_is_extracted():
    decoder = StreamDecoder()
    content, metadata = _split(decoder.feed('Hi<<<USAGE:{"input_tokens": 3}>>> there') + decoder.flush())
    assert content == "Hi there"
    assert metadata == [("USAGE", {"input_tokens": 3})]


def test_marker_split_across_units():
    decoder = StreamDecoder()
    first = decoder.feed("Hello <<<TOOL_")
    assert _split(first) == ("Hello ", [])

    second = decoder.feed('USE:{"name": "grep"}>>> world')
    assert _split(second) == (" world", [("TOOL_USE", {"name": "grep"})])
    assert decoder.flush() == []


def test_opener_split_across_units():
    decoder = StreamDecoder()
    assert _split(decoder.feed("a <")) == ("a ", [])
    assert _split(decoder.feed('<<SYSTEM:{"session_id": "x"}>>>')) == ("", [("SYSTEM", {"session_id": "x"})])


def test_malformed_marker_is_dropped_and_content_kept():
    decoder = StreamDecoder()
    content, metadata = _split(decoder.feed("before <<<TOOL_USE:{not json}>>> after") + decoder.flush())
    assert content == "before  after"
    assert metadata == []
    assert decoder.dropped_markers == 1


def test_angle_brackets_that_are_not_markers_stay_content():
    decoder = StreamDecoder()
    content, metadata = _split(decoder.feed("a <<<b>>> c << d") + decoder.flush())
    assert content == "a <<<b>>> c << d"
    assert metadata == []


def test_unterminated_marker_released_on_flush():
    decoder = StreamDecoder()
    assert _split(decoder.feed('x <<<RESULT:{"a":')) == ("x ", [])
    assert _split(decoder.flush()) == ('<<<RESULT:{"a":', [])


def test_oversized_marker_released_as_content():
    decoder = StreamDecoder(max_marker_bytes=16)
    content, _ = _split(decoder.feed('<<<RESULT:{"a": "' + "x" * 40))
    assert content.startswith("<<<RESULT:")


def test_frame_is_single_line_and_round_trips():
    unit = 'line1\nline2\r\n\t"quoted" \\ back'
    frame = chunk_event(unit)
    assert frame.startswith("data: ")
    assert frame.endswith("\n\n")
    assert frame.count("\n") == 2
    assert parse_events(frame) == [{"type": "chunk", "content": unit}]


def test_decode_text_merges_metadata():
    codec = StreamingProtocolCodec(store=None)
    content, metadata = codec.decode_text(
        '<<<SYSTEM:{"session_id": "s9", "tools": ["Bash"]}>>>Done'
        '<<<TOOL_USE:{"id": "t1"}>>><<<TOOL_USE:{"id": "t2"}>>>'
        '<<<RESULT:{"is_error": false}>>>'
    )
    assert content == "Done"
    assert metadata.session_id == "s9"
    assert metadata.tools == ["Bash"]
    assert [t["id"] for t in metadata.tool_uses] == ["t1", "t2"]
    assert metadata.result == {"is_error": False}


class TestStreamRelay:
    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.store = ConversationStore(Path(self.temp_dir))
        self.codec = StreamingProtocolCodec(self.store)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    @pytest.mark.asyncio
    async def test_frames_and_persisted_message(self):
        units = ["Hello ", "world", '<<<TOOL_USE:{"name": "grep"}>>>', " done", "!"]
        relay = self.codec.open("ws1", "agent1")
        frames = [frame async for frame in relay.frames(_units(units))]

        events = parse_events("".join(frames))
        assert [e["type"] for e in events] == ["start"] + ["chunk"] * 5 + ["complete"]
        assert [e["content"] for e in events[1:6]] == units

        messages = self.store.load("ws1", "agent1")
        assert len(messages) == 1
        assert messages[0].role == MessageRole.ASSISTANT
        assert messages[0].content == "Hello world done!"
        assert messages[0].metadata["tool_uses"] == [{"name": "grep"}]
        assert messages[0].metadata["success"] is True
        assert events[-1]["message_id"] == messages[0].id

    @pytest.mark.asyncio
    async def test_source_failure_keeps_partial_content(self):
        relay = self.codec.open("ws1", "agent1")
        frames = [frame async for frame in relay.frames(_units(["Partial "], BackendError("backend exploded")))]

        events = parse_events("".join(frames))
        assert [e["type"] for e in events] == ["start", "chunk", "error"]
        assert events[-1]["error"] == "backend exploded"
        assert isinstance(relay.error, BackendError)

        messages = self.store.load("ws1", "agent1")
        assert len(messages) == 1
        assert messages[0].content == "Partial "
        assert messages[0].metadata["success"] is False

    @pytest.mark.asyncio
    async def test_source_failure_without_content_persists_nothing(self):
        relay = self.codec.open("ws1", "agent1")
        frames = [frame async for frame in relay.frames(_units([], BackendError("no output")))]

        assert [e["type"] for e in parse_events("".join(frames))] == ["start", "error"]
        assert self.store.load("ws1", "agent1") == []
        assert relay.message is None

    @pytest.mark.asyncio
    async def test_consumer_closing_early_keeps_received_content(self):
        source = _units(["Hello ", '<<<SYSTEM:{"session_id": "s7"}>>>world', " never sent"])
        relay = self.codec.open("ws1", "agent1")
        frames = relay.frames(source)

        received = [await frames.__anext__() for _ in range(3)]
        await frames.aclose()

        assert [e["type"] for e in parse_events("".join(received))] == ["start", "chunk", "chunk"]
        assert relay.interrupted is True
        assert relay.metadata.session_id == "s7"
        messages = self.store.load("ws1", "agent1")
        assert len(messages) == 1
        assert messages[0].content == "Hello world"
        assert messages[0].metadata["success"] is False
        assert source.ag_frame is None
