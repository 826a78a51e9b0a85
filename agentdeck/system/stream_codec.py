"""
Streaming protocol codec.

The agent backend yields one text stream that mixes ordinary content with
inline control markers of the form ``<<<TYPE:json>>>`` where TYPE is one of
SYSTEM, USAGE, TOOL_USE, TOOL_RESULT or RESULT. The legacy
``<<<CLAUDE_METADATA:TYPE:json>>>`` spelling is accepted too.

This module:
- splits incoming units into content and metadata (markers may sit inside a
  unit or be split across units),
- merges metadata into a running accumulator,
- frames every raw unit as a server-sent ``chunk`` event,
- persists the final assistant message once the stream ends.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple
import re

from agentdeck.system.state import ConversationMessage, MessageRole, generate_message_id

logger = logging.getLogger(__name__)

MARKER_TYPES = ("SYSTEM", "USAGE", "TOOL_USE", "TOOL_RESULT", "RESULT")
LEGACY_PREFIX = "CLAUDE_METADATA:"
MARKER_OPEN = "<<<"
MARKER_CLOSE = ">>>"
MARKER_PATTERN = re.compile(
    r"<<<(?:CLAUDE_METADATA:)?(SYSTEM|USAGE|TOOL_USE|TOOL_RESULT|RESULT):(.*?)>>>",
    re.DOTALL,
)

_MARKER_HEADS = [f"{t}:" for t in MARKER_TYPES] + [f"{LEGACY_PREFIX}{t}:" for t in MARKER_TYPES]

EVENT_START = "start"
EVENT_CHUNK = "chunk"
EVENT_COMPLETE = "complete"
EVENT_ERROR = "error"


def encode_marker(marker_type: str, payload: Any) -> str:
    """Render a metadata marker, e.g. ``<<<TOOL_USE:{"name": "grep"}>>>``.

    ``>`` is written as ``\\u003e`` so the payload can never contain the
    closing ``>>>``.
    """
    if marker_type not in MARKER_TYPES:
        raise ValueError(f"Unknown marker type: {marker_type}")
    body = json.dumps(payload).replace(">", "\\u003e")
    return f"{MARKER_OPEN}{marker_type}:{body}{MARKER_CLOSE}"


def decode_marker(text: str) -> Optional[Tuple[str, Any]]:
    """Decode a single marker. Returns None if ``text`` is not a marker.

    Raises ``json.JSONDecodeError`` when the marker's payload is malformed.
    """
    match = MARKER_PATTERN.fullmatch(text.strip())
    if not match:
        return None
    return match.group(1), json.loads(match.group(2))


def format_event(event: Dict[str, Any]) -> str:
    """Frame one event as a single SSE ``data:`` line.

    ``json.dumps`` escapes backslashes, quotes, CR, LF, tab and every other
    control character, so a frame never spans more than one line.
    """
    return f"data: {json.dumps(event)}\n\n"


def start_event() -> str:
    return format_event({"type": EVENT_START, "status": "processing"})


def chunk_event(unit: str) -> str:
    return format_event({"type": EVENT_CHUNK, "content": unit})


def complete_event(message_id: str) -> str:
    return format_event({"type": EVENT_COMPLETE, "message_id": message_id})


def error_event(message: str) -> str:
    return format_event({"type": EVENT_ERROR, "error": message})


def parse_events(raw: str) -> List[Dict[str, Any]]:
    """Parse a block of framed events back into dicts. Used by clients and tests."""
    events = []
    for line in raw.splitlines():
        line = line.strip()
        if line.startswith("data:"):
            events.append(json.loads(line[len("data:"):].strip()))
    return events


@dataclass
class MetadataAccumulator:
    """Running merge of stream metadata.

    SYSTEM sets session id and tools, USAGE and RESULT keep the last value,
    TOOL_USE and TOOL_RESULT are appended in arrival order.
    """
    session_id: Optional[str] = None
    tools: List[Any] = field(default_factory=list)
    usage: Optional[Dict[str, Any]] = None
    result: Optional[Any] = None
    tool_uses: List[Any] = field(default_factory=list)
    tool_results: List[Any] = field(default_factory=list)

    def apply(self, marker_type: str, payload: Any) -> None:
        if marker_type == "SYSTEM":
            if isinstance(payload, dict):
                if payload.get("session_id"):
                    self.session_id = payload["session_id"]
                if payload.get("tools") is not None:
                    self.tools = list(payload["tools"])
        elif marker_type == "USAGE":
            self.usage = payload
        elif marker_type == "RESULT":
            self.result = payload
        elif marker_type == "TOOL_USE":
            self.tool_uses.append(payload)
        elif marker_type == "TOOL_RESULT":
            self.tool_results.append(payload)

    def to_metadata(self, success: bool = True) -> Dict[str, Any]:
        return {
            "backend": "streaming",
            "success": success,
            "session_id": self.session_id,
            "tools": self.tools,
            "usage": self.usage,
            "tool_uses": self.tool_uses,
            "tool_results": self.tool_results,
            "result": self.result,
        }


@dataclass
class Segment:
    kind: str  # "content" or "metadata"
    text: str = ""
    marker_type: Optional[str] = None
    payload: Any = None


def _could_be_marker(fragment: str) -> bool:
    """True when ``fragment`` (text after ``<<<``) may still grow into a marker head."""
    for head in _MARKER_HEADS:
        n = min(len(head), len(fragment))
        if fragment[:n] == head[:n]:
            return True
    return False


class StreamDecoder:
    """Incremental splitter of raw units into content and metadata segments.

    Text that might be the start of a marker is held back until the marker
    closes. If the held text grows past ``max_marker_bytes`` or the stream
    ends first, it is released as content.
    """

    def __init__(self, max_marker_bytes: int = 65536):
        self.max_marker_bytes = max_marker_bytes
        self._pending = ""
        self.dropped_markers = 0

    def feed(self, unit: str) -> List[Segment]:
        buffer = self._pending + unit
        self._pending = ""
        segments: List[Segment] = []
        content_start = 0
        pos = 0

        while True:
            opening = buffer.find(MARKER_OPEN, pos)
            if opening < 0:
                # A trailing "<" or "<<" may be the first half of an opener.
                tail = len(buffer) - len(buffer.rstrip("<"))
                cut = len(buffer) - min(tail, len(MARKER_OPEN) - 1)
                self._emit_content(segments, buffer[content_start:cut])
                self._pending = buffer[cut:]
                break

            fragment = buffer[opening + len(MARKER_OPEN):]
            if not _could_be_marker(fragment):
                pos = opening + 1
                continue

            match = MARKER_PATTERN.match(buffer, opening)
            if match:
                self._emit_content(segments, buffer[content_start:opening])
                content_start = pos = self._emit_metadata(segments, buffer, match)
                continue

            if MARKER_CLOSE in fragment:
                pos = opening + 1
                continue

            # Unterminated marker: hold it back unless it outgrew the buffer.
            if len(buffer) - opening > self.max_marker_bytes:
                logger.warning(
                    f"Unterminated marker exceeded {self.max_marker_bytes} bytes, releasing as content"
                )
                pos = opening + 1
                continue
            self._emit_content(segments, buffer[content_start:opening])
            self._pending = buffer[opening:]
            break

        return segments

    def flush(self) -> List[Segment]:
        """Release anything still held back as content."""
        segments: List[Segment] = []
        if self._pending:
            if self._pending.startswith(MARKER_OPEN):
                logger.warning("Stream ended inside a marker, releasing it as content")
            self._emit_content(segments, self._pending)
            self._pending = ""
        return segments

    @staticmethod
    def _emit_content(segments: List[Segment], text: str) -> None:
        if text:
            segments.append(Segment(kind="content", text=text))

    def _emit_metadata(self, segments: List[Segment], buffer: str, match: "re.Match") -> int:
        """Decode the marker at ``match`` and return the offset where it ends.

        A payload that does not parse is retried against each later ``>>>``
        within ``max_marker_bytes``, since raw tool output may contain one.
        """
        marker_type = match.group(1)
        payload_start = match.start(2)
        end = match.end()
        first_error = None
        while True:
            try:
                payload = json.loads(buffer[payload_start:end - len(MARKER_CLOSE)])
            except json.JSONDecodeError as e:
                first_error = first_error or e
            else:
                segments.append(Segment(kind="metadata", marker_type=marker_type, payload=payload))
                return end

            closer = buffer.find(MARKER_CLOSE, end - len(MARKER_CLOSE) + 1)
            if closer < 0 or closer + len(MARKER_CLOSE) - match.start() > self.max_marker_bytes:
                break
            end = closer + len(MARKER_CLOSE)

        self.dropped_markers += 1
        logger.warning(f"Dropping {marker_type} marker with malformed JSON: {first_error}")
        return match.end()


class StreamRelay:
    """One streamed assistant response for one (workspace, agent) pair.

    Iterate ``frames(source)`` to get framed events. Afterwards ``message``
    holds the persisted assistant message (if any), ``metadata`` the merged
    accumulator and ``error`` the backend failure, if one occurred. If the
    consumer closes the generator early, the content received so far is
    persisted with ``success: false`` and ``interrupted`` is set.
    """

    def __init__(
        self,
        store,
        workspace_id: str,
        agent_id: str,
        max_marker_bytes: int = 65536,
        message_id: Optional[str] = None,
    ):
        self.store = store
        self.workspace_id = workspace_id
        self.agent_id = agent_id
        self.message_id = message_id or generate_message_id()
        self.decoder = StreamDecoder(max_marker_bytes)
        self.metadata = MetadataAccumulator()
        self.content_parts: List[str] = []
        self.message: Optional[ConversationMessage] = None
        self.error: Optional[BaseException] = None
        self.interrupted = False
        self.units_received = 0

    @property
    def content(self) -> str:
        return "".join(self.content_parts)

    def _consume(self, segments: List[Segment]) -> None:
        for segment in segments:
            if segment.kind == "content":
                self.content_parts.append(segment.text)
            else:
                self.metadata.apply(segment.marker_type, segment.payload)

    async def _persist(self, success: bool) -> ConversationMessage:
        message = ConversationMessage(
            role=MessageRole.ASSISTANT,
            content=self.content,
            id=self.message_id,
            metadata=self.metadata.to_metadata(success=success),
        )
        self.message = await self.store.append(self.workspace_id, self.agent_id, message)
        return self.message

    async def frames(self, source: AsyncIterator[str]) -> AsyncIterator[str]:
        settled = False
        try:
            yield start_event()
            try:
                async for unit in source:
                    if not unit:
                        continue
                    self.units_received += 1
                    self._consume(self.decoder.feed(unit))
                    yield chunk_event(unit)
            except Exception as e:
                self.error = e
                logger.error(f"Backend stream failed for {self.workspace_id}/{self.agent_id}: {e}")

            self._consume(self.decoder.flush())
            settled = True

            if self.error is not None:
                if self.content:
                    await self._persist(success=False)
                yield error_event(str(self.error) or type(self.error).__name__)
                return

            message = await self._persist(success=True)
            logger.debug(
                f"Stream complete for {self.workspace_id}/{self.agent_id}: "
                f"{self.units_received} units, {len(message.content)} chars, "
                f"{len(self.metadata.tool_uses)} tool uses"
            )
            yield complete_event(message.id)
        finally:
            if not settled:
                await self._persist_interrupted(source)

    async def _persist_interrupted(self, source: AsyncIterator[str]) -> None:
        """The consumer went away mid-stream: keep what was received."""
        self.interrupted = True
        aclose = getattr(source, "aclose", None)
        if aclose is not None:
            await aclose()
        self._consume(self.decoder.flush())
        logger.warning(
            f"Stream for {self.workspace_id}/{self.agent_id} closed after {self.units_received} units"
        )
        if self.content:
            await self._persist(success=False)


class StreamingProtocolCodec:
    def __init__(self, store, max_marker_bytes: int = 65536):
        self.store = store
        self.max_marker_bytes = max_marker_bytes

    def open(self, workspace_id: str, agent_id: str, message_id: Optional[str] = None) -> StreamRelay:
        return StreamRelay(
            self.store,
            workspace_id,
            agent_id,
            max_marker_bytes=self.max_marker_bytes,
            message_id=message_id,
        )

    def decode_text(self, text: str) -> Tuple[str, MetadataAccumulator]:
        """Decode a complete (non-streamed) response into content and metadata."""
        decoder = StreamDecoder(self.max_marker_bytes)
        accumulator = MetadataAccumulator()
        parts = []
        for segment in decoder.feed(text) + decoder.flush():
            if segment.kind == "content":
                parts.append(segment.text)
            else:
                accumulator.apply(segment.marker_type, segment.payload)
        return "".join(parts), accumulator
