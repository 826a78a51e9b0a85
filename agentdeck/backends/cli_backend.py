"""
Backend that drives an agent CLI speaking newline-delimited ``stream-json``.

Each stdout line is a JSON event:

- ``{"type": "system", "subtype": "init", "session_id": ..., "tools": [...]}``
- ``{"type": "assistant", "message": {"content": [{"type": "text", ...},
  {"type": "tool_use", ...}]}}``
- ``{"type": "user", "message": {"content": [{"type": "tool_result", ...}]}}``
- ``{"type": "result", "result": ..., "usage": {...}, "session_id": ...}``

and is translated into content units and metadata markers. Lines that are
not JSON are passed through as content.
"""

import asyncio
import json
import logging
import os
from typing import Any, AsyncIterator, Dict, List, Optional

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from agentdeck.backends.base import AgentBackend, BackendRequest, BackendResponse
from agentdeck.config import BackendConfig
from agentdeck.system.stream_codec import StreamingProtocolCodec, encode_marker
from agentdeck.utils.errors import BackendError

logger = logging.getLogger(__name__)

STREAM_LIMIT = 8 * 1024 * 1024


def translate_line(line: str) -> List[str]:
    """Turn one stream-json line into zero or more stream units."""
    line = line.strip()
    if not line:
        return []
    try:
        event = json.loads(line)
    except json.JSONDecodeError:
        return [line]
    if not isinstance(event, dict):
        return [line]

    units: List[str] = []
    event_type = event.get("type")

    if event_type == "system":
        payload: Dict[str, Any] = {}
        if event.get("session_id"):
            payload["session_id"] = event["session_id"]
        if event.get("tools") is not None:
            payload["tools"] = event["tools"]
        if payload:
            units.append(encode_marker("SYSTEM", payload))

    elif event_type in ("assistant", "user"):
        content = (event.get("message") or {}).get("content") or []
        if isinstance(content, str):
            content = [{"type": "text", "text": content}]
        for item in content:
            if not isinstance(item, dict):
                continue
            item_type = item.get("type")
            if item_type == "text" and item.get("text") and event_type == "assistant":
                units.append(item["text"])
            elif item_type == "tool_use":
                units.append(encode_marker("TOOL_USE", {
                    "id": item.get("id"),
                    "name": item.get("name"),
                    "input": item.get("input") or {},
                }))
            elif item_type == "tool_result":
                units.append(encode_marker("TOOL_RESULT", {
                    "tool_use_id": item.get("tool_use_id"),
                    "content": item.get("content"),
                    "is_error": bool(item.get("is_error", False)),
                }))

    elif event_type == "result":
        if event.get("session_id"):
            units.append(encode_marker("SYSTEM", {"session_id": event["session_id"]}))
        if event.get("usage") is not None:
            units.append(encode_marker("USAGE", event["usage"]))
        units.append(encode_marker("RESULT", {
            "subtype": event.get("subtype"),
            "is_error": bool(event.get("is_error", False)),
            "result": event.get("result"),
            "duration_ms": event.get("duration_ms"),
            "num_turns": event.get("num_turns"),
            "total_cost_usd": event.get("total_cost_usd"),
        }))

    return units


class CliAgentBackend(AgentBackend):
    name = "cli"

    def __init__(self, config: Optional[BackendConfig] = None, codec: Optional[StreamingProtocolCodec] = None):
        self.config = config or BackendConfig()
        self.codec = codec or StreamingProtocolCodec(store=None)

    def _command(self, request: BackendRequest) -> List[str]:
        command = list(self.config.command)
        if request.model:
            command += ["--model", request.model]
        if request.session_id:
            command += ["--resume", request.session_id]
        return command

    async def _spawn(self, request: BackendRequest) -> asyncio.subprocess.Process:
        command = self._command(request)
        cwd = str(request.workspace_path) if request.workspace_path else None
        logger.debug(f"Starting backend process: {' '.join(command)} (cwd={cwd})")
        try:
            return await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=os.environ.copy(),
                limit=STREAM_LIMIT,
            )
        except (OSError, ValueError) as e:
            raise BackendError(f"Failed to start backend '{command[0]}': {e}") from e

    async def stream(self, request: BackendRequest) -> AsyncIterator[str]:
        process = await self._spawn(request)
        prompt = request.build_prompt(self.config.history_window)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.timeout_seconds

        try:
            try:
                process.stdin.write(prompt.encode("utf-8"))
                await process.stdin.drain()
                process.stdin.close()
            except (BrokenPipeError, ConnectionResetError) as e:
                raise BackendError(f"Backend closed its input early: {e}") from e

            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise BackendError(f"Backend timed out after {self.config.timeout_seconds}s")
                try:
                    raw = await asyncio.wait_for(process.stdout.readline(), timeout=remaining)
                except asyncio.TimeoutError:
                    raise BackendError(f"Backend timed out after {self.config.timeout_seconds}s") from None
                if not raw:
                    break
                for unit in translate_line(raw.decode("utf-8", errors="replace")):
                    yield unit

            returncode = await process.wait()
            if returncode != 0:
                stderr = (await process.stderr.read()).decode("utf-8", errors="replace").strip()
                raise BackendError(
                    f"Backend exited with code {returncode}: {stderr[:500] or 'no error output'}",
                    details={"returncode": returncode},
                )
        finally:
            if process.returncode is None:
                process.kill()
                await process.wait()

    async def _generate_once(self, request: BackendRequest) -> BackendResponse:
        units = [unit async for unit in self.stream(request)]
        content, metadata = self.codec.decode_text("".join(units))
        result = metadata.to_metadata(success=True)
        result["backend"] = self.name
        return BackendResponse(content=content.strip(), metadata=result)

    async def generate(self, request: BackendRequest) -> BackendResponse:
        @retry(
            stop=stop_after_attempt(max(1, self.config.retry_attempts)),
            wait=wait_exponential(multiplier=1, min=4, max=10),
            retry=retry_if_exception_type(BackendError),
            reraise=True,
        )
        async def _attempt() -> BackendResponse:
            return await self._generate_once(request)

        return await _attempt()
