import os
import tempfile
from pathlib import Path
from typing import List, Optional

import pytest

# Keep config resolution and log files away from the real home directory
_storage = Path(os.environ.get("AGENTDECK_STORAGE", tempfile.mkdtemp(prefix="agentdeck-tests-")))
os.environ.setdefault("AGENTDECK_STORAGE", str(_storage))
os.environ.pop("AGENTDECK_CONFIG_PATH", None)

from agentdeck.backends.base import AgentBackend, BackendRequest, BackendResponse  # noqa: E402
from agentdeck.config import Config  # noqa: E402
from agentdeck.core import AgentDeckCore  # noqa: E402
from agentdeck.system.stream_codec import StreamingProtocolCodec  # noqa: E402

TOOL_USE_UNIT = '<<<TOOL_USE:{"id": "toolu_1", "name": "grep", "input": {"pattern": "TODO"}}>>>'

# Five units, the third one a metadata marker
HISTORY_UNITS = ["Hello ", "world", TOOL_USE_UNIT, " done", "!"]


class FakeBackend(AgentBackend):
    """Scripted backend: yields ``units`` then optionally raises ``fail_with``."""

    name = "fake"

    def __init__(self, units: Optional[List[str]] = None, fail_with: Optional[Exception] = None):
        self.units = list(units if units is not None else HISTORY_UNITS)
        self.fail_with = fail_with
        self.requests: List[BackendRequest] = []

    async def stream(self, request: BackendRequest):
        self.requests.append(request)
        for unit in self.units:
            yield unit
        if self.fail_with is not None:
            raise self.fail_with

    async def generate(self, request: BackendRequest) -> BackendResponse:
        self.requests.append(request)
        if self.fail_with is not None:
            raise self.fail_with
        content, metadata = StreamingProtocolCodec(store=None).decode_text("".join(self.units))
        return BackendResponse(content=content, metadata=metadata.to_metadata(success=True))


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def config(tmp_path) -> Config:
    return Config(storage_path=tmp_path / "storage")


@pytest.fixture
def core(config, backend) -> AgentDeckCore:
    core = AgentDeckCore(config=config, backend=backend)
    core.workspaces.create("ws1")
    return core
