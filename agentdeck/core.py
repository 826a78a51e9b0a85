"""
AgentDeckCore wires the session and checkpoint subsystem together.

    store      = ConversationStore        (per-agent conversation logs)
    sessions   = AgentSessionManager      (status, turn lock, session restore)
    codec      = StreamingProtocolCodec   (marker decoding, SSE framing)
    checkpoints= CheckpointManager        (+ CheckpointIndex)
    turns      = AgentTurnService         (one user turn end to end)

Everything is rooted at ``Config.storage_path``.
"""

import logging
from typing import Optional

from agentdeck.backends.base import AgentBackend
from agentdeck.backends.cli_backend import CliAgentBackend
from agentdeck.config import Config
from agentdeck.system.checkpoint_manager import CheckpointManager
from agentdeck.system.conversation_store import ConversationStore
from agentdeck.system.session_manager import AgentSessionManager
from agentdeck.system.stream_codec import StreamingProtocolCodec
from agentdeck.system.turns import AgentTurnService
from agentdeck.system.workspaces import DirectoryWorkspaceResolver

logger = logging.getLogger(__name__)


class AgentDeckCore:
    def __init__(
        self,
        config: Optional[Config] = None,
        backend: Optional[AgentBackend] = None,
        workspace_resolver=None,
    ):
        self.config = config or Config.load_config()
        self.config.storage_path.mkdir(parents=True, exist_ok=True)
        self.config.workspaces_path.mkdir(parents=True, exist_ok=True)

        self.workspaces = workspace_resolver or DirectoryWorkspaceResolver(self.config.workspaces_path)
        self.store = ConversationStore(self.config.workspaces_path)
        self.sessions = AgentSessionManager(self.config.workspaces_path, self.config.sessions)
        self.codec = StreamingProtocolCodec(self.store, self.config.streaming.max_marker_bytes)
        self.backend = backend or CliAgentBackend(self.config.backend, self.codec)
        self.checkpoints = CheckpointManager(
            self.config.checkpoints_path,
            self.store,
            self.sessions,
            self.workspaces,
            self.config.checkpoints,
        )
        self.turns = AgentTurnService(self.store, self.sessions, self.codec, self.backend, self.workspaces)

        report = self.checkpoints.startup()
        if report is not None and report.changed:
            logger.warning(
                f"Checkpoint index repaired at startup: {len(report.indexed_orphans)} orphan(s) indexed, "
                f"{len(report.dropped_dangling)} dangling entr(ies) dropped"
            )
        logger.info(f"AgentDeckCore initialized at {self.config.storage_path} (backend={self.backend.name})")

    def get_health(self) -> dict:
        return {
            "status": "healthy",
            "storage_path": str(self.config.storage_path),
            "backend": self.backend.name,
            "checkpoints": len(self.checkpoints.index),
        }
