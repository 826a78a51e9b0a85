"""
Core state classes for agent conversations.

Defines the persisted shapes of conversation messages, per-agent
conversation documents and the per-agent status record.
"""

import random
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional
import logging

from agentdeck.utils.file_io import isoformat

logger = logging.getLogger(__name__)


def generate_message_id() -> str:
    """``msg_<epoch-ms>_<9 hex>``, sortable by creation time."""
    return f"msg_{int(time.time() * 1000)}_{random.getrandbits(36):09x}"


class MessageRole(Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class AgentStatus(Enum):
    """Per-agent turn state. Every turn must end back in IDLE."""
    IDLE = "idle"
    ACTIVE = "active"
    RESTORING = "restoring"


@dataclass
class ConversationMessage:
    """
    One message in an agent conversation.

    ``metadata`` is free-form. Assistant messages produced by a streamed turn
    carry ``session_id``, ``tools``, ``tool_uses``, ``tool_results``,
    ``usage``, ``result``, ``backend`` and ``success``.
    """
    role: MessageRole
    content: str
    id: str = field(default_factory=generate_message_id)
    timestamp: str = field(default_factory=isoformat)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result["role"] = self.role.value
        if not self.metadata:
            result.pop("metadata")
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationMessage":
        role = data.get("role", MessageRole.USER.value)
        try:
            role = MessageRole(role)
        except ValueError:
            logger.warning(f"Unknown message role {role!r}, treating as system")
            role = MessageRole.SYSTEM
        return cls(
            role=role,
            content=data.get("content") or "",
            id=data.get("id") or generate_message_id(),
            timestamp=data.get("timestamp") or isoformat(),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class Conversation:
    """The conversation document owned by one (workspace, agent) pair."""
    agent_id: str
    workspace_id: str
    created_at: str = field(default_factory=isoformat)
    updated_at: str = field(default_factory=isoformat)
    messages: List[ConversationMessage] = field(default_factory=list)

    def index_of(self, message_id: str) -> Optional[int]:
        for i, message in enumerate(self.messages):
            if message.id == message_id:
                return i
        return None

    def upsert(self, message: ConversationMessage) -> bool:
        """Replace a message with the same id in place, else append.

        Returns True when an existing message was replaced.
        """
        position = self.index_of(message.id)
        if position is None:
            self.messages.append(message)
            return False
        self.messages[position] = message
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "workspace_id": self.workspace_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "messages": [m.to_dict() for m in self.messages],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Conversation":
        return cls(
            agent_id=data.get("agent_id", ""),
            workspace_id=data.get("workspace_id", ""),
            created_at=data.get("created_at") or isoformat(),
            updated_at=data.get("updated_at") or isoformat(),
            messages=[
                ConversationMessage.from_dict(m)
                for m in data.get("messages") or []
                if isinstance(m, dict)
            ],
        )


@dataclass
class AgentState:
    id: str
    status: AgentStatus = AgentStatus.IDLE
    created_at: str = field(default_factory=isoformat)
    last_activity: str = field(default_factory=isoformat)
    last_session_id: Optional[str] = None
    last_session_time: Optional[str] = None
    current_task: Optional[str] = None
    interaction_count: int = 0
    session_restore_attempted: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result["status"] = self.status.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AgentState":
        try:
            status = AgentStatus(data.get("status", "idle"))
        except ValueError:
            status = AgentStatus.IDLE
        return cls(
            id=data.get("id", ""),
            status=status,
            created_at=data.get("created_at") or isoformat(),
            last_activity=data.get("last_activity") or isoformat(),
            last_session_id=data.get("last_session_id"),
            last_session_time=data.get("last_session_time"),
            current_task=data.get("current_task"),
            interaction_count=int(data.get("interaction_count") or 0),
            session_restore_attempted=data.get("session_restore_attempted"),
        )
