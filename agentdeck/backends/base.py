"""Abstract agent backend interface.

A backend produces the assistant's side of a turn. Its output is opaque to
the rest of the system except for the inline metadata markers understood by
``agentdeck.system.stream_codec``.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

from agentdeck.system.state import ConversationMessage

DEFAULT_SYSTEM_PROMPT = (
    "You are a coding agent working inside an isolated workspace. "
    "Answer the user's request, using tools when needed."
)


@dataclass
class BackendRequest:
    workspace_id: str
    agent_id: str
    message: str
    history: List[ConversationMessage] = field(default_factory=list)
    model: Optional[str] = None
    session_id: Optional[str] = None
    workspace_path: Optional[Path] = None
    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    def build_prompt(self, history_window: int = 10) -> str:
        """Flatten the recent history and the new message into one prompt."""
        recent = self.history[-history_window:] if history_window > 0 else []
        history = "\n\n".join(f"{m.role.value}: {m.content}" for m in recent)
        return (
            f"{self.system_prompt}\n\n"
            f"CONVERSATION HISTORY:\n{history}\n\n"
            f"USER: {self.message}\n\n"
            f"ASSISTANT:"
        )


@dataclass
class BackendResponse:
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)


class AgentBackend(ABC):
    """Contract for response-generation backends."""

    name: str = "backend"

    @abstractmethod
    async def generate(self, request: BackendRequest) -> BackendResponse:
        """Produce the whole response at once. Raises BackendError on failure."""

    @abstractmethod
    def stream(self, request: BackendRequest) -> AsyncIterator[str]:
        """Yield response units: content text or ``<<<TYPE:json>>>`` markers.

        Raises BackendError (from the iterator) on failure.
        """
