"""
Durable per-agent conversation logs.

One JSON document per (workspace, agent) pair at
``<workspaces>/<workspace_id>/agents/conversations/<agent_id>.json``.
Every write is a read-modify-write of the whole document under a lock
keyed by the pair, finished with an atomic replace.
"""

import logging
from pathlib import Path
from typing import Iterable, List, Optional

from agentdeck.system.state import Conversation, ConversationMessage
from agentdeck.system.workspaces import agents_dir, validate_identifier
from agentdeck.utils.errors import CorruptStateError
from agentdeck.utils.file_io import isoformat, quarantine, read_json, write_json_atomic
from agentdeck.utils.locks import KeyedLocks

logger = logging.getLogger(__name__)


class ConversationStore:
    def __init__(self, workspaces_root: Path):
        self.workspaces_root = Path(workspaces_root)
        self._locks = KeyedLocks()

    def conversation_path(self, workspace_id: str, agent_id: str) -> Path:
        validate_identifier(agent_id, "agent")
        return agents_dir(self.workspaces_root, workspace_id) / "conversations" / f"{agent_id}.json"

    def lock_for(self, workspace_id: str, agent_id: str):
        return self._locks.get((workspace_id, agent_id))

    def _read(self, workspace_id: str, agent_id: str) -> Optional[Conversation]:
        """Read the stored document. Raises CorruptStateError if unreadable."""
        data = read_json(self.conversation_path(workspace_id, agent_id))
        if data is None:
            return None
        return Conversation.from_dict(data)

    def load_conversation(self, workspace_id: str, agent_id: str) -> Conversation:
        """Return the full conversation document, or a fresh empty one.

        An unreadable document is logged and treated as empty.
        """
        try:
            conversation = self._read(workspace_id, agent_id)
        except CorruptStateError as e:
            logger.error(f"Conversation for {workspace_id}/{agent_id} is unreadable, treating as empty: {e}")
            conversation = None
        return conversation or Conversation(agent_id=agent_id, workspace_id=workspace_id)

    def load(self, workspace_id: str, agent_id: str) -> List[ConversationMessage]:
        """Ordered messages for the pair; empty when no document exists."""
        return list(self.load_conversation(workspace_id, agent_id).messages)

    def exists(self, workspace_id: str, agent_id: str) -> bool:
        return self.conversation_path(workspace_id, agent_id).exists()

    def message_count(self, workspace_id: str, agent_id: str) -> int:
        return len(self.load(workspace_id, agent_id))

    def _load_for_write(self, workspace_id: str, agent_id: str) -> Conversation:
        path = self.conversation_path(workspace_id, agent_id)
        try:
            conversation = self._read(workspace_id, agent_id)
        except CorruptStateError as e:
            logger.error(f"Conversation for {workspace_id}/{agent_id} is unreadable, starting fresh: {e}")
            quarantine(path)
            conversation = None
        return conversation or Conversation(agent_id=agent_id, workspace_id=workspace_id)

    def _write(self, conversation: Conversation) -> None:
        conversation.updated_at = isoformat()
        write_json_atomic(
            self.conversation_path(conversation.workspace_id, conversation.agent_id),
            conversation.to_dict(),
        )

    async def append(
        self, workspace_id: str, agent_id: str, message: ConversationMessage
    ) -> ConversationMessage:
        """Upsert ``message`` by id and rewrite the document.

        A message whose id is already stored is replaced in place, which is
        how partial saves of a streaming message are applied.
        """
        async with self.lock_for(workspace_id, agent_id):
            conversation = self._load_for_write(workspace_id, agent_id)
            replaced = conversation.upsert(message)
            self._write(conversation)

        logger.debug(
            f"{'Replaced' if replaced else 'Appended'} message {message.id} "
            f"in {workspace_id}/{agent_id} ({len(conversation.messages)} total)"
        )
        return message

    async def append_many(
        self, workspace_id: str, agent_id: str, messages: Iterable[ConversationMessage]
    ) -> int:
        """Upsert several messages under a single lock and write. Returns the stored count."""
        async with self.lock_for(workspace_id, agent_id):
            conversation = self._load_for_write(workspace_id, agent_id)
            for message in messages:
                conversation.upsert(message)
            self._write(conversation)
            return len(conversation.messages)
