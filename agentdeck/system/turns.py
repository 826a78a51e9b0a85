"""
Turn orchestration.

A turn runs entirely inside ``AgentSessionManager.turn``: the user message
and the assistant message are written while the agent's turn lock is held,
so two turns for the same agent can never interleave their writes.
"""

import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Optional

from agentdeck.backends.base import AgentBackend, BackendRequest
from agentdeck.system.session_manager import AgentSessionManager, RestoreResult
from agentdeck.system.state import ConversationMessage, MessageRole, generate_message_id
from agentdeck.system.stream_codec import StreamingProtocolCodec, error_event, start_event
from agentdeck.system.workspaces import validate_identifier
from agentdeck.utils.errors import AgentBusyError, BackendError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


@dataclass
class TurnResult:
    user_message: ConversationMessage
    assistant_message: ConversationMessage
    session_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_message": self.user_message.to_dict(),
            "assistant_message": self.assistant_message.to_dict(),
            "session_id": self.session_id,
        }


class AgentTurnService:
    def __init__(
        self,
        store,
        sessions: AgentSessionManager,
        codec: StreamingProtocolCodec,
        backend: AgentBackend,
        workspaces,
    ):
        self.store = store
        self.sessions = sessions
        self.codec = codec
        self.backend = backend
        self.workspaces = workspaces

    def _check_target(self, workspace_id: str, agent_id: str) -> None:
        validate_identifier(workspace_id, "workspace")
        validate_identifier(agent_id, "agent")
        if not self.workspaces.exists(workspace_id):
            raise NotFoundError("workspace", workspace_id)

    @staticmethod
    def _check_text(text: Optional[str]) -> str:
        if not isinstance(text, str) or not text.strip():
            raise ValidationError(["Message must not be empty"])
        return text

    def _build_request(
        self, workspace_id: str, agent_id: str, text: str, history, model: Optional[str], session_id: Optional[str]
    ) -> BackendRequest:
        return BackendRequest(
            workspace_id=workspace_id,
            agent_id=agent_id,
            message=text,
            history=history,
            model=model,
            session_id=session_id,
            workspace_path=self.workspaces.path(workspace_id),
        )

    # ------------------------------------------------------------------
    # Streaming turn
    # ------------------------------------------------------------------

    def stream_message(
        self,
        workspace_id: str,
        agent_id: str,
        text: str,
        user_message_id: Optional[str] = None,
        model: Optional[str] = None,
    ) -> AsyncIterator[str]:
        """Validate the turn and return the generator of framed events.

        Validation and the busy check run before any event is produced so
        callers can report them as ordinary errors.
        """
        self._check_target(workspace_id, agent_id)
        self._check_text(text)
        if self.sessions.is_busy(workspace_id, agent_id) and self.sessions.config.turn_lock_timeout == 0:
            raise AgentBusyError(workspace_id, agent_id)
        return self._stream_turn(workspace_id, agent_id, text, user_message_id, model)

    async def _stream_turn(
        self,
        workspace_id: str,
        agent_id: str,
        text: str,
        user_message_id: Optional[str],
        model: Optional[str],
    ) -> AsyncIterator[str]:
        try:
            async with self.sessions.turn(workspace_id, agent_id, text) as turn:
                history = self.store.load(workspace_id, agent_id)
                user_message = ConversationMessage(
                    role=MessageRole.USER, content=text, id=user_message_id or generate_message_id()
                )
                await self.store.append(workspace_id, agent_id, user_message)

                request = self._build_request(workspace_id, agent_id, text, history, model, turn.resume_session_id)
                relay = self.codec.open(workspace_id, agent_id)
                frames = relay.frames(self.backend.stream(request))
                try:
                    async for frame in frames:
                        yield frame
                finally:
                    # Persist an abandoned stream before the agent goes idle.
                    await frames.aclose()
                    turn.record_session(relay.metadata.session_id)

                if relay.error is not None:
                    logger.error(
                        f"Turn for {workspace_id}/{agent_id} failed after {relay.units_received} units: {relay.error}"
                    )
        except AgentBusyError as e:
            yield start_event()
            yield error_event(str(e))

    # ------------------------------------------------------------------
    # Non-streaming turn
    # ------------------------------------------------------------------

    async def send_message(
        self,
        workspace_id: str,
        agent_id: str,
        text: str,
        user_message_id: Optional[str] = None,
        model: Optional[str] = None,
    ) -> TurnResult:
        """Run one turn and persist both messages. BackendError propagates; the user message stays."""
        self._check_target(workspace_id, agent_id)
        self._check_text(text)

        async with self.sessions.turn(workspace_id, agent_id, text) as turn:
            history = self.store.load(workspace_id, agent_id)
            user_message = ConversationMessage(
                role=MessageRole.USER, content=text, id=user_message_id or generate_message_id()
            )
            await self.store.append(workspace_id, agent_id, user_message)

            request = self._build_request(workspace_id, agent_id, text, history, model, turn.resume_session_id)
            try:
                response = await self.backend.generate(request)
            except BackendError as e:
                logger.error(f"Backend failed for {workspace_id}/{agent_id}: {e}")
                raise

            assistant_message = ConversationMessage(
                role=MessageRole.ASSISTANT,
                content=response.content,
                metadata=dict(response.metadata),
            )
            await self.store.append(workspace_id, agent_id, assistant_message)
            turn.record_session(response.metadata.get("session_id"))

        return TurnResult(user_message, assistant_message, turn.session_id)

    # ------------------------------------------------------------------
    # Save-only path and session continuity
    # ------------------------------------------------------------------

    async def save_message(self, workspace_id: str, agent_id: str, message: ConversationMessage) -> ConversationMessage:
        """Upsert a message without running a turn (partial/chunked saves)."""
        self._check_target(workspace_id, agent_id)
        return await self.store.append(workspace_id, agent_id, message)

    async def restore_session(self, workspace_id: str, agent_id: str, session_id: str) -> RestoreResult:
        self._check_target(workspace_id, agent_id)
        if not isinstance(session_id, str) or not session_id.strip():
            raise ValidationError(["sessionId is required"])
        return await self.sessions.restore_session(workspace_id, agent_id, session_id)
