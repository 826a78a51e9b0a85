"""
Per-agent status tracking and backend session continuity.

Each agent has a small state document at
``<workspaces>/<workspace_id>/agents/states/<agent_id>.json``. Status moves
through idle -> active -> idle for every turn and idle -> restoring ->
{active | idle} for an explicit restore attempt.

One turn per agent at a time is enforced by a real lock held for the whole
turn (see ``turn()``), not by reading the status field.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, Optional

from agentdeck.config import SessionConfig
from agentdeck.system.state import AgentState, AgentStatus
from agentdeck.system.workspaces import agents_dir, validate_identifier
from agentdeck.utils.errors import AgentBusyError, CorruptStateError, RestoreIneligibleError
from agentdeck.utils.file_io import isoformat, parse_timestamp, read_json, utc_now, write_json_atomic
from agentdeck.utils.locks import KeyedLocks

logger = logging.getLogger(__name__)

NO_STATE_REASON = "No previous agent state found"
MISMATCH_REASON = "Session ID mismatch"
RESTORED_REASON = "Session found and restoration attempted"


@dataclass
class RestoreResult:
    restored: bool
    session_id: Optional[str]
    reason: str
    last_activity: Optional[str] = None
    status: str = AgentStatus.IDLE.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "restored": self.restored,
            "session_id": self.session_id,
            "reason": self.reason,
            "last_activity": self.last_activity,
            "agent_status": self.status,
        }


@dataclass
class TurnContext:
    """Handle given to the code running inside a turn."""
    workspace_id: str
    agent_id: str
    task: str
    started_at: datetime = field(default_factory=utc_now)
    session_id: Optional[str] = None
    resume_session_id: Optional[str] = None

    def record_session(self, session_id: Optional[str]) -> None:
        if session_id:
            self.session_id = session_id


class AgentSessionManager:
    def __init__(
        self,
        workspaces_root: Path,
        config: Optional[SessionConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.workspaces_root = Path(workspaces_root)
        self.config = config or SessionConfig()
        self.clock = clock
        self._turn_locks = KeyedLocks()
        self._state_locks = KeyedLocks()

    def state_path(self, workspace_id: str, agent_id: str) -> Path:
        validate_identifier(agent_id, "agent")
        return agents_dir(self.workspaces_root, workspace_id) / "states" / f"{agent_id}.json"

    # ------------------------------------------------------------------
    # State document
    # ------------------------------------------------------------------

    def _read_state(self, workspace_id: str, agent_id: str) -> Optional[AgentState]:
        path = self.state_path(workspace_id, agent_id)
        try:
            data = read_json(path)
        except CorruptStateError as e:
            logger.error(f"Agent state for {workspace_id}/{agent_id} is unreadable, using defaults: {e}")
            return None
        if data is None:
            return None
        state = AgentState.from_dict(data)
        state.id = state.id or agent_id
        return state

    def _save_state(self, workspace_id: str, state: AgentState) -> None:
        write_json_atomic(self.state_path(workspace_id, state.id), state.to_dict())

    def _now(self) -> datetime:
        return self.clock()

    def get_state(self, workspace_id: str, agent_id: str) -> AgentState:
        """Stored state, or a fresh idle state when none exists."""
        state = self._read_state(workspace_id, agent_id)
        if state is None:
            now = isoformat(self._now())
            state = AgentState(id=agent_id, created_at=now, last_activity=now)
        return state

    def has_state(self, workspace_id: str, agent_id: str) -> bool:
        return self._read_state(workspace_id, agent_id) is not None

    def is_busy(self, workspace_id: str, agent_id: str) -> bool:
        return self._turn_locks.locked((workspace_id, agent_id))

    def _task_preview(self, message: str) -> str:
        limit = self.config.task_preview_chars
        return f"Processing: {message[:limit]}..."

    async def mark_active(self, workspace_id: str, agent_id: str, message: str) -> AgentState:
        async with self._state_locks.get((workspace_id, agent_id)):
            state = self.get_state(workspace_id, agent_id)
            state.status = AgentStatus.ACTIVE
            state.last_activity = isoformat(self._now())
            state.current_task = self._task_preview(message)
            self._save_state(workspace_id, state)
        logger.debug(f"Agent {workspace_id}/{agent_id} active")
        return state

    async def mark_idle(
        self, workspace_id: str, agent_id: str, session_id: Optional[str] = None
    ) -> AgentState:
        """Return the agent to idle after a turn, recording the backend session id if known."""
        async with self._state_locks.get((workspace_id, agent_id)):
            state = self.get_state(workspace_id, agent_id)
            now = isoformat(self._now())
            state.status = AgentStatus.IDLE
            state.last_activity = now
            state.current_task = None
            state.interaction_count += 1
            if session_id:
                state.last_session_id = session_id
                state.last_session_time = now
            self._save_state(workspace_id, state)
        logger.debug(f"Agent {workspace_id}/{agent_id} idle after {state.interaction_count} interactions")
        return state

    # ------------------------------------------------------------------
    # Turn lock
    # ------------------------------------------------------------------

    async def _acquire(self, lock: asyncio.Lock, workspace_id: str, agent_id: str) -> None:
        timeout = self.config.turn_lock_timeout
        if timeout is None:
            await lock.acquire()
        elif timeout <= 0:
            if lock.locked():
                raise AgentBusyError(workspace_id, agent_id)
            await lock.acquire()
        else:
            try:
                await asyncio.wait_for(lock.acquire(), timeout)
            except asyncio.TimeoutError:
                raise AgentBusyError(workspace_id, agent_id) from None

    @asynccontextmanager
    async def turn(self, workspace_id: str, agent_id: str, message: str) -> AsyncIterator[TurnContext]:
        """Hold the agent's turn lock for the duration of one turn.

        The agent is marked active on entry. If a restore was granted, the
        restored session id is read under the lock into
        ``resume_session_id``. On every exit path, including backend failure
        and client disconnect, the agent is marked idle, the captured
        session id is recorded and the lock is released.
        """
        lock = self._turn_locks.get((workspace_id, agent_id))
        await self._acquire(lock, workspace_id, agent_id)
        context = TurnContext(workspace_id=workspace_id, agent_id=agent_id, task=message)
        try:
            state = self.get_state(workspace_id, agent_id)
            if state.status == AgentStatus.RESTORING:
                context.resume_session_id = state.last_session_id
            await self.mark_active(workspace_id, agent_id, message)
            yield context
        finally:
            try:
                await self.mark_idle(workspace_id, agent_id, context.session_id)
            finally:
                lock.release()

    # ------------------------------------------------------------------
    # Session continuity
    # ------------------------------------------------------------------

    def _check_eligibility(self, state: AgentState, session_id: str, now: datetime) -> None:
        """Raise RestoreIneligibleError unless ``session_id`` may be reattached."""
        window = timedelta(hours=self.config.restore_window_hours)
        last_activity = parse_timestamp(state.last_activity)
        if last_activity is None or now - last_activity >= window:
            hours = self.config.restore_window_hours
            raise RestoreIneligibleError(f"Session too old (>{hours:g}h)")
        if state.last_session_id != session_id:
            raise RestoreIneligibleError(MISMATCH_REASON)

    async def restore_session(
        self,
        workspace_id: str,
        agent_id: str,
        session_id: str,
        now: Optional[datetime] = None,
    ) -> RestoreResult:
        """Decide whether the backend session ``session_id`` may be resumed.

        Eligible when it equals the stored ``last_session_id`` and the agent
        was active within the restore window. Eligible agents move to
        ``restoring``; otherwise the stored session id is cleared so the
        caller starts fresh.
        """
        if self.is_busy(workspace_id, agent_id):
            raise AgentBusyError(workspace_id, agent_id)

        now = now or self._now()
        async with self._state_locks.get((workspace_id, agent_id)):
            state = self._read_state(workspace_id, agent_id)
            if state is None:
                logger.info(f"No stored state for {workspace_id}/{agent_id}, cannot restore {session_id}")
                return RestoreResult(restored=False, session_id=None, reason=NO_STATE_REASON)

            previous_activity = state.last_activity
            try:
                self._check_eligibility(state, session_id, now)
            except RestoreIneligibleError as e:
                logger.info(f"Cannot restore session {session_id} for {workspace_id}/{agent_id}: {e.reason}")
                state.status = AgentStatus.IDLE
                state.last_activity = isoformat(now)
                state.last_session_id = None
                state.current_task = None
                self._save_state(workspace_id, state)
                return RestoreResult(
                    restored=False,
                    session_id=None,
                    reason=e.reason,
                    last_activity=previous_activity,
                    status=state.status.value,
                )

            state.status = AgentStatus.RESTORING
            state.last_activity = isoformat(now)
            state.session_restore_attempted = isoformat(now)
            state.current_task = f"Restoring session {session_id[-8:]}"
            self._save_state(workspace_id, state)

        logger.info(f"Restoring session {session_id} for {workspace_id}/{agent_id}")
        return RestoreResult(
            restored=True,
            session_id=session_id,
            reason=RESTORED_REASON,
            last_activity=previous_activity,
            status=AgentStatus.RESTORING.value,
        )

    async def abandon_restore(self, workspace_id: str, agent_id: str) -> AgentState:
        """restoring -> idle when the caller failed to reattach the backend session."""
        async with self._state_locks.get((workspace_id, agent_id)):
            state = self.get_state(workspace_id, agent_id)
            if state.status == AgentStatus.RESTORING:
                state.status = AgentStatus.IDLE
                state.current_task = None
                state.last_session_id = None
                state.last_activity = isoformat(self._now())
                self._save_state(workspace_id, state)
        return state

    def history(self, workspace_id: str, agent_id: str) -> Dict[str, Any]:
        state = self.get_state(workspace_id, agent_id)
        return {
            "agent_id": agent_id,
            "workspace_id": workspace_id,
            "total_interactions": state.interaction_count,
            "status": state.status.value,
            "last_activity": state.last_activity,
            "current_task": state.current_task,
            "last_session_id": state.last_session_id,
            "last_session_time": state.last_session_time,
            "created_at": state.created_at,
        }
