from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, HTTPException, Request  # type: ignore
from fastapi.responses import StreamingResponse  # type: ignore
from pydantic import BaseModel  # type: ignore
import logging

from agentdeck import __version__
from agentdeck.core import AgentDeckCore
from agentdeck.system.checkpoint_models import (
    CheckpointCreationRequest,
    CheckpointFilters,
    CheckpointSearchQuery,
)
from agentdeck.system.state import ConversationMessage, MessageRole
from agentdeck.utils.errors import (
    AgentBusyError,
    AgentDeckError,
    BackendError,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _status_for(error: Exception) -> int:
    if isinstance(error, ValidationError):
        return 400
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, AgentBusyError):
        return 409
    if isinstance(error, BackendError):
        return 502
    return 500


def _format_error_response(error: Exception, status_code: Optional[int] = None) -> HTTPException:
    """Format error as HTTPException with structured error detail."""
    status_code = status_code or _status_for(error)
    if isinstance(error, AgentDeckError):
        return HTTPException(
            status_code=status_code,
            detail={"error": error.to_dict()}
        )
    else:
        # Wrap unexpected errors
        wrapped = AgentDeckError(
            message=str(error),
            code="INTERNAL_ERROR",
            recoverable=False,
            suggested_action="contact_support"
        )
        return HTTPException(
            status_code=status_code,
            detail={"error": wrapped.to_dict()}
        )


class ConversationPostRequest(BaseModel):
    message: Optional[str] = None
    message_id: Optional[str] = None
    model: Optional[str] = None
    # Save-only path: upsert a (possibly partial) message without running a turn
    save_only: bool = False
    role: str = "assistant"
    content: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: Optional[str] = None


class StreamRequest(BaseModel):
    message: str
    message_id: Optional[str] = None
    model: Optional[str] = None


class SessionRestoreRequest(BaseModel):
    session_id: str
    model: Optional[str] = None


class CheckpointCreateRequest(BaseModel):
    title: str = ""
    description: str = ""
    tags: List[Any] = []
    expertise_summary: str = ""
    agent_type: Optional[str] = None
    created_by: str = "user"
    include_full_conversation: bool = True
    analytics_enabled: bool = True
    context_snapshot: Optional[Dict[str, Any]] = None
    conversation_id: Optional[str] = None
    model: Optional[str] = None


class CheckpointSearchRequest(BaseModel):
    query: str = ""
    tags: List[str] = []
    expertise_areas: List[str] = []
    context_types: List[str] = []
    performance_threshold: float = 0.0
    recently_used: bool = False
    my_checkpoints: bool = False
    created_from: Optional[str] = None
    created_to: Optional[str] = None
    requested_by: Optional[str] = None
    sort_by: str = "relevance"
    limit: int = 20
    offset: int = 0


class CheckpointRestoreRequest(BaseModel):
    target_workspace_id: str
    target_agent_id: str
    seed_conversation: bool = False


class CheckpointFeedbackRequest(BaseModel):
    session_length: float
    rating: Optional[float] = None


class RecommendRequest(BaseModel):
    workspace_context: Optional[Dict[str, Any]] = None
    limit: int = 10


router = APIRouter(prefix="/api/v1")


async def get_core(request: Request) -> AgentDeckCore:
    return request.app.state.core


@router.get("/health")
async def health(core: AgentDeckCore = Depends(get_core)):
    return {**core.get_health(), "version": __version__}


# ----------------------------------------------------------------------
# Conversations
# ----------------------------------------------------------------------

@router.get("/workspaces/{workspace_id}/agents/{agent_id}/conversation")
async def get_conversation(workspace_id: str, agent_id: str, core: AgentDeckCore = Depends(get_core)):
    try:
        if not core.workspaces.exists(workspace_id):
            raise NotFoundError("workspace", workspace_id)
        conversation = core.store.load_conversation(workspace_id, agent_id)
    except AgentDeckError as e:
        raise _format_error_response(e)
    return conversation.to_dict()


@router.post("/workspaces/{workspace_id}/agents/{agent_id}/conversation")
async def post_conversation(
    workspace_id: str,
    agent_id: str,
    req: ConversationPostRequest,
    core: AgentDeckCore = Depends(get_core),
):
    try:
        if req.save_only:
            content = req.content if req.content is not None else req.message
            if content is None:
                raise ValidationError(["content is required for save_only"])
            try:
                role = MessageRole(req.role)
            except ValueError:
                raise ValidationError([f"Unknown role '{req.role}'"]) from None
            message = ConversationMessage.from_dict({
                "id": req.message_id,
                "role": role.value,
                "content": content,
                "metadata": req.metadata or {},
                "timestamp": req.timestamp,
            })
            saved = await core.turns.save_message(workspace_id, agent_id, message)
            return {"success": True, "message": saved.to_dict()}

        result = await core.turns.send_message(
            workspace_id, agent_id, req.message, user_message_id=req.message_id, model=req.model
        )
        return {"success": True, **result.to_dict()}
    except AgentDeckError as e:
        raise _format_error_response(e)


@router.post("/workspaces/{workspace_id}/agents/{agent_id}/conversation/stream")
async def stream_conversation(
    workspace_id: str,
    agent_id: str,
    req: StreamRequest,
    core: AgentDeckCore = Depends(get_core),
):
    try:
        frames = core.turns.stream_message(
            workspace_id, agent_id, req.message, user_message_id=req.message_id, model=req.model
        )
    except AgentDeckError as e:
        raise _format_error_response(e)
    return StreamingResponse(frames, media_type="text/event-stream", headers=SSE_HEADERS)


# ----------------------------------------------------------------------
# Agent state
# ----------------------------------------------------------------------

@router.post("/workspaces/{workspace_id}/agents/{agent_id}/session-restore")
async def session_restore(
    workspace_id: str,
    agent_id: str,
    req: SessionRestoreRequest,
    core: AgentDeckCore = Depends(get_core),
):
    try:
        result = await core.turns.restore_session(workspace_id, agent_id, req.session_id)
    except AgentDeckError as e:
        raise _format_error_response(e)
    return {"success": True, **result.to_dict()}


@router.get("/workspaces/{workspace_id}/agents/{agent_id}/status")
async def agent_status(workspace_id: str, agent_id: str, core: AgentDeckCore = Depends(get_core)):
    try:
        if not core.workspaces.exists(workspace_id):
            raise NotFoundError("workspace", workspace_id)
        state = core.sessions.get_state(workspace_id, agent_id)
    except AgentDeckError as e:
        raise _format_error_response(e)
    return {**state.to_dict(), "busy": core.sessions.is_busy(workspace_id, agent_id)}


@router.get("/workspaces/{workspace_id}/agents/{agent_id}/history")
async def agent_history(workspace_id: str, agent_id: str, core: AgentDeckCore = Depends(get_core)):
    try:
        if not core.workspaces.exists(workspace_id):
            raise NotFoundError("workspace", workspace_id)
        history = core.sessions.history(workspace_id, agent_id)
        history["message_count"] = core.store.message_count(workspace_id, agent_id)
    except AgentDeckError as e:
        raise _format_error_response(e)
    return history


# ----------------------------------------------------------------------
# Checkpoints
# ----------------------------------------------------------------------

@router.post("/workspaces/{workspace_id}/agents/{agent_id}/checkpoints")
async def create_checkpoint(
    workspace_id: str,
    agent_id: str,
    req: CheckpointCreateRequest,
    core: AgentDeckCore = Depends(get_core),
):
    request = CheckpointCreationRequest(
        title=req.title,
        description=req.description,
        tags=list(req.tags),
        expertise_summary=req.expertise_summary,
        agent_type=req.agent_type,
        created_by=req.created_by,
        include_full_conversation=req.include_full_conversation,
        analytics_enabled=req.analytics_enabled,
        context_snapshot_override=req.context_snapshot,
        model=req.model,
    )
    try:
        checkpoint_id = await core.checkpoints.save(
            workspace_id, agent_id, request, conversation_id=req.conversation_id
        )
    except AgentDeckError as e:
        raise _format_error_response(e)
    return {"success": True, "checkpoint_id": checkpoint_id}


@router.get("/checkpoints")
async def list_checkpoints(core: AgentDeckCore = Depends(get_core)):
    summaries = core.checkpoints.list_summaries()
    return {"checkpoints": [s.to_dict() for s in summaries], "total_count": len(summaries)}


@router.post("/checkpoints/search")
async def search_checkpoints(req: CheckpointSearchRequest, core: AgentDeckCore = Depends(get_core)):
    date_range = None
    if req.created_from or req.created_to:
        date_range = (req.created_from, req.created_to)
    query = CheckpointSearchQuery(
        text=req.query,
        filters=CheckpointFilters(
            tags=req.tags,
            expertise_areas=req.expertise_areas,
            context_types=req.context_types,
            performance_threshold=req.performance_threshold,
            recently_used=req.recently_used,
            my_checkpoints=req.my_checkpoints,
            created_date_range=date_range,
        ),
        sort_by=req.sort_by,
        limit=req.limit,
        offset=req.offset,
        requested_by=req.requested_by,
    )
    try:
        result = core.checkpoints.search(query)
    except AgentDeckError as e:
        raise _format_error_response(e)
    return result.to_dict()


@router.post("/checkpoints/recommendations")
async def recommend_checkpoints(req: RecommendRequest, core: AgentDeckCore = Depends(get_core)):
    checkpoints = core.checkpoints.recommend(req.workspace_context, limit=req.limit)
    return {"checkpoints": [c.to_dict() for c in checkpoints]}


@router.get("/checkpoints/stats")
async def checkpoint_stats(core: AgentDeckCore = Depends(get_core)):
    return core.checkpoints.storage_stats()


@router.post("/checkpoints/reindex")
async def reindex_checkpoints(core: AgentDeckCore = Depends(get_core)):
    report = core.checkpoints.reconcile()
    return {"success": True, **report.to_dict()}


@router.get("/checkpoints/{checkpoint_id}")
async def get_checkpoint(checkpoint_id: str, core: AgentDeckCore = Depends(get_core)):
    try:
        checkpoint = core.checkpoints.load(checkpoint_id)
    except AgentDeckError as e:
        raise _format_error_response(e)
    return checkpoint.to_dict()


@router.delete("/checkpoints/{checkpoint_id}")
async def delete_checkpoint(checkpoint_id: str, core: AgentDeckCore = Depends(get_core)):
    try:
        await core.checkpoints.delete(checkpoint_id)
    except AgentDeckError as e:
        raise _format_error_response(e)
    return {"success": True, "checkpoint_id": checkpoint_id}


@router.post("/checkpoints/{checkpoint_id}/restore")
async def restore_checkpoint(
    checkpoint_id: str,
    req: CheckpointRestoreRequest,
    core: AgentDeckCore = Depends(get_core),
):
    try:
        restoration = await core.checkpoints.restore(
            checkpoint_id,
            req.target_workspace_id,
            req.target_agent_id,
            seed_conversation=req.seed_conversation,
        )
    except AgentDeckError as e:
        raise _format_error_response(e)
    return {"success": True, **restoration.to_dict()}


@router.post("/checkpoints/{checkpoint_id}/feedback")
async def checkpoint_feedback(
    checkpoint_id: str,
    req: CheckpointFeedbackRequest,
    core: AgentDeckCore = Depends(get_core),
):
    try:
        analytics = await core.checkpoints.record_feedback(checkpoint_id, req.session_length, req.rating)
    except AgentDeckError as e:
        raise _format_error_response(e)
    return {"success": True, "analytics_summary": analytics.to_dict()}
