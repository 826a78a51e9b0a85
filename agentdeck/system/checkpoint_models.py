"""
Data structures for reusable conversation checkpoints.

A checkpoint is a global, read-only template: a snapshot of one agent's
conversation plus derived expertise and performance metadata. Only
``usage_count``, ``last_used`` and ``analytics_summary`` change after
creation.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from agentdeck.system.state import ConversationMessage
from agentdeck.utils.file_io import isoformat


@dataclass
class CommandExecution:
    """A tool invocation reconstructed from a message's tool_uses/tool_results."""
    id: str
    command_id: str
    timestamp: str
    input_params: Dict[str, Any] = field(default_factory=dict)
    output: str = ""
    success: bool = True
    error_message: Optional[str] = None
    execution_time_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CommandExecution":
        return cls(
            id=data.get("id", ""),
            command_id=data.get("command_id", ""),
            timestamp=data.get("timestamp", ""),
            input_params=dict(data.get("input_params") or {}),
            output=data.get("output") or "",
            success=bool(data.get("success", True)),
            error_message=data.get("error_message"),
            execution_time_ms=int(data.get("execution_time_ms") or 0),
        )


@dataclass
class WorkspaceContextSnapshot:
    timestamp: str = field(default_factory=isoformat)
    context_items: List[Dict[str, Any]] = field(default_factory=list)
    target_files: List[Dict[str, Any]] = field(default_factory=list)
    feedback_files: List[Dict[str, Any]] = field(default_factory=list)
    git_state: Dict[str, Any] = field(default_factory=dict)
    context_description: str = ""

    @property
    def context_types(self) -> List[str]:
        seen: List[str] = []
        for item in self.context_items:
            item_type = item.get("type") if isinstance(item, dict) else None
            if item_type and item_type not in seen:
                seen.append(item_type)
        return seen

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "WorkspaceContextSnapshot":
        data = data or {}
        structure = data.get("workspace_structure") or {}
        return cls(
            timestamp=data.get("timestamp") or isoformat(),
            context_items=list(data.get("context_items") or structure.get("context_items") or []),
            target_files=list(data.get("target_files") or structure.get("target_files") or []),
            feedback_files=list(data.get("feedback_files") or structure.get("feedback_files") or []),
            git_state=dict(data.get("git_state") or {}),
            context_description=data.get("context_description") or "",
        )


@dataclass
class CheckpointMetrics:
    success_rate: float = 1.0
    avg_response_time: float = 0.0
    user_satisfaction: float = 4.0
    task_completion_rate: float = 0.85
    commands_executed: int = 0
    errors_encountered: int = 0
    tokens_processed: int = 0
    context_understanding_score: float = 0.0
    knowledge_retention_score: float = 0.8
    adaptation_efficiency: float = 0.75
    interaction_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "CheckpointMetrics":
        known = cls.__dataclass_fields__
        return cls(**{k: v for k, v in (data or {}).items() if k in known})


@dataclass
class CheckpointConversationState:
    messages: List[ConversationMessage] = field(default_factory=list)
    total_tokens: int = 0
    command_history: List[CommandExecution] = field(default_factory=list)
    knowledge_areas: List[str] = field(default_factory=list)
    learned_patterns: List[str] = field(default_factory=list)
    conversation_summary: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "messages": [m.to_dict() for m in self.messages],
            "total_tokens": self.total_tokens,
            "command_history": [c.to_dict() for c in self.command_history],
            "knowledge_areas": list(self.knowledge_areas),
            "learned_patterns": list(self.learned_patterns),
            "conversation_summary": self.conversation_summary,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "CheckpointConversationState":
        data = data or {}
        return cls(
            messages=[ConversationMessage.from_dict(m) for m in data.get("messages") or []],
            total_tokens=int(data.get("total_tokens") or 0),
            command_history=[CommandExecution.from_dict(c) for c in data.get("command_history") or []],
            knowledge_areas=list(data.get("knowledge_areas") or []),
            learned_patterns=list(data.get("learned_patterns") or []),
            conversation_summary=data.get("conversation_summary") or "",
        )


@dataclass
class CheckpointAgentConfig:
    model: str = "default"
    specialized_commands: List[str] = field(default_factory=list)
    context_understanding: Dict[str, float] = field(default_factory=dict)
    last_session_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "CheckpointAgentConfig":
        data = data or {}
        return cls(
            model=data.get("model") or "default",
            specialized_commands=list(data.get("specialized_commands") or []),
            context_understanding=dict(data.get("context_understanding") or {}),
            last_session_id=data.get("last_session_id"),
        )


@dataclass
class CheckpointAnalyticsSummary:
    total_sessions: int = 0
    successful_restorations: int = 0
    average_continuation_length: float = 0.0
    user_feedback_score: float = 0.0
    most_common_use_cases: List[str] = field(default_factory=list)
    effectiveness_rating: float = 0.0
    feedback_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "CheckpointAnalyticsSummary":
        known = cls.__dataclass_fields__
        return cls(**{k: v for k, v in (data or {}).items() if k in known})


@dataclass
class Checkpoint:
    id: str
    title: str
    description: str
    agent_type: str
    conversation_id: str
    workspace_context: WorkspaceContextSnapshot
    expertise_summary: str
    performance_metrics: CheckpointMetrics
    tags: List[str]
    created_at: str
    agent_id: str
    workspace_id: str
    created_by: str
    usage_count: int = 0
    last_used: Optional[str] = None
    full_conversation_state: Optional[CheckpointConversationState] = None
    agent_configuration: CheckpointAgentConfig = field(default_factory=CheckpointAgentConfig)
    expertise_areas: List[str] = field(default_factory=list)
    context_types: List[str] = field(default_factory=list)
    success_indicators: List[str] = field(default_factory=list)
    analytics_summary: CheckpointAnalyticsSummary = field(default_factory=CheckpointAnalyticsSummary)
    analytics_enabled: bool = True

    @property
    def performance_score(self) -> float:
        return float(self.performance_metrics.success_rate)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "agent_type": self.agent_type,
            "conversation_id": self.conversation_id,
            "workspace_context": self.workspace_context.to_dict(),
            "expertise_summary": self.expertise_summary,
            "performance_metrics": self.performance_metrics.to_dict(),
            "tags": list(self.tags),
            "created_at": self.created_at,
            "last_used": self.last_used,
            "usage_count": self.usage_count,
            "agent_id": self.agent_id,
            "workspace_id": self.workspace_id,
            "created_by": self.created_by,
            "full_conversation_state": (
                self.full_conversation_state.to_dict() if self.full_conversation_state else None
            ),
            "agent_configuration": self.agent_configuration.to_dict(),
            "expertise_areas": list(self.expertise_areas),
            "context_types": list(self.context_types),
            "success_indicators": list(self.success_indicators),
            "analytics_summary": self.analytics_summary.to_dict(),
            "analytics_enabled": self.analytics_enabled,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Checkpoint":
        state = data.get("full_conversation_state")
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            description=data.get("description", ""),
            agent_type=data.get("agent_type") or data.get("agentType") or "",
            conversation_id=data.get("conversation_id", ""),
            workspace_context=WorkspaceContextSnapshot.from_dict(data.get("workspace_context")),
            expertise_summary=data.get("expertise_summary", ""),
            performance_metrics=CheckpointMetrics.from_dict(data.get("performance_metrics")),
            tags=list(data.get("tags") or []),
            created_at=data.get("created_at") or isoformat(),
            agent_id=data.get("agent_id", ""),
            workspace_id=data.get("workspace_id", ""),
            created_by=data.get("created_by", ""),
            usage_count=int(data.get("usage_count") or 0),
            last_used=data.get("last_used"),
            full_conversation_state=CheckpointConversationState.from_dict(state) if state else None,
            agent_configuration=CheckpointAgentConfig.from_dict(data.get("agent_configuration")),
            expertise_areas=list(data.get("expertise_areas") or []),
            context_types=list(data.get("context_types") or []),
            success_indicators=list(data.get("success_indicators") or []),
            analytics_summary=CheckpointAnalyticsSummary.from_dict(data.get("analytics_summary")),
            analytics_enabled=bool(data.get("analytics_enabled", True)),
        )


@dataclass
class CheckpointCreationRequest:
    title: str
    description: str
    tags: List[str] = field(default_factory=list)
    expertise_summary: str = ""
    agent_type: Optional[str] = None
    created_by: str = "user"
    include_full_conversation: bool = True
    analytics_enabled: bool = True
    context_snapshot_override: Optional[Dict[str, Any]] = None
    model: Optional[str] = None


@dataclass
class CheckpointValidation:
    is_valid: bool
    errors: List[str]
    warnings: List[str]
    completeness_score: int
    required_fields: List[str]


@dataclass
class CheckpointFilters:
    tags: List[str] = field(default_factory=list)
    expertise_areas: List[str] = field(default_factory=list)
    context_types: List[str] = field(default_factory=list)
    performance_threshold: float = 0.0
    recently_used: bool = False
    my_checkpoints: bool = False
    created_date_range: Optional[Tuple[str, str]] = None


@dataclass
class CheckpointSearchQuery:
    text: str = ""
    filters: CheckpointFilters = field(default_factory=CheckpointFilters)
    sort_by: str = "relevance"
    limit: int = 20
    offset: int = 0
    requested_by: Optional[str] = None


@dataclass
class CheckpointSummary:
    id: str
    title: str
    description: str
    tags: List[str]
    workspace_context_types: List[str]
    expertise_areas: List[str]
    performance_score: float
    usage_count: int
    last_used: Optional[str]
    conversation_preview: str
    created_by: str
    created_at: str
    source_workspace_id: Optional[str] = None
    source_agent_id: Optional[str] = None
    score: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SearchResult:
    checkpoints: List[CheckpointSummary]
    total_count: int
    search_time_ms: float
    suggested_tags: List[str]
    related_expertise: List[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checkpoints": [c.to_dict() for c in self.checkpoints],
            "total_count": self.total_count,
            "search_time_ms": self.search_time_ms,
            "suggested_tags": self.suggested_tags,
            "related_expertise": self.related_expertise,
        }


@dataclass
class CheckpointRestoration:
    checkpoint: Checkpoint
    conversation_messages: List[ConversationMessage]
    expertise_summary: str
    agent_configuration: CheckpointAgentConfig
    workspace_context: WorkspaceContextSnapshot
    initial_system_prompt: str
    continuation_suggestions: List[str]
    target_workspace_id: str
    target_agent_id: str
    seeded_message_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checkpoint": self.checkpoint.to_dict(),
            "restoration_data": {
                "conversation_messages": [m.to_dict() for m in self.conversation_messages],
                "expertise_summary": self.expertise_summary,
                "agent_configuration": self.agent_configuration.to_dict(),
                "workspace_context": self.workspace_context.to_dict(),
                "initial_system_prompt": self.initial_system_prompt,
            },
            "continuation_suggestions": self.continuation_suggestions,
            "target_workspace_id": self.target_workspace_id,
            "target_agent_id": self.target_agent_id,
            "seeded_message_count": self.seeded_message_count,
        }
