"""
Reusable conversation checkpoints.

A checkpoint snapshots one agent's conversation together with derived
expertise and performance metadata into a global store that does not depend
on the source workspace:

- ``save`` validates the request (listing every violation), derives metrics
  from the recorded tool activity, writes the checkpoint file and then
  updates the search index.
- ``load`` / ``search`` / ``list_summaries`` are read-only; search never
  touches checkpoint payloads.
- ``restore`` hands the payload to a target agent and bumps usage.
- ``delete`` drops the index entry first and then the file.

Store layout: ``<checkpoints>/data/<id>.json`` plus the shared
``checkpoint-index.json``.
"""

import asyncio
import logging
import uuid
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from agentdeck.config import CheckpointConfig
from agentdeck.system.checkpoint_index import CheckpointIndex, ReconcileReport
from agentdeck.system.checkpoint_models import (
    Checkpoint,
    CheckpointAgentConfig,
    CheckpointAnalyticsSummary,
    CheckpointConversationState,
    CheckpointCreationRequest,
    CheckpointFilters,
    CheckpointMetrics,
    CheckpointRestoration,
    CheckpointSearchQuery,
    CheckpointSummary,
    CheckpointValidation,
    CommandExecution,
    SearchResult,
    WorkspaceContextSnapshot,
)
from agentdeck.system.state import ConversationMessage, MessageRole
from agentdeck.system.workspaces import validate_identifier
from agentdeck.utils.errors import CorruptStateError, NotFoundError, ValidationError
from agentdeck.utils.file_io import isoformat, read_json, remove_quietly, utc_now, write_json_atomic

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = [
    "id", "title", "description", "agent_type", "conversation_id",
    "workspace_context", "expertise_summary", "performance_metrics",
    "tags", "created_at", "agent_id", "workspace_id", "created_by",
]

EXPERTISE_KEYWORDS = ["react", "typescript", "nodejs", "api", "database", "git", "testing", "deployment"]

# Command id -> expertise area it demonstrates.
COMMAND_EXPERTISE = {
    "git": "version-control",
    "npm": "package-management",
    "yarn": "package-management",
    "pip": "package-management",
    "test": "testing",
    "pytest": "testing",
}

SHELL_TOOLS = {"bash", "shell", "terminal", "execute_command"}


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    return False


def validate_checkpoint(checkpoint: Dict[str, Any], config: Optional[CheckpointConfig] = None) -> CheckpointValidation:
    """Check a serialized checkpoint and collect every problem, not just the first."""
    config = config or CheckpointConfig()
    errors: List[str] = []
    warnings: List[str] = []

    for name in REQUIRED_FIELDS:
        if name not in checkpoint or _is_blank(checkpoint.get(name)):
            errors.append(f"Missing required field: {name}")

    title = checkpoint.get("title") or ""
    if not _is_blank(title) and len(title.strip()) < config.min_title_length:
        errors.append(f"Title must be at least {config.min_title_length} characters long")

    description = checkpoint.get("description") or ""
    if not _is_blank(description) and len(description.strip()) < config.min_description_length:
        errors.append(f"Description must be at least {config.min_description_length} characters long")

    agent_type = checkpoint.get("agent_type")
    if not _is_blank(agent_type) and agent_type not in config.agent_types:
        errors.append(f"Agent type must be one of: {', '.join(config.agent_types)}")

    tags = checkpoint.get("tags")
    if tags is not None and not isinstance(tags, list):
        errors.append("Tags must be a list of strings")
    elif tags:
        seen = set()
        for tag in tags:
            if not isinstance(tag, str) or not tag.strip():
                errors.append(f"Invalid tag {tag!r}: tags must be non-empty strings")
                continue
            if len(tag) > config.max_tag_length:
                errors.append(f"Tag '{tag[:20]}...' exceeds {config.max_tag_length} characters")
            if tag.lower() in seen:
                errors.append(f"Duplicate tag: {tag}")
            seen.add(tag.lower())
    else:
        warnings.append("No tags specified - checkpoint may be hard to find")

    summary = checkpoint.get("expertise_summary") or ""
    if not _is_blank(summary) and len(summary.strip()) < config.recommended_summary_length:
        warnings.append("Expertise summary is very brief - consider adding more detail")

    total = len(REQUIRED_FIELDS)
    completeness = max(0, round((total - len(errors)) / total * 100))
    return CheckpointValidation(
        is_valid=not errors,
        errors=errors,
        warnings=warnings,
        completeness_score=completeness,
        required_fields=list(REQUIRED_FIELDS),
    )


def _command_id(tool_use: Dict[str, Any]) -> str:
    name = str(tool_use.get("name") or "unknown").lower()
    if name in SHELL_TOOLS:
        command = (tool_use.get("input") or {}).get("command")
        if isinstance(command, str) and command.strip():
            return command.strip().split()[0].lower()
    return name


def extract_command_history(messages: List[ConversationMessage]) -> List[CommandExecution]:
    """Pair each recorded tool use with its result (by tool_use_id)."""
    commands: List[CommandExecution] = []
    for message in messages:
        metadata = message.metadata or {}
        results = {}
        for result in metadata.get("tool_results") or []:
            if isinstance(result, dict) and result.get("tool_use_id"):
                results[result["tool_use_id"]] = result
        for tool_use in metadata.get("tool_uses") or []:
            if not isinstance(tool_use, dict):
                continue
            result = results.get(tool_use.get("id"), {})
            failed = bool(result.get("is_error"))
            output = result.get("content", "")
            if not isinstance(output, str):
                output = str(output)
            commands.append(
                CommandExecution(
                    id=str(tool_use.get("id") or f"cmd_{len(commands)}"),
                    command_id=_command_id(tool_use),
                    timestamp=message.timestamp,
                    input_params=dict(tool_use.get("input") or {}),
                    output=output,
                    success=not failed,
                    error_message=output if failed else None,
                    execution_time_ms=int(result.get("duration_ms") or 0),
                )
            )
    return commands


def _usage_tokens(messages: List[ConversationMessage]) -> int:
    total = 0
    for message in messages:
        usage = (message.metadata or {}).get("usage")
        if isinstance(usage, dict):
            for key in ("input_tokens", "output_tokens"):
                value = usage.get(key)
                if isinstance(value, (int, float)):
                    total += int(value)
    return total


class CheckpointManager:
    def __init__(
        self,
        checkpoints_root: Path,
        conversation_store,
        session_manager,
        workspace_resolver,
        config: Optional[CheckpointConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.checkpoints_root = Path(checkpoints_root)
        self.data_path = self.checkpoints_root / "data"
        self.data_path.mkdir(parents=True, exist_ok=True)
        self.store = conversation_store
        self.sessions = session_manager
        self.workspaces = workspace_resolver
        self.config = config or CheckpointConfig()
        self.clock = clock
        self.index = CheckpointIndex(self.checkpoints_root, recent_days=self.config.recent_days, clock=clock)
        self._lock = asyncio.Lock()

        logger.info(f"CheckpointManager initialized with {len(self.index)} indexed checkpoints")

    # ------------------------------------------------------------------
    # Store
    # ------------------------------------------------------------------

    def checkpoint_path(self, checkpoint_id: str) -> Path:
        return self.data_path / f"{validate_identifier(checkpoint_id, 'checkpoint')}.json"

    def stored_ids(self) -> List[str]:
        return sorted(p.stem for p in self.data_path.glob("*.json"))

    def _write(self, checkpoint: Checkpoint) -> None:
        write_json_atomic(self.checkpoint_path(checkpoint.id), checkpoint.to_dict())

    def _read(self, checkpoint_id: str) -> Optional[Checkpoint]:
        """Checkpoint from disk, or None when missing or unreadable."""
        path = self.checkpoint_path(checkpoint_id)
        try:
            data = read_json(path)
        except CorruptStateError as e:
            logger.error(f"Checkpoint {checkpoint_id} is unreadable: {e}")
            return None
        if data is None:
            return None
        try:
            return Checkpoint.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Checkpoint {checkpoint_id} has an invalid shape: {e}")
            return None

    # ------------------------------------------------------------------
    # Derivations
    # ------------------------------------------------------------------

    def _calculate_metrics(
        self,
        messages: List[ConversationMessage],
        commands: List[CommandExecution],
        interaction_count: int,
        context_understanding: Dict[str, float],
    ) -> CheckpointMetrics:
        total = len(commands)
        successful = sum(1 for c in commands if c.success)

        durations = []
        outcomes = []
        for message in messages:
            if message.role != MessageRole.ASSISTANT:
                continue
            metadata = message.metadata or {}
            result = metadata.get("result")
            if isinstance(result, dict) and isinstance(result.get("duration_ms"), (int, float)):
                durations.append(float(result["duration_ms"]))
            if "success" in metadata:
                outcomes.append(bool(metadata["success"]))

        understanding = list(context_understanding.values())
        return CheckpointMetrics(
            success_rate=successful / total if total else 1.0,
            avg_response_time=sum(durations) / len(durations) if durations else 0.0,
            task_completion_rate=sum(outcomes) / len(outcomes) if outcomes else 0.85,
            commands_executed=total,
            errors_encountered=total - successful,
            tokens_processed=_usage_tokens(messages),
            context_understanding_score=sum(understanding) / len(understanding) if understanding else 0.0,
            interaction_count=interaction_count,
        )

    @staticmethod
    def _extract_expertise_areas(commands: List[CommandExecution], expertise_summary: str) -> List[str]:
        areas: List[str] = []
        words = set(expertise_summary.lower().split())
        for keyword in EXPERTISE_KEYWORDS:
            if keyword in words:
                areas.append(keyword)
        for command in commands:
            area = COMMAND_EXPERTISE.get(command.command_id)
            if area:
                areas.append(area)
        return list(dict.fromkeys(areas))

    @staticmethod
    def _extract_learned_patterns(messages: List[ConversationMessage], commands: List[CommandExecution]) -> List[str]:
        patterns = []
        if any(m.role == MessageRole.USER and "error" in m.content.lower() for m in messages):
            patterns.append("error-debugging")
        if any(m.role == MessageRole.ASSISTANT and "test" in m.content.lower() for m in messages):
            patterns.append("test-driven-development")
        if any(c.command_id == "git" for c in commands):
            patterns.append("git-workflow")
        return patterns

    @staticmethod
    def _conversation_summary(messages: List[ConversationMessage], commands: List[CommandExecution]) -> str:
        total = len(commands)
        rate = sum(1 for c in commands if c.success) / total if total else 0
        return (
            f"Conversation with {len(messages)} messages, {total} commands executed "
            f"({round(rate * 100)}% success rate)"
        )

    @staticmethod
    def _success_indicators(messages: List[ConversationMessage], commands: List[CommandExecution]) -> List[str]:
        indicators = []
        for message in messages[-5:]:
            content = message.content.lower()
            if message.role == MessageRole.ASSISTANT and "success" in content:
                indicators.append("task-completion")
            if message.role == MessageRole.USER and "thank" in content:
                indicators.append("user-satisfaction")
        recent = commands[-10:]
        if recent and sum(1 for c in recent if c.success) / len(recent) > 0.8:
            indicators.append("high-command-success")
        return list(dict.fromkeys(indicators))

    def _capture_workspace_context(self, workspace_id: str, override: Optional[Dict[str, Any]]) -> WorkspaceContextSnapshot:
        if override:
            return WorkspaceContextSnapshot.from_dict(override)
        return WorkspaceContextSnapshot(
            timestamp=isoformat(self.clock()),
            context_description=f"Workspace {workspace_id} context snapshot",
        )

    @staticmethod
    def _normalize_tags(tags: Any) -> Any:
        """Strip list entries; anything else is left for validation to report."""
        if tags is None:
            return []
        if not isinstance(tags, list):
            return tags
        return [t.strip() if isinstance(t, str) else t for t in tags]

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def save(
        self,
        workspace_id: str,
        agent_id: str,
        request: CheckpointCreationRequest,
        conversation_id: Optional[str] = None,
    ) -> str:
        """Create a checkpoint from the agent's current conversation. Returns its id."""
        if not self.workspaces.exists(workspace_id):
            raise NotFoundError("workspace", workspace_id)
        if not self.store.exists(workspace_id, agent_id) and not self.sessions.has_state(workspace_id, agent_id):
            raise NotFoundError("agent", agent_id)

        messages = self.store.load(workspace_id, agent_id)
        state = self.sessions.get_state(workspace_id, agent_id)
        commands = extract_command_history(messages)
        context = self._capture_workspace_context(workspace_id, request.context_snapshot_override)
        understanding = {t: 0.8 for t in context.context_types}
        metrics = self._calculate_metrics(messages, commands, state.interaction_count, understanding)
        expertise_summary = (request.expertise_summary or "").strip()
        expertise_areas = self._extract_expertise_areas(commands, expertise_summary)

        conversation_state = None
        if request.include_full_conversation:
            conversation_state = CheckpointConversationState(
                messages=messages,
                total_tokens=metrics.tokens_processed,
                command_history=commands,
                knowledge_areas=expertise_areas,
                learned_patterns=self._extract_learned_patterns(messages, commands),
                conversation_summary=self._conversation_summary(messages, commands),
            )

        specialized = list(dict.fromkeys(c.command_id for c in commands))
        tags = self._normalize_tags(request.tags)
        checkpoint = Checkpoint(
            id=str(uuid.uuid4()),
            title=(request.title or "").strip(),
            description=(request.description or "").strip(),
            agent_type=request.agent_type or self.config.default_agent_type,
            conversation_id=conversation_id or f"{workspace_id}/{agent_id}",
            workspace_context=context,
            expertise_summary=expertise_summary,
            performance_metrics=metrics,
            tags=tags if isinstance(tags, list) else [],
            created_at=isoformat(self.clock()),
            agent_id=agent_id,
            workspace_id=workspace_id,
            created_by=request.created_by or "user",
            full_conversation_state=conversation_state,
            agent_configuration=CheckpointAgentConfig(
                model=request.model or "default",
                specialized_commands=specialized,
                context_understanding=understanding,
                last_session_id=state.last_session_id,
            ),
            expertise_areas=expertise_areas,
            context_types=context.context_types,
            success_indicators=self._success_indicators(messages, commands),
            analytics_summary=CheckpointAnalyticsSummary(
                total_sessions=1,
                effectiveness_rating=metrics.success_rate * 5,
            ),
            analytics_enabled=request.analytics_enabled,
        )

        payload = checkpoint.to_dict()
        payload["tags"] = tags
        validation = validate_checkpoint(payload, self.config)
        if not validation.is_valid:
            raise ValidationError(validation.errors, validation.warnings, validation.completeness_score)
        for warning in validation.warnings:
            logger.info(f"Checkpoint '{checkpoint.title}': {warning}")

        async with self._lock:
            self._write(checkpoint)
            self.index.upsert(checkpoint, self.config.preview_chars)

        logger.info(
            f"Saved checkpoint {checkpoint.id} '{checkpoint.title}' from {workspace_id}/{agent_id} "
            f"({len(messages)} messages, completeness {validation.completeness_score}%)"
        )
        return checkpoint.id

    def load(self, checkpoint_id: str) -> Checkpoint:
        checkpoint = self._read(checkpoint_id)
        if checkpoint is None:
            raise NotFoundError("checkpoint", checkpoint_id)
        return checkpoint

    def search(self, query: CheckpointSearchQuery) -> SearchResult:
        return self.index.search(query)

    def list_summaries(self) -> List[CheckpointSummary]:
        entries = sorted(self.index.entries(), key=lambda e: e.created_at, reverse=True)
        return [entry.to_summary() for entry in entries]

    def _build_system_prompt(self, checkpoint: Checkpoint) -> str:
        lines = [
            f'You are continuing from the checkpoint "{checkpoint.title}".',
            checkpoint.description,
            "",
            f"Expertise: {checkpoint.expertise_summary}",
        ]
        if checkpoint.expertise_areas:
            lines.append(f"Areas: {', '.join(checkpoint.expertise_areas)}")
        state = checkpoint.full_conversation_state
        if state is not None:
            lines.append(state.conversation_summary)
            if state.learned_patterns:
                lines.append(f"Established working patterns: {', '.join(state.learned_patterns)}")
        return "\n".join(line for line in lines if line is not None)

    @staticmethod
    def _continuation_suggestions(checkpoint: Checkpoint) -> List[str]:
        suggestions = []
        for area in checkpoint.expertise_areas[:3]:
            suggestions.append(f"Continue working on {area} tasks")
        state = checkpoint.full_conversation_state
        if state is not None and "error-debugging" in state.learned_patterns:
            suggestions.append("Review any remaining errors from the previous session")
        if not suggestions:
            suggestions.append(f"Pick up where '{checkpoint.title}' left off")
        return suggestions

    async def restore(
        self,
        checkpoint_id: str,
        target_workspace_id: str,
        target_agent_id: str,
        seed_conversation: bool = False,
    ) -> CheckpointRestoration:
        """Hand a checkpoint's payload to a target agent.

        Never consults the source workspace. With ``seed_conversation`` the
        stored messages are upserted into the target agent's conversation.
        """
        validate_identifier(target_workspace_id, "workspace")
        validate_identifier(target_agent_id, "agent")
        if seed_conversation and not self.workspaces.exists(target_workspace_id):
            raise NotFoundError("workspace", target_workspace_id)

        async with self._lock:
            checkpoint = self.load(checkpoint_id)
            checkpoint.usage_count += 1
            checkpoint.last_used = isoformat(self.clock())
            if checkpoint.analytics_enabled:
                checkpoint.analytics_summary.total_sessions += 1
                checkpoint.analytics_summary.successful_restorations += 1
            self._write(checkpoint)
            self.index.upsert(checkpoint, self.config.preview_chars)

        messages = list(checkpoint.full_conversation_state.messages) if checkpoint.full_conversation_state else []
        seeded = 0
        if seed_conversation and messages:
            seeded = await self.store.append_many(target_workspace_id, target_agent_id, messages)

        logger.info(
            f"Restored checkpoint {checkpoint_id} into {target_workspace_id}/{target_agent_id} "
            f"(usage {checkpoint.usage_count})"
        )
        return CheckpointRestoration(
            checkpoint=checkpoint,
            conversation_messages=messages,
            expertise_summary=checkpoint.expertise_summary,
            agent_configuration=checkpoint.agent_configuration,
            workspace_context=checkpoint.workspace_context,
            initial_system_prompt=self._build_system_prompt(checkpoint),
            continuation_suggestions=self._continuation_suggestions(checkpoint),
            target_workspace_id=target_workspace_id,
            target_agent_id=target_agent_id,
            seeded_message_count=seeded,
        )

    async def delete(self, checkpoint_id: str) -> None:
        path = self.checkpoint_path(checkpoint_id)
        async with self._lock:
            indexed = self.index.remove(checkpoint_id)
            existed = remove_quietly(path)
        if not indexed and not existed:
            raise NotFoundError("checkpoint", checkpoint_id)
        logger.info(f"Deleted checkpoint {checkpoint_id}")

    async def record_feedback(
        self, checkpoint_id: str, session_length: float, rating: Optional[float] = None
    ) -> CheckpointAnalyticsSummary:
        """Fold one continuation session's length and optional 0-5 rating into the analytics."""
        if rating is not None and not 0 <= rating <= 5:
            raise ValidationError([f"Rating must be between 0 and 5, got {rating}"])
        if session_length < 0:
            raise ValidationError(["Session length must not be negative"])

        async with self._lock:
            checkpoint = self.load(checkpoint_id)
            analytics = checkpoint.analytics_summary
            analytics.feedback_count += 1
            n = analytics.feedback_count
            analytics.average_continuation_length = (
                analytics.average_continuation_length * (n - 1) + session_length
            ) / n
            if rating is not None:
                analytics.user_feedback_score = (analytics.user_feedback_score * (n - 1) + rating) / n
            analytics.effectiveness_rating = (
                checkpoint.performance_metrics.success_rate * 0.4
                + analytics.user_feedback_score / 5 * 0.6
            ) * 5
            self._write(checkpoint)
        return analytics

    def recommend(self, workspace_context: Optional[Dict[str, Any]] = None, limit: int = 10) -> List[Checkpoint]:
        """High-performing checkpoints matching the context types of ``workspace_context``."""
        snapshot = WorkspaceContextSnapshot.from_dict(workspace_context)
        query = CheckpointSearchQuery(
            filters=CheckpointFilters(
                context_types=snapshot.context_types,
                performance_threshold=self.config.recommendation_threshold,
            ),
            sort_by="performance",
            limit=limit,
        )
        recommendations = []
        for summary in self.index.search(query).checkpoints:
            checkpoint = self._read(summary.id)
            if checkpoint is None:
                logger.warning(f"Skipping unreadable recommended checkpoint {summary.id}")
                continue
            recommendations.append(checkpoint)
        return recommendations

    def storage_stats(self) -> Dict[str, Any]:
        sizes = [p.stat().st_size for p in self.data_path.glob("*.json")]
        metadata = self.index.search_metadata()
        tags = Counter(metadata["tag_frequency"])
        expertise = Counter(area for entry in self.index.entries() for area in entry.agent_expertise)
        return {
            "total_checkpoints": len(sizes),
            "total_size_bytes": sum(sizes),
            "average_size_bytes": round(sum(sizes) / len(sizes)) if sizes else 0,
            "most_used_tags": [tag for tag, _ in tags.most_common(10)],
            "most_common_expertise": [area for area, _ in expertise.most_common(10)],
        }

    def reconcile(self) -> ReconcileReport:
        """Repair the index against the files actually present in the store."""
        return self.index.reconcile(self.stored_ids(), self._read, self.config.preview_chars)

    def startup(self) -> Optional[ReconcileReport]:
        if self.config.reconcile_on_startup or self.index.needs_rebuild:
            return self.reconcile()
        return None

