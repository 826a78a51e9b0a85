"""
Tests for checkpoint save / load / search / restore / delete.

These verify that:
1. A saved checkpoint round-trips with its derived expertise and metrics
2. Restoring never depends on the source workspace still existing
3. Validation reports every problem at once and writes nothing
4. The index stays consistent with the checkpoint files
"""

import shutil
import tempfile
from pathlib import Path

import pytest

from agentdeck.config import CheckpointConfig
from agentdeck.system.checkpoint_manager import CheckpointManager, extract_command_history, validate_checkpoint
from agentdeck.system.checkpoint_models import CheckpointCreationRequest, CheckpointFilters, CheckpointSearchQuery
from agentdeck.system.conversation_store import ConversationStore
from agentdeck.system.session_manager import AgentSessionManager
from agentdeck.system.state import ConversationMessage, MessageRole
from agentdeck.system.workspaces import DirectoryWorkspaceResolver
from agentdeck.utils.errors import NotFoundError, ValidationError


def _request(title="Git workflow expert", **kwargs):
    defaults = {
        "description": "Agent that knows the release branch process",
        "tags": ["git", "release"],
        "expertise_summary": "Handles git branching, tagging and release testing",
    }
    defaults.update(kwargs)
    return CheckpointCreationRequest(title=title, **defaults)


def _assistant_with_tools():
    return ConversationMessage(
        role=MessageRole.ASSISTANT,
        content="Tagged the release, all tests pass. Success!",
        metadata={
            "success": True,
            "session_id": "sess-1",
            "usage": {"input_tokens": 120, "output_tokens": 30},
            "result": {"duration_ms": 2500},
            "tool_uses": [
                {"id": "t1", "name": "Bash", "input": {"command": "git tag v1.2.0"}},
                {"id": "t2", "name": "Bash", "input": {"command": "pytest -q"}},
            ],
            "tool_results": [
                {"tool_use_id": "t1", "content": "", "is_error": False},
                {"tool_use_id": "t2", "content": "1 failed", "is_error": True},
            ],
        },
    )


class TestCheckpointManager:
    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        root = Path(self.temp_dir)
        self.workspaces_root = root / "workspaces"
        self.workspaces = DirectoryWorkspaceResolver(self.workspaces_root)
        self.store = ConversationStore(self.workspaces_root)
        self.sessions = AgentSessionManager(self.workspaces_root)
        self.checkpoints_root = root / "checkpoints"
        self.manager = self._manager()

        self.workspaces.create("ws-a")
        self.workspaces.create("ws-b")

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _manager(self, **config):
        return CheckpointManager(
            self.checkpoints_root,
            self.store,
            self.sessions,
            self.workspaces,
            CheckpointConfig(**config),
        )

    async def _seed_conversation(self, workspace_id="ws-a", agent_id="agent1"):
        await self.store.append(
            workspace_id, agent_id,
            ConversationMessage(role=MessageRole.USER, content="Please cut release 1.2.0, there was an error last time"),
        )
        await self.store.append(workspace_id, agent_id, _assistant_with_tools())

    @pytest.mark.asyncio
    async def test_save_and_load_round_trip(self):
        await self._seed_conversation()

        checkpoint_id = await self.manager.save("ws-a", "agent1", _request())
        checkpoint = self.manager.load(checkpoint_id)

        assert checkpoint.title == "Git workflow expert"
        assert checkpoint.agent_type == "claude"
        assert checkpoint.workspace_id == "ws-a"
        assert checkpoint.conversation_id == "ws-a/agent1"
        assert checkpoint.tags == ["git", "release"]
        assert len(checkpoint.full_conversation_state.messages) == 2
        assert checkpoint.full_conversation_state.total_tokens == 150
        assert "error-debugging" in checkpoint.full_conversation_state.learned_patterns
        assert "git" in checkpoint.expertise_areas
        assert "version-control" in checkpoint.expertise_areas
        assert "testing" in checkpoint.expertise_areas
        assert checkpoint.agent_configuration.specialized_commands == ["git", "pytest"]

        metrics = checkpoint.performance_metrics
        assert metrics.commands_executed == 2
        assert metrics.errors_encountered == 1
        assert metrics.success_rate == 0.5
        assert metrics.avg_response_time == 2500.0
        assert metrics.task_completion_rate == 1.0
        assert checkpoint_id in self.manager.index

    @pytest.mark.asyncio
    async def test_restore_after_source_workspace_is_gone(self):
        await self._seed_conversation()
        checkpoint_id = await self.manager.save("ws-a", "agent1", _request())

        shutil.rmtree(self.workspaces_root / "ws-a")

        restoration = await self.manager.restore(checkpoint_id, "ws-b", "agent2")

        assert len(restoration.conversation_messages) == 2
        assert restoration.target_workspace_id == "ws-b"
        assert "Git workflow expert" in restoration.initial_system_prompt
        assert restoration.continuation_suggestions
        assert restoration.seeded_message_count == 0
        assert self.store.load("ws-b", "agent2") == []

        reloaded = self.manager.load(checkpoint_id)
        assert reloaded.usage_count == 1
        assert reloaded.last_used is not None
        assert reloaded.analytics_summary.successful_restorations == 1
        assert self.manager.index.get(checkpoint_id).usage_count == 1

    @pytest.mark.asyncio
    async def test_restore_can_seed_target_conversation(self):
        await self._seed_conversation()
        checkpoint_id = await self.manager.save("ws-a", "agent1", _request())

        restoration = await self.manager.restore(checkpoint_id, "ws-b", "agent2", seed_conversation=True)

        assert restoration.seeded_message_count == 2
        assert [m.role for m in self.store.load("ws-b", "agent2")] == [MessageRole.USER, MessageRole.ASSISTANT]

        with pytest.raises(NotFoundError):
            await self.manager.restore(checkpoint_id, "ws-missing", "agent2", seed_conversation=True)

    @pytest.mark.asyncio
    async def test_validation_lists_every_error(self):
        await self._seed_conversation()

        with pytest.raises(ValidationError) as exc:
            await self.manager.save(
                "ws-a", "agent1",
                _request(title="", description="short", agent_type="gpt-x", expertise_summary=""),
            )

        errors = exc.value.errors
        assert "Missing required field: title" in errors
        assert "Missing required field: expertise_summary" in errors
        assert any(e.startswith("Description must be at least 10") for e in errors)
        assert any(e.startswith("Agent type must be one of") for e in errors)
        assert exc.value.completeness_score < 100
        assert self.manager.stored_ids() == []
        assert len(self.manager.index) == 0

    @pytest.mark.asyncio
    async def test_tag_validation(self):
        await self._seed_conversation()

        with pytest.raises(ValidationError) as exc:
            await self.manager.save("ws-a", "agent1", _request(tags=["git", "GIT", "x" * 60]))
        assert any("Duplicate tag" in e for e in exc.value.errors)
        assert any("exceeds 50 characters" in e for e in exc.value.errors)

        with pytest.raises(ValidationError) as exc:
            await self.manager.save("ws-a", "agent1", _request(title="", description="short", tags="git"))
        assert "Tags must be a list of strings" in exc.value.errors
        assert "Missing required field: title" in exc.value.errors
        assert any(e.startswith("Description must be at least") for e in exc.value.errors)
        assert self.manager.list_summaries() == []

    @pytest.mark.asyncio
    async def test_save_requires_workspace_and_agent(self):
        with pytest.raises(NotFoundError):
            await self.manager.save("ws-missing", "agent1", _request())
        with pytest.raises(NotFoundError):
            await self.manager.save("ws-a", "never-used", _request())

    @pytest.mark.asyncio
    async def test_tag_search_finds_two_of_five(self):
        await self._seed_conversation()
        for i in range(5):
            tags = ["react", f"t{i}"] if i in (0, 4) else [f"t{i}"]
            await self.manager.save("ws-a", "agent1", _request(title=f"Checkpoint {i}", tags=tags))

        result = self.manager.search(CheckpointSearchQuery(filters=CheckpointFilters(tags=["react"])))
        assert result.total_count == 2
        assert {c.title for c in result.checkpoints} == {"Checkpoint 0", "Checkpoint 4"}
        assert len(self.manager.list_summaries()) == 5

    @pytest.mark.asyncio
    async def test_delete(self):
        await self._seed_conversation()
        checkpoint_id = await self.manager.save("ws-a", "agent1", _request(tags=["unique-tag"]))

        await self.manager.delete(checkpoint_id)

        with pytest.raises(NotFoundError):
            self.manager.load(checkpoint_id)
        with pytest.raises(NotFoundError):
            await self.manager.delete(checkpoint_id)
        assert "unique-tag" not in self.manager.index.search_metadata()["tag_frequency"]
        assert self.manager.storage_stats()["total_checkpoints"] == 0

    @pytest.mark.asyncio
    async def test_reconcile_repairs_both_directions(self):
        await self._seed_conversation()
        first = await self.manager.save("ws-a", "agent1", _request(title="First one"))
        second = await self.manager.save("ws-a", "agent1", _request(title="Second one"))

        # A file without an index entry is picked up at startup
        (self.checkpoints_root / "checkpoint-index.json").unlink()
        manager = self._manager()
        report = manager.startup()
        assert sorted(report.indexed_orphans) == sorted([first, second])
        assert {e.id for e in manager.index.entries()} == {first, second}

        # An index entry without a file is dropped
        manager.checkpoint_path(second).unlink()
        report = manager.reconcile()
        assert report.dropped_dangling == [second]
        assert {e.id for e in manager.index.entries()} == {first}

    @pytest.mark.asyncio
    async def test_record_feedback(self):
        await self._seed_conversation()
        checkpoint_id = await self.manager.save("ws-a", "agent1", _request())

        analytics = await self.manager.record_feedback(checkpoint_id, session_length=12, rating=4)
        assert analytics.feedback_count == 1
        assert analytics.user_feedback_score == 4.0
        assert analytics.average_continuation_length == 12

        with pytest.raises(ValidationError):
            await self.manager.record_feedback(checkpoint_id, session_length=5, rating=7)

    @pytest.mark.asyncio
    async def test_recommendations_follow_context_types(self):
        await self.store.append("ws-a", "agent1", ConversationMessage(role=MessageRole.USER, content="hi"))
        context = {"context_items": [{"type": "file", "path": "src/app.py"}]}
        matching = await self.manager.save(
            "ws-a", "agent1", _request(title="File focused", context_snapshot_override=context)
        )
        await self.manager.save("ws-a", "agent1", _request(title="No context"))

        recommended = self.manager.recommend({"context_items": [{"type": "file"}]})
        assert [c.id for c in recommended] == [matching]


def test_extract_command_history_pairs_results():
    commands = extract_command_history([_assistant_with_tools()])
    assert [c.command_id for c in commands] == ["git", "pytest"]
    assert commands[0].success is True
    assert commands[1].success is False
    assert commands[1].error_message == "1 failed"


def test_validate_checkpoint_warns_on_missing_tags():
    validation = validate_checkpoint({
        "id": "x", "title": "Title", "description": "Long enough description", "agent_type": "claude",
        "conversation_id": "c", "workspace_context": {"timestamp": "t"}, "expertise_summary": "brief",
        "performance_metrics": {"success_rate": 1.0}, "tags": [], "created_at": "now",
        "agent_id": "a", "workspace_id": "w", "created_by": "user",
    })
    assert validation.is_valid
    assert validation.completeness_score == 100
    assert any("No tags" in w for w in validation.warnings)
    assert any("very brief" in w for w in validation.warnings)
