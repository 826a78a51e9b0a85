"""
Denormalized search index over stored checkpoints.

The index document lives next to the checkpoint files:

    {
      "last_updated": "...",
      "checkpoints": {"<id>": {...summary...}},
      "search_metadata": {
        "tag_frequency": {...},
        "context_type_frequency": {...},
        "expertise_areas": [...]
      }
    }

Search reads only this document. Aggregates are recomputed from the entries
on every write, so a removed checkpoint disappears from them as well. The
index can always be rebuilt from a full scan of the checkpoint store.
"""

import logging
import time
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from agentdeck.system.checkpoint_models import (
    Checkpoint,
    CheckpointSearchQuery,
    CheckpointSummary,
    SearchResult,
)
from agentdeck.utils.errors import CorruptStateError, ValidationError
from agentdeck.utils.file_io import isoformat, parse_timestamp, read_json, utc_now, write_json_atomic

logger = logging.getLogger(__name__)

INDEX_FILE = "checkpoint-index.json"
NO_PREVIEW = "No conversation preview available"

SORT_OPTIONS = ("relevance", "recency", "recent", "performance", "usage", "created")

# Per-term weights for text relevance.
FIELD_WEIGHTS = {
    "title": 3.0,
    "tags": 2.0,
    "expertise": 2.0,
    "description": 1.0,
    "expertise_summary": 1.0,
}

_EPOCH = datetime.min


@dataclass
class CheckpointIndexEntry:
    id: str
    title: str
    description: str
    tags: List[str] = field(default_factory=list)
    workspace_context_types: List[str] = field(default_factory=list)
    agent_expertise: List[str] = field(default_factory=list)
    expertise_summary: str = ""
    performance_score: float = 0.0
    usage_count: int = 0
    created_by: str = ""
    created_at: str = ""
    last_used: Optional[str] = None
    source_workspace_id: Optional[str] = None
    source_agent_id: Optional[str] = None
    conversation_preview: str = NO_PREVIEW
    message_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("id")
        return data

    @classmethod
    def from_dict(cls, checkpoint_id: str, data: Dict[str, Any]) -> "CheckpointIndexEntry":
        known = cls.__dataclass_fields__
        values = {k: v for k, v in data.items() if k in known and k != "id"}
        return cls(id=checkpoint_id, **values)

    @classmethod
    def from_checkpoint(cls, checkpoint: Checkpoint, preview_chars: int = 150) -> "CheckpointIndexEntry":
        messages = checkpoint.full_conversation_state.messages if checkpoint.full_conversation_state else []
        return cls(
            id=checkpoint.id,
            title=checkpoint.title,
            description=checkpoint.description,
            tags=list(checkpoint.tags),
            workspace_context_types=list(checkpoint.context_types),
            agent_expertise=list(checkpoint.expertise_areas),
            expertise_summary=checkpoint.expertise_summary,
            performance_score=checkpoint.performance_score,
            usage_count=checkpoint.usage_count,
            created_by=checkpoint.created_by,
            created_at=checkpoint.created_at,
            last_used=checkpoint.last_used,
            source_workspace_id=checkpoint.workspace_id,
            source_agent_id=checkpoint.agent_id,
            conversation_preview=conversation_preview(messages, preview_chars),
            message_count=len(messages),
        )

    def to_summary(self, score: float = 0.0) -> CheckpointSummary:
        return CheckpointSummary(
            id=self.id,
            title=self.title,
            description=self.description,
            tags=list(self.tags),
            workspace_context_types=list(self.workspace_context_types),
            expertise_areas=list(self.agent_expertise),
            performance_score=self.performance_score,
            usage_count=self.usage_count,
            last_used=self.last_used,
            conversation_preview=self.conversation_preview,
            created_by=self.created_by,
            created_at=self.created_at,
            source_workspace_id=self.source_workspace_id,
            source_agent_id=self.source_agent_id,
            score=score,
        )


def conversation_preview(messages, preview_chars: int = 150) -> str:
    """First ``preview_chars`` of the last message, or a placeholder."""
    if not messages:
        return NO_PREVIEW
    content = messages[-1].content or ""
    preview = content[:preview_chars]
    return preview + "..." if len(preview) < len(content) else preview


@dataclass
class ReconcileReport:
    indexed_orphans: List[str] = field(default_factory=list)
    dropped_dangling: List[str] = field(default_factory=list)
    unreadable: List[str] = field(default_factory=list)
    total: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.indexed_orphans or self.dropped_dangling)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class CheckpointIndex:
    def __init__(self, checkpoints_root: Path, recent_days: int = 7, clock: Callable[[], datetime] = utc_now):
        self.checkpoints_root = Path(checkpoints_root)
        self.index_path = self.checkpoints_root / INDEX_FILE
        self.recent_days = recent_days
        self.clock = clock
        self.needs_rebuild = False
        self.last_updated: Optional[str] = None
        self._entries: Dict[str, CheckpointIndexEntry] = {}
        self._load()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> None:
        try:
            data = read_json(self.index_path)
        except CorruptStateError as e:
            logger.error(f"Checkpoint index is unreadable, it will be rebuilt: {e}")
            self.needs_rebuild = True
            return
        if data is None:
            return
        self.last_updated = data.get("last_updated")
        for checkpoint_id, entry in (data.get("checkpoints") or {}).items():
            if isinstance(entry, dict):
                self._entries[checkpoint_id] = CheckpointIndexEntry.from_dict(checkpoint_id, entry)
        logger.debug(f"Loaded checkpoint index with {len(self._entries)} entries")

    def search_metadata(self) -> Dict[str, Any]:
        tag_frequency: Counter = Counter()
        context_type_frequency: Counter = Counter()
        expertise_areas: List[str] = []
        for entry in self._entries.values():
            tag_frequency.update(entry.tags)
            context_type_frequency.update(entry.workspace_context_types)
            for area in entry.agent_expertise:
                if area not in expertise_areas:
                    expertise_areas.append(area)
        return {
            "tag_frequency": dict(tag_frequency),
            "context_type_frequency": dict(context_type_frequency),
            "expertise_areas": expertise_areas,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "last_updated": self.last_updated,
            "checkpoints": {cid: entry.to_dict() for cid, entry in self._entries.items()},
            "search_metadata": self.search_metadata(),
        }

    def save(self) -> None:
        self.last_updated = isoformat(self.clock())
        write_json_atomic(self.index_path, self.to_dict())
        self.needs_rebuild = False

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, checkpoint_id: str) -> bool:
        return checkpoint_id in self._entries

    def get(self, checkpoint_id: str) -> Optional[CheckpointIndexEntry]:
        return self._entries.get(checkpoint_id)

    def entries(self) -> List[CheckpointIndexEntry]:
        return list(self._entries.values())

    def upsert(self, checkpoint: Checkpoint, preview_chars: int = 150) -> CheckpointIndexEntry:
        entry = CheckpointIndexEntry.from_checkpoint(checkpoint, preview_chars)
        self._entries[checkpoint.id] = entry
        self.save()
        return entry

    def remove(self, checkpoint_id: str) -> bool:
        if checkpoint_id not in self._entries:
            return False
        del self._entries[checkpoint_id]
        self.save()
        return True

    def rebuild(self, checkpoints: Iterable[Checkpoint], preview_chars: int = 150) -> int:
        """Replace every entry with one derived from ``checkpoints``."""
        self._entries = {
            cp.id: CheckpointIndexEntry.from_checkpoint(cp, preview_chars) for cp in checkpoints
        }
        self.save()
        logger.info(f"Rebuilt checkpoint index with {len(self._entries)} entries")
        return len(self._entries)

    def reconcile(
        self,
        stored_ids: Iterable[str],
        loader: Callable[[str], Optional[Checkpoint]],
        preview_chars: int = 150,
    ) -> ReconcileReport:
        """Bring the index in line with the checkpoint store.

        Stored checkpoints missing from the index are loaded and indexed;
        entries whose file is gone are dropped.
        """
        report = ReconcileReport()
        stored = set(stored_ids)

        for checkpoint_id in sorted(stored - set(self._entries)):
            checkpoint = loader(checkpoint_id)
            if checkpoint is None:
                report.unreadable.append(checkpoint_id)
                continue
            self._entries[checkpoint_id] = CheckpointIndexEntry.from_checkpoint(checkpoint, preview_chars)
            report.indexed_orphans.append(checkpoint_id)

        for checkpoint_id in sorted(set(self._entries) - stored):
            del self._entries[checkpoint_id]
            report.dropped_dangling.append(checkpoint_id)

        report.total = len(self._entries)
        if report.changed or self.needs_rebuild or not self.index_path.exists():
            self.save()
        if report.changed:
            logger.info(
                f"Reconciled checkpoint index: indexed {len(report.indexed_orphans)} orphan(s), "
                f"dropped {len(report.dropped_dangling)} dangling entr(ies)"
            )
        return report

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    @staticmethod
    def _score(entry: CheckpointIndexEntry, terms: List[str]) -> Optional[float]:
        """Weighted keyword score, or None if some term matches nothing."""
        fields = {
            "title": entry.title.lower(),
            "tags": " ".join(entry.tags).lower(),
            "expertise": " ".join(entry.agent_expertise).lower(),
            "description": entry.description.lower(),
            "expertise_summary": entry.expertise_summary.lower(),
        }
        total = 0.0
        for term in terms:
            term_score = sum(weight for name, weight in FIELD_WEIGHTS.items() if term in fields[name])
            if term_score == 0:
                return None
            total += term_score
        return total

    def _passes_filters(self, entry: CheckpointIndexEntry, query: CheckpointSearchQuery, now: datetime) -> bool:
        filters = query.filters
        if filters.tags and not any(tag in entry.tags for tag in filters.tags):
            return False
        if filters.expertise_areas and not any(a in entry.agent_expertise for a in filters.expertise_areas):
            return False
        if filters.context_types and not any(t in entry.workspace_context_types for t in filters.context_types):
            return False
        if filters.performance_threshold and entry.performance_score < filters.performance_threshold:
            return False
        if filters.recently_used:
            last_used = parse_timestamp(entry.last_used)
            if last_used is None or last_used <= now - timedelta(days=self.recent_days):
                return False
        if filters.my_checkpoints and entry.created_by != query.requested_by:
            return False
        if filters.created_date_range:
            start, end = (parse_timestamp(v) for v in filters.created_date_range)
            created = parse_timestamp(entry.created_at)
            if created is None:
                return False
            if start and created < start:
                return False
            if end and created > end:
                return False
        return True

    @staticmethod
    def _sort_key(sort_by: str, entry: CheckpointIndexEntry, score: float):
        created = parse_timestamp(entry.created_at) or _EPOCH
        if sort_by in ("recency", "recent"):
            return (parse_timestamp(entry.last_used) or created, created)
        if sort_by == "created":
            return (created,)
        if sort_by == "performance":
            return (entry.performance_score, created)
        if sort_by == "usage":
            return (entry.usage_count, created)
        return (score, entry.performance_score, created)

    def search(self, query: CheckpointSearchQuery, now: Optional[datetime] = None) -> SearchResult:
        started = time.perf_counter()
        if query.sort_by not in SORT_OPTIONS:
            raise ValidationError([f"Unknown sort option '{query.sort_by}', expected one of {list(SORT_OPTIONS)}"])
        violations = []
        if query.limit < 1:
            violations.append("limit must be at least 1")
        if query.offset < 0:
            violations.append("offset must not be negative")
        if violations:
            raise ValidationError(violations)

        now = now or self.clock()
        terms = [t for t in (query.text or "").lower().split() if t]

        matches = []
        for entry in self._entries.values():
            if not self._passes_filters(entry, query, now):
                continue
            score = self._score(entry, terms) if terms else 0.0
            if score is None:
                continue
            matches.append((entry, score))

        matches.sort(key=lambda pair: self._sort_key(query.sort_by, pair[0], pair[1]), reverse=True)
        page = matches[query.offset:query.offset + query.limit]

        pool = [entry for entry, _ in matches] or list(self._entries.values())
        tag_counts = Counter(tag for entry in pool for tag in entry.tags)
        expertise_counts = Counter(area for entry in pool for area in entry.agent_expertise)

        return SearchResult(
            checkpoints=[entry.to_summary(score) for entry, score in page],
            total_count=len(matches),
            search_time_ms=round((time.perf_counter() - started) * 1000, 3),
            suggested_tags=[tag for tag, _ in tag_counts.most_common(10)],
            related_expertise=[area for area, _ in expertise_counts.most_common(10)],
        )
