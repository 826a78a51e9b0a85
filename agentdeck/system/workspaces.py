"""Workspace existence checks and on-disk layout for per-agent documents."""

import re
from pathlib import Path
from typing import Protocol, runtime_checkable

from agentdeck.utils.errors import ValidationError

_IDENTIFIER = re.compile(r"[A-Za-z0-9][A-Za-z0-9._-]{0,127}")


def validate_identifier(value: str, kind: str) -> str:
    """Reject ids that could escape their directory."""
    if not isinstance(value, str) or not _IDENTIFIER.fullmatch(value) or ".." in value:
        raise ValidationError([f"Invalid {kind} id: {value!r}"])
    return value


@runtime_checkable
class WorkspaceResolver(Protocol):
    def exists(self, workspace_id: str) -> bool:
        ...

    def path(self, workspace_id: str) -> Path:
        ...


class DirectoryWorkspaceResolver:
    """A workspace exists when ``<root>/<workspace_id>`` is a directory."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def path(self, workspace_id: str) -> Path:
        return self.root / validate_identifier(workspace_id, "workspace")

    def exists(self, workspace_id: str) -> bool:
        try:
            return self.path(workspace_id).is_dir()
        except ValidationError:
            return False

    def create(self, workspace_id: str) -> Path:
        path = self.path(workspace_id)
        path.mkdir(parents=True, exist_ok=True)
        return path


def agents_dir(workspaces_root: Path, workspace_id: str) -> Path:
    return Path(workspaces_root) / validate_identifier(workspace_id, "workspace") / "agents"
