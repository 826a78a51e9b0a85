from pathlib import Path
from typing import Any, Dict, List, Optional


class AgentDeckError(Exception):
    """Base exception for all AgentDeck errors with structured error information."""

    def __init__(
        self,
        message: str,
        code: str = "AGENTDECK_ERROR",
        recoverable: bool = True,
        suggested_action: str = "retry",
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.code = code
        self.recoverable = recoverable
        self.suggested_action = suggested_action
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for API responses."""
        return {
            "code": self.code,
            "message": str(self),
            "recoverable": self.recoverable,
            "suggested_action": self.suggested_action,
            "details": self.details
        }


class ValidationError(AgentDeckError):
    """A request failed validation. Carries every violated constraint."""

    def __init__(
        self,
        errors: List[str],
        warnings: Optional[List[str]] = None,
        completeness_score: Optional[int] = None,
        **kwargs
    ):
        self.errors = list(errors)
        self.warnings = list(warnings or [])
        self.completeness_score = completeness_score
        message = "; ".join(self.errors) if self.errors else "Validation failed"
        super().__init__(
            message,
            code="VALIDATION_ERROR",
            recoverable=True,
            suggested_action="fix_request",
            details={
                "errors": self.errors,
                "warnings": self.warnings,
                "completeness_score": completeness_score,
            },
            **kwargs
        )


class NotFoundError(AgentDeckError):
    """Workspace, agent or checkpoint not found."""

    def __init__(self, kind: str, identifier: str, **kwargs):
        self.kind = kind
        self.identifier = identifier
        super().__init__(
            f"{kind.capitalize()} '{identifier}' not found",
            code="NOT_FOUND",
            recoverable=False,
            suggested_action=f"check_{kind}_id",
            details={"kind": kind, "id": identifier},
            **kwargs
        )


class CorruptStateError(AgentDeckError):
    """Stored JSON could not be parsed. Callers recover with empty/default state."""

    def __init__(self, path: Path, reason: str, **kwargs):
        self.path = Path(path)
        super().__init__(
            f"Unreadable state file {path}: {reason}",
            code="CORRUPT_STATE",
            recoverable=True,
            suggested_action="inspect_file",
            details={"path": str(path), "reason": reason},
            **kwargs
        )


class RestoreIneligibleError(AgentDeckError):
    """Session restore was refused. A normal negative result, not a fault."""

    def __init__(self, reason: str, **kwargs):
        self.reason = reason
        super().__init__(
            reason,
            code="RESTORE_INELIGIBLE",
            recoverable=True,
            suggested_action="start_new_session",
            details={"reason": reason},
            **kwargs
        )


class BackendError(AgentDeckError):
    """External agent backend failed."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            code="BACKEND_ERROR",
            recoverable=True,
            suggested_action="retry",
            **kwargs
        )


class AgentBusyError(AgentDeckError):
    """Another turn is already running for this agent."""

    def __init__(self, workspace_id: str, agent_id: str, **kwargs):
        super().__init__(
            f"Agent '{agent_id}' in workspace '{workspace_id}' is busy with another turn",
            code="AGENT_BUSY",
            recoverable=True,
            suggested_action="retry_later",
            details={"workspace_id": workspace_id, "agent_id": agent_id},
            **kwargs
        )
