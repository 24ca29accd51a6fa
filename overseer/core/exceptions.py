"""Custom exception hierarchy for Overseer.

All exceptions inherit from OverseerError so callers can catch broadly
or narrowly as needed. Every class carries a stable ``code`` that the
command layer reports back as a structured failure.
"""

from __future__ import annotations

from typing import Any, Optional


class OverseerError(Exception):
    """Base exception for all Overseer errors."""

    code = "error"

    def to_payload(self) -> dict[str, Any]:
        """Structured failure shape returned to command callers."""
        return {"success": False, "error": self.code, "message": str(self)}


# ---------------------------------------------------------------------------
# Lifecycle and limits
# ---------------------------------------------------------------------------

class NotFoundError(OverseerError):
    """Unknown task, convoy or approval identifier."""

    code = "not_found"

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind.capitalize()} '{identifier}' not found")


class InvalidTransitionError(OverseerError):
    """Requested state change is not legal from the current state."""

    code = "invalid_transition"

    def __init__(
        self,
        identifier: str,
        current: str,
        target: str,
        message: Optional[str] = None,
    ):
        self.identifier = identifier
        self.current = current
        self.target = target
        super().__init__(message or f"Invalid transition for {identifier}: {current} -> {target}")


class PreconditionFailedError(OverseerError):
    """A dependency or completion precondition is not satisfied."""

    code = "precondition_failed"


class LimitExceededError(OverseerError):
    """A budget, iteration or concurrency ceiling would be violated."""

    code = "limit_exceeded"

    def __init__(self, limit: str, message: str):
        self.limit = limit
        super().__init__(message)


class ConflictError(OverseerError):
    """A concurrent mutation invalidated an in-flight operation."""

    code = "conflict"


class ExternalFailureError(OverseerError):
    """An external collaborator (version control) failed."""

    code = "external_failure"


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

class StorageError(OverseerError):
    """Failed to read or write persisted state."""

    code = "storage_error"


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------

class ToolError(OverseerError):
    """Tool execution failure."""

    code = "tool_error"


class ShellTimeoutError(ToolError):
    """Shell command exceeded timeout."""


class GitOperationError(ToolError, ExternalFailureError):
    """Git operation failed."""

    code = "external_failure"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class ConfigError(OverseerError):
    """Invalid or missing configuration."""

    code = "config_error"
