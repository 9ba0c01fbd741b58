"""
Failure taxonomy for the release pipeline.

Each error carries a ``reason`` and a ``hint``, the same pair recorded in
``ERROR`` events so the CLI and the event log describe failures identically.
"""

from typing import Any, Dict, List, Optional


class TagshipError(Exception):
    """Base class for release pipeline failures."""

    category = "internal"

    def __init__(self, reason: str, hint: Optional[str] = None, last_lines: Optional[List[str]] = None):
        super().__init__(reason)
        self.reason = reason
        self.hint = hint
        self.last_lines = last_lines or []

    def to_event(self) -> Dict[str, Any]:
        data = {
            "category": self.category,
            "reason": self.reason,
            "hint": self.hint,
        }
        if self.last_lines:
            data["last_lines"] = self.last_lines
        return data


class BuildError(TagshipError):
    """The image artifact was not produced or not published."""

    category = "build"


class ConvergenceError(TagshipError):
    """Terraform could not realise the declared state."""

    category = "convergence"


class VerificationError(TagshipError):
    """The health endpoint never conformed within the retry budget."""

    category = "verification"


class RollbackError(TagshipError):
    """A manually requested rollback could not be issued."""

    category = "rollback"
