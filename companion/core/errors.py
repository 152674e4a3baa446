"""
Exception hierarchy for the turn pipeline.

Each error carries a `kind` matching how the pipeline treats it:
  input            malformed request, rejected before any side effect
  policy           blocked by the safety guard, no generation attempted
  dependency_soft  optional collaborator failed, the turn degrades and continues
  dependency_hard  history / persistence failed, the turn aborts
  generation       backend failed mid-stream, the stream aborts
"""

from typing import Any, Dict, Optional


class CompanionError(Exception):
    """Base exception for all pipeline errors."""

    kind: str = "internal"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for serialization."""
        return {
            "error_type": self.__class__.__name__,
            "kind": self.kind,
            "message": self.message,
            "error_code": self.error_code,
            "details": self.details,
        }


class InputError(CompanionError):
    kind = "input"


class ConversationBusy(InputError):
    """Another turn held the conversation lock for longer than the wait budget."""


class PolicyViolation(CompanionError):
    kind = "policy"


class DependencyUnavailable(CompanionError):
    """A soft dependency failed. Absorbed at the component boundary."""

    kind = "dependency_soft"


class HistoryUnavailable(CompanionError):
    kind = "dependency_hard"


class PersistenceError(CompanionError):
    kind = "dependency_hard"


class GenerationError(CompanionError):
    kind = "generation"
