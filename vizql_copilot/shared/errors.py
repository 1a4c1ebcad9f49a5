"""
Error taxonomy shared by all phases.

Phases report failures as structured results; AppError is reserved for
turn-level preconditions and for carrying a code through the HTTP layer.
"""

from enum import Enum
from typing import Any, List, Optional


class ErrorCode(str, Enum):
    """Failure categories surfaced by the pipeline."""

    BUILDER_VALIDATION = "builder_validation"
    PREFLIGHT_VALIDATION = "preflight_validation"
    SOURCE_ERROR = "source_error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    MISSING_REQUIRED_FIELD = "missing_required_field"
    ANALYSIS_PLAN_VALIDATION_FAILED = "analysis_plan_validation_failed"
    PRECONDITION_FAILED = "precondition_failed"
    DEPENDENCY_FAILED = "dependency_failed"
    INTERNAL = "internal"


class AppError(Exception):
    """Raised for turn-level failures that carry a user-facing explanation."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        required: Optional[List[str]] = None,
        next_action: Optional[str] = None,
        details: Any = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.required = list(required or [])
        self.next_action = next_action
        self.details = details


def precondition_failed(message: str, required=None, next_action: Optional[str] = None) -> AppError:
    return AppError(ErrorCode.PRECONDITION_FAILED, message, required=required, next_action=next_action)


def format_for_user(err: BaseException) -> str:
    """
    Render an error in the compact three-line format shown to users.

    Args:
        err: Any exception; AppError fields are used when present

    Returns:
        Multi-line string with cause, required input and next action
    """
    cause = getattr(err, "message", None) or str(err) or err.__class__.__name__
    required = getattr(err, "required", None) or []
    next_action = getattr(err, "next_action", None) or (
        "Provide missing inputs or fix the cause, then retry."
    )
    return (
        f"Cause: {cause}\n"
        f"Required Input: {', '.join(required) if required else '-'}\n"
        f"Next Action: {next_action}"
    )
