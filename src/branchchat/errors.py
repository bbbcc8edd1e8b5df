"""Standardized error types for the reply streaming pipeline.

Errors share a small dataclass-based hierarchy so callers can serialize them
for events and logs without knowing the concrete subclass.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar


class ErrorCode:
    """Constants for machine-readable error codes."""

    CONFIGURATION = "configuration_error"
    TRANSIENT_BACKEND = "transient_backend_error"
    CANCELLED = "generation_cancelled"
    TOKEN_ESTIMATION = "token_estimation_failed"
    MESSAGE_NOT_FOUND = "message_not_found"
    ROLE_VALIDATION = "role_validation_failed"
    LIFECYCLE_STATE = "invalid_lifecycle_transition"
    INTERNAL_ERROR = "internal_error"


@dataclass(eq=False)
class BranchChatError(Exception):
    """Base exception class for every error raised by this package.

    Attributes:
        code: Machine-readable error identifier.
        message: Human-readable error description.
        details: Additional structured error information.
    """

    code: str = ErrorCode.INTERNAL_ERROR
    message: str = "Unexpected error"
    details: dict[str, Any] = field(default_factory=dict)

    retryable: ClassVar[bool] = False

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize the error for event payloads."""
        result: dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            result["details"] = dict(self.details)
        return result

    def __str__(self) -> str:
        return self.message


@dataclass(eq=False)
class ConfigurationError(BranchChatError):
    """The AI backend is unusable as configured (missing key, missing model)."""

    code: str = field(default=ErrorCode.CONFIGURATION)
    message: str = field(default="AI model integration is not configured")


@dataclass(eq=False)
class TransientBackendError(BranchChatError):
    """Network, timeout or rate-limit failure reported by the backend."""

    code: str = field(default=ErrorCode.TRANSIENT_BACKEND)
    message: str = field(default="The AI backend is temporarily unavailable")
    status_code: int | None = None

    retryable: ClassVar[bool] = True

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.status_code is not None:
            result["status_code"] = self.status_code
        return result


@dataclass(eq=False)
class GenerationCancelled(BranchChatError):
    """Signal reporting that a generation settled through cancellation."""

    code: str = field(default=ErrorCode.CANCELLED)
    message: str = field(default="User cancelled")


@dataclass(eq=False)
class TokenEstimationFailure(BranchChatError):
    """Raised by tokenizers; always recovered by the context builder."""

    code: str = field(default=ErrorCode.TOKEN_ESTIMATION)
    message: str = field(default="Token estimation is unavailable")


@dataclass(eq=False)
class MessageNotFoundError(BranchChatError):
    """A referenced message id does not exist in the store."""

    code: str = field(default=ErrorCode.MESSAGE_NOT_FOUND)
    message: str = field(default="Message not found")
    message_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.message_id:
            result["message_id"] = self.message_id
        return result


@dataclass(eq=False)
class RoleValidationError(BranchChatError):
    """An operation was requested on a message with the wrong role."""

    code: str = field(default=ErrorCode.ROLE_VALIDATION)
    message: str = field(default="Can only regenerate assistant messages")
    expected_role: str = "assistant"
    actual_role: str | None = None


@dataclass(eq=False)
class LifecycleStateError(BranchChatError):
    """A streaming lifecycle was driven through an illegal transition."""

    code: str = field(default=ErrorCode.LIFECYCLE_STATE)
    message: str = field(default="Invalid lifecycle transition")


def describe_error(error: BaseException | None) -> str:
    """Return a user-facing description for ``error``."""

    if error is None:
        return "Unknown error"
    text = str(error).strip()
    if text:
        return text
    return "Failed to generate AI response. Please check your API configuration."


__all__ = [
    "BranchChatError",
    "ConfigurationError",
    "ErrorCode",
    "GenerationCancelled",
    "LifecycleStateError",
    "MessageNotFoundError",
    "RoleValidationError",
    "TokenEstimationFailure",
    "TransientBackendError",
    "describe_error",
]
