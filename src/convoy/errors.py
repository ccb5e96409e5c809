"""Error hierarchy raised by the large-request pipeline.

Every error carries a machine-readable ``error_code`` and can be serialized
with :meth:`ConvoyError.to_dict`. The orchestrator tags errors with the step
that failed, the strategy in effect, and the input token estimate before
re-raising them, so callers can report partial progress without inspecting
the audit log themselves.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, ClassVar, Mapping, Sequence

if TYPE_CHECKING:
    from .orchestrator import ProcessingStep

__all__ = [
    "ErrorCode",
    "ConvoyError",
    "EmptyContentError",
    "UploadFailedError",
    "PollTimeoutError",
    "UnknownStrategyError",
    "BackendTransportError",
    "RequestFailedError",
]


class ErrorCode:
    """Constants for error codes surfaced to callers."""

    EMPTY_CONTENT = "empty_content"
    UPLOAD_FAILED = "upload_failed"
    POLL_TIMEOUT = "poll_timeout"
    UNKNOWN_STRATEGY = "unknown_strategy"
    BACKEND_TRANSPORT = "backend_transport"
    REQUEST_FAILED = "request_failed"


class ConvoyError(Exception):
    """Base class for every error raised by the package."""

    error_code: ClassVar[str] = ErrorCode.REQUEST_FAILED

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = dict(details or {})
        self.step: str | None = None
        self.strategy: str | None = None
        self.input_tokens: int | None = None
        self.steps: tuple["ProcessingStep", ...] = ()

    def tag(
        self,
        *,
        step: str | None = None,
        strategy: str | None = None,
        input_tokens: int | None = None,
        steps: Sequence["ProcessingStep"] | None = None,
    ) -> "ConvoyError":
        """Attach request context, keeping values that were already set."""

        if self.step is None and step is not None:
            self.step = step
        if self.strategy is None and strategy is not None:
            self.strategy = strategy
        if self.input_tokens is None and input_tokens is not None:
            self.input_tokens = input_tokens
        if steps is not None:
            self.steps = tuple(steps)
        return self

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a dictionary for API responses and logs."""

        result: dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.step is not None:
            result["step"] = self.step
        if self.strategy is not None:
            result["strategy"] = self.strategy
        if self.input_tokens is not None:
            result["input_tokens"] = self.input_tokens
        if self.details:
            result["details"] = dict(self.details)
        if self.steps:
            result["processing_steps"] = [step.to_dict() for step in self.steps]
        return result

    def __str__(self) -> str:
        context = []
        if self.step is not None:
            context.append(f"step={self.step}")
        if self.strategy is not None:
            context.append(f"strategy={self.strategy}")
        if self.input_tokens is not None:
            context.append(f"input_tokens={self.input_tokens}")
        suffix = f" ({', '.join(context)})" if context else ""
        return f"[{self.error_code}] {self.message}{suffix}"


class EmptyContentError(ConvoyError, ValueError):
    """Raised when blank content is handed to the upload service."""

    error_code = ErrorCode.EMPTY_CONTENT

    def __init__(self, message: str = "Content cannot be empty for file upload") -> None:
        super().__init__(message)


class BackendTransportError(ConvoyError):
    """Raised for any failed network call to the conversational backend."""

    error_code = ErrorCode.BACKEND_TRANSPORT

    def __init__(
        self,
        operation: str,
        message: str,
        *,
        status_code: int | None = None,
    ) -> None:
        details: dict[str, Any] = {"operation": operation}
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(f"{operation} failed: {message}", details=details)
        self.operation = operation
        self.status_code = status_code


class UploadFailedError(ConvoyError):
    """Raised when every upload attempt failed."""

    error_code = ErrorCode.UPLOAD_FAILED

    def __init__(self, attempts: int, last_error: BaseException | None) -> None:
        reason = str(last_error) if last_error is not None else "unknown error"
        super().__init__(
            f"Upload failed after {attempts} attempts: {reason}",
            details={"attempts": attempts},
        )
        self.attempts = attempts
        self.last_error = last_error


class PollTimeoutError(ConvoyError):
    """Raised when the answer is not finished within the attempt budget."""

    error_code = ErrorCode.POLL_TIMEOUT

    def __init__(
        self,
        attempts: int,
        *,
        conversation_id: str,
        request_id: str | None = None,
        last_error: BaseException | None = None,
    ) -> None:
        details: dict[str, Any] = {"attempts": attempts, "conversation_id": conversation_id}
        if request_id is not None:
            details["request_id"] = request_id
        if last_error is not None:
            details["last_error"] = str(last_error)
        super().__init__(f"Timeout waiting for answer after {attempts} attempts", details=details)
        self.attempts = attempts
        self.conversation_id = conversation_id
        self.request_id = request_id
        self.last_error = last_error


class UnknownStrategyError(ConvoyError, ValueError):
    """Raised when an explicit strategy override is not a known strategy."""

    error_code = ErrorCode.UNKNOWN_STRATEGY

    def __init__(self, value: object) -> None:
        super().__init__(f"Unknown strategy: {value!r}", details={"value": str(value)})
        self.value = value


class RequestFailedError(ConvoyError):
    """Wraps unexpected failures that are not themselves pipeline errors."""

    error_code = ErrorCode.REQUEST_FAILED
