"""
Custom Exception Hierarchy

Structured exceptions shared by the engine, the closure subsystem, the
collaborators and the HTTP surface.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses and structured logs"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    NOT_FOUND = "ERR_1002"
    RATE_LIMITED = "ERR_1006"

    # Conversation / user errors (3xxx)
    USER_NOT_FOUND = "ERR_3001"

    # Tool execution errors (4xxx)
    TOOL_EXECUTION_FAILED = "ERR_4001"

    # External service errors (5xxx)
    TELEGRAM_ERROR = "ERR_5001"
    WHATSAPP_ERROR = "ERR_5002"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"
    PLANNER_ERROR = "ERR_5005"
    CATALOG_ERROR = "ERR_5006"

    # State machine errors (6xxx)
    INVALID_STATE_TRANSITION = "ERR_6001"
    INVALID_CONTEXT = "ERR_6003"

    # Closure queue errors (7xxx)
    CLOSURE_QUEUE_ERROR = "ERR_7001"


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


class UserNotFoundError(NotFoundException):
    def __init__(self, identifier: str | int):
        super().__init__(
            resource="User",
            identifier=identifier,
            error_code=ErrorCode.USER_NOT_FOUND
        )


class ToolExecutionError(AppException):
    """Raised inside a tool; the executor converts it into a failed ToolResult"""

    def __init__(
        self,
        tool_name: str,
        message: str,
        error_code: ErrorCode = ErrorCode.TOOL_EXECUTION_FAILED,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=400,
            details=details
        )
        self.details["tool"] = tool_name


class ExternalServiceException(AppException):
    """Base exception for external service errors"""

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=503,
            details=details
        )
        self.details["service"] = service_name

    @classmethod
    def from_response(
        cls,
        operation: str,
        response: Any,
        *,
        message: str | None = None,
        max_response_chars: int = 500
    ):
        """
        Build the error from an HTTP response in a uniform way.

        Args:
            operation: operation name (e.g. sendMessage, search/movie)
            response: response object (e.g. httpx.Response)
            message: custom message; derived from the status code when omitted
            max_response_chars: cap on the stored response body
        """
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""
        return cls(
            message=message or f"{operation} returned status {status_code}",
            details={
                "operation": operation,
                "status_code": status_code,
                "response_text": response_text[:max_response_chars],
            },
        )


class TelegramError(ExternalServiceException):
    """Raised when Telegram API fails"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="telegram",
            message=f"Telegram API error: {message}",
            error_code=ErrorCode.TELEGRAM_ERROR,
            details=details
        )


class WhatsAppError(ExternalServiceException):
    """Raised when WhatsApp Cloud API fails"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="whatsapp",
            message=f"WhatsApp API error: {message}",
            error_code=ErrorCode.WHATSAPP_ERROR,
            details=details
        )


class PlannerError(ExternalServiceException):
    """Raised when the language-model call fails or returns malformed output"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="anthropic",
            message=f"Planner error: {message}",
            error_code=ErrorCode.PLANNER_ERROR,
            details=details
        )


class CatalogError(ExternalServiceException):
    """Raised when a metadata catalog lookup fails"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="tmdb",
            message=f"Catalog error: {message}",
            error_code=ErrorCode.CATALOG_ERROR,
            details=details
        )


class CircuitBreakerOpenError(ExternalServiceException):
    """Raised when circuit breaker is open"""

    def __init__(self, service_name: str, retry_after_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} is temporarily unavailable (circuit breaker open)",
            error_code=ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
            details={"retry_after_seconds": retry_after_seconds}
        )


class ClosureQueueError(AppException):
    """Raised when the delayed-job queue cannot be reached"""

    def __init__(self, operation: str, job_id: str, cause: Exception | None = None):
        super().__init__(
            message=f"Closure queue {operation} failed for {job_id}",
            error_code=ErrorCode.CLOSURE_QUEUE_ERROR,
            status_code=503,
            details={"operation": operation, "job_id": job_id, "cause": str(cause) if cause else None}
        )


class StateMachineException(AppException):
    """Base exception for state machine errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=400,
            details=details
        )


class InvalidStateTransitionError(StateMachineException):
    """Raised when state transition is not allowed"""

    def __init__(self, current_state: str, target_state: str, conversation_id: int | None = None):
        super().__init__(
            message=f"Invalid transition from '{current_state}' to '{target_state}'",
            error_code=ErrorCode.INVALID_STATE_TRANSITION,
            details={
                "current_state": current_state,
                "target_state": target_state,
                "conversation_id": conversation_id
            }
        )


class InvalidContextError(StateMachineException):
    """Raised when a context variant does not belong to the target state"""

    def __init__(self, state: str, context_kind: str, conversation_id: int | None = None):
        super().__init__(
            message=f"Context '{context_kind}' is not valid for state '{state}'",
            error_code=ErrorCode.INVALID_CONTEXT,
            details={
                "state": state,
                "context_kind": context_kind,
                "conversation_id": conversation_id
            }
        )
