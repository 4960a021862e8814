"""
Custom Exception Hierarchy

Provides structured exceptions for consistent error handling across the application.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    ALREADY_EXISTS = "ERR_1003"

    # Session errors (2xxx)
    SESSION_NOT_FOUND = "ERR_2001"
    SESSION_ALREADY_EXISTS = "ERR_2002"
    TENANT_NOT_FOUND = "ERR_2004"
    TENANT_CONFIG_INVALID = "ERR_2005"
    TENANT_INACTIVE = "ERR_2006"

    # Order errors (3xxx)
    ORDER_NOT_FOUND = "ERR_3001"
    ORDER_NOT_OPEN = "ERR_3002"

    # Completion backend errors (4xxx)
    COMPLETION_QUOTA_EXCEEDED = "ERR_4001"
    COMPLETION_AUTH_ERROR = "ERR_4002"
    COMPLETION_UNAVAILABLE = "ERR_4003"

    # External service errors (5xxx)
    WHATSAPP_ERROR = "ERR_5002"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"

    # Storage errors (6xxx)
    FILE_STORAGE_ERROR = "ERR_6001"
    FILE_TOO_LARGE = "ERR_6002"

    # State machine errors (7xxx)
    INVALID_STATE_TRANSITION = "ERR_7001"


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


class ValidationException(AppException):
    """Raised when input validation fails"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.VALIDATION_ERROR,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


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


# ---------------------------------------------------------------------------
# Sessions, tenants and orders
# ---------------------------------------------------------------------------


class SessionNotFoundError(NotFoundException):
    """Raised when no live session (or leftover auth material) exists for an id"""

    def __init__(self, session_id: str):
        super().__init__("Session", session_id, error_code=ErrorCode.SESSION_NOT_FOUND)


class SessionAlreadyExistsError(AppException):
    """Raised when a session id is already registered"""

    def __init__(self, session_id: str):
        super().__init__(
            message=f"Session already exists: {session_id}",
            error_code=ErrorCode.SESSION_ALREADY_EXISTS,
            status_code=409,
            details={"session_id": session_id}
        )


class TenantNotFoundError(NotFoundException):
    """Raised when a tenant row is missing"""

    def __init__(self, tenant_id: str):
        super().__init__("Tenant", tenant_id, error_code=ErrorCode.TENANT_NOT_FOUND)


class TenantConfigurationError(AppException):
    """Raised synchronously when a tenant's configuration cannot drive a session"""

    def __init__(self, message: str, field: str | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.TENANT_CONFIG_INVALID,
            status_code=400,
            details={"field": field} if field else None
        )


class TenantInactiveError(AppException):
    """Raised when a deactivated tenant tries to start a session"""

    def __init__(self, tenant_id: str):
        super().__init__(
            message=f"Tenant is not active: {tenant_id}",
            error_code=ErrorCode.TENANT_INACTIVE,
            status_code=403,
            details={"tenant_id": tenant_id}
        )


class OrderNotOpenError(AppException):
    """Raised when a flow step targets an order that is already completed or cancelled"""

    def __init__(self, order_id: int):
        super().__init__(
            message=f"Order is no longer open: {order_id}",
            error_code=ErrorCode.ORDER_NOT_OPEN,
            status_code=409,
            details={"order_id": order_id}
        )


# ---------------------------------------------------------------------------
# External services
# ---------------------------------------------------------------------------


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


class WhatsAppError(ExternalServiceException):
    """Raised when the WhatsApp gateway fails"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="whatsapp",
            message=f"WhatsApp gateway error: {message}",
            error_code=ErrorCode.WHATSAPP_ERROR,
            details=details
        )

    @classmethod
    def from_response(
        cls,
        operation: str,
        response: Any,
        *,
        message: str | None = None,
        max_response_chars: int = 500
    ) -> "WhatsAppError":
        """
        יצירת WhatsAppError מתוך HTTP response בצורה עקבית.

        Args:
            operation: שם הפעולה (לדוגמה: send-message, start-session)
            response: אובייקט response (למשל httpx.Response)
            message: הודעת שגיאה מותאמת (אם לא סופק - נבנית אוטומטית)
            max_response_chars: אורך מקסימלי לשמירת response_text
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


class CircuitBreakerOpenError(ExternalServiceException):
    """Raised when circuit breaker is open"""

    def __init__(self, service_name: str, retry_after_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} is temporarily unavailable (circuit breaker open)",
            error_code=ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
            details={"retry_after_seconds": retry_after_seconds}
        )


# ---------------------------------------------------------------------------
# Completion backend — שלושה סוגי כשל, לכל אחד הודעת התנצלות משלו
# ---------------------------------------------------------------------------

QUOTA_EXCEEDED_REPLY = (
    "Sorry, the AI service quota has been exceeded. Please contact the administrator."
)
CONFIGURATION_ERROR_REPLY = (
    "Sorry, there is a configuration issue. Please contact the administrator."
)
TRANSIENT_ERROR_REPLY = (
    "Sorry, I am having trouble processing your request right now. Please try again later."
)


class CompletionError(ExternalServiceException):
    """Base class for completion backend failures.

    ``user_message`` is what the customer sees instead of a raw error.
    """

    user_message: str = TRANSIENT_ERROR_REPLY

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.COMPLETION_UNAVAILABLE,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            service_name="completion",
            message=message,
            error_code=error_code,
            details=details
        )


class CompletionQuotaExceededError(CompletionError):
    """The backend account ran out of quota"""

    user_message = QUOTA_EXCEEDED_REPLY

    def __init__(self, message: str = "completion quota exceeded", details: dict[str, Any] | None = None):
        super().__init__(message, ErrorCode.COMPLETION_QUOTA_EXCEEDED, details)


class CompletionAuthError(CompletionError):
    """Invalid API key, missing permission or bad model configuration"""

    user_message = CONFIGURATION_ERROR_REPLY

    def __init__(self, message: str = "completion credentials rejected", details: dict[str, Any] | None = None):
        super().__init__(message, ErrorCode.COMPLETION_AUTH_ERROR, details)


class CompletionUnavailableError(CompletionError):
    """Timeouts, 5xx, throttling and anything else worth retrying later"""

    user_message = TRANSIENT_ERROR_REPLY

    def __init__(self, message: str = "completion backend unavailable", details: dict[str, Any] | None = None):
        super().__init__(message, ErrorCode.COMPLETION_UNAVAILABLE, details)


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


class FileStorageError(AppException):
    """Raised when a media file cannot be written, read or removed"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.FILE_STORAGE_ERROR,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=413 if error_code == ErrorCode.FILE_TOO_LARGE else 500,
            details=details
        )


# ---------------------------------------------------------------------------
# State machines
# ---------------------------------------------------------------------------


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

    def __init__(self, current_state: str, target_state: str, key: str | None = None):
        super().__init__(
            message=f"Invalid transition from '{current_state}' to '{target_state}'",
            error_code=ErrorCode.INVALID_STATE_TRANSITION,
            details={
                "current_state": current_state,
                "target_state": target_state,
                "key": key
            }
        )

