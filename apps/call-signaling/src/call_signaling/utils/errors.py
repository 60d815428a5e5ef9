"""Custom exception classes for the Call Signaling service."""

from typing import Any, Dict, Optional


class SignalingException(Exception):
    """Base exception for all call-signaling errors."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON response."""
        return {
            "error": {
                "message": self.message,
                "code": self.code,
                "status_code": self.status_code,
                "details": self.details,
            }
        }


class StoreUnavailableError(SignalingException):
    """Raised when the call record store cannot be reached."""

    def __init__(
        self,
        message: str = "Call record store unavailable",
        operation: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        error_details = details or {}
        if operation:
            error_details["operation"] = operation
        super().__init__(
            message=message,
            status_code=503,
            code="STORE_UNAVAILABLE",
            details=error_details,
        )


class InvalidTransitionError(SignalingException):
    """Raised when an operation would break the call state machine.

    This is the losing side of a race (e.g. accepting a call the caller already
    cancelled), so callers treat it as an expected outcome rather than a failure.
    """

    def __init__(
        self,
        call_id: str,
        current: str,
        attempted: str,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.call_id = call_id
        self.current = current
        self.attempted = attempted
        error_details = details or {}
        error_details.update(
            {"call_id": call_id, "current_status": current, "attempted_status": attempted}
        )
        super().__init__(
            message=message or f"Cannot move call {call_id} from '{current}' to '{attempted}'",
            status_code=409,
            code="INVALID_TRANSITION",
            details=error_details,
        )


class NoCandidatesAvailableError(SignalingException):
    """Raised when ranking produced an empty candidate list."""

    def __init__(
        self,
        message: str = "No candidates available",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message,
            status_code=404,
            code="NO_CANDIDATES_AVAILABLE",
            details=details,
        )


class SubscriptionLostError(SignalingException):
    """Raised when a live subscription dropped and reconnecting failed."""

    def __init__(
        self,
        channel: str,
        attempts: int,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        error_details = details or {}
        error_details.update({"channel": channel, "attempts": attempts})
        super().__init__(
            message=message or f"Subscription to '{channel}' lost after {attempts} attempts",
            status_code=503,
            code="SUBSCRIPTION_LOST",
            details=error_details,
        )


class CallNotFoundError(SignalingException):
    """Raised when a call record does not exist."""

    def __init__(
        self,
        call_id: str,
        details: Optional[Dict[str, Any]] = None,
    ):
        error_details = details or {}
        error_details["call_id"] = call_id
        super().__init__(
            message=f"Call not found with id: {call_id}",
            status_code=404,
            code="NOT_FOUND",
            details=error_details,
        )


class PermissionDeniedError(SignalingException):
    """Raised when a participant writes a field or status it does not own."""

    def __init__(
        self,
        message: str = "Operation not permitted for this participant",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message,
            status_code=403,
            code="PERMISSION_DENIED",
            details=details,
        )


class ValidationError(SignalingException):
    """Exception raised for validation errors."""

    def __init__(
        self,
        message: str = "Validation failed",
        errors: Optional[Dict[str, Any]] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        error_details = details or {}
        if errors:
            error_details["validation_errors"] = errors
        super().__init__(
            message=message,
            status_code=422,
            code="VALIDATION_ERROR",
            details=error_details,
        )


class ExternalServiceError(SignalingException):
    """Exception raised when external service calls fail."""

    def __init__(
        self,
        service: str,
        message: Optional[str] = None,
        status_code: int = 502,
        details: Optional[Dict[str, Any]] = None,
    ):
        error_message = message or f"External service '{service}' unavailable"
        error_details = details or {}
        error_details["service"] = service
        super().__init__(
            message=error_message,
            status_code=status_code,
            code="EXTERNAL_SERVICE_ERROR",
            details=error_details,
        )
