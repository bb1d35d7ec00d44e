"""
Custom exception classes for the Collections Workflow Engine.
"""
from typing import Optional, Any, Dict
import uuid
from fastapi import HTTPException, status


class BaseAPIException(HTTPException):
    """Base exception for API errors."""

    def __init__(
        self,
        status_code: int,
        detail: str,
        error_code: Optional[str] = None,
        headers: Optional[dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.error_code = error_code
        self.correlation_id = correlation_id or str(uuid.uuid4())
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API response."""
        return {
            "success": False,
            "error": self.detail,
            "error_code": self.error_code,
            "correlation_id": self.correlation_id,
            "context": self.context,
        }


class NotFoundError(BaseAPIException):
    """Exception for missing resources."""

    def __init__(self, resource: str, resource_id: str):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{resource} '{resource_id}' not found",
            error_code="CWE_404",
            context={"resource": resource, "resource_id": resource_id},
        )


class ConflictError(BaseAPIException):
    """Exception for requests that conflict with current resource state."""

    def __init__(self, detail: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=detail,
            error_code="CWE_409",
            context=context,
        )


class BusinessRuleError(BaseAPIException):
    """Exception for requests that are well-formed but break a business rule."""

    def __init__(self, detail: str, entity_id: Optional[str] = None, **context):
        super().__init__(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=detail,
            error_code="CWE_422",
            context={"entity_id": entity_id, **context},
        )


class AuthenticationError(BaseAPIException):
    """Exception for rejected webhook signatures."""

    def __init__(self, detail: str = "Invalid signature"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            error_code="CWE_401",
        )


# Workflow lifecycle exceptions (non-API)
class WorkflowException(Exception):
    """Exception for workflow errors outside API context."""

    def __init__(self, detail: str, workflow_id: Optional[str] = None):
        self.detail = detail
        self.workflow_id = workflow_id
        message = detail
        if workflow_id:
            message = f"Workflow '{workflow_id}' error: {detail}"
        super().__init__(message)


class AlreadyEnrolledError(WorkflowException):
    """Raised when a debtor already has an active enrollment."""

    def __init__(self, debtor_id: str, enrollment_id: Optional[str] = None):
        self.debtor_id = debtor_id
        self.enrollment_id = enrollment_id
        super().__init__("Debtor already has an active workflow")


class WorkflowNotFoundError(WorkflowException):
    """Raised when a workflow does not exist or is inactive."""

    def __init__(self, workflow_id: str):
        super().__init__("Workflow not found or inactive", workflow_id=workflow_id)


class WorkflowHasNoStepsError(WorkflowException):
    """Raised when enrolling into a workflow without a first step."""

    def __init__(self, workflow_id: str):
        super().__init__("Workflow has no steps", workflow_id=workflow_id)


class DebtorNotFoundError(WorkflowException):
    """Raised when the debtor to enroll does not exist."""

    def __init__(self, debtor_id: str):
        self.debtor_id = debtor_id
        super().__init__(f"Debtor '{debtor_id}' not found")


class EnrollmentNotFoundError(WorkflowException):
    """Raised when an enrollment does not exist."""

    def __init__(self, enrollment_id: str):
        self.enrollment_id = enrollment_id
        super().__init__(f"Enrollment '{enrollment_id}' not found")


class RetryNotAllowedError(WorkflowException):
    """Raised when a manual retry is requested for an enrollment that cannot be retried."""

    def __init__(self, enrollment_id: str, reason: str):
        self.enrollment_id = enrollment_id
        self.reason = reason
        super().__init__(f"Cannot retry enrollment '{enrollment_id}': {reason}")


class ChannelValidationError(Exception):
    """Raised when a debtor or template lacks what a channel needs."""

    def __init__(self, channel: str, detail: str):
        self.channel = channel
        self.detail = detail
        super().__init__(detail)


# External Service Exceptions
class ExternalServiceError(Exception):
    """Exception for external service call errors."""

    def __init__(
        self,
        service_name: str,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[int] = None,
        **context
    ):
        self.service_name = service_name
        self.status_code = status_code
        self.retry_after = retry_after
        self.context = context
        super().__init__(f"[{service_name}] {message}")


class ExternalServiceTimeoutError(ExternalServiceError):
    """Exception for external service timeout errors."""

    def __init__(self, service_name: str, timeout_seconds: float, **context):
        super().__init__(
            service_name=service_name,
            message=f"Service timed out after {timeout_seconds} seconds",
            **context
        )
        self.timeout_seconds = timeout_seconds


class CircuitBreakerOpenError(ExternalServiceError):
    """Exception for calls rejected by an open circuit breaker."""

    def __init__(self, service_name: str, detail: Optional[str] = None):
        super().__init__(
            service_name=service_name,
            message=detail or "Circuit breaker is OPEN",
        )


# Database Exceptions
class DatabaseError(Exception):
    """Exception for database-related errors."""

    def __init__(self, detail: str, operation: Optional[str] = None, **context):
        self.operation = operation
        if operation:
            context["operation"] = operation
        self.context = context
        super().__init__(detail)
