# backend/studioops/core/exceptions.py
"""
Domain-specific exceptions for the studio scheduling engine.

These exceptions carry business-focused messages and a stable ``code`` so the
API layer can convert them into HTTP responses without inspecting messages.
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status

HTTP_422_UNPROCESSABLE: int = getattr(status, "HTTP_422_UNPROCESSABLE_CONTENT", 422)


class DomainException(Exception):
    """Base exception for all domain-specific errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail={
                "message": self.message,
                "code": self.code,
                "details": self.details,
            },
        )


class ValidationException(DomainException):
    """Raised when business validation fails."""

    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundException(DomainException):
    """Raised when a requested resource is not found."""

    status_code = status.HTTP_404_NOT_FOUND


class ConflictException(DomainException):
    """Raised when there's a conflict with existing data."""

    status_code = status.HTTP_409_CONFLICT


class BusinessRuleException(DomainException):
    """Raised when a business rule is violated."""

    status_code = HTTP_422_UNPROCESSABLE


class ServiceException(DomainException):
    """Raised when a service operation fails."""

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "message": self.message or "An error occurred processing your request",
                "code": self.code,
                "details": self.details if self.details else {},
            },
        )


# Specific scheduling exceptions


class SchedulingConflictException(ConflictException):
    """
    Raised when a proposed window collides with a booking, approved time-off
    or the studio's operating hours.
    """

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        reason: Optional[str] = None,
        conflicting_session_id: Optional[str] = None,
        time_off_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        payload: Dict[str, Any] = {
            "resource_type": resource_type,
            "resource_id": resource_id,
            "reason": reason,
        }
        if conflicting_session_id:
            payload["conflicting_session_id"] = conflicting_session_id
        if time_off_id:
            payload["time_off_id"] = time_off_id
        payload.update(details or {})
        super().__init__(
            message=message or "This time slot conflicts with an existing session",
            code="SCHEDULING_CONFLICT",
            details=payload,
        )
        self.resource_type = resource_type
        self.resource_id = resource_id
        self.reason = reason
        self.conflicting_session_id = conflicting_session_id
        self.time_off_id = time_off_id


class TimeChangeNotAllowedException(DomainException):
    """
    Raised when an update would move a session without an explicit override.

    Kept apart from SchedulingConflictException: the caller needs to confirm
    the move, not pick a different time.
    """

    status_code = status.HTTP_409_CONFLICT

    def __init__(self, session_id: str):
        super().__init__(
            message="Changing the session time requires allow_time_change_override",
            code="TIME_CHANGE_NOT_ALLOWED",
            details={"session_id": session_id},
        )


class InsufficientCreditException(BusinessRuleException):
    """Raised when a client package has no sessions left to reserve."""

    def __init__(self, client_package_id: Optional[str], message: Optional[str] = None):
        super().__init__(
            message=message or "No sessions remaining in client package",
            code="INSUFFICIENT_CREDIT",
            details={"client_package_id": client_package_id},
        )


class CapacityException(BusinessRuleException):
    """Raised when a group session is full."""

    def __init__(self, session_id: str, capacity: int):
        super().__init__(
            message=f"Session is at full capacity ({capacity})",
            code="SESSION_FULL",
            details={"session_id": session_id, "capacity": capacity},
        )


class DuplicateParticipantException(ConflictException):
    """Raised when a client is already enrolled in a group session."""

    def __init__(self, session_id: str, client_id: str):
        super().__init__(
            message="Client is already a participant in this session",
            code="DUPLICATE_PARTICIPANT",
            details={"session_id": session_id, "client_id": client_id},
        )


class InvalidAdjustmentException(ValidationException):
    """Raised when a manual credit adjustment would break the package balance."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, code="INVALID_ADJUSTMENT", details=details)


class RepositoryException(Exception):
    """
    Exception raised for repository layer errors.

    Used when data access operations fail, such as database connection
    issues, query failures, or constraint violations.
    """
