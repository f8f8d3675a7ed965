# backend/poi_discovery/core/exceptions.py
"""
Domain-specific exceptions for the POI discovery service.

These exceptions carry a stable code and structured details so the API
layer can translate them into HTTP responses without inspecting messages.
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status


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


class ValidationError(ValidationException):
    """
    Rejected request input: bad coordinates, out-of-range weight, empty
    name or query. Always raised before any I/O happens.
    """

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        value: Any = None,
    ) -> None:
        details: Dict[str, Any] = {}
        if field is not None:
            details["field"] = field
            details["value"] = value
        super().__init__(message, code="VALIDATION_ERROR", details=details)


class UpstreamUnavailable(DomainException):
    """The spatial store, embedding or completion service could not be reached."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    def __init__(self, component: str, message: Optional[str] = None) -> None:
        self.component = component
        super().__init__(
            message or f"{component} is unavailable",
            code="UPSTREAM_UNAVAILABLE",
            details={"component": component},
        )


class ParseError(DomainException):
    """The generative fallback returned a payload that is not usable POI data."""

    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(self, message: str, *, raw_excerpt: Optional[str] = None) -> None:
        details: Dict[str, Any] = {}
        if raw_excerpt:
            details["raw_excerpt"] = raw_excerpt[:200]
        super().__init__(message, code="PARSE_ERROR", details=details)


class PersistenceWarning(DomainException):
    """
    Write-back of generated data failed after the caller already got a result.

    Never raised to callers. The background queue builds one of these for
    its error channel and logs it.
    """

    def __init__(self, operation: str, cause: BaseException) -> None:
        self.operation = operation
        self.cause = cause
        super().__init__(
            f"{operation} failed: {cause}",
            code="PERSISTENCE_WARNING",
            details={"operation": operation, "error_type": type(cause).__name__},
        )


class RepositoryException(Exception):
    """
    Exception raised for repository layer errors.

    Used when data access operations fail, such as database connection
    issues or query failures.
    """

    pass
