"""Custom exceptions for the application."""

from typing import Any, Dict, Optional

from fastapi import status
from fastapi.responses import JSONResponse

from dispatch_core.exceptions import BrokerError, BrokerUnavailable, PayloadNotSerializable


class ServiceError(Exception):
    """Base exception for service layer errors."""

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        result = {"message": self.message}
        if self.code:
            result["code"] = self.code
        if self.details:
            result["details"] = self.details
        return result


class ValidationError(ServiceError):
    """Raised when request data validation fails."""
    def __init__(self, message: str, field: Optional[str] = None, details: Optional[Any] = None):
        super().__init__(message, code="VALIDATION_ERROR", details=details)
        self.field = field


class NotFoundError(ServiceError):
    """Raised when a requested resource is not found."""
    def __init__(self, resource: str, resource_id: str):
        message = f"{resource} with ID {resource_id} not found"
        super().__init__(message, code="NOT_FOUND")
        self.resource = resource
        self.resource_id = resource_id


class ProbeFailure(ServiceError):
    """Raised inside a dependency probe when the dependency answers wrongly."""
    def __init__(self, dependency: str, message: str):
        super().__init__(message, code="PROBE_FAILURE")
        self.dependency = dependency


def service_error_handler(error: ServiceError) -> JSONResponse:
    """Convert service errors to JSON error responses."""
    status_map = {
        ValidationError: status.HTTP_400_BAD_REQUEST,
        NotFoundError: status.HTTP_404_NOT_FOUND,
    }

    status_code = status_map.get(type(error), status.HTTP_500_INTERNAL_SERVER_ERROR)

    return JSONResponse(
        status_code=status_code,
        content={"detail": error.to_dict()}
    )


def broker_error_handler(error: BrokerError) -> JSONResponse:
    """Convert broker errors to JSON error responses."""
    if isinstance(error, PayloadNotSerializable):
        status_code, code = status.HTTP_400_BAD_REQUEST, "PAYLOAD_NOT_SERIALIZABLE"
    elif isinstance(error, BrokerUnavailable):
        status_code, code = status.HTTP_503_SERVICE_UNAVAILABLE, "BROKER_UNAVAILABLE"
    else:
        status_code, code = status.HTTP_500_INTERNAL_SERVER_ERROR, "BROKER_ERROR"

    return JSONResponse(
        status_code=status_code,
        content={"detail": {"message": str(error), "code": code}}
    )
