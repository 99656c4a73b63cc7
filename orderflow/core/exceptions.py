"""
Custom exceptions for the lifecycle service.

Repositories and collaborators raise these; the transition executor converts
every one of them into a typed ``ServiceResult`` failure before returning.
"""

from typing import Any, Dict, List, Optional
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for the application"""
    # General errors
    INTERNAL_ERROR = "INTERNAL_ERROR"
    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"

    # Validation errors
    VALIDATION_ERROR = "VALIDATION_ERROR"

    # Concurrency
    CONCURRENCY_CONFLICT = "CONCURRENCY_CONFLICT"

    # External service errors
    PAYMENT_GATEWAY_ERROR = "PAYMENT_GATEWAY_ERROR"

    # Configuration errors
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"


class BaseAppException(Exception):
    """
    Base exception class for all application exceptions.

    Provides consistent error handling across the application with
    structured error information.
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        details: Optional[Dict[str, Any]] = None,
        status_code: int = 500
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.status_code = status_code
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary format"""
        return {
            "error": {
                "message": self.message,
                "code": self.error_code.value,
                "details": self.details,
                "type": self.__class__.__name__
            }
        }

    def __str__(self) -> str:
        return f"{self.error_code.value}: {self.message}"

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(message='{self.message}', error_code='{self.error_code.value}')"


class ValidationError(BaseAppException):
    """Exception raised when data validation fails"""

    def __init__(
        self,
        message: str = "Validation failed",
        field_errors: Optional[Dict[str, List[str]]] = None,
    ):
        details = {"field_errors": field_errors} if field_errors else {}
        super().__init__(message, ErrorCode.VALIDATION_ERROR, details, 422)


class EntityNotFoundError(BaseAppException):
    """Exception raised when a bookable entity does not exist"""

    def __init__(self, kind: str, entity_id: str):
        super().__init__(
            f"{kind} not found (ID: {entity_id})",
            ErrorCode.RESOURCE_NOT_FOUND,
            {"kind": kind, "entity_id": entity_id},
            404,
        )


class ConcurrencyConflictError(BaseAppException):
    """Raised when a conditional write loses against a concurrent writer"""

    def __init__(
        self,
        entity_id: str,
        expected_version: Optional[int] = None,
        message: str = "Entity was modified concurrently",
    ):
        super().__init__(
            message,
            ErrorCode.CONCURRENCY_CONFLICT,
            {"entity_id": entity_id, "expected_version": expected_version},
            409,
        )
        self.entity_id = entity_id
        self.expected_version = expected_version


class PaymentGatewayError(BaseAppException):
    """Raised by gateway adapters for transport-level failures"""

    def __init__(self, message: str = "Payment gateway error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCode.PAYMENT_GATEWAY_ERROR, details, 502)


class ConfigurationError(BaseAppException):
    """Raised when wiring or lifecycle definitions are inconsistent"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCode.CONFIGURATION_ERROR, details, 500)
