"""
Base service class providing common functionality for all services.
"""

from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from orderflow.core.exceptions import (
    BaseAppException,
    ConcurrencyConflictError,
    EntityNotFoundError,
    ValidationError,
)
from orderflow.core.logging import get_logger
from orderflow.services.base.service_result import (
    ServiceResult,
    ServiceError,
    ErrorCode,
    ErrorSeverity,
)


class BaseService:
    """
    Base service with common behaviors:
    - Shared logger
    - Consistent error handling via ServiceResult
    """

    def __init__(self):
        self._logger = get_logger(self.__class__.__name__)

    # -------------------------------------------------------------------------
    # Exception & Error Handling
    # -------------------------------------------------------------------------

    def _handle_exception(
        self,
        exception: Exception,
        operation: str,
        entity_ref: Optional[Any] = None,
        severity: ErrorSeverity = ErrorSeverity.CRITICAL,
        additional_context: Optional[Dict[str, Any]] = None,
    ) -> ServiceResult:
        """
        Convert exception to a ServiceResult failure with logging.

        Application exceptions keep their category. Anything else is logged
        with its traceback and surfaced as a generic internal error; the
        exception text never reaches the caller.

        Args:
            exception: The caught exception
            operation: Description of the operation that failed
            entity_ref: Reference to the entity involved
            severity: Error severity level for unexpected errors
            additional_context: Extra context for logging

        Returns:
            ServiceResult with failure status
        """
        context = {
            "operation": operation,
            "entity_ref": str(entity_ref) if entity_ref is not None else None,
            "exception_type": type(exception).__name__,
        }
        if additional_context:
            context.update(additional_context)

        error_code = self._map_exception_to_error_code(exception)

        if error_code is ErrorCode.INTERNAL_ERROR:
            self._logger.error(
                f"Error during {operation}",
                exc_info=True,
                extra=context,
            )
            return ServiceResult.internal_error(
                operation,
                severity=severity,
                details={"entity_ref": context["entity_ref"]},
            )

        self._logger.warning(f"{operation} rejected: {exception}", extra=context)
        details = dict(exception.details) if isinstance(exception, BaseAppException) else {}
        message = exception.message if isinstance(exception, BaseAppException) else str(exception)
        return ServiceResult.failure(
            ServiceError(
                code=error_code,
                message=message,
                severity=ErrorSeverity.WARNING,
                details=details,
            )
        )

    def _map_exception_to_error_code(self, exception: Exception) -> ErrorCode:
        """
        Map exception types to appropriate error codes.
        """
        exception_mapping = {
            ValidationError: ErrorCode.VALIDATION_ERROR,
            EntityNotFoundError: ErrorCode.NOT_FOUND,
            ConcurrencyConflictError: ErrorCode.CONFLICT,
            SQLAlchemyError: ErrorCode.INTERNAL_ERROR,
        }

        for exc_type, error_code in exception_mapping.items():
            if isinstance(exception, exc_type):
                return error_code

        return ErrorCode.INTERNAL_ERROR
