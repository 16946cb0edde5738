"""
CardWatch — Error Handling & Exception Classes

Centralised exception handling with proper HTTP status codes and
safe error messages (avoids information leakage).
"""

import logging
from typing import Any, Dict, Optional

from fastapi import status
from fastapi.responses import JSONResponse

logger = logging.getLogger("cardwatch.errors")


# ===========================================================================
# Custom Exceptions (domain-specific)
# ===========================================================================
class CardWatchException(Exception):
    """Base exception for all CardWatch errors."""
    pass


class InvalidDetectionInputError(CardWatchException):
    """Detection inputs have the wrong shape; raised before any evaluation."""
    pass


class RuleConfigurationError(CardWatchException):
    """A stored or submitted misuse rule cannot be used."""
    pass


class DistanceLookupError(CardWatchException):
    """The distance provider failed to answer."""
    pass


class DatabaseError(CardWatchException):
    """Database operation errors."""
    pass


# ===========================================================================
# HTTP Error Response Factory
# ===========================================================================
class ErrorResponse:
    """Standardised error response format."""

    def __init__(
        self,
        error_code: str,
        message: str,
        status_code: int = status.HTTP_400_BAD_REQUEST,
        details: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
    ):
        self.error_code = error_code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.request_id = request_id

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "request_id": self.request_id,
            },
            **({"details": self.details} if self.details else {}),
        }

    def to_response(self) -> JSONResponse:
        return JSONResponse(status_code=self.status_code, content=self.to_dict())


# ===========================================================================
# Exception to HTTP Response Mapping
# ===========================================================================
def exception_to_response(
    exc: Exception,
    request_id: Optional[str] = None,
) -> tuple[JSONResponse, str]:
    """
    Convert an exception to an HTTP response.

    Parameters
    ----------
    exc : Exception
        The exception to handle
    request_id : str
        Request ID for tracking

    Returns
    -------
    response : JSONResponse
    log_level : str
        Logging level (error, warning, info)
    """

    # Bad detection payload, fixable by the caller
    if isinstance(exc, InvalidDetectionInputError):
        return ErrorResponse(
            error_code="INVALID_DETECTION_INPUT",
            message="Detection input is malformed",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details={"errors": str(exc)},
            request_id=request_id,
        ).to_response(), "warning"

    if isinstance(exc, RuleConfigurationError):
        return ErrorResponse(
            error_code="RULE_CONFIGURATION_ERROR",
            message="Misuse rule is not usable",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details={"errors": str(exc)},
            request_id=request_id,
        ).to_response(), "warning"

    # Distance service outage.  Only reached by code that calls a provider
    # directly; the rules engine turns lookup failures into "unknown".
    if isinstance(exc, DistanceLookupError):
        return ErrorResponse(
            error_code="DISTANCE_LOOKUP_ERROR",
            message="Distance service temporarily unavailable",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            request_id=request_id,
        ).to_response(), "warning"

    if isinstance(exc, DatabaseError):
        logger.error("DatabaseError: %s", exc)
        return ErrorResponse(
            error_code="DATABASE_ERROR",
            message="Database operation failed",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            request_id=request_id,
        ).to_response(), "error"

    # Generic error (never expose full traceback to client)
    logger.error("Unhandled exception: %s", exc, exc_info=True)
    return ErrorResponse(
        error_code="INTERNAL_ERROR",
        message="An internal error occurred. Please try again later.",
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        request_id=request_id,
    ).to_response(), "error"
