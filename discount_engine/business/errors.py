# ==== DISCOUNT ENGINE ERROR TAXONOMY ==== #

"""
Domain errors raised by the discount workflow.

Each error carries the HTTP status and machine-readable code used by the
API exception handlers. "No eligible rule" is an outcome value of the
apply workflow, not an error.
"""

from typing import Any, Dict, Optional


class DiscountEngineError(Exception):
    """Base class for all discount engine errors."""

    status_code: int = 500
    code: str = "DISCOUNT_ENGINE_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for API error responses."""
        payload = {
            "success": False,
            "error": self.message,
            "code": self.code,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(DiscountEngineError):
    """Missing or malformed input."""

    status_code = 400
    code = "VALIDATION_ERROR"


class NotFoundError(DiscountEngineError):
    """Invoice, explicit rule or lead is absent or not owned by the caller."""

    status_code = 404
    code = "NOT_FOUND"


class AlreadyAppliedError(DiscountEngineError):
    """The invoice already has a discount application."""

    status_code = 409
    code = "ALREADY_APPLIED"


class PersistenceError(DiscountEngineError):
    """The core transaction failed and was rolled back."""

    status_code = 500
    code = "PERSISTENCE_ERROR"


class ExternalServiceError(DiscountEngineError):
    """
    A payment provider or notification transport call failed.

    Only raised inside best-effort steps; the retry layer uses the
    retryable flag and the coordinator converts it into a status flag.
    """

    status_code = 502
    code = "EXTERNAL_SERVICE_ERROR"

    def __init__(
        self,
        message: str,
        service: str,
        retryable: bool = False,
        upstream_status: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, details)
        self.service = service
        self.retryable = retryable
        self.upstream_status = upstream_status

    @classmethod
    def from_status(cls, service: str, status: int, body: str = "") -> "ExternalServiceError":
        """Build from an upstream HTTP status: 429 and 5xx are transient."""
        return cls(
            f"{service} responded with HTTP {status}",
            service=service,
            retryable=status == 429 or status >= 500,
            upstream_status=status,
            details={"body": body[:500]} if body else None
        )
