"""
Shared error handling for the IMEI Access service family.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel
from opentelemetry import trace


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class AccessLayerException(Exception):
    """Base exception for access layer services."""

    status_code = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        trace_id = None
        current_span = trace.get_current_span()
        if current_span and current_span.is_recording():
            span_context = current_span.get_span_context()
            if span_context.trace_id != 0:
                trace_id = f"{span_context.trace_id:032x}"

        return ErrorResponse(
            trace_id=trace_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class ValidationError(AccessLayerException):
    """Validation-related errors."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class DeviceNotFoundError(AccessLayerException):
    """An IMEI that does not resolve to a known device."""

    status_code = 404

    def __init__(self, imei: str, message: str = "Device not found"):
        super().__init__("DEVICE_NOT_FOUND", message, {"imei": imei})
        self.imei = imei


class StoreError(AccessLayerException):
    """A rule, tenant, device or verification store call failed.

    Store errors are surfaced as a generic service error; ``details`` names
    the store and operation only, never the policy being evaluated.
    """

    status_code = 503

    def __init__(self, store: str, operation: str, message: str = "Store unavailable"):
        super().__init__("STORE_ERROR", message, {"store": store, "operation": operation})
