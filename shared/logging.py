"""
Structured logging for the IMEI Access service family.

Log lines are JSON. Request and caller identity are bound once per request
with ``bind_request`` and ``bind_caller`` and merged into every line logged
while handling it, together with the active OpenTelemetry trace and span.
"""

import logging
import sys
import uuid
from typing import Any, Dict, Optional

import structlog
from opentelemetry import trace


def configure_logging(service_name: str, log_level: str = "info") -> None:
    """Configure structlog and the stdlib root logger for a service."""

    def add_service(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        event_dict.setdefault("service", service_name)
        return event_dict

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            add_service,
            add_trace_ids,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer()
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )


def add_trace_ids(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Attach the ids of the span being recorded, if any."""
    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        event_dict["trace_id"] = f"{span_context.trace_id:032x}"
        event_dict["span_id"] = f"{span_context.span_id:016x}"
    return event_dict


def bind_request(request_id: Optional[str] = None) -> str:
    """Start a fresh log context for one request and return its id."""
    request_id = request_id or str(uuid.uuid4())
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id)
    return request_id


def bind_caller(caller_kind: str, caller_id: int, reseller_id: Optional[int] = None) -> None:
    """Bind who is asking: technician, reseller_admin or super_admin."""
    structlog.contextvars.bind_contextvars(caller_kind=caller_kind, caller_id=caller_id)
    if reseller_id is not None:
        structlog.contextvars.bind_contextvars(reseller_id=reseller_id)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Logger named ``<service>.<component>``."""
    return structlog.get_logger(name)
