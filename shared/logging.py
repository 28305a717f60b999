"""
Structured logging for the engine services.

Every event is rendered as one JSON line. Request and principal correlation
ride on structlog's context variables, so anything logged while a request is
being handled carries ``request_id`` and, once the gate has authorized the
caller, ``account_id`` / ``parent_account_id``.
"""

import logging
import sys
import uuid
from typing import Any, Dict, Optional

import structlog
from opentelemetry import trace


def configure_logging(service_name: str, log_level: str = "info") -> None:
    """Configure structlog and the stdlib root logger for one service."""

    def add_service_name(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        event_dict.setdefault("service", service_name)
        return event_dict

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            add_service_name,
            add_trace_context,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )


def add_trace_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Attach the active OpenTelemetry span, if one is recording."""
    span = trace.get_current_span()
    if span.is_recording():
        context = span.get_span_context()
        event_dict["trace_id"] = f"{context.trace_id:032x}"
        event_dict["span_id"] = f"{context.span_id:016x}"
    return event_dict


def set_request_id(request_id: Optional[str] = None) -> str:
    request_id = request_id or uuid.uuid4().hex
    structlog.contextvars.bind_contextvars(request_id=request_id)
    return request_id


def set_principal_context(account_id: Optional[str] = None, parent_account_id: Optional[str] = None):
    """Bind the authorized caller so downstream events name the account."""
    bound = {"account_id": account_id, "parent_account_id": parent_account_id}
    structlog.contextvars.bind_contextvars(**{k: v for k, v in bound.items() if v})


def clear_context():
    structlog.contextvars.clear_contextvars()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Loggers are named ``<service>.<component>``."""
    return structlog.get_logger(name)
