"""
Shared logging configuration for the AEMaaCS client.
"""

import sys
import structlog
import logging
import uuid
import time
from typing import Any, Dict, List, Optional, Tuple
from contextvars import ContextVar, Token

from opentelemetry import trace

# Context variables for correlation IDs
request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
operation_var: ContextVar[Optional[str]] = ContextVar('operation', default=None)
resource_var: ContextVar[Optional[str]] = ContextVar('resource', default=None)


def configure_logging(service_name: str, log_level: str = "info", log_format: str = "json") -> None:
    """Configure structured logging for the client process."""

    renderer = (
        structlog.processors.JSONRenderer()
        if log_format == "json"
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            _service_context(service_name),
            add_trace_context,
            add_correlation_context,
            add_timestamp,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )


def _service_context(service_name: str):
    def add_service_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        event_dict.setdefault("service", service_name)
        return event_dict

    return add_service_context


def add_trace_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add trace context to log events."""
    current_span = trace.get_current_span()
    if current_span and current_span.is_recording():
        span_context = current_span.get_span_context()
        if span_context.trace_id != 0:
            event_dict["trace_id"] = f"{span_context.trace_id:032x}"
        if span_context.span_id != 0:
            event_dict["span_id"] = f"{span_context.span_id:016x}"

    return event_dict


def add_correlation_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add correlation context to log events."""
    request_id = request_id_var.get()
    if request_id:
        event_dict["request_id"] = request_id

    operation = operation_var.get()
    if operation:
        event_dict["operation"] = operation

    resource = resource_var.get()
    if resource:
        event_dict["resource"] = resource

    return event_dict


def add_timestamp(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add high-precision timestamp to log events."""
    event_dict["timestamp"] = time.time()
    return event_dict


def set_request_id(request_id: Optional[str] = None) -> Token:
    """Set request ID in context; reset the returned token to restore the previous one."""
    if request_id is None:
        request_id = str(uuid.uuid4())
    return request_id_var.set(request_id)


def set_operation_context(operation: Optional[str] = None, resource: Optional[str] = None) -> List[Tuple[ContextVar, Token]]:
    """Set the logical operation being executed."""
    tokens: List[Tuple[ContextVar, Token]] = []
    if operation:
        tokens.append((operation_var, operation_var.set(operation)))
    if resource:
        tokens.append((resource_var, resource_var.set(resource)))
    return tokens


def reset_context(tokens: List[Tuple[ContextVar, Token]]):
    """Restore context variables to the values they held before being set."""
    for var, token in reversed(tokens):
        var.reset(token)


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
