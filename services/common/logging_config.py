"""
Centralized logging configuration for QConnect.

This module provides consistent logging setup including:
- Structured logging with JSON format
- Conversation and user context tracking via contextvars
- A readable text renderer for interactive use
- Backend error logging with level chosen by status code

Usage:
    from services.common.logging_config import setup_service_logging

    setup_service_logging(
        service_name="qconnect",
        log_level="INFO",
        log_format="text"
    )
"""

import logging
import logging.config
import sys
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Context variables for session-specific data
conversation_id_var: ContextVar[str] = ContextVar(
    "conversation_id", default="uninitialized"
)
user_id_var: ContextVar[str] = ContextVar("user_id", default="anonymous")


def add_session_context(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: structlog.types.EventDict,
) -> structlog.types.EventDict:
    """Add conversation and user ID to all log entries."""
    conversation_id = conversation_id_var.get()
    user_id = user_id_var.get()
    if conversation_id and conversation_id != "uninitialized":
        event_dict.setdefault("conversation_id", conversation_id)
    if user_id and user_id != "anonymous":
        event_dict.setdefault("user_id", user_id)
    return event_dict


def add_service_context(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: structlog.types.EventDict,
) -> structlog.types.EventDict:
    """Add service name to all log entries."""
    logger_name = event_dict.get("logger", "")
    if logger_name.startswith("services."):
        # "services.qconnect.backend_client" -> "qconnect"
        service_parts = logger_name.split(".")
        if len(service_parts) >= 2:
            event_dict.setdefault("service", service_parts[1])
    return event_dict


class EnhancedTextRenderer:
    """Custom text renderer for interactive sessions."""

    def __init__(self, service_name: str):
        self.service_name = service_name

    def __call__(
        self,
        logger: structlog.types.WrappedLogger,
        method_name: str,
        event_dict: structlog.types.EventDict,
    ) -> str:
        timestamp = event_dict.get("timestamp", "")
        level = event_dict.get("level", "INFO").upper()
        logger_name = event_dict.get("logger", "")
        message = event_dict.get("event", "")
        service = event_dict.get("service", self.service_name)

        # Last 8 chars of the conversation id are enough to tell sessions apart
        conversation_id = event_dict.get("conversation_id", "")
        conversation_suffix = f"[{conversation_id[-8:]}]" if conversation_id else ""

        user_info = ""
        user_id = event_dict.get("user_id", "")
        if user_id and user_id != "anonymous":
            user_info = f" | User: {user_id}"

        clean_logger_name = logger_name
        if logger_name.startswith("services."):
            clean_logger_name = logger_name[9:]

        parts = [
            timestamp,
            f"[{service}]",
            f"[{level}]",
            conversation_suffix,
            f"{clean_logger_name}",
            f"- {message}{user_info}",
        ]

        extra_context = []
        for key, value in event_dict.items():
            if key not in [
                "timestamp",
                "level",
                "logger",
                "event",
                "service",
                "conversation_id",
                "user_id",
            ]:
                if isinstance(value, (str, int, float, bool)):
                    extra_context.append(f"{key}={value}")
                else:
                    extra_context.append(f"{key}={str(value)[:150]}...")

        if extra_context:
            parts.append(f" | {', '.join(extra_context)}")

        return " ".join(filter(None, parts))


def setup_service_logging(
    service_name: str,
    log_level: str = "INFO",
    log_format: str = "json",
) -> None:
    """
    Set up logging configuration for a service.

    Args:
        service_name: Name of the service (e.g., "qconnect")
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Format type ("json" or "text")
    """
    processors: list = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        add_session_context,
        add_service_context,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(EnhancedTextRenderer(service_name))

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # structlog renders the final line; the stdlib formatter passes it through
    formatter = logging.Formatter("%(message)s")

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        handlers=[handler],
        force=True,
    )

    # Silence verbose third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    get_logger(__name__).debug(
        f"Logging configured for {service_name}",
        log_level=log_level,
        log_format=log_format,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)


def log_service_startup(service_name: str, **kwargs: Any) -> None:
    """Log service startup with configuration details."""
    logger = get_logger("startup")
    logger.info(f"Starting {service_name}", service=service_name, **kwargs)


def log_service_shutdown(service_name: str) -> None:
    """Log service shutdown event."""
    logger = get_logger(__name__)
    logger.info(f"Service {service_name} shutting down")


def log_backend_error(
    operation: str,
    status_code: int,
    detail: str,
    method: Optional[str] = None,
    url: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    **kwargs: Any,
) -> None:
    """
    Log a non-2xx backend response.

    5xx responses are logged as errors, 4xx as warnings, anything else as info.

    Args:
        operation: Client operation that issued the request (e.g. "generate_query")
        status_code: HTTP status code
        detail: Human-readable detail extracted from the response
        method: Optional HTTP method
        url: Optional request URL
        details: Optional additional error details
        **kwargs: Additional context to include in the log
    """
    logger = get_logger(__name__)

    log_context: Dict[str, Any] = {
        "operation": operation,
        "status_code": status_code,
        "detail": detail,
        **kwargs,
    }
    if method:
        log_context["method"] = method
    if url:
        log_context["url"] = url
    if details:
        log_context["details"] = details

    message = f"Backend {status_code} on {operation}: {detail}"
    if status_code >= 500:
        logger.error(message, **log_context)
    elif status_code >= 400:
        logger.warning(message, **log_context)
    else:
        logger.info(message, **log_context)
