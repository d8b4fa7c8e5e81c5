"""
Common utilities and configurations for QConnect services.
"""

from services.common.http_errors import (
    BackendResponseError,
    BackendUnavailableError,
    ErrorCode,
    MalformedResponseError,
    NotFoundError,
    QConnectAPIException,
    SessionBusyError,
)
from services.common.logging_config import get_logger, setup_service_logging

__all__ = [
    "BackendResponseError",
    "BackendUnavailableError",
    "ErrorCode",
    "MalformedResponseError",
    "NotFoundError",
    "QConnectAPIException",
    "SessionBusyError",
    "get_logger",
    "setup_service_logging",
]
