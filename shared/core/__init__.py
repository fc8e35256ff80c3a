"""Shared core utilities: health probes and structured logging."""

from .health import ServiceHealth, HealthStatus
from .logging_config import (
    setup_logging,
    get_logger,
    RequestLoggingMiddleware,
    bind_request_context,
    bind_event_context,
    current_context,
    new_request_id,
    ContextLogger,
)

__all__ = [
    # Health checks
    "ServiceHealth",
    "HealthStatus",
    # Logging
    "setup_logging",
    "get_logger",
    "RequestLoggingMiddleware",
    "bind_request_context",
    "bind_event_context",
    "current_context",
    "new_request_id",
    "ContextLogger",
]
