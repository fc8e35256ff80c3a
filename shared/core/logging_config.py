"""
Structured JSON logging shared by the API and the worker

Every line carries the service identity plus whatever request or event context
is bound in the current execution context (request task, worker thread).
"""

import json
import logging
import logging.handlers
import re
import sys
import time
import traceback
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import Dict, Iterator, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

_CONTEXT: Dict[str, ContextVar] = {
    "request_id": ContextVar("request_id", default=None),
    "correlation_id": ContextVar("correlation_id", default=None),
    "event_id": ContextVar("event_id", default=None),
}

QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "kombu", "amqp")


def current_context() -> Dict[str, str]:
    return {name: var.get() for name, var in _CONTEXT.items() if var.get()}


@contextmanager
def _bind(**values: Optional[str]) -> Iterator[None]:
    tokens = [(_CONTEXT[name], _CONTEXT[name].set(value)) for name, value in values.items()]
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def bind_request_context(request_id: Optional[str], correlation_id: Optional[str] = None):
    return _bind(request_id=request_id, correlation_id=correlation_id)


def bind_event_context(event_id: Optional[str]):
    """Tag log lines inside the block with the business event being handled"""
    return _bind(event_id=event_id)


def new_request_id() -> str:
    return uuid.uuid4().hex


class StructuredFormatter(logging.Formatter):
    """One JSON object per record"""

    def __init__(self, service_name: str, environment: str = "development", version: str = "1.0.0"):
        super().__init__()
        self.identity = {"service": service_name, "environment": environment, "version": version}

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "@timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **self.identity,
            "source": f"{record.module}:{record.funcName}:{record.lineno}",
        }

        context = current_context()
        if context:
            entry["trace"] = context

        fields = getattr(record, "extra_fields", None)
        if fields:
            entry["custom"] = fields

        duration_ms = getattr(record, "duration_ms", None)
        if duration_ms is not None:
            entry["duration_ms"] = round(duration_ms, 2)

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc, tb = record.exc_info
            entry["error"] = {
                "type": exc_type.__name__,
                "message": str(exc),
                "stacktrace": "".join(traceback.format_exception(exc_type, exc, tb)),
            }

        return json.dumps(entry, default=str)


class DurationFilter(logging.Filter):
    """``extra={"duration": seconds}`` becomes ``duration_ms``"""

    def filter(self, record: logging.LogRecord) -> bool:
        seconds = getattr(record, "duration", None)
        if seconds is not None:
            record.duration_ms = seconds * 1000
        return True


class RedactSecretsFilter(logging.Filter):
    """Masks ``key=value`` / ``key: value`` pairs whose key looks secret"""

    SECRET_KEYS = ("password", "token", "api_key", "apikey", "secret", "authorization", "cookie")
    _pattern = re.compile(r"(?i)\b(" + "|".join(SECRET_KEYS) + r")(\s*[=:]\s*)([^\s,;]+)")

    def filter(self, record: logging.LogRecord) -> bool:
        original = record.getMessage()
        masked = self._pattern.sub(r"\1\2***", original)
        if masked != original:
            record.msg, record.args = masked, None
        return True


def setup_logging(
    service_name: str,
    level: str = "INFO",
    environment: str = "development",
    version: str = "1.0.0",
    log_file: Optional[str] = None,
) -> None:
    """
    Route the root logger through the JSON formatter

    Args:
        service_name: Identity stamped on every line ("stockledger", "stockledger-worker")
        level: Root level name
        environment: Deployment environment name
        version: Service version
        log_file: Also write to this file, rotated at 10MB
    """
    formatter = StructuredFormatter(service_name, environment, version)
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.handlers.RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=5))

    root = logging.getLogger()
    root.handlers = []
    root.setLevel(level.upper())
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(DurationFilter())
        handler.addFilter(RedactSecretsFilter())
        root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    root.debug("Logging configured", extra={"extra_fields": {"level": level, "file": log_file}})


class ContextLogger(logging.LoggerAdapter):
    """Copies the bound request/event context into ``extra`` for non-JSON handlers"""

    def process(self, msg, kwargs):
        kwargs["extra"] = {**current_context(), **kwargs.get("extra", {})}
        return msg, kwargs


def get_logger(name: str) -> ContextLogger:
    return ContextLogger(logging.getLogger(name), {})


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Access log line per request; echoes or assigns X-Request-ID"""

    QUIET_PATHS = ("/health", "/metrics")

    def __init__(self, app):
        super().__init__(app)
        self.logger = get_logger("stockledger.access")

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or new_request_id()
        method, path = request.method, request.url.path

        with bind_request_context(request_id, request.headers.get("X-Correlation-ID")):
            started = time.perf_counter()
            try:
                response = await call_next(request)
            except Exception:
                self.logger.exception(
                    f"{method} {path} raised",
                    extra={"duration": time.perf_counter() - started},
                )
                raise

            if not path.startswith(self.QUIET_PATHS):
                self.logger.info(
                    f"{method} {path} -> {response.status_code}",
                    extra={
                        "duration": time.perf_counter() - started,
                        "extra_fields": {
                            "method": method,
                            "path": path,
                            "status_code": response.status_code,
                            "client": request.client.host if request.client else None,
                        },
                    },
                )

        response.headers["X-Request-ID"] = request_id
        return response
