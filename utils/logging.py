"""
Logging utilities for the Trip Sync backend.

Provides:
- Request ID tracking across async contexts
- Structured logging for remote writes and push notifications
- Request ID middleware for FastAPI
"""

import logging
import sys
import uuid
from contextvars import ContextVar

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from config import get_settings

# Context variable to track request_id across async contexts
request_id_var: ContextVar[str] = ContextVar("request_id", default="-")


class RequestIdFilter(logging.Filter):
    """
    Logging filter that injects request_id into every log record.

    If no request_id is set in the context, defaults to "-".
    This allows the formatter to safely use %(request_id)s.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get("-")
        return True


class RequestIdMiddleware(BaseHTTPMiddleware):
    """
    FastAPI middleware that generates and tracks request IDs.

    - Generates a UUID for each request
    - Sets it in the context variable for logging
    - Adds X-Request-ID header to responses
    """

    def __init__(self, app: ASGIApp):
        super().__init__(app)

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        token = request_id_var.set(request_id)

        try:
            response: Response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            request_id_var.reset(token)


def configure_logging() -> None:
    """
    Configure the root logger with request_id-aware formatting.

    Sets up:
    - Request ID injection via RequestIdFilter
    - Structured log format with timestamp, level, module, function, request_id
    - Output to stdout (container/cloud-friendly)
    - Log level from settings
    """
    settings = get_settings()

    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    formatter = logging.Formatter(
        fmt="%(asctime)s | %(levelname)-8s | %(name)s.%(funcName)s | %(request_id)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Stream to stdout (good for Docker, Railway, GCP, etc.)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    handler.addFilter(RequestIdFilter())

    root = logging.getLogger()
    root.handlers.clear()  # Avoid duplicate handlers on reload
    root.setLevel(level)
    root.addHandler(handler)

    # Reduce noise from common libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


class SyncLogger:
    """
    Specialized logger for the synchronization layer.

    Logs operations, remote writes, push notifications and skipped pushes in a
    structured format. Write and push records are gated by
    ``settings.enable_sync_tracing``; operations and errors always log.

    Example:
        logger = SyncLogger("sync_service")
        logger.operation("update_module", trip_id="t1", module_id="m1")
        logger.remote_write("trips", "t1", version=4)
        logger.push("trips", "t1", version=5)
        logger.skipped("stale push", trip_id="t1", version=3)
    """

    def __init__(self, component: str):
        self.component = component
        self.logger = logging.getLogger(f"sync.{component}")
        self.settings = get_settings()

    def operation(self, name: str, **extra):
        """Log the start of a service operation."""
        self.logger.info(
            f"[OP] {name}",
            extra={"component": self.component, "step": "operation", "operation": name, **extra},
        )

    def remote_write(self, collection: str, doc_id: str, **extra):
        """Log a confirmed write to the document store."""
        if self.settings.enable_sync_tracing:
            self.logger.info(
                f"[WRITE] {collection}/{doc_id}",
                extra={
                    "component": self.component,
                    "step": "write",
                    "collection": collection,
                    "doc_id": doc_id,
                    **extra,
                },
            )

    def push(self, collection: str, doc_id: str, **extra):
        """Log a push notification that was applied to local state."""
        if self.settings.enable_sync_tracing:
            self.logger.info(
                f"[PUSH] {collection}/{doc_id}",
                extra={
                    "component": self.component,
                    "step": "push",
                    "collection": collection,
                    "doc_id": doc_id,
                    **extra,
                },
            )

    def skipped(self, reason: str, **extra):
        """Log a push or record that was deliberately not applied."""
        if self.settings.enable_sync_tracing:
            self.logger.debug(
                f"[SKIP] {reason}",
                extra={"component": self.component, "step": "skip", **extra},
            )

    def error(self, error: Exception, context: str = "", **extra):
        """Log a failed operation with full context."""
        self.logger.error(
            f"[ERROR] {context}: {str(error)}",
            exc_info=error,
            extra={"component": self.component, "step": "error", **extra},
        )


def get_sync_logger(component: str) -> SyncLogger:
    """
    Factory function to create a SyncLogger.

    Args:
        component: Name of the component (e.g., "sync_service", "invitations")

    Returns:
        SyncLogger: Logger instance for the component
    """
    return SyncLogger(component)
