"""
Logging infrastructure for SubShare Platform.

- Request/operation context kept in thread-local storage
- RequestIDFilter: injects the context into every log record
- StructuredLogAdapter / get_logger: bind fixed context (e.g. a purchase id)
  to all messages of one unit of work

Usage:
    from apps.common.logging import get_logger

    log = get_logger(__name__, purchase_id=str(purchase_id))
    log.info("🛒 [Purchase] Order created", order_id=str(order.id))
"""

from __future__ import annotations

import logging
import threading
from typing import Any

# Thread-local storage for request context
_request_context = threading.local()

_CONTEXT_ATTRS = ("request_id", "user_id", "purchase_id")


# =============================================================================
# REQUEST CONTEXT FUNCTIONS
# =============================================================================


def set_request_context(**kwargs: Any) -> None:
    """Set request context for the current thread"""
    for key, value in kwargs.items():
        setattr(_request_context, key, value)


def clear_request_context() -> None:
    """Clear request context for the current thread"""
    for attr in _CONTEXT_ATTRS:
        if hasattr(_request_context, attr):
            delattr(_request_context, attr)


# =============================================================================
# REQUEST ID FILTER - Structured Logging with Request Correlation
# =============================================================================


class RequestIDFilter(logging.Filter):
    """
    Add request ID and context to log records.

    Records that already carry an attribute (passed through ``extra``) keep it.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        """Add context attributes to the log record"""
        if not hasattr(record, "request_id"):
            record.request_id = getattr(_request_context, "request_id", "-")
        if not hasattr(record, "user_id"):
            record.user_id = getattr(_request_context, "user_id", None)
        if not hasattr(record, "purchase_id"):
            record.purchase_id = getattr(_request_context, "purchase_id", None)
        return True


class StructuredLogAdapter(logging.LoggerAdapter):
    """
    Log adapter that adds structured context to all log messages.

    Usage:
        logger = StructuredLogAdapter(
            logging.getLogger(__name__),
            {"component": "credits"}
        )
        logger.info("Credits spent", transaction_id=123)
    """

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        """Process log message and add structured context"""
        extra = dict(kwargs.get("extra") or {})
        extra.update(self.extra)

        # Keyword arguments become extra fields
        for key, value in list(kwargs.items()):
            if key not in ("exc_info", "stack_info", "stacklevel", "extra"):
                extra[key] = value
                del kwargs[key]

        kwargs["extra"] = extra
        return msg, kwargs


def get_logger(name: str, **context: Any) -> StructuredLogAdapter:
    """
    Get a structured logger with context.

    Args:
        name: Logger name (usually __name__)
        **context: Additional context to include in all log messages
    """
    return StructuredLogAdapter(logging.getLogger(name), context)
