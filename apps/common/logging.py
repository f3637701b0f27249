"""
Logging infrastructure for the Ledgerline Platform.

Usage events are rated outside of any HTTP request, so log correlation uses
the event's idempotency key instead of a request id:

    from apps.common.logging import correlation_context

    with correlation_context(event.idempotency_key):
        engine.rate_and_allocate(event)
"""

from __future__ import annotations

import contextlib
import logging
import threading
from collections.abc import Generator

# Thread-local storage for correlation context
_correlation_context = threading.local()


def set_correlation_id(correlation_id: str) -> None:
    """Set the current correlation ID in thread-local storage."""
    _correlation_context.correlation_id = correlation_id


def get_correlation_id() -> str | None:
    """Get the current correlation ID from thread-local storage."""
    return getattr(_correlation_context, "correlation_id", None)


def clear_correlation_id() -> None:
    """Clear the correlation ID from thread-local storage."""
    _correlation_context.correlation_id = None


@contextlib.contextmanager
def correlation_context(correlation_id: str) -> Generator[None, None, None]:
    """Stamp every record logged inside the block with ``correlation_id``."""
    previous = get_correlation_id()
    set_correlation_id(correlation_id)
    try:
        yield
    finally:
        if previous is None:
            clear_correlation_id()
        else:
            set_correlation_id(previous)


class CorrelationIDFilter(logging.Filter):
    """
    Add the correlation ID to log records.

    Injects the correlation ID from thread-local storage into every log
    record, enabling usage-event tracing across the rating pipeline.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "correlation_id"):
            record.correlation_id = get_correlation_id() or "-"  # type: ignore[attr-defined]
        return True
