"""Observability helpers."""

from ticketlinks.observability.otel import (
    initialize,
    shutdown,
    start_span,
    record_sync,
    record_parser_failure,
    record_link_changes,
    record_queue_event,
)

__all__ = [
    "initialize",
    "shutdown",
    "start_span",
    "record_sync",
    "record_parser_failure",
    "record_link_changes",
    "record_queue_event",
]
