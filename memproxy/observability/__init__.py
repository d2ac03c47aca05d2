"""Observability helpers."""

from memproxy.observability.otel import (
    initialize,
    shutdown,
    start_span,
    record_forward,
    record_capture_failure,
    record_sync,
    record_tokens,
)

__all__ = [
    "initialize",
    "shutdown",
    "start_span",
    "record_forward",
    "record_capture_failure",
    "record_sync",
    "record_tokens",
]
