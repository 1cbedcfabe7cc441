"""
Observability: structured logging with run/node trace context.

- Trace context propagates through asyncio tasks via a ContextVar
- JSON output for production, colourised output for development
"""

from flowengine.observability.logging import (
    clear_trace_context,
    configure_logging,
    get_trace_context,
    set_trace_context,
)

__all__ = [
    "configure_logging",
    "get_trace_context",
    "set_trace_context",
    "clear_trace_context",
]
