"""
Observability: trace context propagation and structured logging.

- Run/node correlation carried in a ContextVar
- JSON output for production, human-readable output for development
"""

from actorgraph.observability.logging import (
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
