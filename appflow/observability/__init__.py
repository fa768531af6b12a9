"""
Observability: structured logging with automatic execution context.

- ContextVar-based propagation of execution_id / app_id / node_id
- JSON output for production, human-readable output for development
"""

from appflow.observability.logging import (
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
