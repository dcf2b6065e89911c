"""Logging setup and context propagation."""

from fleetqa.observability.logging import (
    HumanReadableFormatter,
    StructuredFormatter,
    add_context,
    get_context,
    log_context,
    setup_logging,
)

__all__ = [
    "HumanReadableFormatter",
    "StructuredFormatter",
    "add_context",
    "get_context",
    "log_context",
    "setup_logging",
]
