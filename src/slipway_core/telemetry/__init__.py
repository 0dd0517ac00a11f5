"""Telemetry for slipway-core: tracing, metrics and log correlation."""

from __future__ import annotations

from slipway_core.telemetry.logging import add_trace_context, configure_logging
from slipway_core.telemetry.metrics import DeployMetrics
from slipway_core.telemetry.sanitization import sanitize_error_message
from slipway_core.telemetry.tracing import (
    create_span,
    get_tracer,
    reset_tracer,
    set_tracer,
    traced,
)

__all__ = [
    "DeployMetrics",
    "add_trace_context",
    "configure_logging",
    "create_span",
    "get_tracer",
    "reset_tracer",
    "sanitize_error_message",
    "set_tracer",
    "traced",
]
