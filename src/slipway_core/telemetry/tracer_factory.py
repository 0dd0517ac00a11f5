"""Thread-safe tracer cache for slipway-core.

Tracers are created lazily per instrumenting name. If OpenTelemetry global
state is unusable (common when test fixtures swap providers), a NoOpTracer
is returned instead of failing the deployment.
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

from opentelemetry import trace

if TYPE_CHECKING:
    from opentelemetry.trace import Tracer

_tracers: dict[str, Tracer] = {}
_tracer_init_failed: bool = False
_lock = threading.Lock()


def get_tracer(name: str = "slipway") -> Tracer:
    """Get or create the cached tracer for ``name``.

    Args:
        name: Instrumenting module name.

    Returns:
        Tracer instance, or a NoOpTracer if initialization failed.
    """
    global _tracer_init_failed

    if name in _tracers:
        return _tracers[name]

    if _tracer_init_failed:
        return trace.NoOpTracer()

    with _lock:
        if name in _tracers:
            return _tracers[name]
        if _tracer_init_failed:
            return trace.NoOpTracer()

        try:
            tracer = trace.get_tracer(name)
        except RecursionError:
            _tracer_init_failed = True
            return trace.NoOpTracer()
        _tracers[name] = tracer
        return tracer


def set_tracer(name: str, tracer: Tracer | None) -> None:
    """Inject (or clear, with None) the tracer used for ``name``."""
    with _lock:
        if tracer is None:
            _tracers.pop(name, None)
        else:
            _tracers[name] = tracer


def reset_tracer() -> None:
    """Clear cached tracers and the failure flag (test isolation)."""
    global _tracer_init_failed
    with _lock:
        _tracers.clear()
        _tracer_init_failed = False


__all__ = ["get_tracer", "reset_tracer", "set_tracer"]
