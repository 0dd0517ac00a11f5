"""OpenTelemetry tracing helpers for slipway-core.

Provides the ``@traced`` decorator and ``create_span()`` context manager.
Both record failures on the span with a sanitized message and re-raise.

The ``@traced`` decorator supports:
- ``name``: Custom span name (default: function name).
- ``attributes``: Static attributes applied to every invocation.
- ``attributes_fn``: Callable receiving the decorated function's
  ``*args, **kwargs`` and returning dynamic attributes. Failures inside it
  are logged and never propagate.
"""

from __future__ import annotations

import asyncio
import functools
from collections.abc import Callable
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, ParamSpec, TypeVar, cast, overload

import structlog
from opentelemetry.trace import Status, StatusCode, Tracer

from slipway_core.telemetry.sanitization import sanitize_error_message
from slipway_core.telemetry.tracer_factory import get_tracer as _factory_get_tracer
from slipway_core.telemetry.tracer_factory import reset_tracer
from slipway_core.telemetry.tracer_factory import set_tracer as _factory_set_tracer

if TYPE_CHECKING:
    from collections.abc import Generator

    from opentelemetry.trace import Span

__all__ = ["create_span", "get_tracer", "reset_tracer", "set_tracer", "traced"]

logger = structlog.get_logger(__name__)

P = ParamSpec("P")
R = TypeVar("R")

_TRACER_NAME = "slipway_core"


def get_tracer() -> Tracer:
    """Return the slipway-core tracer (NoOpTracer if OTel is unusable)."""
    return _factory_get_tracer(_TRACER_NAME)


def set_tracer(tracer: Tracer | None) -> None:
    """Inject a tracer for tests, or clear it with None."""
    _factory_set_tracer(_TRACER_NAME, tracer)


def _record_error(span: Span, error: BaseException) -> None:
    sanitized = sanitize_error_message(str(error))
    span.set_status(Status(StatusCode.ERROR, sanitized))
    span.set_attribute("exception.type", type(error).__name__)
    span.set_attribute("exception.message", sanitized)


@overload
def traced(func: Callable[P, R]) -> Callable[P, R]: ...


@overload
def traced(
    *,
    name: str | None = None,
    attributes: dict[str, str] | None = None,
    attributes_fn: Callable[..., dict[str, Any]] | None = None,
) -> Callable[[Callable[P, R]], Callable[P, R]]: ...


def traced(
    func: Callable[P, R] | None = None,
    *,
    name: str | None = None,
    attributes: dict[str, str] | None = None,
    attributes_fn: Callable[..., dict[str, Any]] | None = None,
) -> Callable[P, R] | Callable[[Callable[P, R]], Callable[P, R]]:
    """Trace each call of the decorated function in its own span.

    Works for both sync and async functions, with or without arguments:

        @traced
        async def prune(self, target): ...

        @traced(name="slipway.transfer", attributes_fn=lambda self, t, *a, **k: {"target": t})
        async def upload(self, target, ...): ...
    """

    def decorator(fn: Callable[P, R]) -> Callable[P, R]:
        span_name = name if name is not None else fn.__name__

        def _apply_attributes(span: Span, *args: Any, **kwargs: Any) -> None:
            if attributes:
                for key, value in attributes.items():
                    span.set_attribute(key, value)
            if attributes_fn is not None:
                try:
                    for key, value in attributes_fn(*args, **kwargs).items():
                        span.set_attribute(key, value)
                except Exception:
                    logger.warning("attributes_fn_failed", span=span_name, exc_info=True)

        if asyncio.iscoroutinefunction(fn):

            @functools.wraps(fn)
            async def async_wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
                with get_tracer().start_as_current_span(
                    span_name,
                    record_exception=False,
                    set_status_on_exception=False,
                ) as span:
                    _apply_attributes(span, *args, **kwargs)
                    try:
                        result = await fn(*args, **kwargs)  # type: ignore[misc]
                        return cast(R, result)
                    except Exception as e:
                        _record_error(span, e)
                        raise

            return async_wrapper  # type: ignore[return-value]

        @functools.wraps(fn)
        def sync_wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            with get_tracer().start_as_current_span(
                span_name,
                record_exception=False,
                set_status_on_exception=False,
            ) as span:
                _apply_attributes(span, *args, **kwargs)
                try:
                    return fn(*args, **kwargs)
                except Exception as e:
                    _record_error(span, e)
                    raise

        return sync_wrapper

    if func is not None:
        return decorator(func)
    return decorator


@contextmanager
def create_span(
    name: str,
    attributes: dict[str, Any] | None = None,
) -> Generator[Span, None, None]:
    """Open a span as a context manager.

    Nested calls create parent-child relationships. Attribute values of None
    are skipped.

    Example:
        >>> with create_span("slipway.promote", {"slipway.target": "prod"}) as span:
        ...     span.set_attribute("slipway.release_id", release_id)
    """
    with get_tracer().start_as_current_span(
        name,
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        if attributes:
            for key, value in attributes.items():
                if value is not None:
                    span.set_attribute(key, value)
        try:
            yield span
        except Exception as e:
            _record_error(span, e)
            raise
