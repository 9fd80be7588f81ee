"""The @traceable decorator for functions under evaluation.

Wrapping a target (or anything it calls) in @traceable nests its span
under the ``eval_task`` span that evaluate() opens for each example, so
the whole call tree shares the run's trace id. Remove the decorator and
the function behaves exactly the same.
"""

from __future__ import annotations

import contextlib
import functools
import inspect
import json
import logging
from typing import Any, Callable, Iterator, Optional, TypeVar

from opentelemetry import trace

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

RUN_TYPES = ("chain", "llm", "tool", "retriever", "prompt", "parser", "embedding")

_TRACER_NAME = "genai-eval-sdk"
_MAX_ATTRIBUTE_CHARS = 10_000


def traceable(
    name: Optional[str] = None,
    run_type: str = "chain",
    metadata: Optional[dict] = None,
) -> Callable[[F], F]:
    """Trace a function as a span.

    Works on plain functions, coroutines, generators and async generators.

    Args:
        name: Span name. Defaults to the function's qualified name.
        run_type: One of RUN_TYPES, recorded as ``gen_ai.operation.name``.
        metadata: Static attributes added to every span as
            ``traceable.metadata.<key>``.

    Example:
        @traceable(run_type="llm")
        async def classify(inputs: dict) -> dict:
            return {"label": await llm(inputs["text"])}
    """
    if run_type not in RUN_TYPES:
        raise ValueError(f"Unknown run_type {run_type!r}; expected one of {RUN_TYPES}")

    def decorator(fn: F) -> F:
        span_name = name or fn.__qualname__
        tracer = trace.get_tracer(_TRACER_NAME)

        @contextlib.contextmanager
        def span_scope(args: tuple, kwargs: dict) -> Iterator[trace.Span]:
            with tracer.start_as_current_span(span_name) as span:
                span.set_attribute("gen_ai.operation.name", run_type)
                for key, value in (metadata or {}).items():
                    span.set_attribute(f"traceable.metadata.{key}", str(value))
                _set_json_attribute(span, "gen_ai.entity.input", _call_value(args, kwargs))
                try:
                    yield span
                except Exception as exc:
                    span.set_status(trace.StatusCode.ERROR, str(exc))
                    span.record_exception(exc)
                    raise

        if inspect.iscoroutinefunction(fn):

            @functools.wraps(fn)
            async def async_wrapper(*args, **kwargs):
                with span_scope(args, kwargs) as span:
                    result = await fn(*args, **kwargs)
                    _set_json_attribute(span, "gen_ai.entity.output", result)
                    return result

            return async_wrapper  # type: ignore[return-value]

        if inspect.isgeneratorfunction(fn):

            @functools.wraps(fn)
            def gen_wrapper(*args, **kwargs):
                with span_scope(args, kwargs):
                    yield from fn(*args, **kwargs)

            return gen_wrapper  # type: ignore[return-value]

        if inspect.isasyncgenfunction(fn):

            @functools.wraps(fn)
            async def async_gen_wrapper(*args, **kwargs):
                with span_scope(args, kwargs):
                    async for item in fn(*args, **kwargs):
                        yield item

            return async_gen_wrapper  # type: ignore[return-value]

        @functools.wraps(fn)
        def sync_wrapper(*args, **kwargs):
            with span_scope(args, kwargs) as span:
                result = fn(*args, **kwargs)
                _set_json_attribute(span, "gen_ai.entity.output", result)
                return result

        return sync_wrapper  # type: ignore[return-value]

    return decorator


def _call_value(args: tuple, kwargs: dict) -> Any:
    if args and not kwargs:
        return args[0] if len(args) == 1 else list(args)
    if kwargs and not args:
        return kwargs
    if args or kwargs:
        return {"args": list(args), "kwargs": kwargs}
    return None


def _set_json_attribute(span: trace.Span, key: str, value: Any) -> None:
    """Best-effort JSON capture; unserialisable values are skipped."""
    if value is None:
        return
    try:
        serialized = json.dumps(value, default=str)
    except (TypeError, ValueError) as exc:
        logger.debug("Could not serialize %s: %s", key, exc)
        return
    if len(serialized) > _MAX_ATTRIBUTE_CHARS:
        serialized = serialized[:_MAX_ATTRIBUTE_CHARS] + "...(truncated)"
    span.set_attribute(key, serialized)
