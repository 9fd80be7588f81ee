"""Target invocation: run the function under test on one example.

Sync targets run on a worker thread, async targets are awaited in place.
A target that raises produces a failed Run instead of an exception, so
one bad example never aborts the batch.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from typing import Any, Callable, Dict, Mapping, Optional

from opentelemetry import trace

from genai_eval_sdk.errors import TargetError
from genai_eval_sdk.schemas import Example, Run
from genai_eval_sdk.tracing import Tracing, format_trace_id

logger = logging.getLogger(__name__)

_MAX_ATTRIBUTE_CHARS = 1000


def normalize_outputs(value: Any) -> Dict[str, Any]:
    """Targets may return any value; non-mappings become ``{"output": value}``."""
    if isinstance(value, Mapping):
        return dict(value)
    return {"output": value}


class TargetInvoker:
    """Calls a user target with an example's inputs.

    Args:
        target: ``(inputs: dict) -> outputs``, sync or async.
        tracing: Tracing handle used for the ``eval_task`` span.
    """

    def __init__(self, target: Callable[..., Any], tracing: Optional[Tracing] = None) -> None:
        if not callable(target):
            raise TypeError(f"Target must be callable, got {type(target).__name__}")
        self._target = target
        self._tracing = tracing or Tracing()
        self.is_async = inspect.iscoroutinefunction(target) or inspect.iscoroutinefunction(
            getattr(target, "__call__", None)
        )

    async def call(self, example: Example) -> Dict[str, Any]:
        """Invoke the target once.

        Raises:
            TargetError: The target raised; the original exception is chained.
        """
        inputs = dict(example.inputs)
        try:
            if self.is_async:
                result = await self._target(inputs)
            else:
                result = await asyncio.to_thread(self._target, inputs)
        except Exception as exc:
            raise TargetError(example.id, exc) from exc
        return normalize_outputs(result)

    async def invoke(self, example: Example) -> Run:
        """Invoke the target and record the outcome as a Run.

        The ``eval_task`` span is opened in the caller's context, so the
        run's trace id is that of the enclosing ``eval_item`` span.
        """
        try:
            return await self._traced_invoke(example)
        finally:
            await self._tracing.after_call()

    async def _traced_invoke(self, example: Example) -> Run:
        tracer = self._tracing.tracer
        with tracer.start_as_current_span(
            "eval_task",
            attributes={"eval.example_id": example.id},
        ) as span:
            trace_id = format_trace_id(span)
            started = time.perf_counter()
            try:
                outputs = await self.call(example)
            except TargetError as exc:
                latency = time.perf_counter() - started
                logger.warning("Target failed on example %s: %r", example.id, exc.cause)
                span.set_status(trace.StatusCode.ERROR, str(exc.cause))
                span.record_exception(exc.cause)
                return Run(
                    example_id=example.id,
                    inputs=example.inputs,
                    error=repr(exc.cause),
                    latency=latency,
                    trace_id=trace_id,
                )

            latency = time.perf_counter() - started
            span.set_attribute("eval.task.output", str(outputs)[:_MAX_ATTRIBUTE_CHARS])
            span.set_attribute("eval.task.latency", latency)
            return Run(
                example_id=example.id,
                inputs=example.inputs,
                outputs=outputs,
                latency=latency,
                trace_id=trace_id,
            )
