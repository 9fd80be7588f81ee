"""Per-evaluation tracing handle.

Wraps a TracerProvider (or the global one) so the orchestrator never
touches process-wide OTEL state directly. When tracing is disabled every
span is a no-op and no trace ids are generated.

Flushing follows one of two modes:

- blocking: ``await after_call()`` force-flushes the provider after every
  target invocation, off the event loop.
- background: spans are batched by the processor and the host drains
  them through a PendingFlush handle before teardown.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from opentelemetry import trace

logger = logging.getLogger(__name__)

_TRACER_NAME = "genai-eval-sdk"

DEFAULT_FLUSH_TIMEOUT_MILLIS = 30_000


class PendingFlush:
    """Handle on spans that may still be buffered by a batch processor.

    Serverless hosts must call ``drain()`` (or use the handle as a context
    manager) before the process is frozen or torn down.

    Example:
        results = evaluate(...)
        with results.pending:
            ...  # host work
        # spans are exported here
    """

    def __init__(self, provider: Optional[trace.TracerProvider]) -> None:
        self._provider = provider
        self._drained = provider is None

    @property
    def drained(self) -> bool:
        return self._drained

    def drain(self, timeout_millis: int = DEFAULT_FLUSH_TIMEOUT_MILLIS) -> bool:
        """Block until buffered spans are exported. Returns False on timeout."""
        if self._drained:
            return True
        ok = _force_flush(self._provider, timeout_millis)
        self._drained = ok
        return ok

    def __enter__(self) -> "PendingFlush":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.drain()


class Tracing:
    """Tracing configuration for one evaluation.

    Args:
        enabled: When False, a no-op tracer is used.
        background_flush: Batch spans and drain at shutdown (True) or
            flush after every target call (False).
        tracer_provider: Provider to use. Defaults to the global provider.
    """

    def __init__(
        self,
        enabled: bool = True,
        background_flush: bool = True,
        tracer_provider: Optional[trace.TracerProvider] = None,
    ) -> None:
        self.enabled = enabled
        self.background_flush = background_flush
        self._provider = tracer_provider

        if not enabled:
            self.tracer: trace.Tracer = trace.NoOpTracer()
        elif tracer_provider is not None:
            self.tracer = tracer_provider.get_tracer(_TRACER_NAME)
        else:
            self.tracer = trace.get_tracer(_TRACER_NAME)

    @property
    def provider(self) -> Optional[trace.TracerProvider]:
        if not self.enabled:
            return None
        return self._provider or trace.get_tracer_provider()

    async def after_call(self) -> None:
        """Flush when configured for blocking-per-call export.

        The flush runs on a worker thread, off the event loop.
        """
        if self.enabled and not self.background_flush:
            await asyncio.to_thread(_force_flush, self.provider, DEFAULT_FLUSH_TIMEOUT_MILLIS)

    def pending(self) -> PendingFlush:
        """Return a handle the host must drain before teardown."""
        if not self.enabled or not self.background_flush:
            return PendingFlush(None)
        return PendingFlush(self.provider)


def format_trace_id(span: trace.Span) -> Optional[str]:
    """Hex trace id of a recording span, or None for no-op spans."""
    context = span.get_span_context()
    if not context.is_valid:
        return None
    return format(context.trace_id, "032x")


def format_span_id(span: trace.Span) -> Optional[str]:
    context = span.get_span_context()
    if not context.is_valid:
        return None
    return format(context.span_id, "016x")


def _force_flush(provider: Optional[trace.TracerProvider], timeout_millis: int) -> bool:
    # The API-level proxy provider has no force_flush; only SDK providers do.
    flush = getattr(provider, "force_flush", None)
    if flush is None:
        return True
    ok = flush(timeout_millis)
    if not ok:
        logger.warning("Span flush did not complete within %d ms", timeout_millis)
    return bool(ok)
