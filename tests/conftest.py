"""Shared test fixtures for genai-eval-sdk tests.

Sets up a TracerProvider with InMemorySpanExporter so tests can capture
and assert on spans without a real collector.

A single TracerProvider is shared across the entire test session because
the OTEL SDK's ProxyTracer caches the real tracer on first use and does
not re-resolve when the global provider changes. By keeping one provider
alive for the whole session and clearing the exporter between tests we
avoid this caching issue entirely.
"""

import pytest
from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from genai_eval_sdk.config import EvaluationConfig
from genai_eval_sdk.evals.store import InMemoryExperimentStore

# Module-level singletons, initialised once per process.
_exporter = InMemorySpanExporter()
_provider = TracerProvider(
    resource=Resource.create({"service.name": "test-service"}),
)
_provider.add_span_processor(SimpleSpanProcessor(_exporter))

# Allow setting the global provider (only succeeds the first time the
# module is imported; that is fine because it is process-wide).
trace._TRACER_PROVIDER_SET_ONCE._done = False
trace._TRACER_PROVIDER = None
trace.set_tracer_provider(_provider)


@pytest.fixture(autouse=True)
def _clear_spans():
    """Clear the shared InMemorySpanExporter before and after every test."""
    _exporter.clear()
    yield
    _exporter.clear()


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Keep GENAI_EVAL_* settings from the host out of the tests."""
    for name in (
        "GENAI_EVAL_TRACING",
        "GENAI_EVAL_BACKGROUND_FLUSH",
        "GENAI_EVAL_MAX_CONCURRENCY",
        "GENAI_EVAL_TIMEOUT",
        "GENAI_EVAL_MAX_FAILURE_RATE",
        "GENAI_EVAL_OTEL_ENDPOINT",
        "GENAI_EVAL_PROJECT",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def exporter():
    """Provide the shared InMemorySpanExporter for tests that need it.

    Call ``exporter.get_finished_spans()`` after exercising the code
    under test to inspect the captured spans.
    """
    return _exporter


@pytest.fixture()
def provider():
    return _provider


@pytest.fixture()
def store():
    return InMemoryExperimentStore()


@pytest.fixture()
def config():
    """Bounded, fast-retrying config for orchestrator tests."""
    return EvaluationConfig(max_concurrency=4, recorder_initial_backoff=0.0)
