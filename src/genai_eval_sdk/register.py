"""OTEL pipeline setup for evaluation tracing.

The register() function is the single entry point for configuring where
evaluation spans go. It creates a TracerProvider and an OTLP exporter,
choosing a batch or a simple span processor to match the flush mode the
orchestrator is configured with.

Supports both HTTP and gRPC OTLP protocols:
  - http:// or https:// → HTTP exporter
  - grpc:// → gRPC (insecure)
  - grpcs:// → gRPC (TLS)
  - Or set protocol="http" / protocol="grpc" explicitly
"""

from __future__ import annotations

import logging
import os
from typing import Literal, Optional
from urllib.parse import urlparse

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    SimpleSpanProcessor,
    SpanExporter,
)

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "http://localhost:4318/v1/traces"

ENV_ENDPOINT = "GENAI_EVAL_OTEL_ENDPOINT"
ENV_PROJECT = "GENAI_EVAL_PROJECT"


def register(
    *,
    endpoint: Optional[str] = None,
    protocol: Optional[Literal["http", "grpc"]] = None,
    project_name: Optional[str] = None,
    background_flush: bool = True,
    exporter: Optional[SpanExporter] = None,
    set_global: bool = True,
    headers: Optional[dict] = None,
) -> TracerProvider:
    """Configure the OTEL tracing pipeline used by evaluate().

    Args:
        endpoint: OTLP endpoint URL. Defaults to GENAI_EVAL_OTEL_ENDPOINT
            env var or http://localhost:4318/v1/traces.
        protocol: Force "http" or "grpc". If None, inferred from URL scheme.
        project_name: Service name attached to all spans. Defaults to
            GENAI_EVAL_PROJECT env var or "default".
        background_flush: Use BatchSpanProcessor (True) and drain through
            PendingFlush, or SimpleSpanProcessor (False) which exports
            each span as it ends.
        exporter: Custom SpanExporter. Overrides endpoint/protocol.
        set_global: Set as the global TracerProvider (default: True).
        headers: Additional headers for the exporter.

    Returns:
        The configured TracerProvider.

    Examples:
        # Local collector over HTTP
        register()

        # gRPC via URL scheme
        register(endpoint="grpc://localhost:4317")

        # Serverless: export every span immediately
        register(background_flush=False)
    """
    endpoint = endpoint or os.environ.get(ENV_ENDPOINT, DEFAULT_ENDPOINT)
    name = project_name or os.environ.get(ENV_PROJECT, "default")

    provider = TracerProvider(resource=Resource.create({"service.name": name}))

    if exporter is None:
        exporter = _create_exporter(endpoint=endpoint, protocol=protocol, headers=headers)

    if background_flush:
        processor = BatchSpanProcessor(exporter)
    else:
        processor = SimpleSpanProcessor(exporter)
    provider.add_span_processor(processor)

    if set_global:
        trace.set_tracer_provider(provider)

    logger.info(
        "Evaluation tracing initialized: endpoint=%s project=%s background_flush=%s",
        endpoint,
        name,
        background_flush,
    )

    return provider


def _infer_protocol(endpoint: str, protocol: Optional[str]) -> str:
    """Determine the OTLP transport protocol from explicit setting or URL scheme."""
    if protocol:
        return protocol

    scheme = urlparse(endpoint).scheme.lower()
    if scheme in ("grpc", "grpcs"):
        return "grpc"
    return "http"


def _create_exporter(
    endpoint: str,
    protocol: Optional[str],
    headers: Optional[dict],
) -> SpanExporter:
    if _infer_protocol(endpoint, protocol) == "grpc":
        return _create_grpc_exporter(endpoint, headers)
    return _create_http_exporter(endpoint, headers)


def _create_http_exporter(endpoint: str, headers: Optional[dict]) -> SpanExporter:
    from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter

    logger.debug("Using HTTP exporter: %s", endpoint)
    return OTLPSpanExporter(endpoint=endpoint, headers=headers)


def _create_grpc_exporter(endpoint: str, headers: Optional[dict]) -> SpanExporter:
    """Create a gRPC OTLP exporter."""
    try:
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
            OTLPSpanExporter as GRPCSpanExporter,
        )
    except ImportError as exc:
        raise ImportError(
            "The gRPC exporter is required for grpc:// endpoints. "
            "Install it with: pip install genai-eval-sdk[grpc]"
        ) from exc

    parsed = urlparse(endpoint)
    # gRPC exporter takes host:port, not a full URL
    grpc_endpoint = parsed.netloc or endpoint
    insecure = parsed.scheme.lower() not in ("grpcs", "https")

    logger.debug("Using gRPC exporter: %s (insecure=%s)", grpc_endpoint, insecure)
    return GRPCSpanExporter(endpoint=grpc_endpoint, insecure=insecure, headers=headers)
