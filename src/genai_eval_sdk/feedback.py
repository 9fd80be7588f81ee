"""Feedback submission as OTEL spans.

Sends evaluator scores and human feedback through the same exporter
pipeline as every other trace. Collectors route these spans on the
``genai_eval.feedback`` marker attribute.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

from opentelemetry import trace

from genai_eval_sdk.schemas import Feedback, ScoreValue

logger = logging.getLogger(__name__)

_TRACER_NAME = "genai-eval-sdk-feedback"

_MAX_COMMENT_CHARS = 500


def log_feedback(
    key: str,
    score: ScoreValue = None,
    *,
    trace_id: Optional[str] = None,
    span_id: Optional[str] = None,
    run_id: Optional[str] = None,
    experiment_id: Optional[str] = None,
    label: Optional[str] = None,
    comment: Optional[str] = None,
    source: str = "sdk",
    error: bool = False,
    metadata: Optional[Dict[str, Any]] = None,
    project: Optional[str] = None,
    tracer_provider: Optional[trace.TracerProvider] = None,
) -> None:
    """Submit one feedback record as an OTEL span.

    Args:
        key: Feedback key (e.g., "correct", "relevance", "precision").
        score: Numeric or boolean score.
        trace_id: The trace being scored. Stored as an attribute; it does
            NOT become the feedback span's own trace id.
        span_id: Optional span id for span-level feedback.
        run_id: Run the feedback belongs to.
        experiment_id: Experiment the feedback belongs to (summary feedback).
        label: Categorical value.
        comment: Human-readable comment or evaluator error detail.
        source: Who produced it: "sdk", "evaluator", "summary", "human".
        error: True when the producing evaluator raised.
        metadata: Arbitrary extra data, stringified.
        project: Project name. Defaults to GENAI_EVAL_PROJECT env var.
        tracer_provider: Provider to emit through. Defaults to global.

    Example:
        log_feedback("correct", True, trace_id=run.trace_id, source="human")
    """
    if tracer_provider is not None:
        tracer = tracer_provider.get_tracer(_TRACER_NAME)
    else:
        tracer = trace.get_tracer(_TRACER_NAME)

    attrs: Dict[str, Any] = {
        "genai_eval.feedback": True,
        "feedback.key": key,
        "feedback.source": source,
        "feedback.project": project or os.environ.get("GENAI_EVAL_PROJECT", "default"),
    }

    if score is not None:
        attrs["feedback.score"] = score
        attrs["feedback.data_type"] = "BOOLEAN" if isinstance(score, bool) else "NUMERIC"
    if trace_id:
        attrs["feedback.trace_id"] = trace_id
    if span_id:
        attrs["feedback.span_id"] = span_id
    if run_id:
        attrs["feedback.run_id"] = run_id
    if experiment_id:
        attrs["feedback.experiment_id"] = experiment_id
    if label:
        attrs["feedback.label"] = label
    if comment:
        attrs["feedback.comment"] = comment[:_MAX_COMMENT_CHARS]
    if error:
        attrs["feedback.error"] = True
    if metadata:
        for k, v in metadata.items():
            attrs[f"feedback.metadata.{k}"] = str(v)

    with tracer.start_as_current_span(f"feedback.{key}", attributes=attrs):
        logger.debug("Feedback emitted: %s=%s (trace=%s)", key, score, trace_id)


def emit(
    feedback: Feedback,
    *,
    trace_id: Optional[str] = None,
    source: str = "evaluator",
    metadata: Optional[Dict[str, Any]] = None,
    tracer_provider: Optional[trace.TracerProvider] = None,
) -> None:
    """Emit a recorded Feedback via log_feedback()."""
    log_feedback(
        feedback.key,
        feedback.score,
        trace_id=trace_id,
        run_id=feedback.run_id,
        experiment_id=feedback.experiment_id,
        label=feedback.label,
        comment=feedback.comment,
        source=source,
        error=feedback.error,
        metadata={**dict(feedback.metadata), **(metadata or {})},
        tracer_provider=tracer_provider,
    )
