"""Per-run evaluator fan-out.

All evaluators for one run start together and are awaited together; the
run is finalised only once every one of them has produced feedback or
failed. A raising evaluator yields an absent-score Feedback carrying the
error, and never affects its siblings.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, List, Optional, Sequence, Union

from opentelemetry import trace

from genai_eval_sdk.errors import EvaluatorError
from genai_eval_sdk.evals.protocol import (
    Evaluator,
    adapt_feedback,
    as_evaluator,
    error_feedback,
)
from genai_eval_sdk.schemas import Example, Feedback, Run, is_numeric_score
from genai_eval_sdk.tracing import Tracing

logger = logging.getLogger(__name__)

_MAX_RATIONALE_CHARS = 500


class EvaluatorRunner:
    """Applies a fixed set of evaluators to runs.

    Args:
        evaluators: Evaluator instances or bare callables (registered as
            INPUTS_OUTPUTS_REFERENCE).
        tracing: Tracing handle for ``eval_score.<key>`` spans.
    """

    def __init__(
        self,
        evaluators: Sequence[Union[Evaluator, Callable[..., Any]]],
        tracing: Optional[Tracing] = None,
    ) -> None:
        self.evaluators: List[Evaluator] = [as_evaluator(e) for e in evaluators]
        self._tracing = tracing or Tracing()

    async def evaluate_run(self, run: Run, example: Example) -> List[Feedback]:
        """Score one run with every evaluator, concurrently.

        Failed runs are not scored and return no feedback.
        """
        if not run.succeeded or not self.evaluators:
            return []
        batches = await asyncio.gather(
            *(self._apply(evaluator, run, example) for evaluator in self.evaluators)
        )
        return [feedback for batch in batches for feedback in batch]

    async def _apply(self, evaluator: Evaluator, run: Run, example: Example) -> List[Feedback]:
        key = evaluator.name
        with self._tracing.tracer.start_as_current_span(
            f"eval_score.{key}",
            attributes={"eval.scorer.name": key, "eval.scorer.kind": evaluator.kind.value},
        ) as span:
            try:
                raw = await evaluator(run, example)
                feedback = adapt_feedback(key, raw, run_id=run.id)
            except Exception as exc:
                failure = EvaluatorError(key, exc)
                logger.warning("%s (run %s, example %s)", failure, run.id, example.id)
                span.set_status(trace.StatusCode.ERROR, str(exc))
                span.record_exception(exc)
                return [error_feedback(key, exc, run_id=run.id)]

            if len(feedback) == 1:
                _set_score_attributes(span, feedback[0])
            span.set_attribute("eval.score.count", len(feedback))
            return feedback


def _set_score_attributes(span: trace.Span, feedback: Feedback) -> None:
    if is_numeric_score(feedback.score):
        span.set_attribute("eval.score.value", feedback.score)
    if feedback.label:
        span.set_attribute("eval.score.label", feedback.label)
    if feedback.comment:
        span.set_attribute("eval.score.rationale", feedback.comment[:_MAX_RATIONALE_CHARS])
