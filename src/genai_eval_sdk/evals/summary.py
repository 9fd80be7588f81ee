"""Experiment-level summary evaluators.

Summary evaluators see every (run, example) pair at once, in dataset
order, so they can compute cross-example metrics such as precision or
pass rate. They run exactly once, after all per-example work is done.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, List, Optional, Sequence, Tuple, Union

from opentelemetry import trace

from genai_eval_sdk.errors import SummaryError
from genai_eval_sdk.evals.protocol import (
    SummaryEvaluator,
    adapt_feedback,
    as_summary_evaluator,
    error_feedback,
)
from genai_eval_sdk.schemas import Example, Feedback, Run, is_numeric_score
from genai_eval_sdk.tracing import Tracing

logger = logging.getLogger(__name__)


class SummaryAggregator:
    """Applies summary evaluators to a completed batch."""

    def __init__(
        self,
        summary_evaluators: Sequence[Union[SummaryEvaluator, Callable[..., Any]]],
        tracing: Optional[Tracing] = None,
    ) -> None:
        self.summary_evaluators: List[SummaryEvaluator] = [
            as_summary_evaluator(e) for e in summary_evaluators
        ]
        self._tracing = tracing or Tracing()

    async def aggregate(
        self,
        pairs: Sequence[Tuple[Run, Example]],
        experiment_id: str,
    ) -> List[Feedback]:
        """Run every summary evaluator once over the full pair sequence.

        ``pairs`` must already be complete and in dataset order; the caller
        guarantees every per-example pipeline has reached a terminal state.
        """
        if not self.summary_evaluators:
            return []
        runs = [run for run, _ in pairs]
        examples = [example for _, example in pairs]
        batches = await asyncio.gather(
            *(
                self._apply(evaluator, runs, examples, experiment_id)
                for evaluator in self.summary_evaluators
            )
        )
        return [feedback for batch in batches for feedback in batch]

    async def _apply(
        self,
        evaluator: SummaryEvaluator,
        runs: List[Run],
        examples: List[Example],
        experiment_id: str,
    ) -> List[Feedback]:
        key = evaluator.name
        with self._tracing.tracer.start_as_current_span(
            f"eval_summary.{key}",
            attributes={"eval.summary.name": key, "eval.summary.run_count": len(runs)},
        ) as span:
            try:
                raw = await evaluator(runs, examples)
                feedback = adapt_feedback(key, raw, experiment_id=experiment_id)
            except Exception as exc:
                logger.warning("%s", SummaryError(key, exc))
                span.set_status(trace.StatusCode.ERROR, str(exc))
                span.record_exception(exc)
                return [error_feedback(key, exc, experiment_id=experiment_id)]

            for item in feedback:
                if is_numeric_score(item.score):
                    span.set_attribute(f"eval.summary.{item.key}", item.score)
            return feedback
