"""The handle returned by evaluate() and evaluate_existing()."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional

from genai_eval_sdk.evals.recorder import ExperimentRecorder
from genai_eval_sdk.schemas import (
    Example,
    Experiment,
    ExperimentStatus,
    Feedback,
    Run,
    is_numeric_score,
)
from genai_eval_sdk.tracing import DEFAULT_FLUSH_TIMEOUT_MILLIS, PendingFlush


@dataclass(frozen=True)
class ExperimentResultRow:
    """One example with its run and that run's feedback."""

    example: Example
    run: Run
    feedback: List[Feedback]


class ExperimentResults:
    """Report over a finished experiment.

    Iterates rows in dataset order. Averages treat boolean scores as
    1.0/0.0, so a boolean key's average is its pass rate.

    Attributes:
        recorder: The recorder that owns the experiment, reused by
            evaluate_existing().
        pending: Tracing flush handle the host must drain.
        cancelled: True if the batch was cancelled or timed out.
        skipped_example_ids: Examples that never produced a run.
    """

    def __init__(
        self,
        recorder: ExperimentRecorder,
        *,
        pending: Optional[PendingFlush] = None,
        cancelled: bool = False,
        skipped_example_ids: Optional[List[str]] = None,
    ) -> None:
        self.recorder = recorder
        self.pending = pending or PendingFlush(None)
        self.cancelled = cancelled
        self.skipped_example_ids = list(skipped_example_ids or [])

    @property
    def experiment(self) -> Experiment:
        return self.recorder.experiment

    @property
    def experiment_name(self) -> str:
        return self.experiment.name

    @property
    def status(self) -> ExperimentStatus:
        return self.experiment.status

    @property
    def rows(self) -> List[ExperimentResultRow]:
        experiment = self.experiment
        rows = []
        for run in experiment.runs:
            example = experiment.examples.get(run.example_id)
            if example is None:
                continue
            rows.append(
                ExperimentResultRow(
                    example=example,
                    run=run,
                    feedback=experiment.feedback_for(run.id),
                )
            )
        return rows

    def __iter__(self) -> Iterator[ExperimentResultRow]:
        return iter(self.rows)

    def __len__(self) -> int:
        return len(self.experiment.runs)

    @property
    def total(self) -> int:
        return len(self.experiment.examples)

    @property
    def errors(self) -> int:
        return len(self.experiment.failed_runs)

    @property
    def summary_feedback(self) -> List[Feedback]:
        return list(self.experiment.summary_feedback)

    @property
    def averages(self) -> Dict[str, float]:
        """Mean score per feedback key, ignoring absent and non-numeric scores."""
        totals: Dict[str, List[float]] = {}
        for feedback in self.experiment.feedback:
            if is_numeric_score(feedback.score):
                totals.setdefault(feedback.key, []).append(float(feedback.score))
        return {key: sum(values) / len(values) for key, values in totals.items()}

    def wait(self, timeout_millis: int = DEFAULT_FLUSH_TIMEOUT_MILLIS) -> bool:
        """Drain buffered tracing spans. Returns False on timeout."""
        return self.pending.drain(timeout_millis)

    def __repr__(self) -> str:
        return f"<ExperimentResults {self.experiment_name!r} status={self.status.value}>"

    def __str__(self) -> str:
        parts = [
            f"Experiment: {self.experiment_name} [{self.status.value}] "
            f"({self.total} examples, {len(self)} runs, {self.errors} errors)"
        ]
        for key, avg in self.averages.items():
            parts.append(f"  {key}: {avg:.3f}")
        for feedback in self.summary_feedback:
            score = f"{float(feedback.score):.3f}" if is_numeric_score(feedback.score) else "n/a"
            parts.append(f"  [summary] {feedback.key}: {score}")
        if self.cancelled:
            parts.append(f"  cancelled: {len(self.skipped_example_ids)} examples skipped")
        return "\n".join(parts)
