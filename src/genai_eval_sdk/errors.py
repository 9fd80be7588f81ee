"""Error taxonomy for evaluation runs.

Recovered errors (target, evaluator, summary) are converted into records
by the orchestrator and never escape ``evaluate()``. Source errors and
exhausted persistence retries propagate to the caller.
"""

from __future__ import annotations

from typing import Optional


class EvaluationError(Exception):
    """Base class for every error raised by genai_eval_sdk."""


class SourceError(EvaluationError):
    """The example source could not produce examples. Fatal for the run."""


class NotFoundError(SourceError):
    """The requested dataset or dataset version does not exist."""

    def __init__(self, dataset: str, version: Optional[str] = None) -> None:
        self.dataset = dataset
        self.version = version
        if version is None:
            message = f"Dataset not found: {dataset!r}"
        else:
            message = f"Dataset version not found: {dataset!r} @ {version!r}"
        super().__init__(message)


class TargetError(EvaluationError):
    """The function under test raised for one example."""

    def __init__(self, example_id: str, cause: BaseException) -> None:
        self.example_id = example_id
        self.cause = cause
        super().__init__(f"Target failed on example {example_id}: {cause!r}")


class EvaluatorError(EvaluationError):
    """A per-run evaluator raised."""

    def __init__(self, key: str, cause: BaseException) -> None:
        self.key = key
        self.cause = cause
        super().__init__(f"Evaluator {key!r} failed: {cause!r}")


class SummaryError(EvaluationError):
    """A summary evaluator raised."""

    def __init__(self, key: str, cause: BaseException) -> None:
        self.key = key
        self.cause = cause
        super().__init__(f"Summary evaluator {key!r} failed: {cause!r}")


class RecorderError(EvaluationError):
    """The experiment store rejected or failed a write."""


class DuplicateRunError(RecorderError):
    """A run was already recorded for this example."""

    def __init__(self, example_id: str) -> None:
        self.example_id = example_id
        super().__init__(f"A run is already recorded for example {example_id}")


class ExperimentStateError(EvaluationError):
    """An operation is not allowed in the experiment's current status."""
