"""Records produced and consumed by an evaluation run.

Example, Run, and Feedback are immutable. Experiment is owned by an
ExperimentRecorder, which is the only thing that appends to it.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

ScoreValue = Union[bool, int, float, None]


def is_numeric_score(value: Any) -> bool:
    """True for bool, int and float scores (the values averages are taken over)."""
    return isinstance(value, (bool, int, float))


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class ExperimentStatus(str, Enum):
    """Lifecycle of an experiment. COMPLETED and FAILED are terminal."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (ExperimentStatus.COMPLETED, ExperimentStatus.FAILED)


@dataclass(frozen=True)
class Example:
    """One labeled input in a dataset.

    Attributes:
        id: Stable identity, used to correlate runs across experiments.
        inputs: Arguments handed to the target function.
        reference_outputs: Expected outputs, if the dataset has them.
        metadata: Free-form dataset metadata.
    """

    id: str
    inputs: Mapping[str, Any]
    reference_outputs: Optional[Mapping[str, Any]] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Run:
    """The recorded result of invoking the target on one example.

    Exactly one of ``outputs`` and ``error`` is set.
    """

    example_id: str
    inputs: Mapping[str, Any]
    outputs: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    latency: float = 0.0
    trace_id: Optional[str] = None
    id: str = field(default_factory=_new_id)
    start_time: datetime = field(default_factory=_now)

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class Feedback:
    """A scored judgment attached to a run or to an experiment.

    Attributes:
        key: Metric name, e.g. "correct" or "precision".
        score: Numeric or boolean score. None when absent or when the
            evaluator failed.
        label: Optional categorical value.
        comment: Free text; holds the error detail for failed evaluators.
        run_id: Set for per-run feedback.
        experiment_id: Set for summary feedback.
        metadata: Extra data returned by the evaluator.
        error: True when the evaluator that produced this record raised.
    """

    key: str
    score: ScoreValue = None
    label: Optional[str] = None
    comment: Optional[str] = None
    run_id: Optional[str] = None
    experiment_id: Optional[str] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)
    error: bool = False
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_now)

    def __post_init__(self) -> None:
        if self.run_id is not None and self.experiment_id is not None:
            raise ValueError(
                f"Feedback {self.key!r} cannot reference both a run and an experiment"
            )


@dataclass
class Experiment:
    """A named, versioned collection of runs and feedback.

    Runs are keyed by example id and returned in dataset order. Feedback
    lists only ever grow.
    """

    name: str
    dataset_version: Optional[str] = None
    dataset_name: Optional[str] = None
    id: str = field(default_factory=_new_id)
    status: ExperimentStatus = ExperimentStatus.PENDING
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_now)
    ended_at: Optional[datetime] = None
    error: Optional[str] = None
    examples: Dict[str, Example] = field(default_factory=dict)
    summary_feedback: List[Feedback] = field(default_factory=list)
    _runs: Dict[str, Run] = field(default_factory=dict, repr=False)
    _feedback: Dict[str, List[Feedback]] = field(default_factory=dict, repr=False)

    @property
    def runs(self) -> Tuple[Run, ...]:
        """Recorded runs in dataset order, then in record order."""
        ordered = [self._runs[eid] for eid in self.examples if eid in self._runs]
        extra = [run for eid, run in self._runs.items() if eid not in self.examples]
        return tuple(ordered + extra)

    def run_for(self, example_id: str) -> Optional[Run]:
        return self._runs.get(example_id)

    def get_run(self, run_id: str) -> Optional[Run]:
        for run in self._runs.values():
            if run.id == run_id:
                return run
        return None

    def feedback_for(self, run_id: str) -> List[Feedback]:
        return list(self._feedback.get(run_id, ()))

    @property
    def feedback(self) -> List[Feedback]:
        """All per-run feedback, grouped by run in dataset order."""
        return [fb for run in self.runs for fb in self._feedback.get(run.id, ())]

    @property
    def failed_runs(self) -> List[Run]:
        return [run for run in self.runs if not run.succeeded]

    def _put_run(self, run: Run) -> None:
        previous = self._runs.get(run.example_id)
        if previous is not None:
            self._feedback.pop(previous.id, None)
        self._runs[run.example_id] = run

    def _append_feedback(self, feedback: Feedback) -> None:
        if feedback.experiment_id is not None:
            self.summary_feedback.append(feedback)
        else:
            self._feedback.setdefault(feedback.run_id, []).append(feedback)
