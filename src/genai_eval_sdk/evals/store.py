"""Persistence interface for experiments.

The recorder treats the store as an opaque remote service: every method
is a suspension point and may fail transiently. InMemoryExperimentStore
is the default and keeps a snapshot of everything written to it, so
experiments can be re-opened by id for evaluate_existing().
"""

from __future__ import annotations

import dataclasses
import logging
from datetime import datetime, timezone
from typing import Dict, Optional, Protocol, Sequence, runtime_checkable

from genai_eval_sdk.errors import RecorderError
from genai_eval_sdk.schemas import Experiment, ExperimentStatus, Feedback, Run

logger = logging.getLogger(__name__)


@runtime_checkable
class ExperimentStore(Protocol):
    """Remote store the ExperimentRecorder writes through."""

    async def create_experiment(self, experiment: Experiment) -> None: ...

    async def append_run_feedback(
        self, experiment_id: str, run: Run, feedback: Sequence[Feedback]
    ) -> None:
        """Persist a run (idempotent for an identical run) and append feedback."""
        ...

    async def append_summary_feedback(
        self, experiment_id: str, feedback: Sequence[Feedback]
    ) -> None: ...

    async def close_experiment(
        self, experiment_id: str, status: ExperimentStatus, error: Optional[str] = None
    ) -> None: ...


class InMemoryExperimentStore:
    """Process-local ExperimentStore.

    Holds its own copy of every experiment, independent of the recorder's
    working object.
    """

    def __init__(self) -> None:
        self._experiments: Dict[str, Experiment] = {}

    async def create_experiment(self, experiment: Experiment) -> None:
        if experiment.id in self._experiments:
            raise RecorderError(f"Experiment {experiment.id} already exists")
        self._experiments[experiment.id] = _snapshot(experiment)

    async def append_run_feedback(
        self, experiment_id: str, run: Run, feedback: Sequence[Feedback]
    ) -> None:
        stored = self._get(experiment_id)
        if stored.run_for(run.example_id) != run:
            stored._put_run(run)
        for item in feedback:
            stored._append_feedback(item)

    async def append_summary_feedback(
        self, experiment_id: str, feedback: Sequence[Feedback]
    ) -> None:
        stored = self._get(experiment_id)
        for item in feedback:
            stored._append_feedback(item)

    async def close_experiment(
        self, experiment_id: str, status: ExperimentStatus, error: Optional[str] = None
    ) -> None:
        stored = self._get(experiment_id)
        stored.status = status
        stored.error = error
        stored.ended_at = datetime.now(timezone.utc)
        logger.debug("Stored experiment %s closed as %s", experiment_id, status.value)

    def get_experiment(self, experiment_id: str) -> Experiment:
        """Return a snapshot of the stored experiment.

        The snapshot is detached from the store: writes made through a
        recorder resumed on it reach the store only via the store methods.

        Raises:
            KeyError: No experiment with that id was created here.
        """
        return _snapshot(self._get(experiment_id))

    def list_experiments(self) -> Sequence[Experiment]:
        return [_snapshot(experiment) for experiment in self._experiments.values()]

    def _get(self, experiment_id: str) -> Experiment:
        try:
            return self._experiments[experiment_id]
        except KeyError:
            raise KeyError(f"Unknown experiment: {experiment_id}") from None


def _snapshot(experiment: Experiment) -> Experiment:
    return dataclasses.replace(
        experiment,
        examples=dict(experiment.examples),
        metadata=dict(experiment.metadata),
        summary_feedback=list(experiment.summary_feedback),
        _runs=dict(experiment._runs),
        _feedback={run_id: list(items) for run_id, items in experiment._feedback.items()},
    )
