"""Experiment recording and lifecycle.

The recorder owns the Experiment state machine::

    PENDING --start--> RUNNING --finish--> COMPLETED | FAILED

Every write goes to the ExperimentStore first, with bounded exponential
backoff, and is applied to the local Experiment only once persisted.
Completed and failed experiments accept new feedback through
``attach_feedback()`` but never change their runs or status again.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Literal, Optional, Sequence, Set

from genai_eval_sdk.config import EvaluationConfig
from genai_eval_sdk.errors import DuplicateRunError, ExperimentStateError, RecorderError
from genai_eval_sdk.evals.store import ExperimentStore, InMemoryExperimentStore
from genai_eval_sdk.schemas import Example, Experiment, ExperimentStatus, Feedback, Run

logger = logging.getLogger(__name__)


class ExperimentRecorder:
    """Persists one experiment's runs and feedback.

    Args:
        store: Where records go. Defaults to a fresh InMemoryExperimentStore.
        duplicate_runs: "reject" raises DuplicateRunError on a second run
            for the same example; "overwrite" replaces it and its feedback.
        max_target_failure_rate: Fraction of failed runs above which
            ``finish()`` marks the experiment FAILED. None disables the check.
        max_attempts: Store write attempts before raising RecorderError.
        initial_backoff: Seconds to wait after the first failed write.
        backoff_multiplier: Backoff growth per retry.
    """

    def __init__(
        self,
        store: Optional[ExperimentStore] = None,
        *,
        duplicate_runs: Literal["reject", "overwrite"] = "reject",
        max_target_failure_rate: Optional[float] = None,
        max_attempts: int = 3,
        initial_backoff: float = 0.1,
        backoff_multiplier: float = 2.0,
    ) -> None:
        self.store: ExperimentStore = store if store is not None else InMemoryExperimentStore()
        self._duplicate_runs = duplicate_runs
        self._max_failure_rate = max_target_failure_rate
        self._max_attempts = max_attempts
        self._initial_backoff = initial_backoff
        self._backoff_multiplier = backoff_multiplier
        self._experiment: Optional[Experiment] = None
        self._reserved: Set[str] = set()

    @classmethod
    def from_config(
        cls, config: EvaluationConfig, store: Optional[ExperimentStore] = None
    ) -> "ExperimentRecorder":
        return cls(
            store,
            duplicate_runs=config.duplicate_runs,
            max_target_failure_rate=config.max_target_failure_rate,
            max_attempts=config.recorder_max_attempts,
            initial_backoff=config.recorder_initial_backoff,
            backoff_multiplier=config.recorder_backoff_multiplier,
        )

    @classmethod
    def resume(
        cls,
        experiment: Experiment,
        store: Optional[ExperimentStore] = None,
        config: Optional[EvaluationConfig] = None,
    ) -> "ExperimentRecorder":
        """Re-open an already started experiment, e.g. to attach feedback."""
        if experiment.status is ExperimentStatus.PENDING:
            raise ExperimentStateError(f"Experiment {experiment.name!r} was never started")
        recorder = cls.from_config(config or EvaluationConfig(), store)
        recorder._experiment = experiment
        return recorder

    @property
    def experiment(self) -> Experiment:
        if self._experiment is None:
            raise ExperimentStateError("Experiment has not been started")
        return self._experiment

    @property
    def failure_rate(self) -> float:
        runs = self.experiment.runs
        if not runs:
            return 0.0
        return len([run for run in runs if not run.succeeded]) / len(runs)

    async def start(
        self,
        name: str,
        dataset_version: Optional[str] = None,
        *,
        dataset_name: Optional[str] = None,
        examples: Iterable[Example] = (),
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Experiment:
        """Create the experiment in the store and move it to RUNNING.

        Raises:
            ExperimentStateError: This recorder already started an experiment.
            RecorderError: The store could not create the experiment.
        """
        if self._experiment is not None:
            raise ExperimentStateError(
                f"Recorder already holds experiment {self._experiment.name!r}"
            )
        experiment = Experiment(
            name=name,
            dataset_version=dataset_version,
            dataset_name=dataset_name,
            metadata=dict(metadata or {}),
            examples={example.id: example for example in examples},
        )
        experiment.status = ExperimentStatus.RUNNING
        await self._persist(
            f"create experiment {name!r}", self.store.create_experiment, experiment
        )
        self._experiment = experiment
        logger.info(
            "Experiment %r started (id=%s dataset=%s version=%s examples=%d)",
            name,
            experiment.id,
            dataset_name,
            dataset_version,
            len(experiment.examples),
        )
        return experiment

    async def record_run(self, run: Run, feedback: Sequence[Feedback] = ()) -> None:
        """Persist one run together with its per-run feedback.

        Raises:
            ExperimentStateError: The experiment is not RUNNING.
            DuplicateRunError: A run for this example exists and the policy
                is "reject".
            ValueError: The run's example is not in the pinned dataset, or
                feedback does not reference this run.
            RecorderError: The store write failed after all retries.
        """
        experiment = self._require(ExperimentStatus.RUNNING, "record a run")
        if experiment.examples and run.example_id not in experiment.examples:
            raise ValueError(
                f"Run references example {run.example_id} outside dataset "
                f"{experiment.dataset_name!r} @ {experiment.dataset_version!r}"
            )
        for item in feedback:
            if item.run_id != run.id:
                raise ValueError(f"Feedback {item.key!r} does not reference run {run.id}")

        exists = run.example_id in self._reserved or experiment.run_for(run.example_id)
        if exists:
            if self._duplicate_runs == "reject":
                raise DuplicateRunError(run.example_id)
            logger.warning("Overwriting run for example %s", run.example_id)

        self._reserved.add(run.example_id)
        try:
            await self._persist(
                f"record run for example {run.example_id}",
                self.store.append_run_feedback,
                experiment.id,
                run,
                list(feedback),
            )
        except RecorderError:
            if experiment.run_for(run.example_id) is None:
                self._reserved.discard(run.example_id)
            raise
        experiment._put_run(run)
        for item in feedback:
            experiment._append_feedback(item)

    async def record_summary(self, feedback: Sequence[Feedback]) -> None:
        """Persist experiment-level feedback from summary evaluators."""
        experiment = self._require(ExperimentStatus.RUNNING, "record summary feedback")
        for item in feedback:
            if item.experiment_id != experiment.id:
                raise ValueError(
                    f"Summary feedback {item.key!r} does not reference experiment {experiment.id}"
                )
        if not feedback:
            return
        await self._persist(
            "record summary feedback",
            self.store.append_summary_feedback,
            experiment.id,
            list(feedback),
        )
        for item in feedback:
            experiment._append_feedback(item)

    async def attach_feedback(self, feedback: Sequence[Feedback]) -> None:
        """Append new feedback to recorded runs or to the experiment.

        Works on RUNNING and terminal experiments alike. Runs, status and
        existing feedback are left untouched.
        """
        experiment = self.experiment
        by_run: Dict[str, List[Feedback]] = defaultdict(list)
        summary: List[Feedback] = []
        for item in feedback:
            if item.experiment_id is not None:
                if item.experiment_id != experiment.id:
                    raise ValueError(f"Feedback {item.key!r} targets another experiment")
                summary.append(item)
            elif item.run_id is not None and experiment.get_run(item.run_id) is not None:
                by_run[item.run_id].append(item)
            else:
                raise ValueError(f"Feedback {item.key!r} references no recorded run")

        for run_id, items in by_run.items():
            run = experiment.get_run(run_id)
            await self._persist(
                f"attach feedback to run {run_id}",
                self.store.append_run_feedback,
                experiment.id,
                run,
                items,
            )
            for item in items:
                experiment._append_feedback(item)
        if summary:
            await self._persist(
                "attach summary feedback",
                self.store.append_summary_feedback,
                experiment.id,
                summary,
            )
            for item in summary:
                experiment._append_feedback(item)

    async def finish(self, *, fatal: Optional[BaseException] = None) -> ExperimentStatus:
        """Close the experiment as COMPLETED or FAILED.

        The experiment fails when ``fatal`` is given (a source or
        persistence error) or when the failed-run fraction exceeds
        ``max_target_failure_rate``.
        """
        experiment = self._require(ExperimentStatus.RUNNING, "finish")
        error: Optional[str] = None
        if fatal is not None:
            error = f"{type(fatal).__name__}: {fatal}"
        elif self._max_failure_rate is not None and self.failure_rate > self._max_failure_rate:
            error = (
                f"Target failure rate {self.failure_rate:.2%} exceeds "
                f"{self._max_failure_rate:.2%}"
            )
        status = ExperimentStatus.FAILED if error else ExperimentStatus.COMPLETED

        experiment.status = status
        experiment.error = error
        experiment.ended_at = datetime.now(timezone.utc)
        logger.info(
            "Experiment %r finished: %s (%d runs, %d failed)%s",
            experiment.name,
            status.value,
            len(experiment.runs),
            len(experiment.failed_runs),
            f" - {error}" if error else "",
        )
        await self._persist(
            f"close experiment {experiment.name!r}",
            self.store.close_experiment,
            experiment.id,
            status,
            error,
        )
        return status

    def _require(self, status: ExperimentStatus, action: str) -> Experiment:
        experiment = self.experiment
        if experiment.status is not status:
            raise ExperimentStateError(
                f"Cannot {action}: experiment {experiment.name!r} is {experiment.status.value}"
            )
        return experiment

    async def _persist(
        self, operation: str, write: Callable[..., Awaitable[None]], *args: Any
    ) -> None:
        """Run a store write with bounded exponential backoff."""
        backoff = self._initial_backoff
        for attempt in range(1, self._max_attempts + 1):
            try:
                await write(*args)
                return
            except Exception as exc:
                if attempt == self._max_attempts:
                    logger.error("Failed to %s after %d attempts: %r", operation, attempt, exc)
                    raise RecorderError(
                        f"Failed to {operation} after {attempt} attempts: {exc}"
                    ) from exc
                logger.warning(
                    "Failed to %s (attempt %d/%d), retrying in %.2fs: %r",
                    operation,
                    attempt,
                    self._max_attempts,
                    backoff,
                    exc,
                )
            await asyncio.sleep(backoff)
            backoff *= self._backoff_multiplier
