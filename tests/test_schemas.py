"""Tests for genai_eval_sdk.schemas.

Covers the record types and the Experiment accessors: dataset ordering
of runs, feedback routing, and overwrite semantics.
"""

import pytest

from genai_eval_sdk.schemas import Example, Experiment, ExperimentStatus, Feedback, Run


def _experiment(*ids):
    return Experiment(
        name="exp",
        examples={i: Example(id=i, inputs={"q": i}) for i in ids},
    )


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


class TestRecords:
    def test_run_succeeded(self):
        assert Run(example_id="e1", inputs={}, outputs={"a": 1}).succeeded
        assert not Run(example_id="e1", inputs={}, error="boom").succeeded

    def test_runs_get_unique_ids(self):
        a = Run(example_id="e1", inputs={})
        b = Run(example_id="e1", inputs={})
        assert a.id != b.id

    def test_feedback_cannot_target_run_and_experiment(self):
        with pytest.raises(ValueError, match="both"):
            Feedback(key="k", run_id="r", experiment_id="x")

    def test_records_are_immutable(self):
        fb = Feedback(key="k", score=1.0)
        with pytest.raises(AttributeError):
            fb.score = 0.0  # type: ignore[misc]

    def test_status_terminal(self):
        assert ExperimentStatus.COMPLETED.terminal
        assert ExperimentStatus.FAILED.terminal
        assert not ExperimentStatus.RUNNING.terminal
        assert not ExperimentStatus.PENDING.terminal


# ---------------------------------------------------------------------------
# Experiment accessors
# ---------------------------------------------------------------------------


class TestExperiment:
    def test_runs_follow_dataset_order(self):
        exp = _experiment("a", "b", "c")
        for eid in ("c", "a", "b"):
            exp._put_run(Run(example_id=eid, inputs={}))
        assert [run.example_id for run in exp.runs] == ["a", "b", "c"]

    def test_feedback_routed_by_target(self):
        exp = _experiment("a")
        run = Run(example_id="a", inputs={}, outputs={})
        exp._put_run(run)
        exp._append_feedback(Feedback(key="k", score=1.0, run_id=run.id))
        exp._append_feedback(Feedback(key="s", score=0.5, experiment_id=exp.id))

        assert [fb.key for fb in exp.feedback_for(run.id)] == ["k"]
        assert [fb.key for fb in exp.summary_feedback] == ["s"]
        assert [fb.key for fb in exp.feedback] == ["k"]

    def test_overwrite_drops_previous_feedback(self):
        exp = _experiment("a")
        first = Run(example_id="a", inputs={}, outputs={})
        exp._put_run(first)
        exp._append_feedback(Feedback(key="k", run_id=first.id))

        second = Run(example_id="a", inputs={}, outputs={})
        exp._put_run(second)

        assert exp.run_for("a") is second
        assert exp.feedback_for(first.id) == []
        assert len(exp.runs) == 1

    def test_get_run_and_failed_runs(self):
        exp = _experiment("a", "b")
        ok = Run(example_id="a", inputs={}, outputs={})
        bad = Run(example_id="b", inputs={}, error="ValueError()")
        exp._put_run(ok)
        exp._put_run(bad)

        assert exp.get_run(ok.id) is ok
        assert exp.get_run("missing") is None
        assert exp.failed_runs == [bad]
