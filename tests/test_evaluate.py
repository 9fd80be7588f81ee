"""Tests for genai_eval_sdk.evals.evaluate.

Covers the evaluate() orchestrator end to end: results in dataset order,
target and evaluator failures, summary evaluators, span tree
verification, feedback emission, cancellation, persistence failures,
dataset versions, and evaluate_existing().
"""

import asyncio

import pytest
from opentelemetry.trace import StatusCode

from genai_eval_sdk.config import EvaluationConfig
from genai_eval_sdk.decorators import traceable
from genai_eval_sdk.errors import NotFoundError, RecorderError, SourceError
from genai_eval_sdk.evals.concurrency import ConcurrencyController
from genai_eval_sdk.evals.evaluate import (
    aevaluate,
    aevaluate_existing,
    evaluate,
    evaluate_existing,
)
from genai_eval_sdk.evals.protocol import Evaluator, EvaluatorKind
from genai_eval_sdk.evals.results import ExperimentResults
from genai_eval_sdk.evals.source import InMemoryDatasetClient
from genai_eval_sdk.evals.store import InMemoryExperimentStore
from genai_eval_sdk.schemas import ExperimentStatus


# ---------------------------------------------------------------------------
# Helpers: dataset, targets, and evaluators
# ---------------------------------------------------------------------------

DATASET = [
    {"id": "ex-1", "inputs": {"text": "Shut up, idiot"}, "outputs": {"label": "Toxic"}},
    {"id": "ex-2", "inputs": {"text": "You're a wonderful person"}, "outputs": {"label": "Not toxic"}},
    {"id": "ex-3", "inputs": {"text": "This is the worst thing ever"}, "outputs": {"label": "Toxic"}},
    {"id": "ex-4", "inputs": {"text": "I had a great day today"}, "outputs": {"label": "Not toxic"}},
    {"id": "ex-5", "inputs": {"text": "Nobody likes you"}, "outputs": {"label": "Toxic"}},
    {
        "id": "ex-6",
        "inputs": {"text": "This is unacceptable. I want to speak to the manager."},
        "outputs": {"label": "Not toxic"},
    },
]
IDS = [item["id"] for item in DATASET]

_TOXIC_WORDS = ("idiot", "worst", "nobody", "unacceptable")


def classify(inputs):
    """Keyword classifier: wrong on ex-6 only."""
    text = inputs["text"].lower()
    return {"label": "Toxic" if any(w in text for w in _TOXIC_WORDS) else "Not toxic"}


def correct(inputs, outputs, reference_outputs):
    return outputs["label"] == reference_outputs["label"]


def concise(inputs, outputs):
    return len(outputs["label"]) < 10


def precision(runs, examples):
    predicted = [(r, e) for r, e in zip(runs, examples) if r.succeeded and r.outputs["label"] == "Toxic"]
    if not predicted:
        return {"score": 0.0}
    hits = [1 for r, e in predicted if e.reference_outputs["label"] == "Toxic"]
    return {"score": len(hits) / len(predicted)}


def exploding(inputs, outputs, reference_outputs):
    raise RuntimeError("evaluator exploded")


class BrokenRunStore(InMemoryExperimentStore):
    """Always fails to persist the run for one example."""

    def __init__(self, example_id):
        super().__init__()
        self.example_id = example_id

    async def append_run_feedback(self, experiment_id, run, feedback):
        if run.example_id == self.example_id:
            raise ConnectionError("store rejected write")
        await super().append_run_feedback(experiment_id, run, feedback)


def _spans(exporter, name):
    return [span for span in exporter.get_finished_spans() if span.name == name]


# ---------------------------------------------------------------------------
# Basic evaluate() tests
# ---------------------------------------------------------------------------


class TestEvaluateBasic:
    def test_toxicity_experiment(self, store, config):
        results = evaluate(
            classify,
            DATASET,
            evaluators=[correct],
            summary_evaluators=[precision],
            experiment_name="toxicity-baseline",
            store=store,
            config=config,
        )

        assert isinstance(results, ExperimentResults)
        assert results.experiment_name == "toxicity-baseline"
        assert results.status is ExperimentStatus.COMPLETED
        assert results.total == 6
        assert len(results) == 6
        assert results.errors == 0
        assert [row.example.id for row in results] == IDS
        assert results.averages["correct"] == pytest.approx(5 / 6)

        [summary] = results.summary_feedback
        assert summary.key == "precision"
        assert summary.score == pytest.approx(0.75)
        assert summary.experiment_id == results.experiment.id

        stored = store.get_experiment(results.experiment.id)
        assert stored.status is ExperimentStatus.COMPLETED
        assert [run.example_id for run in stored.runs] == IDS

    def test_row_feedback(self, config):
        results = evaluate(classify, DATASET, evaluators=[correct], config=config)

        last = results.rows[-1]
        assert last.run.outputs == {"label": "Toxic"}
        [fb] = last.feedback
        assert fb.key == "correct"
        assert fb.score is False
        assert fb.run_id == last.run.id

    def test_generated_name_uses_prefix(self, config):
        results = evaluate(classify, DATASET[:1], experiment_prefix="tox", config=config)
        assert results.experiment_name.startswith("tox-")

    def test_non_dict_outputs_wrapped(self, config):
        results = evaluate(lambda inputs: inputs["text"].upper(), DATASET[:1], config=config)
        assert results.rows[0].run.outputs == {"output": "SHUT UP, IDIOT"}

    def test_input_expected_shorthand(self, config):
        def exact(input, output, expected):
            return 1.0 if output == expected else 0.0

        results = evaluate(
            lambda inputs: inputs["input"].upper(),
            [{"input": "a", "expected": "A"}, {"input": "b", "expected": "x"}],
            evaluators=[Evaluator(exact, EvaluatorKind.SCORER)],
            config=config,
        )
        assert results.averages["exact"] == 0.5

    def test_str_summary(self, config):
        results = evaluate(
            classify,
            DATASET,
            evaluators=[correct],
            summary_evaluators=[precision],
            experiment_name="tox",
            config=config,
        )
        text = str(results)
        assert "tox" in text
        assert "6 examples" in text
        assert "correct" in text
        assert "[summary] precision" in text

    def test_metadata_attached(self, config):
        results = evaluate(classify, DATASET[:1], metadata={"model": "kw-v1"}, config=config)
        assert results.experiment.metadata == {"model": "kw-v1"}


# ---------------------------------------------------------------------------
# Concurrency and ordering
# ---------------------------------------------------------------------------


class TestConcurrency:
    def test_order_independent_of_completion(self, config):
        async def slow_first(inputs):
            # Earlier examples finish later.
            index = [item["inputs"]["text"] for item in DATASET].index(inputs["text"])
            await asyncio.sleep(0.01 * (6 - index))
            return classify(inputs)

        controller = ConcurrencyController(3)
        results = evaluate(slow_first, DATASET, evaluators=[correct], config=config, controller=controller)

        assert [row.example.id for row in results] == IDS
        assert controller.peak_in_flight == 3

    def test_bound_from_config(self):
        running = 0
        peak = 0

        async def target(inputs):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1
            return classify(inputs)

        evaluate(target, DATASET, config=EvaluationConfig(max_concurrency=2))
        assert peak == 2

    def test_unbounded_logs_warning(self, caplog):
        with caplog.at_level("WARNING", logger="genai_eval_sdk.evals.evaluate"):
            evaluate(classify, DATASET[:1], config=EvaluationConfig())
        assert "unbounded concurrency" in caplog.text

    def test_cancellation_keeps_partial_results(self, config):
        controller = ConcurrencyController(1)

        async def target(inputs):
            controller.cancel()
            return classify(inputs)

        def run_count(runs, examples):
            return len(runs)

        results = evaluate(
            target,
            DATASET,
            evaluators=[correct],
            summary_evaluators=[run_count],
            config=config,
            controller=controller,
        )

        assert results.cancelled
        assert len(results) == 1
        assert results.skipped_example_ids == IDS[1:]
        assert results.status is ExperimentStatus.COMPLETED
        assert results.summary_feedback[0].score == 1.0

    def test_timeout(self, config):
        async def slow(inputs):
            await asyncio.sleep(0.05)
            return classify(inputs)

        results = evaluate(
            slow,
            DATASET,
            config=EvaluationConfig(max_concurrency=1, timeout=0.08),
        )
        assert results.cancelled
        assert 1 <= len(results) < 6
        assert len(results) + len(results.skipped_example_ids) == 6


# ---------------------------------------------------------------------------
# Error handling
# ---------------------------------------------------------------------------


class TestEvaluateErrors:
    def test_target_failure_recorded(self, config):
        def flaky(inputs):
            if "worst" in inputs["text"]:
                raise ValueError("target failed")
            return classify(inputs)

        results = evaluate(flaky, DATASET, evaluators=[correct], config=config)

        assert results.status is ExperimentStatus.COMPLETED
        assert results.errors == 1
        failed = results.rows[2]
        assert failed.example.id == "ex-3"
        assert "target failed" in failed.run.error
        assert failed.run.outputs is None
        assert failed.feedback == []
        assert all(row.feedback for row in results.rows if row.run.succeeded)

    def test_failure_threshold(self):
        def always_fails(inputs):
            raise ValueError("down")

        results = evaluate(
            always_fails,
            DATASET,
            config=EvaluationConfig(max_concurrency=2, max_target_failure_rate=0.5),
        )
        assert results.status is ExperimentStatus.FAILED
        assert results.errors == 6
        assert "failure rate" in results.experiment.error

    def test_evaluator_failure_isolated(self, config):
        results = evaluate(classify, DATASET, evaluators=[correct, exploding], config=config)

        assert results.status is ExperimentStatus.COMPLETED
        for row in results:
            by_key = {fb.key: fb for fb in row.feedback}
            assert by_key["exploding"].error is True
            assert by_key["exploding"].score is None
            assert "evaluator exploded" in by_key["exploding"].comment
            assert by_key["correct"].score is not None
        assert "exploding" not in results.averages

    def test_summary_failure_recorded(self, config):
        def broken(runs, examples):
            raise ZeroDivisionError("nothing to divide")

        results = evaluate(
            classify, DATASET, summary_evaluators=[broken, precision], config=config
        )
        by_key = {fb.key: fb for fb in results.summary_feedback}
        assert by_key["broken"].error is True
        assert by_key["precision"].score == pytest.approx(0.75)

    def test_malformed_evaluator_result_recorded(self, store, config):
        def malformed(inputs, outputs, reference_outputs):
            return {"results": None}

        results = evaluate(
            classify, DATASET, evaluators=[malformed, correct], store=store, config=config
        )

        assert results.status is ExperimentStatus.COMPLETED
        for row in results:
            by_key = {fb.key: fb for fb in row.feedback}
            assert by_key["malformed"].error is True
            assert by_key["malformed"].score is None
            assert by_key["correct"].score is not None
        stored = store.get_experiment(results.experiment.id)
        assert stored.status is ExperimentStatus.COMPLETED
        assert len(stored.runs) == 6

    def test_non_numeric_score_kept_as_label(self, store, config):
        def graded(inputs, outputs, reference_outputs):
            return {"score": "good"}

        results = evaluate(
            classify, DATASET, evaluators=[graded, correct], store=store, config=config
        )

        assert results.status is ExperimentStatus.COMPLETED
        assert "graded" not in results.averages
        assert results.averages["correct"] == pytest.approx(5 / 6)
        assert "graded" not in str(results)
        for row in results:
            [fb] = [fb for fb in row.feedback if fb.key == "graded"]
            assert fb.score is None
            assert fb.label == "good"
        assert store.get_experiment(results.experiment.id).status is ExperimentStatus.COMPLETED

    def test_malformed_summary_result_recorded(self, store, config):
        def malformed(runs, examples):
            return {"results": 5}

        results = evaluate(
            classify,
            DATASET,
            summary_evaluators=[malformed, precision],
            store=store,
            config=config,
        )

        by_key = {fb.key: fb for fb in results.summary_feedback}
        assert by_key["malformed"].error is True
        assert by_key["precision"].score == pytest.approx(0.75)
        assert "n/a" in str(results)
        assert store.get_experiment(results.experiment.id).status is ExperimentStatus.COMPLETED

    def test_unexpected_failure_closes_experiment(self, store, config):
        class CrashingController(ConcurrencyController):
            async def dispatch(self, items, worker):
                raise RuntimeError("scheduler crashed")

        with pytest.raises(RuntimeError, match="scheduler crashed"):
            evaluate(
                classify,
                DATASET,
                store=store,
                config=config,
                controller=CrashingController(2),
            )

        [experiment] = store.list_experiments()
        assert experiment.status is ExperimentStatus.FAILED
        assert "scheduler crashed" in experiment.error

    def test_source_error_fails_experiment(self, store, config):
        with pytest.raises(SourceError):
            evaluate(classify, [{"oops": 1}], store=store, config=config)

        [experiment] = store.list_experiments()
        assert experiment.status is ExperimentStatus.FAILED
        assert experiment.runs == ()
        assert "SourceError" in experiment.error

    def test_duplicate_example_ids(self, config):
        with pytest.raises(SourceError, match="Duplicate"):
            evaluate(classify, DATASET + DATASET[:1], config=config)

    def test_recorder_failure_raises_after_batch(self, config):
        store = BrokenRunStore("ex-2")
        with pytest.raises(RecorderError) as info:
            evaluate(classify, DATASET, evaluators=[correct], store=store, config=config)

        assert isinstance(info.value.__cause__, RecorderError)
        [experiment] = store.list_experiments()
        assert experiment.status is ExperimentStatus.FAILED
        assert [run.example_id for run in experiment.runs] == ["ex-1", "ex-3", "ex-4", "ex-5", "ex-6"]

    @pytest.mark.asyncio
    async def test_sync_evaluate_inside_loop(self):
        with pytest.raises(RuntimeError, match="aevaluate"):
            evaluate(classify, DATASET)


# ---------------------------------------------------------------------------
# Datasets
# ---------------------------------------------------------------------------


class TestDatasets:
    def test_versioned_dataset(self, config):
        client = InMemoryDatasetClient()
        client.create_version("toxicity", DATASET[:2], tag="v1")
        client.create_version("toxicity", DATASET, tag="v2")

        results = evaluate(classify, "toxicity", client=client, version="v1", config=config)

        assert results.experiment.dataset_name == "toxicity"
        assert results.experiment.dataset_version == "v1"
        assert results.total == 2

    def test_latest_version(self, config):
        client = InMemoryDatasetClient()
        client.create_version("toxicity", DATASET[:2])
        client.create_version("toxicity", DATASET)

        results = evaluate(classify, "toxicity", client=client, config=config)
        assert results.experiment.dataset_version == "v2"
        assert results.total == 6

    def test_unknown_version(self, store, config):
        client = InMemoryDatasetClient()
        client.create_version("toxicity", DATASET)

        with pytest.raises(NotFoundError):
            evaluate(classify, "toxicity", client=client, version="v7", store=store, config=config)

        [experiment] = store.list_experiments()
        assert experiment.status is ExperimentStatus.FAILED
        assert experiment.dataset_name == "toxicity"

    def test_dataset_name_needs_client(self, config):
        with pytest.raises(TypeError):
            evaluate(classify, "toxicity", config=config)


# ---------------------------------------------------------------------------
# Span tree
# ---------------------------------------------------------------------------


class TestSpanTree:
    def test_span_tree(self, exporter, config):
        results = evaluate(
            classify,
            DATASET,
            evaluators=[correct],
            summary_evaluators=[precision],
            experiment_name="span-check",
            config=config,
        )

        [root] = _spans(exporter, "evaluate")
        assert root.attributes["eval.name"] == "span-check"
        assert root.attributes["eval.dataset_size"] == 6
        assert root.attributes["eval.errors"] == 0
        assert root.attributes["eval.status"] == "completed"
        assert root.attributes["eval.avg.correct"] == pytest.approx(5 / 6)

        items = _spans(exporter, "eval_item")
        assert len(items) == 6
        for item in items:
            assert item.parent is None
            assert item.context.trace_id != root.context.trace_id
            [link] = item.links
            assert link.context.span_id == root.context.span_id

        item_by_id = {s.context.span_id: s for s in items}
        for task in _spans(exporter, "eval_task"):
            assert task.parent.span_id in item_by_id
        for score in _spans(exporter, "eval_score.correct"):
            assert score.parent.span_id in item_by_id

        [summary] = _spans(exporter, "eval_summary.precision")
        assert summary.parent.span_id == root.context.span_id

        trace_ids = {format(s.context.trace_id, "032x") for s in items}
        assert {row.run.trace_id for row in results} == trace_ids

    def test_feedback_spans(self, exporter, config):
        results = evaluate(
            classify,
            DATASET,
            evaluators=[correct],
            summary_evaluators=[precision],
            config=config,
        )

        per_run = _spans(exporter, "feedback.correct")
        assert len(per_run) == 6
        by_run = {row.run.id: row.run.trace_id for row in results}
        for span in per_run:
            assert span.attributes["genai_eval.feedback"] is True
            assert span.attributes["feedback.source"] == "evaluator"
            assert span.attributes["feedback.trace_id"] == by_run[span.attributes["feedback.run_id"]]

        [summary] = _spans(exporter, "feedback.precision")
        assert summary.attributes["feedback.source"] == "summary"
        assert summary.attributes["feedback.experiment_id"] == results.experiment.id

    def test_emit_feedback_disabled(self, exporter, config):
        evaluate(classify, DATASET, evaluators=[correct], config=config, emit_feedback=False)
        assert _spans(exporter, "feedback.correct") == []
        assert len(_spans(exporter, "eval_score.correct")) == 6

    def test_tracing_disabled(self, exporter):
        results = evaluate(
            classify,
            DATASET,
            evaluators=[correct],
            config=EvaluationConfig(max_concurrency=2, tracing_enabled=False),
        )
        assert exporter.get_finished_spans() == ()
        assert all(row.run.trace_id is None for row in results)
        assert results.averages["correct"] == pytest.approx(5 / 6)

    def test_traceable_target_nests_under_task(self, exporter, config):
        @traceable(name="classifier", run_type="llm")
        def traced(inputs):
            return classify(inputs)

        results = evaluate(traced, DATASET[:2], config=config)

        tasks = {s.context.span_id: s for s in _spans(exporter, "eval_task")}
        inner = _spans(exporter, "classifier")
        assert len(inner) == 2
        for span in inner:
            assert span.parent.span_id in tasks
        assert {format(s.context.trace_id, "032x") for s in inner} == {
            row.run.trace_id for row in results
        }

    def test_failed_target_span(self, exporter, config):
        def failing(inputs):
            raise ValueError("task failed")

        evaluate(failing, DATASET[:1], config=config)

        [task] = _spans(exporter, "eval_task")
        [item] = _spans(exporter, "eval_item")
        assert task.status.status_code == StatusCode.ERROR
        assert item.status.status_code == StatusCode.ERROR

    def test_blocking_flush_mode(self, exporter):
        results = evaluate(
            classify,
            DATASET,
            config=EvaluationConfig(max_concurrency=2, background_flush=False),
        )
        assert results.pending.drained
        assert len(_spans(exporter, "eval_task")) == 6

    def test_wait_drains(self, config):
        results = evaluate(classify, DATASET[:1], config=config)
        assert results.wait() is True
        assert results.pending.drained


# ---------------------------------------------------------------------------
# Async API
# ---------------------------------------------------------------------------


class TestAsyncApi:
    @pytest.mark.asyncio
    async def test_aevaluate(self, config):
        async def target(inputs):
            await asyncio.sleep(0)
            return classify(inputs)

        results = await aevaluate(target, DATASET, evaluators=[correct], config=config)
        assert results.status is ExperimentStatus.COMPLETED
        assert results.averages["correct"] == pytest.approx(5 / 6)

    @pytest.mark.asyncio
    async def test_aevaluate_existing(self, config):
        results = await aevaluate(classify, DATASET, evaluators=[correct], config=config)
        await aevaluate_existing(
            results, [Evaluator(concise, EvaluatorKind.INPUTS_OUTPUTS)], config=config
        )
        assert "concise" in results.averages


# ---------------------------------------------------------------------------
# evaluate_existing()
# ---------------------------------------------------------------------------


class TestEvaluateExisting:
    def test_adds_feedback_without_rerunning(self, config):
        calls = []

        def target(inputs):
            calls.append(inputs["text"])
            return classify(inputs)

        results = evaluate(target, DATASET, evaluators=[correct], config=config)
        run_ids = [row.run.id for row in results]

        again = evaluate_existing(
            results,
            [Evaluator(concise, EvaluatorKind.INPUTS_OUTPUTS)],
            summary_evaluators=[precision],
            config=config,
        )

        assert len(calls) == 6
        assert [row.run.id for row in again] == run_ids
        assert again.status is ExperimentStatus.COMPLETED
        for row in again:
            assert [fb.key for fb in row.feedback] == ["correct", "concise"]
        assert [fb.key for fb in again.summary_feedback] == ["precision"]

    def test_repeated_calls_leave_runs_untouched(self, config):
        results = evaluate(classify, DATASET, evaluators=[correct], config=config)
        before = list(results.experiment.runs)

        evaluate_existing(results, [correct], config=config)
        evaluate_existing(results, [correct], config=config)

        assert list(results.experiment.runs) == before
        for row in results:
            assert [fb.key for fb in row.feedback] == ["correct"] * 3

    def test_by_id(self, store, config):
        results = evaluate(classify, DATASET, store=store, config=config)

        evaluate_existing(results.experiment.id, [correct], store=store, config=config)

        stored = store.get_experiment(results.experiment.id)
        assert len(stored.feedback) == 6
        assert all(fb.key == "correct" for fb in stored.feedback)

    def test_experiment_with_its_store(self, store, config):
        results = evaluate(classify, DATASET, store=store, config=config)
        recorded = store.get_experiment(results.experiment.id)

        again = evaluate_existing(recorded, [correct], store=store, config=config)

        assert again.status is ExperimentStatus.COMPLETED
        stored = store.get_experiment(results.experiment.id)
        assert stored.status is ExperimentStatus.COMPLETED
        assert [fb.key for fb in stored.feedback] == ["correct"] * 6

    def test_experiment_requires_store(self, config):
        results = evaluate(classify, DATASET, config=config)

        with pytest.raises(TypeError, match="store that holds it"):
            evaluate_existing(results.experiment, [correct], config=config)
        assert results.experiment.feedback == []

    def test_failed_runs_not_scored(self, config):
        def flaky(inputs):
            if "idiot" in inputs["text"]:
                raise ValueError("nope")
            return classify(inputs)

        results = evaluate(flaky, DATASET, config=config)
        evaluate_existing(results, [correct], config=config)

        assert results.rows[0].feedback == []
        assert all(row.feedback for row in results.rows[1:])

    def test_by_id_requires_store(self, config):
        with pytest.raises(TypeError):
            evaluate_existing("some-id", [correct], config=config)
