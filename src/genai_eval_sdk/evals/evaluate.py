"""Evaluation orchestrator.

Runs a target function across a dataset, scores each output with
evaluators, records everything as an experiment, and finally applies
summary evaluators over the full set. The whole flow is traced with OTEL
spans and every feedback record can be emitted as a span of its own.

Span tree::

    evaluate                      (experiment span)
      eval_summary.<key>          (one per summary evaluator)
    eval_item                     (new trace per example, linked to evaluate)
      eval_task                   (target call)
      eval_score.<key>            (one per evaluator)
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import (
    Any,
    Callable,
    Coroutine,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    TypeVar,
    Union,
)

from opentelemetry import trace
from opentelemetry.context import Context

from genai_eval_sdk import feedback as feedback_spans
from genai_eval_sdk.config import EvaluationConfig
from genai_eval_sdk.errors import RecorderError, SourceError
from genai_eval_sdk.evals.concurrency import ConcurrencyController
from genai_eval_sdk.evals.invoker import TargetInvoker
from genai_eval_sdk.evals.protocol import Evaluator, SummaryEvaluator
from genai_eval_sdk.evals.recorder import ExperimentRecorder
from genai_eval_sdk.evals.results import ExperimentResults
from genai_eval_sdk.evals.runner import EvaluatorRunner
from genai_eval_sdk.evals.source import DatasetClient, ExampleSource, Version
from genai_eval_sdk.evals.store import ExperimentStore
from genai_eval_sdk.evals.summary import SummaryAggregator
from genai_eval_sdk.schemas import (
    Example,
    Experiment,
    ExperimentStatus,
    Feedback,
    Run,
    is_numeric_score,
)
from genai_eval_sdk.tracing import Tracing

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MAX_ATTRIBUTE_CHARS = 1000

Data = Union[
    ExampleSource,
    str,
    Iterable[Union[Example, Mapping[str, Any]]],
    Callable[[], Iterable[Union[Example, Mapping[str, Any]]]],
]
EvaluatorLike = Union[Evaluator, Callable[..., Any]]
SummaryEvaluatorLike = Union[SummaryEvaluator, Callable[..., Any]]


def evaluate(
    target: Callable[..., Any],
    data: Data,
    evaluators: Sequence[EvaluatorLike] = (),
    summary_evaluators: Sequence[SummaryEvaluatorLike] = (),
    *,
    experiment_name: Optional[str] = None,
    experiment_prefix: Optional[str] = None,
    client: Optional[DatasetClient] = None,
    version: Version = None,
    config: Optional[EvaluationConfig] = None,
    store: Optional[ExperimentStore] = None,
    tracer_provider: Optional[trace.TracerProvider] = None,
    controller: Optional[ConcurrencyController] = None,
    emit_feedback: bool = True,
    metadata: Optional[Dict[str, Any]] = None,
) -> ExperimentResults:
    """Run an evaluation: dataset -> target -> evaluators -> experiment.

    Blocking wrapper around aevaluate(); must not be called from inside a
    running event loop.

    Args:
        target: Function under test, ``(inputs: dict) -> outputs``. Can be
            sync or async. Non-dict outputs are wrapped as ``{"output": v}``.
        data: Examples, dicts, a callable returning them, an ExampleSource,
            or a dataset name (requires ``client``).
        evaluators: Per-run evaluators. Bare callables are called as
            ``fn(inputs=, outputs=, reference_outputs=)``.
        summary_evaluators: Experiment-level evaluators. Bare callables
            are called as ``fn(runs, examples)``.
        experiment_name: Exact experiment name.
        experiment_prefix: Prefix for a generated name when
            ``experiment_name`` is not given.
        client: Dataset client used when ``data`` is a dataset name.
        version: Dataset version tag or timestamp; None means latest.
        config: Orchestrator options. Defaults to EvaluationConfig.from_env().
        store: Experiment store. Defaults to an in-memory store.
        tracer_provider: Provider for evaluation spans. Defaults to global.
        controller: Pre-built controller, e.g. to ``cancel()`` from outside.
        emit_feedback: Emit each Feedback as a ``feedback.<key>`` span.
        metadata: Attached to the experiment.

    Returns:
        ExperimentResults over the finished experiment. Target, evaluator
        and summary failures are recorded in it rather than raised.

    Raises:
        SourceError: The dataset could not be loaded. The experiment is
            recorded as FAILED and no example is run.
        RecorderError: Writes to the store failed after all retries.

    Example:
        from genai_eval_sdk import evaluate

        def correct(inputs, outputs, reference_outputs):
            return outputs["label"] == reference_outputs["label"]

        results = evaluate(
            lambda inputs: {"label": classify(inputs["text"])},
            data=[{"inputs": {"text": "..."}, "outputs": {"label": "Toxic"}}],
            evaluators=[correct],
            config=EvaluationConfig(max_concurrency=4),
        )
        print(results)
        # Experiment: experiment-1a2b3c4d [completed] (1 examples, 1 runs, 0 errors)
        #   correct: 1.000
    """
    return _run_sync(
        aevaluate(
            target,
            data,
            evaluators,
            summary_evaluators,
            experiment_name=experiment_name,
            experiment_prefix=experiment_prefix,
            client=client,
            version=version,
            config=config,
            store=store,
            tracer_provider=tracer_provider,
            controller=controller,
            emit_feedback=emit_feedback,
            metadata=metadata,
        )
    )


async def aevaluate(
    target: Callable[..., Any],
    data: Data,
    evaluators: Sequence[EvaluatorLike] = (),
    summary_evaluators: Sequence[SummaryEvaluatorLike] = (),
    *,
    experiment_name: Optional[str] = None,
    experiment_prefix: Optional[str] = None,
    client: Optional[DatasetClient] = None,
    version: Version = None,
    config: Optional[EvaluationConfig] = None,
    store: Optional[ExperimentStore] = None,
    tracer_provider: Optional[trace.TracerProvider] = None,
    controller: Optional[ConcurrencyController] = None,
    emit_feedback: bool = True,
    metadata: Optional[Dict[str, Any]] = None,
) -> ExperimentResults:
    """Async version of evaluate(). Same arguments and behaviour."""
    config = config or EvaluationConfig.from_env()
    tracing = Tracing(config.tracing_enabled, config.background_flush, tracer_provider)
    name = experiment_name or _generate_name(experiment_prefix)

    invoker = TargetInvoker(target, tracing)
    runner = EvaluatorRunner(evaluators, tracing)
    aggregator = SummaryAggregator(summary_evaluators, tracing)
    recorder = ExperimentRecorder.from_config(config, store)
    if controller is None:
        controller = ConcurrencyController(
            config.max_concurrency,
            timeout=config.timeout,
            abandon_on_cancel=config.abandon_on_cancel,
        )
    if controller.max_concurrency is None:
        logger.warning(
            "Running experiment %r with unbounded concurrency; set max_concurrency "
            "to avoid overwhelming rate-limited targets",
            name,
        )

    emit = emit_feedback and tracing.enabled
    recorder_failures: List[RecorderError] = []

    with tracing.tracer.start_as_current_span(
        "evaluate",
        attributes={
            "eval.name": name,
            "eval.evaluator_count": len(runner.evaluators),
            "eval.summary_evaluator_count": len(aggregator.summary_evaluators),
        },
    ) as eval_span:
        try:
            source = _resolve_source(data, client, version)
            examples = source.load()
        except SourceError as exc:
            logger.error("Experiment %r aborted: %s", name, exc)
            eval_span.set_status(trace.StatusCode.ERROR, str(exc))
            eval_span.record_exception(exc)
            await recorder.start(
                name,
                _version_label(version),
                dataset_name=data if isinstance(data, str) else None,
                metadata=metadata,
            )
            await recorder.finish(fatal=exc)
            raise

        experiment = await recorder.start(
            name,
            source.version,
            dataset_name=source.dataset_name,
            examples=examples,
            metadata=metadata,
        )
        eval_span.set_attribute("eval.experiment_id", experiment.id)
        eval_span.set_attribute("eval.dataset_size", len(examples))
        links = _links_to(eval_span)

        async def process(index: int, example: Example) -> Optional[Run]:
            # Each example gets its own trace, linked back to the experiment span.
            with tracing.tracer.start_as_current_span(
                "eval_item",
                context=Context(),
                links=links,
                attributes={
                    "eval.name": name,
                    "eval.item.index": index,
                    "eval.example_id": example.id,
                    "eval.item.input": str(dict(example.inputs))[:_MAX_ATTRIBUTE_CHARS],
                },
            ) as item_span:
                run = await invoker.invoke(example)
                feedback = await runner.evaluate_run(run, example)
                if not run.succeeded:
                    item_span.set_status(trace.StatusCode.ERROR, run.error)
                try:
                    await recorder.record_run(run, feedback)
                except RecorderError as exc:
                    item_span.set_status(trace.StatusCode.ERROR, str(exc))
                    item_span.record_exception(exc)
                    recorder_failures.append(exc)
                    return None
                if emit:
                    for item in feedback:
                        feedback_spans.emit(
                            item,
                            trace_id=run.trace_id,
                            metadata={"experiment": name, "item_index": index},
                            tracer_provider=tracer_provider,
                        )
                return run

        try:
            outcome = await controller.dispatch(examples, process)

            # Every dispatched pipeline is terminal here.
            pairs = [
                (experiment.run_for(example.id), example)
                for example in examples
                if experiment.run_for(example.id) is not None
            ]
            summary = await aggregator.aggregate(pairs, experiment.id)
            try:
                await recorder.record_summary(summary)
            except RecorderError as exc:
                recorder_failures.append(exc)
            else:
                if emit:
                    for item in summary:
                        feedback_spans.emit(
                            item,
                            source="summary",
                            metadata={"experiment": name},
                            tracer_provider=tracer_provider,
                        )

            fatal = recorder_failures[0] if recorder_failures else None
            await recorder.finish(fatal=fatal)
        except Exception as exc:
            logger.error("Experiment %r aborted: %s", name, exc)
            eval_span.set_status(trace.StatusCode.ERROR, str(exc))
            eval_span.record_exception(exc)
            # The experiment is never left RUNNING.
            if recorder.experiment.status is ExperimentStatus.RUNNING:
                await recorder.finish(fatal=exc)
            raise

        results = ExperimentResults(
            recorder,
            pending=tracing.pending(),
            cancelled=outcome.cancelled,
            skipped_example_ids=[examples[i].id for i in outcome.skipped],
        )
        _annotate(eval_span, results)

    if fatal is not None:
        raise RecorderError(
            f"Experiment {name!r} lost {len(recorder_failures)} write(s); first: {fatal}"
        ) from fatal
    return results


def evaluate_existing(
    experiment: Union[ExperimentResults, Experiment, str],
    evaluators: Sequence[EvaluatorLike] = (),
    summary_evaluators: Sequence[SummaryEvaluatorLike] = (),
    *,
    store: Optional[ExperimentStore] = None,
    config: Optional[EvaluationConfig] = None,
    tracer_provider: Optional[trace.TracerProvider] = None,
    emit_feedback: bool = True,
) -> ExperimentResults:
    """Score an already recorded experiment with more evaluators.

    Runs are not re-executed and never modified; only new Feedback is
    appended, to the same runs and experiment.

    Args:
        experiment: ExperimentResults from evaluate(), an Experiment, or
            an experiment id looked up with ``store.get_experiment``.
        evaluators: Per-run evaluators applied to every successful run.
        summary_evaluators: Applied once over all recorded runs.
        store: Store holding the experiment. Required for an Experiment or
            an id; ignored for ExperimentResults.

    Example:
        results = evaluate(target, data, evaluators=[correct])
        evaluate_existing(results, evaluators=[concise])
    """
    return _run_sync(
        aevaluate_existing(
            experiment,
            evaluators,
            summary_evaluators,
            store=store,
            config=config,
            tracer_provider=tracer_provider,
            emit_feedback=emit_feedback,
        )
    )


async def aevaluate_existing(
    experiment: Union[ExperimentResults, Experiment, str],
    evaluators: Sequence[EvaluatorLike] = (),
    summary_evaluators: Sequence[SummaryEvaluatorLike] = (),
    *,
    store: Optional[ExperimentStore] = None,
    config: Optional[EvaluationConfig] = None,
    tracer_provider: Optional[trace.TracerProvider] = None,
    emit_feedback: bool = True,
) -> ExperimentResults:
    """Async version of evaluate_existing()."""
    config = config or EvaluationConfig.from_env()
    tracing = Tracing(config.tracing_enabled, config.background_flush, tracer_provider)
    recorder = _resolve_recorder(experiment, store, config)
    recorded = recorder.experiment

    runner = EvaluatorRunner(evaluators, tracing)
    aggregator = SummaryAggregator(summary_evaluators, tracing)
    controller = ConcurrencyController(config.max_concurrency)

    pairs = [
        (run, recorded.examples[run.example_id])
        for run in recorded.runs
        if run.example_id in recorded.examples
    ]

    with tracing.tracer.start_as_current_span(
        "evaluate_existing",
        attributes={
            "eval.name": recorded.name,
            "eval.experiment_id": recorded.id,
            "eval.run_count": len(pairs),
        },
    ):

        async def score(index: int, pair: tuple) -> List[Feedback]:
            run, example = pair
            return await runner.evaluate_run(run, example)

        outcome = await controller.dispatch(pairs, score)
        per_run = [item for batch in outcome.ordered() for item in batch]
        summary = await aggregator.aggregate(pairs, recorded.id)
        await recorder.attach_feedback(per_run + summary)

    if emit_feedback and tracing.enabled:
        for item in per_run:
            run = recorded.get_run(item.run_id)
            feedback_spans.emit(
                item,
                trace_id=run.trace_id if run else None,
                metadata={"experiment": recorded.name},
                tracer_provider=tracer_provider,
            )
        for item in summary:
            feedback_spans.emit(
                item,
                source="summary",
                metadata={"experiment": recorded.name},
                tracer_provider=tracer_provider,
            )

    logger.info(
        "Attached %d feedback records to experiment %r",
        len(per_run) + len(summary),
        recorded.name,
    )
    return ExperimentResults(recorder, pending=tracing.pending())


def _run_sync(coro: Coroutine[Any, Any, T]) -> T:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    coro.close()
    raise RuntimeError(
        "evaluate() cannot run inside an event loop; await aevaluate() instead"
    )


def _generate_name(prefix: Optional[str]) -> str:
    return f"{prefix or 'experiment'}-{uuid.uuid4().hex[:8]}"


def _version_label(version: Version) -> Optional[str]:
    if version is None or isinstance(version, str):
        return version
    return version.isoformat()


def _resolve_source(
    data: Data,
    client: Optional[DatasetClient],
    version: Version,
) -> ExampleSource:
    if isinstance(data, ExampleSource):
        return data
    if isinstance(data, str):
        if client is None:
            raise TypeError(f"A DatasetClient is required to load dataset {data!r}")
        return ExampleSource.from_dataset(client, data, version)
    return ExampleSource.from_examples(data, version=_version_label(version))


def _resolve_recorder(
    experiment: Union[ExperimentResults, Experiment, str],
    store: Optional[ExperimentStore],
    config: EvaluationConfig,
) -> ExperimentRecorder:
    if isinstance(experiment, ExperimentResults):
        return experiment.recorder
    if isinstance(experiment, Experiment):
        if store is None:
            raise TypeError("An Experiment requires the store that holds it")
        return ExperimentRecorder.resume(experiment, store, config)
    if isinstance(experiment, str):
        get_experiment = getattr(store, "get_experiment", None)
        if get_experiment is None:
            raise TypeError("Looking up an experiment by id requires a store with get_experiment()")
        return ExperimentRecorder.resume(get_experiment(experiment), store, config)
    raise TypeError(f"Cannot evaluate {type(experiment).__name__}; expected an experiment")


def _links_to(span: trace.Span) -> List[trace.Link]:
    context = span.get_span_context()
    if not context.is_valid:
        return []
    return [trace.Link(context)]


def _annotate(span: trace.Span, results: ExperimentResults) -> None:
    span.set_attribute("eval.status", results.status.value)
    span.set_attribute("eval.errors", results.errors)
    span.set_attribute("eval.cancelled", results.cancelled)
    for key, avg in results.averages.items():
        span.set_attribute(f"eval.avg.{key}", avg)
    for item in results.summary_feedback:
        if is_numeric_score(item.score):
            span.set_attribute(f"eval.summary.{item.key}", item.score)
