"""Evaluator registration and result normalisation.

An evaluator's call shape is chosen explicitly when it is registered,
through EvaluatorKind, instead of being guessed from its signature.
Results from any supported shape are normalised to Feedback records by
adapt_feedback(), which also understands autoevals- and phoenix-style
score objects.
"""

from __future__ import annotations

import asyncio
import dataclasses
import inspect
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, List, Mapping, Optional, Sequence, Tuple, Union

from genai_eval_sdk.schemas import Example, Feedback, Run, ScoreValue, is_numeric_score


class EvaluatorKind(str, Enum):
    """How a per-run evaluator is called.

    RUN_EXAMPLE: ``fn(run, example)``
    INPUTS_OUTPUTS_REFERENCE: ``fn(inputs=, outputs=, reference_outputs=)``
    INPUTS_OUTPUTS: ``fn(inputs=, outputs=)``, for reference-free checks
    SCORER: ``fn(input=, output=, expected=)``, autoevals-compatible
    """

    RUN_EXAMPLE = "run_example"
    INPUTS_OUTPUTS_REFERENCE = "inputs_outputs_reference"
    INPUTS_OUTPUTS = "inputs_outputs"
    SCORER = "scorer"


class SummaryKind(str, Enum):
    """How a summary evaluator is called.

    RUNS_EXAMPLES: ``fn(runs, examples)``
    INPUTS_OUTPUTS_REFERENCE: ``fn(inputs=[...], outputs=[...], reference_outputs=[...])``
    """

    RUNS_EXAMPLES = "runs_examples"
    INPUTS_OUTPUTS_REFERENCE = "inputs_outputs_reference"


def _callable_name(fn: Callable) -> str:
    name = getattr(fn, "name", None)
    if isinstance(name, str) and name:
        return name
    return getattr(fn, "__name__", None) or type(fn).__name__


def _is_async(fn: Callable) -> bool:
    if inspect.iscoroutinefunction(fn):
        return True
    call = getattr(fn, "__call__", None)
    return call is not None and inspect.iscoroutinefunction(call)


async def _call(fn: Callable, *args: Any, **kwargs: Any) -> Any:
    """Await async callables; run sync ones on a worker thread."""
    if _is_async(fn):
        return await fn(*args, **kwargs)
    return await asyncio.to_thread(fn, *args, **kwargs)


def _unwrap(value: Optional[Mapping[str, Any]]) -> Any:
    """Collapse a single-key mapping to its value for string-based scorers."""
    if isinstance(value, Mapping) and len(value) == 1:
        return next(iter(value.values()))
    return value


@dataclass(frozen=True)
class Evaluator:
    """A per-run scoring function plus its call shape.

    Attributes:
        fn: The scoring callable, sync or async.
        kind: Which arguments fn receives.
        key: Feedback key. Defaults to ``fn.name`` or ``fn.__name__``.
            Also used for the error record when fn raises.

    Example:
        def correct(inputs, outputs, reference_outputs):
            return outputs["label"] == reference_outputs["label"]

        Evaluator(correct)
        Evaluator(lambda run, example: ..., EvaluatorKind.RUN_EXAMPLE, key="len")
    """

    fn: Callable[..., Any]
    kind: EvaluatorKind = EvaluatorKind.INPUTS_OUTPUTS_REFERENCE
    key: Optional[str] = None

    @property
    def name(self) -> str:
        return self.key or _callable_name(self.fn)

    async def __call__(self, run: Run, example: Example) -> Any:
        if self.kind is EvaluatorKind.RUN_EXAMPLE:
            return await _call(self.fn, run, example)
        if self.kind is EvaluatorKind.INPUTS_OUTPUTS_REFERENCE:
            return await _call(
                self.fn,
                inputs=example.inputs,
                outputs=run.outputs,
                reference_outputs=example.reference_outputs,
            )
        if self.kind is EvaluatorKind.INPUTS_OUTPUTS:
            return await _call(self.fn, inputs=example.inputs, outputs=run.outputs)
        return await _call(
            self.fn,
            input=_unwrap(example.inputs),
            output=_unwrap(run.outputs),
            expected=_unwrap(example.reference_outputs),
        )


@dataclass(frozen=True)
class SummaryEvaluator:
    """A scoring function applied once to the whole experiment.

    Example:
        def pass_rate(runs, examples):
            ok = sum(r.outputs == e.reference_outputs for r, e in zip(runs, examples))
            return {"key": "pass_rate", "score": ok / len(runs)}

        SummaryEvaluator(pass_rate)
    """

    fn: Callable[..., Any]
    kind: SummaryKind = SummaryKind.RUNS_EXAMPLES
    key: Optional[str] = None

    @property
    def name(self) -> str:
        return self.key or _callable_name(self.fn)

    async def __call__(self, runs: Sequence[Run], examples: Sequence[Example]) -> Any:
        if self.kind is SummaryKind.RUNS_EXAMPLES:
            return await _call(self.fn, list(runs), list(examples))
        return await _call(
            self.fn,
            inputs=[example.inputs for example in examples],
            outputs=[run.outputs for run in runs],
            reference_outputs=[example.reference_outputs for example in examples],
        )


def as_evaluator(value: Union[Evaluator, Callable[..., Any]]) -> Evaluator:
    """Register a bare callable with the default INPUTS_OUTPUTS_REFERENCE shape."""
    if isinstance(value, Evaluator):
        return value
    if not callable(value):
        raise TypeError(f"Evaluator must be callable, got {type(value).__name__}")
    return Evaluator(value)


def as_summary_evaluator(value: Union[SummaryEvaluator, Callable[..., Any]]) -> SummaryEvaluator:
    if isinstance(value, SummaryEvaluator):
        return value
    if not callable(value):
        raise TypeError(f"Summary evaluator must be callable, got {type(value).__name__}")
    return SummaryEvaluator(value)


def adapt_feedback(
    key: str,
    result: Any,
    *,
    run_id: Optional[str] = None,
    experiment_id: Optional[str] = None,
) -> List[Feedback]:
    """Convert an evaluator result into Feedback records.

    Handles Feedback objects, bools, numbers, dicts, ``{"results": [...]}``
    batches, lists, autoevals results (``.score``) and phoenix results
    (``.label`` + ``.explanation``). Every record is re-targeted at
    ``run_id`` or ``experiment_id``. A non-numeric score becomes the
    label and leaves the score absent.

    Raises:
        TypeError: ``{"results": ...}`` does not hold a list.
    """
    target = {"run_id": run_id, "experiment_id": experiment_id}

    if isinstance(result, Feedback):
        score, label = _split_score(result.score, result.label)
        return [dataclasses.replace(result, score=score, label=label, **target)]

    if isinstance(result, (list, tuple)):
        return [fb for item in result for fb in adapt_feedback(key, item, **target)]

    if isinstance(result, Mapping) and "results" in result:
        batch = result["results"]
        if not isinstance(batch, (list, tuple)):
            raise TypeError(
                f"Evaluator {key!r} returned 'results' of type {type(batch).__name__}; "
                "expected a list"
            )
        return adapt_feedback(key, batch, **target)

    # bool before int: bool is an int subclass
    if isinstance(result, bool):
        return [Feedback(key=key, score=result, **target)]

    if isinstance(result, (int, float)):
        return [Feedback(key=key, score=float(result), **target)]

    if isinstance(result, Mapping):
        score = result.get("score")
        if score is None:
            score = result.get("value")
        score, label = _split_score(score, result.get("label"))
        return [
            Feedback(
                key=result.get("key") or key,
                score=score,
                label=label,
                comment=result.get("comment")
                or result.get("rationale")
                or result.get("explanation"),
                metadata={
                    k: v
                    for k, v in result.items()
                    if k
                    not in ("key", "score", "value", "label", "comment", "rationale", "explanation")
                },
                **target,
            )
        ]

    # autoevals returns objects with .score, .metadata, .name attributes
    if hasattr(result, "score"):
        score, label = _split_score(
            result.score,
            getattr(result, "choice", None) or getattr(result, "label", None),
        )
        return [
            Feedback(
                key=key,
                score=score,
                label=label,
                comment=getattr(result, "rationale", None),
                metadata=getattr(result, "metadata", None) or {},
                **target,
            )
        ]

    # phoenix-evals returns objects with .label, .score, .explanation
    if hasattr(result, "label") and hasattr(result, "explanation"):
        return [
            Feedback(key=key, label=result.label, comment=result.explanation, **target)
        ]

    return [Feedback(key=key, metadata={"raw": str(result)}, **target)]


def error_feedback(
    key: str,
    exc: BaseException,
    *,
    run_id: Optional[str] = None,
    experiment_id: Optional[str] = None,
) -> Feedback:
    """Absent-score Feedback recording why an evaluator raised."""
    return Feedback(
        key=key,
        score=None,
        comment=repr(exc),
        run_id=run_id,
        experiment_id=experiment_id,
        metadata={"error_type": type(exc).__name__},
        error=True,
    )


def _split_score(score: Any, label: Any) -> Tuple[ScoreValue, Optional[str]]:
    # Non-numeric scores ("good", "A") are categorical: keep them as the label.
    if score is None or is_numeric_score(score):
        return score, label
    return None, label if label is not None else str(score)
