"""Evaluation framework.

Provides the evaluate() orchestrator, evaluator adapters, dataset
sources, concurrency control, and experiment recording. Evaluators can
be plain functions, autoevals/phoenix-style scorers, or anything that
returns a score, a dict, or Feedback.
"""

from genai_eval_sdk.evals.concurrency import ConcurrencyController, DispatchOutcome
from genai_eval_sdk.evals.evaluate import (
    aevaluate,
    aevaluate_existing,
    evaluate,
    evaluate_existing,
)
from genai_eval_sdk.evals.invoker import TargetInvoker
from genai_eval_sdk.evals.protocol import (
    Evaluator,
    EvaluatorKind,
    SummaryEvaluator,
    SummaryKind,
    adapt_feedback,
)
from genai_eval_sdk.evals.recorder import ExperimentRecorder
from genai_eval_sdk.evals.results import ExperimentResultRow, ExperimentResults
from genai_eval_sdk.evals.runner import EvaluatorRunner
from genai_eval_sdk.evals.source import DatasetClient, ExampleSource, InMemoryDatasetClient
from genai_eval_sdk.evals.store import ExperimentStore, InMemoryExperimentStore
from genai_eval_sdk.evals.summary import SummaryAggregator

__all__ = [
    "evaluate",
    "aevaluate",
    "evaluate_existing",
    "aevaluate_existing",
    "Evaluator",
    "EvaluatorKind",
    "SummaryEvaluator",
    "SummaryKind",
    "adapt_feedback",
    "ExampleSource",
    "DatasetClient",
    "InMemoryDatasetClient",
    "TargetInvoker",
    "EvaluatorRunner",
    "SummaryAggregator",
    "ConcurrencyController",
    "DispatchOutcome",
    "ExperimentRecorder",
    "ExperimentStore",
    "InMemoryExperimentStore",
    "ExperimentResults",
    "ExperimentResultRow",
]
