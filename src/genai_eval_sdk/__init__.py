"""GenAI evaluation SDK.

OTEL-native evaluation runs for LLM applications: run a target over a
dataset, score it, and record the results as an experiment.
"""

from genai_eval_sdk.config import EvaluationConfig
from genai_eval_sdk.decorators import traceable
from genai_eval_sdk.errors import (
    DuplicateRunError,
    EvaluationError,
    EvaluatorError,
    ExperimentStateError,
    NotFoundError,
    RecorderError,
    SourceError,
    SummaryError,
    TargetError,
)
from genai_eval_sdk.evals import (
    Evaluator,
    EvaluatorKind,
    ExperimentResults,
    SummaryEvaluator,
    SummaryKind,
    aevaluate,
    aevaluate_existing,
    evaluate,
    evaluate_existing,
)
from genai_eval_sdk.feedback import log_feedback
from genai_eval_sdk.register import register
from genai_eval_sdk.schemas import Example, Experiment, ExperimentStatus, Feedback, Run

__all__ = [
    # Setup
    "register",
    "EvaluationConfig",
    # Tracing
    "traceable",
    "log_feedback",
    # Evals
    "evaluate",
    "aevaluate",
    "evaluate_existing",
    "aevaluate_existing",
    "Evaluator",
    "EvaluatorKind",
    "SummaryEvaluator",
    "SummaryKind",
    "ExperimentResults",
    # Records
    "Example",
    "Run",
    "Feedback",
    "Experiment",
    "ExperimentStatus",
    # Errors
    "EvaluationError",
    "SourceError",
    "NotFoundError",
    "TargetError",
    "EvaluatorError",
    "SummaryError",
    "RecorderError",
    "DuplicateRunError",
    "ExperimentStateError",
]
