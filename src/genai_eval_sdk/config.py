"""Explicit configuration for the evaluation orchestrator.

Nothing here is process-wide: an EvaluationConfig is built once and
passed into evaluate(). ``from_env`` resolves unset fields from
environment variables, the way register() resolves its endpoint.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields
from typing import Any, Literal, Optional

logger = logging.getLogger(__name__)

ENV_TRACING = "GENAI_EVAL_TRACING"
ENV_BACKGROUND_FLUSH = "GENAI_EVAL_BACKGROUND_FLUSH"
ENV_MAX_CONCURRENCY = "GENAI_EVAL_MAX_CONCURRENCY"
ENV_TIMEOUT = "GENAI_EVAL_TIMEOUT"
ENV_MAX_FAILURE_RATE = "GENAI_EVAL_MAX_FAILURE_RATE"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class EvaluationConfig:
    """Options recognised by evaluate() and evaluate_existing().

    Attributes:
        tracing_enabled: Emit OTEL spans for targets, evaluators and feedback.
        background_flush: Batch spans and drain them at shutdown through
            the PendingFlush handle. When False, spans are force-flushed
            after every target call.
        max_concurrency: Upper bound on examples in flight. None means
            unbounded, which can overwhelm rate-limited targets.
        timeout: Seconds after which no new examples are dispatched.
        abandon_on_cancel: Cancel in-flight examples on timeout/abort
            instead of letting them finish.
        max_target_failure_rate: Fraction of failed runs above which the
            experiment finishes as FAILED. None never fails on target errors.
        duplicate_runs: "reject" raises on a second run for one example,
            "overwrite" replaces the earlier run and its feedback.
        recorder_max_attempts: Store write attempts before giving up.
        recorder_initial_backoff: Seconds to wait after the first failure.
        recorder_backoff_multiplier: Growth factor between retries.
    """

    tracing_enabled: bool = True
    background_flush: bool = True
    max_concurrency: Optional[int] = None
    timeout: Optional[float] = None
    abandon_on_cancel: bool = False
    max_target_failure_rate: Optional[float] = None
    duplicate_runs: Literal["reject", "overwrite"] = "reject"
    recorder_max_attempts: int = 3
    recorder_initial_backoff: float = 0.1
    recorder_backoff_multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.max_concurrency is not None and self.max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {self.max_concurrency}")
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError(f"timeout must be positive, got {self.timeout}")
        if self.max_target_failure_rate is not None and not (
            0.0 <= self.max_target_failure_rate <= 1.0
        ):
            raise ValueError(
                "max_target_failure_rate must be between 0 and 1, "
                f"got {self.max_target_failure_rate}"
            )
        if self.duplicate_runs not in ("reject", "overwrite"):
            raise ValueError(f"Unknown duplicate_runs policy: {self.duplicate_runs!r}")
        if self.recorder_max_attempts < 1:
            raise ValueError("recorder_max_attempts must be >= 1")

    @classmethod
    def from_env(cls, **overrides: Any) -> "EvaluationConfig":
        """Build a config from GENAI_EVAL_* variables plus explicit overrides.

        Keyword overrides always win over the environment.

        Example:
            config = EvaluationConfig.from_env(max_concurrency=4)
        """
        known = {f.name for f in fields(cls)}
        unknown = set(overrides) - known
        if unknown:
            raise TypeError(f"Unknown config options: {sorted(unknown)}")

        values: dict = {}
        tracing = _env_bool(ENV_TRACING)
        if tracing is not None:
            values["tracing_enabled"] = tracing
        background = _env_bool(ENV_BACKGROUND_FLUSH)
        if background is not None:
            values["background_flush"] = background
        concurrency = os.environ.get(ENV_MAX_CONCURRENCY)
        if concurrency:
            values["max_concurrency"] = int(concurrency)
        timeout = os.environ.get(ENV_TIMEOUT)
        if timeout:
            values["timeout"] = float(timeout)
        failure_rate = os.environ.get(ENV_MAX_FAILURE_RATE)
        if failure_rate:
            values["max_target_failure_rate"] = float(failure_rate)

        values.update(overrides)
        return cls(**values)


def _env_bool(name: str) -> Optional[bool]:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return None
    lowered = raw.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    logger.warning("Ignoring unrecognised boolean %s=%r", name, raw)
    return None
