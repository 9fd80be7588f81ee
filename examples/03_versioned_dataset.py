"""Evaluating against a versioned dataset.

The dataset version is resolved once when the experiment starts, so
later edits to the dataset never leak into a running experiment.
Versions can be pinned by tag or by timestamp; the default is latest.
"""

from genai_eval_sdk import Evaluator, EvaluatorKind, evaluate, register
from genai_eval_sdk.evals import InMemoryDatasetClient

# --- Setup ---
register(endpoint="http://localhost:4318/v1/traces")

client = InMemoryDatasetClient()
client.create_version(
    "capitals",
    [
        {"input": "France", "expected": "Paris"},
        {"input": "Japan", "expected": "Tokyo"},
    ],
    tag="v1",
)
client.create_version(
    "capitals",
    [
        {"input": "France", "expected": "Paris"},
        {"input": "Japan", "expected": "Tokyo"},
        {"input": "Peru", "expected": "Lima"},
    ],
    tag="v2",
)


def lookup(inputs: dict) -> str:
    """Replace with your actual LLM call."""
    return {"France": "Paris", "Japan": "Tokyo"}.get(inputs["input"], "I don't know")


class ExactMatch:
    """autoevals-style scorer: called with input=, output=, expected=."""

    name = "exact_match"

    def __call__(self, *, input, output, expected=None, **kwargs):
        return 1.0 if output == expected else 0.0


if __name__ == "__main__":
    for version in ("v1", None):
        results = evaluate(
            lookup,
            "capitals",
            client=client,
            version=version,
            evaluators=[Evaluator(ExactMatch(), EvaluatorKind.SCORER)],
        )
        print(f"dataset version {results.experiment.dataset_version}")
        print(results)
