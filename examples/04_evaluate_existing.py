"""Adding evaluators to a finished experiment.

evaluate_existing() scores recorded runs without calling the target
again. Runs are never modified; new feedback is appended to them.
"""

from genai_eval_sdk import Evaluator, EvaluatorKind, evaluate, evaluate_existing, register

# --- Setup ---
register(endpoint="http://localhost:4318/v1/traces")

data = [
    {"inputs": {"question": "What is 2 + 2?"}, "outputs": {"answer": "4"}},
    {"inputs": {"question": "Who wrote Hamlet?"}, "outputs": {"answer": "Shakespeare"}},
]


def answer(inputs: dict) -> dict:
    """Replace with your actual LLM call."""
    return {"answer": {"What is 2 + 2?": "4"}.get(inputs["question"], "William Shakespeare")}


def correct(inputs, outputs, reference_outputs):
    return outputs["answer"] == reference_outputs["answer"]


def brief(inputs, outputs):
    return {"score": len(outputs["answer"]) <= 12, "comment": f"{len(outputs['answer'])} chars"}


if __name__ == "__main__":
    results = evaluate(answer, data, evaluators=[correct], experiment_name="qa-baseline")
    print(results)

    # Later: a new metric, same runs.
    results = evaluate_existing(results, [Evaluator(brief, EvaluatorKind.INPUTS_OUTPUTS)])
    print(results)
    for row in results:
        print(row.example.inputs["question"], [(fb.key, fb.score) for fb in row.feedback])
    results.wait()
