"""Evaluation with genai-eval-sdk.

Runs a toxicity classifier over a small dataset, scores each output with
a plain-function evaluator, and computes precision over the whole
experiment with a summary evaluator.

evaluate() creates OTEL spans for the entire flow and emits every
feedback record through the same exporter pipeline.
"""

from genai_eval_sdk import EvaluationConfig, evaluate, register

# --- Setup ---
register(endpoint="http://localhost:4318/v1/traces", project_name="toxicity")


# --- Dataset ---
dataset = [
    {"inputs": {"text": "Shut up, idiot"}, "outputs": {"label": "Toxic"}},
    {"inputs": {"text": "You're a wonderful person"}, "outputs": {"label": "Not toxic"}},
    {"inputs": {"text": "This is the worst thing ever"}, "outputs": {"label": "Toxic"}},
    {"inputs": {"text": "I had a great day today"}, "outputs": {"label": "Not toxic"}},
    {"inputs": {"text": "Nobody likes you"}, "outputs": {"label": "Toxic"}},
    {
        "inputs": {"text": "This is unacceptable. I want to speak to the manager."},
        "outputs": {"label": "Not toxic"},
    },
]


# --- Target function (your LLM call goes here) ---
def classify(inputs: dict) -> dict:
    """Replace with your actual LLM call."""
    text = inputs["text"].lower()
    toxic = any(word in text for word in ("idiot", "worst", "nobody", "unacceptable"))
    return {"label": "Toxic" if toxic else "Not toxic"}


# --- Evaluators ---
def correct(inputs: dict, outputs: dict, reference_outputs: dict) -> bool:
    return outputs["label"] == reference_outputs["label"]


def precision(runs, examples) -> dict:
    predicted = [
        (run, example)
        for run, example in zip(runs, examples)
        if run.succeeded and run.outputs["label"] == "Toxic"
    ]
    hits = sum(1 for _, example in predicted if example.reference_outputs["label"] == "Toxic")
    return {"score": hits / len(predicted) if predicted else 0.0}


# --- Run evaluation ---
if __name__ == "__main__":
    results = evaluate(
        classify,
        data=dataset,
        evaluators=[correct],
        summary_evaluators=[precision],
        experiment_prefix="toxicity-baseline",
        config=EvaluationConfig(max_concurrency=4),
    )
    print(results)
    # Experiment: toxicity-baseline-1a2b3c4d [completed] (6 examples, 6 runs, 0 errors)
    #   correct: 0.833
    #   [summary] precision: 0.750

    results.wait()

    # Span tree:
    #
    #   evaluate                       (experiment)
    #   └── eval_summary.precision     (summary evaluator)
    #
    #   eval_item [0]                  (one trace per example, linked to evaluate)
    #   ├── eval_task                  (target call)
    #   ├── eval_score.correct         (evaluator)
    #   └── feedback.correct           (feedback record)
