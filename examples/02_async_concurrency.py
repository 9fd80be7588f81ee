"""Async targets, bounded concurrency, and timeouts.

Async targets are awaited directly; sync targets run on worker threads.
max_concurrency bounds how many examples are in flight, which keeps
rate-limited model APIs from being flooded. Results always come back in
dataset order.
"""

import asyncio
import random

from genai_eval_sdk import EvaluationConfig, aevaluate, register, traceable

# --- Setup ---
register(endpoint="http://localhost:4318/v1/traces")


@traceable(run_type="llm")
async def call_model(prompt: str) -> str:
    """Simulated model call with variable latency."""
    await asyncio.sleep(random.uniform(0.05, 0.3))
    return prompt.upper()


async def target(inputs: dict) -> dict:
    return {"output": await call_model(inputs["question"])}


def shouted(inputs: dict, outputs: dict, reference_outputs: dict) -> bool:
    return outputs["output"].isupper()


async def main() -> None:
    data = [{"inputs": {"question": f"question {i}"}} for i in range(20)]
    results = await aevaluate(
        target,
        data,
        evaluators=[shouted],
        config=EvaluationConfig(max_concurrency=5, timeout=2.0),
    )
    print(results)
    if results.cancelled:
        print(f"timed out, skipped: {results.skipped_example_ids}")
    results.wait()


if __name__ == "__main__":
    asyncio.run(main())
