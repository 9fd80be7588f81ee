"""Attaching human feedback to a production trace.

log_feedback() emits a feedback span that references the scored trace
by id, so collectors can join it with the original spans.
"""

from opentelemetry import trace

from genai_eval_sdk import log_feedback, register, traceable

# --- Setup ---
provider = register(endpoint="http://localhost:4318/v1/traces")


@traceable(name="support_bot", run_type="chain")
def support_bot(question: str) -> str:
    span = trace.get_current_span()
    support_bot.last_trace_id = format(span.get_span_context().trace_id, "032x")
    return f"Have you tried turning it off and on again? ({question})"


if __name__ == "__main__":
    print(support_bot("My laptop is slow"))

    # A user clicks thumbs-up in the UI
    log_feedback(
        "user_rating",
        True,
        trace_id=support_bot.last_trace_id,
        source="human",
        comment="Worked!",
    )
    provider.force_flush()
