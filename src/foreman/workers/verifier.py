from __future__ import annotations

from foreman.workers.base import Worker


class VerifierWorker(Worker):
    phase = "verification"
    role = "verifier"
    prompt_file = "verifier.md"
    fallback_prompt = """
You are the Verifier.
Run the step's verification commands and check the implementation against its tasks.
Ask for a revision when something is missing or broken.
""".strip()
    required_keys = {"summary": str}
    verdicts = frozenset({"approve", "revise", "escalate", "fail"})
