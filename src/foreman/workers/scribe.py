from __future__ import annotations

from foreman.workers.base import Worker


class ScribeWorker(Worker):
    phase = "logging"
    role = "scribe"
    prompt_file = "scribe.md"
    fallback_prompt = """
You are the Scribe.
Summarize what the step changed and why, in a few sentences a future reader can scan.
""".strip()
    required_keys = {"summary": str}
    verdicts = frozenset({"approve", "fail"})
