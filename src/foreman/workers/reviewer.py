from __future__ import annotations

from foreman.workers.base import Worker


class ReviewerWorker(Worker):
    phase = "quality_review"
    role = "reviewer"
    prompt_file = "reviewer.md"
    fallback_prompt = """
You are the Quality Reviewer.
Review the verified change for correctness, clarity and consistency with the codebase.
Report findings with a severity and ask for a revision only for issues worth fixing now.
""".strip()
    required_keys = {"findings": list, "summary": str}
    verdicts = frozenset({"approve", "revise", "escalate", "fail"})
