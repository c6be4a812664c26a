from __future__ import annotations

from foreman.workers.base import Worker


class StrategistWorker(Worker):
    phase = "strategy"
    role = "strategist"
    prompt_file = "strategist.md"
    fallback_prompt = """
You are the Strategist.
Read the step and decide how to implement it before any code is written.
List every file you expect the implementation to create or modify.
""".strip()
    required_keys = {"expected_files": list, "approach": str}
    path_keys = ("expected_files",)
