from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from importlib import resources
from typing import Any, Literal

from foreman.adapters.plan import StepSpec
from foreman.backends.base import AgentBackend, BackendExecutionError, collect_text
from foreman.errors import MalformedResponseError, PhaseFailure

logger = logging.getLogger(__name__)

Verdict = Literal["approve", "revise", "escalate", "fail", "partial"]

VERDICTS: frozenset[str] = frozenset({"approve", "revise", "escalate", "fail", "partial"})


@dataclass(slots=True)
class WorkerRequest:
    session_id: str
    step: StepSpec
    phase: str
    prior: dict[str, dict[str, Any]] = field(default_factory=dict)
    feedback: dict[str, Any] | None = None
    attempt: int = 1

    def to_context(self) -> dict[str, Any]:
        context: dict[str, Any] = {
            "session_id": self.session_id,
            "phase": self.phase,
            "attempt": self.attempt,
            "step": self.step.to_dict(),
            "prior_phases": self.prior,
        }
        if self.feedback:
            context["feedback"] = self.feedback
        return context


@dataclass(slots=True)
class WorkerResponse:
    phase: str
    verdict: Verdict
    payload: dict[str, Any]
    raw: str = ""


def extract_json_objects(raw_text: str) -> list[dict[str, Any]]:
    """Every top-level JSON object embedded in free text, in order of appearance."""
    decoder = json.JSONDecoder()
    payloads: list[dict[str, Any]] = []
    index = raw_text.find("{")
    while index != -1:
        try:
            parsed, end = decoder.raw_decode(raw_text, index)
        except json.JSONDecodeError:
            index = raw_text.find("{", index + 1)
            continue
        if isinstance(parsed, dict):
            payloads.append(parsed)
        index = raw_text.find("{", end)
    return payloads


class Worker:
    """One agent per phase; turns a backend's text into a validated phase payload."""

    phase: str = ""
    role: str = "worker"
    prompt_file: str | None = None
    fallback_prompt: str = "You are a software worker. Answer with a single JSON object."
    required_keys: dict[str, type | tuple[type, ...]] = {}
    path_keys: tuple[str, ...] = ()
    verdicts: frozenset[str] = frozenset({"approve", "escalate", "fail"})

    def __init__(self, backend: AgentBackend, *, model: str | None = None) -> None:
        self.backend = backend
        self.model = model
        self.system_prompt = self._load_system_prompt()

    def _load_system_prompt(self) -> str:
        if not self.prompt_file:
            return self.fallback_prompt.strip()
        try:
            prompt_path = resources.files("foreman.prompts").joinpath(self.prompt_file)
            return prompt_path.read_text(encoding="utf-8").strip()
        except (FileNotFoundError, ModuleNotFoundError):
            return self.fallback_prompt.strip()

    def build_instruction(self, request: WorkerRequest) -> str:
        lines = [f"Step {request.step.step_id}: {request.step.title}", f"Phase: {self.phase}"]
        if request.step.tasks:
            lines.append("Tasks:")
            lines.extend(f"- {task}" for task in request.step.tasks)
        if request.feedback:
            lines.append("Address this feedback from the previous attempt:")
            lines.append(json.dumps(request.feedback, ensure_ascii=False, indent=2))
        lines.append(
            'Finish with one JSON object: {"verdict": <'
            + "|".join(sorted(self.verdicts))
            + '>, "payload": {...}}.'
        )
        return "\n".join(lines)

    def build_context(self, request: WorkerRequest) -> dict[str, Any]:
        context = request.to_context()
        if self.model:
            context["model"] = self.model
        return context

    async def invoke(self, request: WorkerRequest) -> str:
        try:
            return await collect_text(
                self.backend,
                self.system_prompt,
                self.build_instruction(request),
                self.build_context(request),
            )
        except BackendExecutionError as exc:
            raise PhaseFailure(
                f"{self.role} backend failed: {exc}",
                step=request.step.step_id,
                phase=self.phase,
            ) from exc

    async def run(self, request: WorkerRequest) -> WorkerResponse:
        raw = await self.invoke(request)
        return self.parse(raw, request)

    def parse(self, raw: str, request: WorkerRequest) -> WorkerResponse:
        step_id = request.step.step_id
        candidates = [item for item in extract_json_objects(raw) if "verdict" in item]
        if not candidates:
            raise MalformedResponseError(
                f"{self.role} returned no JSON verdict object.", step=step_id, phase=self.phase
            )
        result = candidates[-1]
        verdict = str(result.get("verdict", "")).strip().lower()
        if verdict not in self.verdicts:
            raise MalformedResponseError(
                f"{self.role} returned verdict {verdict!r}; expected one of "
                f"{', '.join(sorted(self.verdicts))}.",
                step=step_id,
                phase=self.phase,
            )
        payload = result.get("payload", {})
        if not isinstance(payload, dict):
            raise MalformedResponseError(
                f"{self.role} payload is not an object.", step=step_id, phase=self.phase
            )
        if verdict != "fail":
            self.validate_payload(payload, step_id)
        logger.debug("%s verdict for %s: %s", self.role, step_id, verdict)
        return WorkerResponse(
            phase=self.phase,
            verdict=verdict,  # type: ignore[arg-type]
            payload=payload,
            raw=raw,
        )

    def validate_payload(self, payload: dict[str, Any], step_id: str) -> None:
        for key, expected_type in self.required_keys.items():
            if key not in payload:
                raise MalformedResponseError(
                    f"{self.role} payload is missing '{key}'.", step=step_id, phase=self.phase
                )
            if not isinstance(payload[key], expected_type):
                raise MalformedResponseError(
                    f"{self.role} payload field '{key}' has type {type(payload[key]).__name__}.",
                    step=step_id,
                    phase=self.phase,
                )
        for key in self.path_keys:
            if not all(isinstance(item, str) and item.strip() for item in payload[key]):
                raise MalformedResponseError(
                    f"{self.role} payload field '{key}' must list file paths.",
                    step=step_id,
                    phase=self.phase,
                )
