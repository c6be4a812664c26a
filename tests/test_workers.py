import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any

import pytest

from foreman.adapters.plan import StepSpec
from foreman.backends.base import AgentBackend, BackendExecutionError
from foreman.drift import DriftPolicy
from foreman.errors import MalformedResponseError, PhaseFailure
from foreman.observer import CancellationToken, DriftObserver
from foreman.workers import (
    ImplementerWorker,
    ReviewerWorker,
    ScribeWorker,
    StrategistWorker,
    VerifierWorker,
    WorkerRequest,
)
from foreman.workers.base import extract_json_objects

STEP = StepSpec(
    step_id="s1",
    title="Add models",
    tasks=("Create the user model",),
    expected_artifacts=("src/app/models.py",),
)


class ScriptedBackend(AgentBackend):
    name = "scripted"

    def __init__(self, text: str) -> None:
        self.text = text
        self.calls: list[dict[str, Any]] = []

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        self.calls.append(
            {"system_prompt": system_prompt, "user_prompt": user_prompt, "context": context}
        )
        yield self.text


class FailingBackend(AgentBackend):
    name = "failing"

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context
        raise BackendExecutionError("All backend attempts failed.", retriable=False)
        yield ""  # pragma: no cover


class HangingBackend(AgentBackend):
    name = "hanging"

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context
        await asyncio.sleep(30)
        yield ""


def _reply(verdict: str, payload: Any) -> str:
    return json.dumps({"verdict": verdict, "payload": payload})


def _request(phase: str, **kwargs: Any) -> WorkerRequest:
    return WorkerRequest(session_id="sess-1", step=STEP, phase=phase, **kwargs)


def test_extract_json_objects_skips_noise() -> None:
    text = 'thinking {not json} then {"a": 1} and [1, 2] and {"b": {"c": 2}}'

    assert extract_json_objects(text) == [{"a": 1}, {"b": {"c": 2}}]


def test_strategist_parses_last_verdict_object() -> None:
    raw = (
        'Draft: {"verdict": "escalate", "payload": {}}\n'
        "Final answer:\n"
        + _reply("approve", {"expected_files": ["src/app/models.py"], "approach": "add class"})
    )
    backend = ScriptedBackend(raw)
    worker = StrategistWorker(backend, model="gpt-5-codex")

    response = asyncio.run(worker.run(_request("strategy", feedback={"note": "smaller"})))

    assert response.verdict == "approve"
    assert response.payload["expected_files"] == ["src/app/models.py"]
    call = backend.calls[0]
    assert call["system_prompt"].startswith("You are the Strategist")
    assert call["context"]["model"] == "gpt-5-codex"
    assert call["context"]["feedback"] == {"note": "smaller"}
    assert call["context"]["step"]["step_id"] == "s1"
    assert "Create the user model" in call["user_prompt"]
    assert "approve|escalate|fail" in call["user_prompt"]


def test_missing_verdict_is_malformed() -> None:
    worker = StrategistWorker(ScriptedBackend("I could not decide."))

    with pytest.raises(MalformedResponseError, match="no JSON verdict"):
        asyncio.run(worker.run(_request("strategy")))


def test_verdict_outside_worker_menu_is_malformed() -> None:
    worker = StrategistWorker(
        ScriptedBackend(_reply("revise", {"expected_files": [], "approach": "x"}))
    )

    with pytest.raises(MalformedResponseError, match="verdict 'revise'"):
        asyncio.run(worker.run(_request("strategy")))


def test_missing_and_ill_typed_payload_fields_are_malformed() -> None:
    missing = StrategistWorker(ScriptedBackend(_reply("approve", {"approach": "x"})))
    ill_typed = VerifierWorker(ScriptedBackend(_reply("approve", {"summary": 3})))
    bad_paths = ImplementerWorker(
        ScriptedBackend(_reply("approve", {"touched_files": ["", 2], "summary": "x"}))
    )
    not_object = ScribeWorker(ScriptedBackend(_reply("approve", ["summary"])))

    with pytest.raises(MalformedResponseError, match="missing 'expected_files'"):
        asyncio.run(missing.run(_request("strategy")))
    with pytest.raises(MalformedResponseError, match="'summary'"):
        asyncio.run(ill_typed.run(_request("verification")))
    with pytest.raises(MalformedResponseError, match="file paths"):
        asyncio.run(bad_paths.run(_request("implementation")))
    with pytest.raises(MalformedResponseError, match="not an object"):
        asyncio.run(not_object.run(_request("logging")))


def test_fail_verdict_skips_payload_validation() -> None:
    worker = ReviewerWorker(ScriptedBackend(_reply("fail", {"reason": "repo unreadable"})))

    response = asyncio.run(worker.run(_request("quality_review")))

    assert response.verdict == "fail"
    assert response.payload == {"reason": "repo unreadable"}


def test_reviewer_accepts_revise() -> None:
    worker = ReviewerWorker(
        ScriptedBackend(
            _reply("revise", {"findings": [{"severity": "major"}], "summary": "rename"})
        )
    )

    response = asyncio.run(worker.run(_request("quality_review")))

    assert response.verdict == "revise"
    assert response.phase == "quality_review"


def test_backend_failure_becomes_phase_failure() -> None:
    worker = VerifierWorker(FailingBackend())

    with pytest.raises(PhaseFailure, match="verifier backend failed") as excinfo:
        asyncio.run(worker.run(_request("verification")))

    assert excinfo.value.step == "s1"
    assert excinfo.value.phase == "verification"


def test_implementer_completes_when_token_stays_quiet() -> None:
    worker = ImplementerWorker(
        ScriptedBackend(_reply("approve", {"touched_files": ["src/app/models.py"], "summary": "x"}))
    )

    async def _run() -> Any:
        return await worker.run(_request("implementation"), token=CancellationToken())

    response = asyncio.run(_run())

    assert response.verdict == "approve"
    assert response.payload["touched_files"] == ["src/app/models.py"]


def test_implementer_stops_early_when_token_cancels() -> None:
    worker = ImplementerWorker(HangingBackend())

    async def _run() -> Any:
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.05, token.cancel, "major drift")
        return await worker.run(_request("implementation"), token=token)

    response = asyncio.run(_run())

    assert response.verdict == "partial"
    assert response.payload["touched_files"] == []
    assert response.payload["cancel_reason"] == "major drift"


def test_drift_observer_cancels_token_only_on_major_drift() -> None:
    changed = ["src/app/models.py", "src/app/helpers.py"]
    token = CancellationToken()
    observer = DriftObserver(lambda: list(changed), ["src/app/models.py"], DriftPolicy(), token)

    assert observer.check().severity == "minor"
    assert token.cancelled is False

    changed.extend(["setup.py", "Makefile"])
    assessment = observer.check()

    assert assessment.severity == "major"
    assert token.cancelled is True
    assert token.assessment is assessment
    assert observer.last_assessment is assessment
