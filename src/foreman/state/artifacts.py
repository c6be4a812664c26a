from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Literal
from urllib.parse import quote

from foreman.errors import StructuralError
from foreman.phases import PHASES, phase_index
from foreman.state.store import JsonFileStore, utcnow_iso

logger = logging.getLogger(__name__)

AttemptOutcome = Literal["failed", "partial", "awaiting_review", "rejected"]


@dataclass(slots=True)
class PhaseArtifact:
    step_id: str
    phase: str
    payload: dict[str, Any]
    complete: bool = True
    written_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "phase": self.phase,
            "payload": self.payload,
            "complete": self.complete,
            "written_at": self.written_at,
        }

    @classmethod
    def from_dict(cls, data: Any) -> PhaseArtifact:
        if not isinstance(data, dict):
            raise StructuralError("Phase artifact record is not an object.")
        try:
            artifact = cls(
                step_id=str(data["step_id"]),
                phase=str(data["phase"]),
                payload=dict(data["payload"]),
                complete=bool(data["complete"]),
                written_at=str(data.get("written_at") or utcnow_iso()),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise StructuralError(f"Phase artifact record is malformed: {exc}") from exc
        if artifact.phase not in PHASES:
            raise StructuralError(f"Phase artifact names unknown phase '{artifact.phase}'.")
        return artifact


@dataclass(slots=True)
class AttemptRecord:
    step_id: str
    phase: str
    number: int
    outcome: AttemptOutcome
    payload: dict[str, Any] = field(default_factory=dict)
    recorded_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "phase": self.phase,
            "number": self.number,
            "outcome": self.outcome,
            "payload": self.payload,
            "recorded_at": self.recorded_at,
        }


class ArtifactStore:
    """Per-step phase artifacts kept in strict prefix order.

    An artifact for phase K+1 is never written while phase K is absent. Loop-backs
    remove the tail of the prefix furthest-first, so a crash mid-way still leaves
    a valid prefix behind.
    """

    def __init__(self, store: JsonFileStore) -> None:
        self.store = store

    @staticmethod
    def _step_key(step_id: str) -> str:
        # Percent-encoding is reversible, so distinct step ids never share a directory.
        safe = quote(step_id, safe="")
        if safe in {"", ".", ".."}:
            raise StructuralError(f"Step id cannot be used as a storage key: {step_id!r}")
        return safe

    def _artifact_key(self, step_id: str, phase: str) -> str:
        return f"artifacts/{self._step_key(step_id)}/{phase_index(phase) + 1:02d}-{phase}"

    def _attempt_prefix(self, step_id: str) -> str:
        return f"attempts/{self._step_key(step_id)}"

    def _present(self, step_id: str) -> list[str]:
        return [phase for phase in PHASES if self.store.exists(self._artifact_key(step_id, phase))]

    def write(self, step_id: str, phase: str, payload: dict[str, Any]) -> PhaseArtifact:
        index = phase_index(phase)
        missing = [
            earlier
            for earlier in PHASES[:index]
            if not self.store.exists(self._artifact_key(step_id, earlier))
        ]
        if missing:
            raise StructuralError(
                f"Cannot write '{phase}' before {', '.join(missing)}; "
                "artifacts must be written in phase order. Start a fresh session.",
                step=step_id,
                phase=phase,
            )
        artifact = PhaseArtifact(step_id=step_id, phase=phase, payload=dict(payload))
        self.store.write(self._artifact_key(step_id, phase), artifact.to_dict())
        logger.debug("Wrote %s artifact for step %s", phase, step_id)
        return artifact

    def read(self, step_id: str, phase: str) -> PhaseArtifact | None:
        data = self.store.read(self._artifact_key(step_id, phase))
        if data is None:
            return None
        artifact = PhaseArtifact.from_dict(data)
        if artifact.step_id != step_id or artifact.phase != phase:
            raise StructuralError(
                f"Artifact slot holds {artifact.step_id}/{artifact.phase}.",
                step=step_id,
                phase=phase,
            )
        return artifact

    def latest_phase(self, step_id: str) -> str | None:
        present = self._present(step_id)
        if not present:
            return None
        expected_prefix = list(PHASES[: len(present)])
        if present != expected_prefix:
            gap = next(phase for phase in expected_prefix if phase not in present)
            raise StructuralError(
                f"Artifacts are out of order: '{present[-1]}' exists but '{gap}' is missing.",
                step=step_id,
                phase=gap,
            )
        return present[-1]

    def list(self, step_id: str) -> list[PhaseArtifact]:
        self.latest_phase(step_id)
        artifacts: list[PhaseArtifact] = []
        for phase in PHASES:
            artifact = self.read(step_id, phase)
            if artifact is None:
                break
            artifacts.append(artifact)
        return artifacts

    def invalidate_from(self, step_id: str, phase: str) -> list[str]:
        index = phase_index(phase)
        removed: list[str] = []
        for later in reversed(PHASES[index:]):
            key = self._artifact_key(step_id, later)
            if self.store.exists(key):
                self.store.delete(key)
                removed.append(later)
        if removed:
            logger.info("Invalidated %s for step %s", ", ".join(reversed(removed)), step_id)
        return list(reversed(removed))

    def record_attempt(
        self,
        step_id: str,
        phase: str,
        outcome: AttemptOutcome,
        payload: dict[str, Any] | None = None,
    ) -> AttemptRecord:
        phase_index(phase)
        number = len(self.attempts(step_id, phase)) + 1
        record = AttemptRecord(
            step_id=step_id,
            phase=phase,
            number=number,
            outcome=outcome,
            payload=dict(payload or {}),
        )
        self.store.write(f"{self._attempt_prefix(step_id)}/{phase}-{number:03d}", record.to_dict())
        return record

    def attempts(self, step_id: str, phase: str) -> list[AttemptRecord]:
        records: list[AttemptRecord] = []
        for key in self.store.keys(self._attempt_prefix(step_id)):
            name = key.rsplit("/", maxsplit=1)[-1]
            if not name.startswith(f"{phase}-"):
                continue
            data = self.store.read(key)
            if not isinstance(data, dict):
                raise StructuralError(
                    f"Attempt record {key} is malformed.", step=step_id, phase=phase
                )
            records.append(
                AttemptRecord(
                    step_id=str(data.get("step_id", step_id)),
                    phase=str(data.get("phase", phase)),
                    number=int(data.get("number", 0)),
                    outcome=data.get("outcome", "failed"),
                    payload=dict(data.get("payload") or {}),
                    recorded_at=str(data.get("recorded_at") or ""),
                )
            )
        records.sort(key=lambda record: record.number)
        return records

    def has_history(self, step_id: str) -> bool:
        return bool(self.store.keys(self._attempt_prefix(step_id)))

    def pending_review(self, step_id: str) -> AttemptRecord | None:
        """Newest implementation attempt still waiting on a drift decision, if any."""
        records = self.attempts(step_id, "implementation")
        if not records:
            return None
        latest = records[-1]
        if latest.outcome not in {"awaiting_review", "partial"}:
            return None
        if latest.payload.get("resolved"):
            return None
        return latest

    def resolve_attempt(self, record: AttemptRecord, resolution: str) -> None:
        payload = dict(record.payload)
        payload["resolved"] = resolution
        record.payload = payload
        self.store.write(
            f"{self._attempt_prefix(record.step_id)}/{record.phase}-{record.number:03d}",
            record.to_dict(),
        )
