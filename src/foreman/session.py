from __future__ import annotations

import logging
import re
import shutil
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

from foreman.config import CommitPolicy
from foreman.errors import StructuralError
from foreman.phases import RETRY_PHASES
from foreman.state.artifacts import ArtifactStore
from foreman.state.store import JsonFileStore, utcnow_iso

logger = logging.getLogger(__name__)

SessionStatus = Literal["in_progress", "completed", "failed"]

SESSION_SCHEMA_VERSION = 1
MAX_METRIC_EVENTS = 200

_REQUIRED_FIELDS = (
    "session_id",
    "plan_path",
    "commit_policy",
    "status",
    "current_step",
    "steps_completed",
    "steps_remaining",
    "tracker_mapping",
    "retry_counters",
    "needs_reconcile",
)


def _slug(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")
    return slug or "plan"


@dataclass(slots=True)
class StepSummary:
    step: str
    commit_hash: str | None
    summary: str

    def to_dict(self) -> dict[str, Any]:
        return {"step": self.step, "commit_hash": self.commit_hash, "summary": self.summary}


@dataclass(slots=True)
class Session:
    session_id: str
    plan_path: str
    commit_policy: CommitPolicy
    status: SessionStatus = "in_progress"
    current_step: str | None = None
    steps_completed: list[str] = field(default_factory=list)
    steps_remaining: list[str] = field(default_factory=list)
    tracker_mapping: dict[str, str] = field(default_factory=dict)
    retry_counters: dict[str, dict[str, int]] = field(default_factory=dict)
    needs_reconcile: bool = False
    reconciliation: dict[str, Any] | None = None
    branch: str | None = None
    base_branch: str | None = None
    feedback: dict[str, dict[str, dict[str, Any]]] = field(default_factory=dict)
    step_summaries: list[StepSummary] = field(default_factory=list)
    failure: dict[str, Any] | None = None
    schema_version: int = SESSION_SCHEMA_VERSION
    created_at: str = field(default_factory=utcnow_iso)
    last_updated_at: str = field(default_factory=utcnow_iso)

    @property
    def is_complete(self) -> bool:
        return not self.steps_remaining and not self.needs_reconcile

    def retry_count(self, step_id: str, phase: str) -> int:
        return int(self.retry_counters.get(step_id, {}).get(phase, 0))

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": self.schema_version,
            "session_id": self.session_id,
            "plan_path": self.plan_path,
            "commit_policy": self.commit_policy,
            "status": self.status,
            "current_step": self.current_step,
            "steps_completed": list(self.steps_completed),
            "steps_remaining": list(self.steps_remaining),
            "tracker_mapping": dict(self.tracker_mapping),
            "retry_counters": {step: dict(counts) for step, counts in self.retry_counters.items()},
            "needs_reconcile": self.needs_reconcile,
            "reconciliation": self.reconciliation,
            "branch": self.branch,
            "base_branch": self.base_branch,
            "feedback": {step: dict(phases) for step, phases in self.feedback.items()},
            "step_summaries": [summary.to_dict() for summary in self.step_summaries],
            "failure": self.failure,
            "created_at": self.created_at,
            "last_updated_at": self.last_updated_at,
        }

    @classmethod
    def from_dict(cls, data: Any) -> Session:
        if not isinstance(data, dict):
            raise StructuralError("Session record is not an object.")
        missing = [name for name in _REQUIRED_FIELDS if name not in data]
        if missing:
            raise StructuralError(f"Session record is missing fields: {', '.join(missing)}")
        if data["commit_policy"] not in ("immediate", "confirmed"):
            raise StructuralError(f"Session has unknown commit policy '{data['commit_policy']}'.")
        if data["status"] not in ("in_progress", "completed", "failed"):
            raise StructuralError(f"Session has unknown status '{data['status']}'.")
        if int(data.get("schema_version", 1)) > SESSION_SCHEMA_VERSION:
            raise StructuralError(
                f"Session schema {data['schema_version']} is newer than supported "
                f"{SESSION_SCHEMA_VERSION}."
            )
        try:
            return cls(
                session_id=str(data["session_id"]),
                plan_path=str(data["plan_path"]),
                commit_policy=data["commit_policy"],
                status=data["status"],
                current_step=data["current_step"],
                steps_completed=[str(step) for step in data["steps_completed"]],
                steps_remaining=[str(step) for step in data["steps_remaining"]],
                tracker_mapping={str(k): str(v) for k, v in data["tracker_mapping"].items()},
                retry_counters={
                    str(step): {str(phase): int(count) for phase, count in counts.items()}
                    for step, counts in data["retry_counters"].items()
                },
                needs_reconcile=bool(data["needs_reconcile"]),
                reconciliation=data.get("reconciliation"),
                branch=data.get("branch"),
                base_branch=data.get("base_branch"),
                feedback={
                    str(step): {str(phase): dict(item) for phase, item in phases.items()}
                    for step, phases in data.get("feedback", {}).items()
                },
                step_summaries=[
                    StepSummary(
                        step=str(item["step"]),
                        commit_hash=item.get("commit_hash"),
                        summary=str(item.get("summary", "")),
                    )
                    for item in data.get("step_summaries", [])
                ],
                failure=data.get("failure"),
                schema_version=int(data.get("schema_version", SESSION_SCHEMA_VERSION)),
                created_at=str(data.get("created_at") or utcnow_iso()),
                last_updated_at=str(data.get("last_updated_at") or utcnow_iso()),
            )
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise StructuralError(f"Session record is malformed: {exc}") from exc


class SessionManager:
    """Creates, persists and mutates sessions under ``<state>/sessions/<id>/``.

    Every mutating method saves before returning, so the on-disk record never
    lags behind the in-memory one by more than the call in flight.
    """

    SESSION_KEY = "session"
    DECISIONS_KEY = "decisions"
    METRICS_KEY = "metrics"

    def __init__(self, state_root: Path) -> None:
        self.state_root = state_root
        self.sessions_root = state_root / "sessions"

    @staticmethod
    def _check_id(session_id: str) -> None:
        if not session_id or "/" in session_id or session_id in {".", ".."}:
            raise StructuralError(f"Invalid session id: {session_id!r}")

    def _store(self, session_id: str) -> JsonFileStore:
        self._check_id(session_id)
        return JsonFileStore(self.sessions_root / session_id)

    def new_session_id(self, plan_path: str) -> str:
        stamp = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
        base = f"{_slug(Path(plan_path).stem)}-{stamp}"
        candidate = base
        suffix = 1
        while (self.sessions_root / candidate).exists():
            suffix += 1
            candidate = f"{base}-{suffix}"
        return candidate

    def create(
        self,
        *,
        plan_path: str,
        step_ids: list[str],
        commit_policy: CommitPolicy,
        tracker_mapping: dict[str, str] | None = None,
        branch: str | None = None,
        base_branch: str | None = None,
        session_id: str | None = None,
    ) -> Session:
        session = Session(
            session_id=session_id or self.new_session_id(plan_path),
            plan_path=plan_path,
            commit_policy=commit_policy,
            current_step=step_ids[0] if step_ids else None,
            steps_remaining=list(step_ids),
            tracker_mapping=dict(tracker_mapping or {}),
            branch=branch,
            base_branch=base_branch,
        )
        if not step_ids:
            session.status = "completed"
        self.save(session)
        logger.info("Created session %s with %d steps", session.session_id, len(step_ids))
        return session

    def exists(self, session_id: str) -> bool:
        self._check_id(session_id)
        return (self.sessions_root / session_id / f"{self.SESSION_KEY}.json").exists()

    def load(self, session_id: str) -> Session:
        if not self.exists(session_id):
            raise StructuralError(f"Session '{session_id}' does not exist.")
        return Session.from_dict(self._store(session_id).read(self.SESSION_KEY))

    def save(self, session: Session) -> None:
        session.last_updated_at = utcnow_iso()
        self._store(session.session_id).write(self.SESSION_KEY, session.to_dict())

    def artifacts(self, session_id: str) -> ArtifactStore:
        return ArtifactStore(self._store(session_id))

    def list(self) -> list[Session]:
        if not self.sessions_root.is_dir():
            return []
        sessions: list[Session] = []
        for directory in sorted(self.sessions_root.iterdir()):
            if not directory.is_dir() or not self.exists(directory.name):
                continue
            try:
                sessions.append(self.load(directory.name))
            except StructuralError as exc:
                logger.warning("Skipping unreadable session %s: %s", directory.name, exc)
        return sessions

    def delete(self, session_id: str) -> bool:
        self._check_id(session_id)
        directory = self.sessions_root / session_id
        if not directory.is_dir():
            return False
        shutil.rmtree(directory)
        logger.info("Deleted session %s", session_id)
        return True

    # Step bookkeeping

    def begin_step(self, session: Session, step_id: str, *, fresh: bool) -> None:
        if step_id not in session.steps_remaining:
            raise StructuralError(f"Step '{step_id}' is not pending in this session.", step=step_id)
        session.current_step = step_id
        session.status = "in_progress"
        session.failure = None
        if fresh:
            session.retry_counters.pop(step_id, None)
            session.feedback.pop(step_id, None)
        self.save(session)

    def increment_retry(self, session: Session, step_id: str, phase: str) -> int:
        if phase not in RETRY_PHASES:
            raise StructuralError(
                f"Phase '{phase}' has no retry counter.", step=step_id, phase=phase
            )
        counts = session.retry_counters.setdefault(step_id, {})
        counts[phase] = counts.get(phase, 0) + 1
        self.save(session)
        return counts[phase]

    def reset_retry(self, session: Session, step_id: str, phase: str) -> None:
        counts = session.retry_counters.get(step_id)
        if counts and phase in counts:
            counts[phase] = 0
            self.save(session)

    def set_feedback(
        self, session: Session, step_id: str, phase: str, feedback: dict[str, Any]
    ) -> None:
        """Keeps rework notes for the next run of ``phase``, across restarts."""
        session.feedback.setdefault(step_id, {})[phase] = dict(feedback)
        self.save(session)

    def clear_feedback(self, session: Session, step_id: str, phase: str) -> None:
        phases = session.feedback.get(step_id)
        if not phases or phase not in phases:
            return
        del phases[phase]
        if not phases:
            del session.feedback[step_id]
        self.save(session)

    def complete_step(
        self,
        session: Session,
        step_id: str,
        *,
        commit_hash: str | None,
        summary: str,
    ) -> None:
        if step_id in session.steps_remaining:
            session.steps_remaining.remove(step_id)
        if step_id not in session.steps_completed:
            session.steps_completed.append(step_id)
        session.step_summaries = [item for item in session.step_summaries if item.step != step_id]
        session.step_summaries.append(
            StepSummary(step=step_id, commit_hash=commit_hash, summary=summary)
        )
        session.retry_counters.pop(step_id, None)
        session.feedback.pop(step_id, None)
        session.current_step = session.steps_remaining[0] if session.steps_remaining else None
        if session.current_step is None and not session.needs_reconcile:
            session.status = "completed"
        self.save(session)

    def mark_failed(
        self,
        session: Session,
        *,
        step: str | None,
        phase: str | None,
        reason: str,
    ) -> None:
        session.status = "failed"
        session.failure = {"step": step, "phase": phase, "reason": reason}
        self.save(session)

    def flag_reconcile(
        self,
        session: Session,
        *,
        step_id: str,
        item_id: str | None,
        revision: str | None,
        error: str,
    ) -> None:
        session.needs_reconcile = True
        session.reconciliation = {
            "step": step_id,
            "item_id": item_id,
            "revision": revision,
            "error": error,
            "flagged_at": utcnow_iso(),
        }
        self.save(session)
        logger.warning("Session %s needs reconciliation for step %s", session.session_id, step_id)

    def clear_reconcile(self, session: Session) -> None:
        session.needs_reconcile = False
        session.reconciliation = None
        if not session.steps_remaining:
            session.status = "completed"
        self.save(session)

    # Decision log and telemetry

    def record_decision(self, session_id: str, entry: dict[str, Any]) -> None:
        stamped = {**entry, "decided_at": utcnow_iso()}
        self._store(session_id).update(
            self.DECISIONS_KEY,
            lambda current: [*(current or []), stamped],
            default=[],
        )

    def decisions(self, session_id: str) -> list[dict[str, Any]]:
        return list(self._store(session_id).read(self.DECISIONS_KEY, default=[]) or [])

    def record_event(self, session_id: str, event: dict[str, Any]) -> None:
        stamped = {**event, "at": utcnow_iso()}

        def _append(current: Any) -> dict[str, Any]:
            data = dict(current or {})
            events = [*data.get("backend_events", []), stamped]
            data["backend_events"] = events[-MAX_METRIC_EVENTS:]
            return data

        self._store(session_id).update(self.METRICS_KEY, _append, default={})

    def metrics(self, session_id: str) -> dict[str, Any]:
        return dict(self._store(session_id).read(self.METRICS_KEY, default={}) or {})
