from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Any

from foreman.adapters.git import GitRepository, VcsError
from foreman.adapters.plan import StepSpec
from foreman.backends.base import AgentBackend
from foreman.commit import CommitPhase
from foreman.config import AgentsConfig, WorkflowConfig
from foreman.drift import DriftAssessment, DriftPolicy, assess_drift, normalize_path
from foreman.errors import ForemanError, PhaseFailure, StepAborted
from foreman.escalation import DecisionRequest, EscalationGateway
from foreman.implementation_log import ImplementationLog, LogEntry
from foreman.observer import CancellationToken, DriftObserver
from foreman.phases import IDEMPOTENT_PHASES, next_phase
from foreman.session import Session, SessionManager
from foreman.state.artifacts import ArtifactStore, AttemptRecord
from foreman.workers import (
    ImplementerWorker,
    ReviewerWorker,
    ScribeWorker,
    StrategistWorker,
    VerifierWorker,
    Worker,
    WorkerRequest,
    WorkerResponse,
)

logger = logging.getLogger(__name__)

SEVERE_FINDINGS = frozenset({"critical", "blocker"})


@dataclass(slots=True)
class StepOutcome:
    step_id: str
    completed: bool = False
    aborted: bool = False
    committed: bool = False
    revision: str | None = None
    needs_reconcile: bool = False
    halted_phase: str | None = None
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "completed": self.completed,
            "aborted": self.aborted,
            "committed": self.committed,
            "revision": self.revision,
            "needs_reconcile": self.needs_reconcile,
            "halted_phase": self.halted_phase,
            "reason": self.reason,
        }


@dataclass(slots=True)
class WorkerSet:
    strategist: Worker
    implementer: ImplementerWorker
    verifier: Worker
    reviewer: Worker
    scribe: Worker

    @classmethod
    def from_backend(cls, backend: AgentBackend, agents: AgentsConfig) -> WorkerSet:
        model = agents.model or None
        return cls(
            strategist=StrategistWorker(backend, model=model),
            implementer=ImplementerWorker(backend, model=agents.implementer_model or model),
            verifier=VerifierWorker(backend, model=model),
            reviewer=ReviewerWorker(backend, model=model),
            scribe=ScribeWorker(backend, model=model),
        )


@dataclass(slots=True)
class _StepRun:
    session: Session
    step: StepSpec
    artifacts: ArtifactStore

    @property
    def step_id(self) -> str:
        return self.step.step_id


class PhasePipeline:
    """Drives one step through strategy, implementation, drift gate, the two
    review loops, logging and commit.

    Each pass of the loop asks the artifact store for the furthest completed
    phase and runs the next one, so a crashed run resumes at the first phase
    without an artifact and never repeats a completed one.
    """

    def __init__(
        self,
        *,
        repo_root: Path,
        sessions: SessionManager,
        workers: WorkerSet,
        gateway: EscalationGateway,
        vcs: GitRepository,
        commit_phase: CommitPhase,
        implementation_log: ImplementationLog,
        drift_policy: DriftPolicy,
        workflow: WorkflowConfig,
    ) -> None:
        self.repo_root = repo_root
        self.sessions = sessions
        self.workers = workers
        self.gateway = gateway
        self.vcs = vcs
        self.commit_phase = commit_phase
        self.implementation_log = implementation_log
        self.drift_policy = drift_policy
        self.workflow = workflow

    async def run_step(self, session: Session, step: StepSpec) -> StepOutcome:
        artifacts = self.sessions.artifacts(session.session_id)
        latest = artifacts.latest_phase(step.step_id)
        fresh = latest is None and not artifacts.has_history(step.step_id)
        self.sessions.begin_step(session, step.step_id, fresh=fresh)
        run = _StepRun(session=session, step=step, artifacts=artifacts)
        if latest is not None:
            logger.info("Resuming step %s after %s", step.step_id, latest)

        failures: dict[str, int] = {}
        try:
            while (phase := next_phase(artifacts.latest_phase(step.step_id))) is not None:
                logger.debug("Step %s entering %s", step.step_id, phase)
                try:
                    await self._run_phase(run, phase)
                except PhaseFailure as exc:
                    failures[phase] = failures.get(phase, 0) + 1
                    await self._phase_failed(run, phase, exc, failures[phase])
                    continue
                if artifacts.read(step.step_id, phase) is not None:
                    self.sessions.clear_feedback(session, step.step_id, phase)
        except StepAborted as exc:
            self.sessions.mark_failed(session, step=exc.step, phase=exc.phase, reason=exc.reason)
            logger.warning("Step %s aborted: %s", step.step_id, exc)
            return StepOutcome(
                step_id=step.step_id,
                aborted=True,
                committed=exc.committed,
                halted_phase=exc.phase,
                reason=exc.reason,
            )
        except ForemanError as exc:
            self.sessions.mark_failed(
                session, step=exc.step or step.step_id, phase=exc.phase, reason=exc.reason
            )
            raise

        return self._finish(run)

    async def _run_phase(self, run: _StepRun, phase: str) -> None:
        if phase == "strategy":
            await self._strategy(run)
        elif phase == "implementation":
            await self._implementation(run)
        elif phase == "verification":
            await self._review_loop(run, "verification", self.workers.verifier)
        elif phase == "quality_review":
            await self._review_loop(run, "quality_review", self.workers.reviewer)
        elif phase == "logging":
            await self._logging(run)
        else:
            await self.commit_phase.run(run.session, run.step, run.artifacts)

    async def _phase_failed(
        self, run: _StepRun, phase: str, exc: PhaseFailure, failures: int
    ) -> None:
        """Records a failed phase and asks whether to retry it; aborting ends the step."""
        run.artifacts.record_attempt(
            run.step_id, phase, "failed", {"reason": exc.reason, "failures": failures}
        )
        logger.warning("%s failed for %s (%d): %s", phase, run.step_id, failures, exc.reason)
        choice = await self._decide(
            DecisionRequest(
                context="phase_failure",
                summary=f"{phase} failed: {exc.reason}",
                data={"failures": failures, "reason": exc.reason},
                step=run.step_id,
                phase=phase,
            )
        )
        if choice == "abort":
            raise StepAborted(exc.reason, step=run.step_id, phase=phase) from exc

    def _changed_files(self, step_id: str, phase: str) -> list[str]:
        try:
            return self.vcs.changed_files()
        except VcsError as exc:
            raise PhaseFailure(
                f"Could not list changed files: {exc}", step=step_id, phase=phase
            ) from exc

    # Rework feedback lives in the session so a resumed step still sees it.

    def _feedback(self, run: _StepRun, phase: str) -> dict[str, Any] | None:
        return run.session.feedback.get(run.step_id, {}).get(phase)

    def _set_feedback(self, run: _StepRun, phase: str, feedback: dict[str, Any]) -> None:
        self.sessions.set_feedback(run.session, run.step_id, phase, feedback)

    def _finish(self, run: _StepRun) -> StepOutcome:
        commit = run.artifacts.read(run.step_id, "commit")
        payload = commit.payload if commit else {}
        revision = payload.get("revision")
        if not payload.get("tracker_closed", False):
            if not run.session.needs_reconcile:
                self.sessions.flag_reconcile(
                    run.session,
                    step_id=run.step_id,
                    item_id=payload.get("item_id"),
                    revision=revision,
                    error=payload.get("tracker_error") or "tracker close failed",
                )
            reason = f"Committed as {revision} but the tracker item was not closed."
            self.sessions.mark_failed(run.session, step=run.step_id, phase="commit", reason=reason)
            return StepOutcome(
                step_id=run.step_id,
                aborted=True,
                committed=True,
                revision=revision,
                needs_reconcile=True,
                halted_phase="commit",
                reason=reason,
            )
        logging_artifact = run.artifacts.read(run.step_id, "logging")
        summary = str(logging_artifact.payload.get("summary", "")) if logging_artifact else ""
        self.sessions.complete_step(run.session, run.step_id, commit_hash=revision, summary=summary)
        logger.info("Step %s committed as %s", run.step_id, revision)
        return StepOutcome(step_id=run.step_id, completed=True, committed=True, revision=revision)

    # Worker invocation

    def _prior(self, run: _StepRun) -> dict[str, dict[str, Any]]:
        return {artifact.phase: artifact.payload for artifact in run.artifacts.list(run.step_id)}

    async def _decide(self, request: DecisionRequest) -> str:
        return await self.gateway.decide_async(request)

    async def _invoke(self, run: _StepRun, worker: Worker, **kwargs: Any) -> WorkerResponse:
        phase = worker.phase
        failures = 0
        while True:
            request = WorkerRequest(
                session_id=run.session.session_id,
                step=run.step,
                phase=phase,
                prior=self._prior(run),
                feedback=self._feedback(run, phase),
                attempt=failures + 1,
            )
            try:
                response = await worker.run(request, **kwargs)
                if response.verdict == "fail":
                    reason = response.payload.get("reason") or response.payload.get("summary")
                    raise PhaseFailure(
                        str(reason or f"{worker.role} reported failure"),
                        step=run.step_id,
                        phase=phase,
                    )
            except PhaseFailure as exc:
                failures += 1
                if phase in IDEMPOTENT_PHASES and failures <= self.workflow.phase_failure_retries:
                    run.artifacts.record_attempt(
                        run.step_id, phase, "failed", {"reason": exc.reason, "failures": failures}
                    )
                    logger.warning(
                        "%s failed for %s (%d), retrying: %s",
                        phase,
                        run.step_id,
                        failures,
                        exc.reason,
                    )
                    continue
                await self._phase_failed(run, phase, exc, failures)
                continue
            return response

    async def _worker_escalation(self, run: _StepRun, response: WorkerResponse) -> str:
        choice = await self._decide(
            DecisionRequest(
                context="worker_escalation",
                summary=str(
                    response.payload.get("summary") or f"{response.phase} asked for a decision."
                ),
                data=response.payload,
                step=run.step_id,
                phase=response.phase,
            )
        )
        if choice == "abort":
            raise StepAborted(
                f"Aborted after {response.phase} escalation.",
                step=run.step_id,
                phase=response.phase,
            )
        return choice

    # Phases

    async def _strategy(self, run: _StepRun) -> None:
        response = await self._invoke(run, self.workers.strategist)
        if response.verdict == "escalate":
            choice = await self._worker_escalation(run, response)
            if choice == "revise":
                self._set_feedback(
                    run, "strategy", {"reason": "revision requested", "previous": response.payload}
                )
                return
        run.artifacts.write(run.step_id, "strategy", response.payload)

    def _expected_files(self, run: _StepRun) -> list[str]:
        strategy = run.artifacts.read(run.step_id, "strategy")
        planned = list(strategy.payload.get("expected_files", [])) if strategy else []
        return sorted({*planned, *run.step.expected_artifacts})

    async def _implementation(self, run: _StepRun) -> None:
        pending = run.artifacts.pending_review(run.step_id)
        if pending is not None:
            logger.info("Step %s has an implementation awaiting drift review", run.step_id)
            await self._drift_gate(run, pending)
            return

        expected = self._expected_files(run)
        token = CancellationToken()
        if self.workflow.observer_enabled:
            observer = DriftObserver(
                partial(self._changed_files, run.step_id, "implementation"),
                expected,
                self.drift_policy,
                token,
                interval_seconds=self.workflow.observer_interval_seconds,
            )
            async with observer:
                response = await self._invoke(run, self.workers.implementer, token=token)
        else:
            response = await self._invoke(run, self.workers.implementer, token=token)

        if response.verdict == "escalate":
            choice = await self._worker_escalation(run, response)
            if choice == "revise":
                self._set_feedback(
                    run,
                    "implementation",
                    {"reason": "revision requested", "previous": response.payload},
                )
                return

        reported = [normalize_path(path) for path in response.payload.get("touched_files", [])]
        actual = sorted({*reported, *self._changed_files(run.step_id, "implementation")})
        assessment = assess_drift(expected, actual, self.drift_policy)
        payload = {
            **response.payload,
            "touched_files": [path for path in actual if not self.drift_policy.is_ignored(path)],
            "verdict": response.verdict,
            "drift": assessment.to_dict(),
        }
        if response.verdict == "partial" or assessment.blocking:
            outcome = "partial" if response.verdict == "partial" else "awaiting_review"
            record = run.artifacts.record_attempt(run.step_id, "implementation", outcome, payload)
            await self._drift_gate(run, record)
            return
        run.artifacts.write(run.step_id, "implementation", payload)

    async def _drift_gate(self, run: _StepRun, record: AttemptRecord) -> None:
        assessment = DriftAssessment.from_dict(record.payload["drift"])
        context = "partial_implementation" if record.outcome == "partial" else "drift"
        summary = assessment.summary()
        if record.outcome == "partial":
            summary = f"{record.payload.get('summary', 'Implementation stopped early.')} {summary}"
        choice = await self._decide(
            DecisionRequest(
                context=context,
                summary=summary,
                data={
                    "drift": assessment.to_dict(),
                    "touched_files": record.payload["touched_files"],
                },
                step=run.step_id,
                phase="implementation",
            )
        )
        # Resolve the attempt before touching artifacts.
        if choice == "continue":
            payload = {key: value for key, value in record.payload.items() if key != "resolved"}
            run.artifacts.resolve_attempt(record, choice)
            run.artifacts.write(run.step_id, "implementation", payload)
            return
        if choice == "abort":
            run.artifacts.resolve_attempt(record, choice)
            raise StepAborted(
                f"Aborted at drift review ({assessment.severity}).",
                step=run.step_id,
                phase="implementation",
            )
        drift = assessment.to_dict()
        self._set_feedback(run, "strategy", {"reason": "scope drift", "drift": drift})
        run.artifacts.resolve_attempt(record, choice)
        run.artifacts.invalidate_from(run.step_id, "strategy")

    def _ceiling(self, phase: str) -> int:
        if phase == "verification":
            return self.workflow.verification_max_retries
        return self.workflow.quality_review_max_retries

    @staticmethod
    def _has_severe_findings(payload: dict[str, Any]) -> bool:
        for finding in payload.get("findings", []):
            if not isinstance(finding, dict):
                continue
            if str(finding.get("severity", "")).lower() in SEVERE_FINDINGS:
                return True
        return False

    def _loop_back(self, run: _StepRun, phase: str, payload: dict[str, Any]) -> None:
        self._set_feedback(run, "implementation", {"from": phase, **payload})
        run.artifacts.invalidate_from(run.step_id, "implementation")

    async def _review_loop(self, run: _StepRun, phase: str, worker: Worker) -> None:
        response = await self._invoke(run, worker)
        verdict = response.verdict
        if (
            phase == "quality_review"
            and verdict == "approve"
            and self._has_severe_findings(response.payload)
        ):
            verdict = "escalate"

        if verdict == "approve":
            run.artifacts.write(run.step_id, phase, response.payload)
            return

        if verdict == "escalate":
            choice = await self._worker_escalation(run, response)
        else:
            count = self.sessions.increment_retry(run.session, run.step_id, phase)
            ceiling = self._ceiling(phase)
            run.artifacts.record_attempt(
                run.step_id, phase, "rejected", {**response.payload, "retry": count}
            )
            if count < ceiling:
                logger.info("%s asked for rework of %s (%d/%d)", phase, run.step_id, count, ceiling)
                self._loop_back(run, phase, response.payload)
                return
            choice = await self._decide(
                DecisionRequest(
                    context=f"{phase}_exhausted",  # type: ignore[arg-type]
                    summary=(
                        f"{phase} asked for rework {count} times: "
                        f"{response.payload.get('summary', '')}"
                    ),
                    data={"retries": count, "ceiling": ceiling, "payload": response.payload},
                    step=run.step_id,
                    phase=phase,
                )
            )
            if choice == "abort":
                raise StepAborted(
                    f"Aborted after {count} {phase} reworks.", step=run.step_id, phase=phase
                )
            if choice == "revise":
                self.sessions.reset_retry(run.session, run.step_id, phase)

        if choice == "continue":
            run.artifacts.write(run.step_id, phase, {**response.payload, "override": "continue"})
        else:
            self._loop_back(run, phase, response.payload)

    async def _logging(self, run: _StepRun) -> None:
        response = await self._invoke(run, self.workers.scribe)
        implementation = run.artifacts.read(run.step_id, "implementation")
        touched = list(implementation.payload.get("touched_files", [])) if implementation else []
        entry = LogEntry(
            entry_id=f"{run.session.session_id}/{run.step_id}",
            step=run.step_id,
            title=run.step.title,
            summary=str(response.payload["summary"]),
            session=run.session.session_id,
            metadata={"touched_files": touched},
        )
        changed = self.implementation_log.prepend(entry)
        log_files = [self._relative(path) for path in changed]
        run.artifacts.write(run.step_id, "logging", {**response.payload, "log_files": log_files})

    def _relative(self, path: Path) -> str:
        try:
            return path.resolve().relative_to(self.repo_root.resolve()).as_posix()
        except ValueError:
            return path.as_posix()
