from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import Any

from foreman.adapters.git import GitRepository, VcsError
from foreman.adapters.plan import PlanReader, TomlPlanReader
from foreman.adapters.tracker import IssueTracker, TrackerError
from foreman.commit import CommitPhase
from foreman.config import CommitPolicy, ForemanConfig
from foreman.drift import DriftPolicy
from foreman.errors import ForemanError, ReconciliationRequired, StructuralError
from foreman.escalation import DecisionRequest, EscalationGateway, Prompter
from foreman.implementation_log import ImplementationLog
from foreman.pipeline import PhasePipeline, StepOutcome, WorkerSet
from foreman.session import Session, SessionManager

logger = logging.getLogger(__name__)


class BackendTelemetry:
    """Event hook for the backend layer that files events under the active session."""

    def __init__(self, sessions: SessionManager) -> None:
        self.sessions = sessions
        self.session_id: str | None = None

    def __call__(self, event: dict[str, Any]) -> None:
        if self.session_id is not None:
            self.sessions.record_event(self.session_id, event)


@dataclass(slots=True)
class RunSummary:
    session_id: str
    status: str
    outcomes: list[StepOutcome] = field(default_factory=list)
    needs_reconcile: bool = False
    steps_remaining: list[str] = field(default_factory=list)

    @property
    def halted(self) -> StepOutcome | None:
        for outcome in self.outcomes:
            if not outcome.completed:
                return outcome
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "status": self.status,
            "needs_reconcile": self.needs_reconcile,
            "steps_remaining": list(self.steps_remaining),
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
        }


class Conductor:
    """Runs a plan's steps one after another inside a resumable session."""

    def __init__(
        self,
        *,
        repo_root: Path,
        config: ForemanConfig,
        sessions: SessionManager,
        workers: WorkerSet,
        vcs: GitRepository,
        tracker: IssueTracker,
        prompter: Prompter,
        telemetry: BackendTelemetry | None = None,
        plan_loader: Callable[[Path], PlanReader] = TomlPlanReader,
    ) -> None:
        self.repo_root = repo_root
        self.config = config
        self.sessions = sessions
        self.workers = workers
        self.vcs = vcs
        self.tracker = tracker
        self.prompter = prompter
        self.telemetry = telemetry
        self.plan_loader = plan_loader

    def gateway_for(self, session: Session) -> EscalationGateway:
        return EscalationGateway(
            self.prompter,
            recorder=partial(self.sessions.record_decision, session.session_id),
        )

    def pipeline_for(self, session: Session) -> PhasePipeline:
        gateway = self.gateway_for(session)
        log = self.config.log
        return PhasePipeline(
            repo_root=self.repo_root,
            sessions=self.sessions,
            workers=self.workers,
            gateway=gateway,
            vcs=self.vcs,
            commit_phase=CommitPhase(
                vcs=self.vcs,
                tracker=self.tracker,
                gateway=gateway,
                sessions=self.sessions,
                log_path=log.path,
                archive_dir=log.archive_dir,
            ),
            implementation_log=ImplementationLog(
                self.repo_root / log.path,
                self.repo_root / log.archive_dir,
                max_lines=log.max_lines,
                max_bytes=log.max_bytes,
            ),
            drift_policy=DriftPolicy.from_config(
                self.config.drift,
                state_directory=self.config.state.directory,
                log_path=log.path,
            ),
            workflow=self.config.workflow,
        )

    @staticmethod
    def select_steps(
        plan: PlanReader,
        from_step: str | None = None,
        to_step: str | None = None,
    ) -> list[str]:
        order = plan.step_ids()
        for bound in (from_step, to_step):
            if bound is not None and bound not in order:
                raise StructuralError(f"Plan has no step '{bound}'.", step=bound)
        start = order.index(from_step) if from_step else 0
        end = order.index(to_step) if to_step else len(order) - 1
        if start > end:
            raise StructuralError(f"Step range {from_step}..{to_step} selects no steps.")
        return order[start : end + 1]

    def _plan_path(self, plan_path: Path) -> str:
        try:
            return plan_path.resolve().relative_to(self.repo_root.resolve()).as_posix()
        except ValueError:
            return str(plan_path)

    async def start(
        self,
        plan_path: Path,
        *,
        commit_policy: CommitPolicy | None = None,
        from_step: str | None = None,
        to_step: str | None = None,
        plan: PlanReader | None = None,
    ) -> RunSummary:
        plan = plan or self.plan_loader(plan_path)
        step_ids = self.select_steps(plan, from_step, to_step)
        try:
            mapping = self.tracker.sync_and_map([plan.get_step(step_id) for step_id in step_ids])
        except TrackerError as exc:
            raise ForemanError(f"Tracker sync failed: {exc}") from exc
        relative_plan = self._plan_path(plan_path)
        session_id = self.sessions.new_session_id(relative_plan)
        base_branch, branch = self._open_branch(session_id)
        session = self.sessions.create(
            plan_path=relative_plan,
            step_ids=step_ids,
            commit_policy=commit_policy or self.config.workflow.commit_policy,
            tracker_mapping=mapping,
            branch=branch,
            base_branch=base_branch,
            session_id=session_id,
        )
        return await self._run(session, plan)

    def _open_branch(self, session_id: str) -> tuple[str, str]:
        """Puts the session on its own branch cut from the current HEAD.

        Returns the base and session branch names. An empty
        ``project.branch_prefix`` keeps the session on the current branch.
        """
        prefix = self.config.project.branch_prefix
        try:
            base = self.vcs.current_branch()
            if not prefix:
                return base, base
            branch = f"{prefix}{session_id}"
            self.vcs.create_branch(branch)
        except VcsError as exc:
            raise ForemanError(f"Could not open the session branch: {exc}") from exc
        if base != self.config.project.base_branch:
            logger.warning(
                "Session branch %s starts from %s, not %s",
                branch,
                base,
                self.config.project.base_branch,
            )
        logger.info("Session %s works on %s", session_id, branch)
        return base, branch

    def _enter_branch(self, session: Session) -> None:
        if not session.branch:
            return
        try:
            if self.vcs.current_branch() != session.branch:
                self.vcs.switch(session.branch)
                logger.info("Switched to session branch %s", session.branch)
        except VcsError as exc:
            raise ForemanError(
                f"Could not switch to session branch {session.branch}: {exc}"
            ) from exc

    async def resume(self, session_id: str, *, plan: PlanReader | None = None) -> RunSummary:
        session = self.sessions.load(session_id)
        self._enter_branch(session)
        plan = plan or self.plan_loader(self.repo_root / session.plan_path)
        logger.info("Resuming session %s at %s", session_id, session.current_step)
        return await self._run(session, plan)

    async def reconcile(self, session: Session) -> None:
        """Resolve a commit that landed without its tracker closure.

        Returns once the flag is cleared; raises ``ReconciliationRequired``
        when the human aborts or a retried close fails again.
        """
        details = dict(session.reconciliation or {})
        step_id = details.get("step") or session.current_step
        item_id = details.get("item_id")
        revision = details.get("revision")
        gateway = self.gateway_for(session)
        choice = await gateway.decide_async(
            DecisionRequest(
                context="reconciliation",
                summary=(
                    f"Step {step_id} was committed as {revision} but tracker item "
                    f"{item_id} was not closed: {details.get('error')}"
                ),
                data=details,
                step=step_id,
                phase="commit",
            )
        )
        if choice == "abort":
            raise ReconciliationRequired(
                "Reconciliation left open; the session will not advance.",
                step=step_id,
                phase="commit",
            )
        if choice == "retry_close":
            try:
                if item_id:
                    self.tracker.close(item_id, f"Completed in {revision}")
            except TrackerError as exc:
                self.sessions.flag_reconcile(
                    session, step_id=step_id, item_id=item_id, revision=revision, error=str(exc)
                )
                raise ReconciliationRequired(
                    f"Tracker close failed again: {exc}", step=step_id, phase="commit"
                ) from exc
            self._mark_tracker_closed(session, step_id)

        self.sessions.clear_reconcile(session)
        if step_id and step_id in session.steps_remaining:
            artifacts = self.sessions.artifacts(session.session_id)
            logging_artifact = artifacts.read(step_id, "logging")
            summary = str(logging_artifact.payload.get("summary", "")) if logging_artifact else ""
            self.sessions.complete_step(session, step_id, commit_hash=revision, summary=summary)
        logger.info("Reconciled step %s with %s", step_id, choice)

    def _mark_tracker_closed(self, session: Session, step_id: str) -> None:
        artifacts = self.sessions.artifacts(session.session_id)
        commit = artifacts.read(step_id, "commit")
        if commit is not None:
            artifacts.write(
                step_id, "commit", {**commit.payload, "tracker_closed": True, "tracker_error": None}
            )

    async def _run(self, session: Session, plan: PlanReader) -> RunSummary:
        if self.telemetry is not None:
            self.telemetry.session_id = session.session_id
        if session.needs_reconcile:
            await self.reconcile(session)

        pipeline = self.pipeline_for(session)
        in_session = set(session.steps_completed) | set(session.steps_remaining)
        outcomes: list[StepOutcome] = []
        for step_id in list(session.steps_remaining):
            step = plan.get_step(step_id)
            unmet = [
                dependency
                for dependency in step.depends_on
                if dependency in in_session and dependency not in session.steps_completed
            ]
            if unmet:
                error = StructuralError(
                    f"Dependencies not completed: {', '.join(unmet)}", step=step_id
                )
                self.sessions.mark_failed(session, step=step_id, phase=None, reason=error.reason)
                raise error
            outcome = await pipeline.run_step(session, step)
            outcomes.append(outcome)
            if not outcome.completed:
                break

        return RunSummary(
            session_id=session.session_id,
            status=session.status,
            outcomes=outcomes,
            needs_reconcile=session.needs_reconcile,
            steps_remaining=list(session.steps_remaining),
        )

    def publish(self, session_id: str) -> dict[str, str]:
        session = self.sessions.load(session_id)
        if session.needs_reconcile:
            raise ReconciliationRequired(
                "Resolve the open reconciliation before publishing.",
                step=(session.reconciliation or {}).get("step"),
            )
        if session.steps_remaining:
            raise ForemanError(
                f"Session still has {len(session.steps_remaining)} unfinished steps."
            )
        branch = session.branch or self.vcs.current_branch()
        try:
            result = self.vcs.publish(branch, self.config.project.remote)
        except VcsError as exc:
            raise ForemanError(f"Publish failed: {exc}") from exc
        self.sessions.record_event(session_id, {"event": "published", **result})
        return result
