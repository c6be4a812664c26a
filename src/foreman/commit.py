from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from foreman.adapters.git import GitRepository, VcsError
from foreman.adapters.plan import StepSpec
from foreman.adapters.tracker import IssueTracker, TrackerError
from foreman.errors import PhaseFailure, StepAborted, StructuralError
from foreman.escalation import DecisionRequest, EscalationGateway
from foreman.session import Session, SessionManager
from foreman.state.artifacts import ArtifactStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CommitResult:
    committed: bool
    revision: str | None
    tracker_closed: bool
    message: str
    staged: list[str] = field(default_factory=list)
    item_id: str | None = None
    tracker_error: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "committed": self.committed,
            "revision": self.revision,
            "tracker_closed": self.tracker_closed,
            "message": self.message,
            "staged": list(self.staged),
            "item_id": self.item_id,
            "tracker_error": self.tracker_error,
        }


class CommitPhase:
    """Stages the step's files, commits them and closes the tracker item.

    Under the ``confirmed`` policy a human sees the staged list and message
    before anything is committed; rejecting unstages everything again.
    """

    def __init__(
        self,
        *,
        vcs: GitRepository,
        tracker: IssueTracker,
        gateway: EscalationGateway,
        sessions: SessionManager,
        log_path: str,
        archive_dir: str,
    ) -> None:
        self.vcs = vcs
        self.tracker = tracker
        self.gateway = gateway
        self.sessions = sessions
        self.log_path = log_path
        self.archive_dir = archive_dir.rstrip("/")

    def files_to_stage(self, touched_files: list[str]) -> list[str]:
        archived = [
            path
            for path in self.vcs.changed_files()
            if path.startswith(f"{self.archive_dir}/")
        ]
        return sorted({*touched_files, self.log_path, *archived})

    @staticmethod
    def commit_message(step: StepSpec, logging_payload: dict[str, Any]) -> str:
        subject = str(logging_payload.get("commit_message") or step.title).strip().splitlines()[0]
        body = str(logging_payload.get("summary", "")).strip()
        message = f"{step.step_id}: {subject}"
        return f"{message}\n\n{body}" if body else message

    def _already_committed(self, step: StepSpec, message: str) -> str | None:
        try:
            head = self.vcs.head()
        except VcsError as exc:
            raise PhaseFailure(
                f"Could not read HEAD: {exc}", step=step.step_id, phase="commit"
            ) from exc
        if head is None:
            return None
        revision, subject = head
        return revision if subject == message.splitlines()[0] else None

    async def run(self, session: Session, step: StepSpec, artifacts: ArtifactStore) -> CommitResult:
        implementation = artifacts.read(step.step_id, "implementation")
        logging_artifact = artifacts.read(step.step_id, "logging")
        if implementation is None or logging_artifact is None:
            raise StructuralError(
                "Commit requires implementation and logging artifacts.",
                step=step.step_id,
                phase="commit",
            )
        message = self.commit_message(step, logging_artifact.payload)

        try:
            touched = list(implementation.payload["touched_files"])
            staged = self.vcs.stage(self.files_to_stage(touched))
        except VcsError as exc:
            raise PhaseFailure(f"Staging failed: {exc}", step=step.step_id, phase="commit") from exc

        if not staged:
            revision = self._already_committed(step, message)
            if revision is None:
                raise PhaseFailure("No changes to commit.", step=step.step_id, phase="commit")
            logger.info("Step %s was already committed as %s", step.step_id, revision)
        else:
            if session.commit_policy == "confirmed":
                choice = await self.gateway.decide_async(
                    DecisionRequest(
                        context="commit_confirmation",
                        summary=f"Commit {len(staged)} files for {step.step_id}?",
                        data={"staged": staged, "message": message},
                        step=step.step_id,
                        phase="commit",
                    )
                )
                if choice == "reject":
                    reason = "Commit rejected; staged files were unstaged."
                    try:
                        self.vcs.unstage(staged)
                    except VcsError as exc:
                        logger.error("Unstaging %s failed: %s", step.step_id, exc)
                        reason = f"Commit rejected; unstaging failed: {exc}"
                    raise StepAborted(
                        reason,
                        step=step.step_id,
                        phase="commit",
                    )
            try:
                revision = self.vcs.commit(message)
            except VcsError as exc:
                raise PhaseFailure(
                    f"Commit failed: {exc}", step=step.step_id, phase="commit"
                ) from exc

        result = CommitResult(
            committed=True,
            revision=revision,
            tracker_closed=False,
            message=message,
            staged=staged,
            item_id=session.tracker_mapping.get(step.step_id),
        )
        if result.item_id is None:
            result.tracker_closed = True
        else:
            try:
                self.tracker.close(result.item_id, f"Completed in {revision}")
                result.tracker_closed = True
            except TrackerError as exc:
                result.tracker_error = str(exc)
                logger.error("Tracker close failed for %s: %s", result.item_id, exc)

        artifacts.write(step.step_id, "commit", result.to_payload())
        if not result.tracker_closed:
            self.sessions.flag_reconcile(
                session,
                step_id=step.step_id,
                item_id=result.item_id,
                revision=revision,
                error=result.tracker_error or "tracker close failed",
            )
        return result
