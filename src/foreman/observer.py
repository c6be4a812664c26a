from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable

from foreman.drift import DriftAssessment, DriftPolicy, assess_drift, severity_at_least

logger = logging.getLogger(__name__)


class CancellationToken:
    """One-shot signal asking a running worker to stop early."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None
        self.assessment: DriftAssessment | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str, assessment: DriftAssessment | None = None) -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self.assessment = assessment
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


class DriftObserver:
    """Polls the working tree while the implementer runs and stops it on major drift."""

    def __init__(
        self,
        changed_files: Callable[[], Iterable[str]],
        expected: Iterable[str],
        policy: DriftPolicy,
        token: CancellationToken,
        *,
        interval_seconds: float = 5.0,
    ) -> None:
        self.changed_files = changed_files
        self.expected = list(expected)
        self.policy = policy
        self.token = token
        self.interval_seconds = interval_seconds
        self.last_assessment: DriftAssessment | None = None
        self._task: asyncio.Task[None] | None = None

    def check(self) -> DriftAssessment:
        assessment = assess_drift(self.expected, self.changed_files(), self.policy)
        self.last_assessment = assessment
        if severity_at_least(assessment.severity, "major"):
            logger.warning("Stopping implementation early: %s", assessment.summary())
            self.token.cancel("major drift observed during implementation", assessment)
        return assessment

    async def _run(self) -> None:
        while not self.token.cancelled:
            await asyncio.sleep(self.interval_seconds)
            await asyncio.to_thread(self.check)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        if task.done():
            task.result()
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def __aenter__(self) -> DriftObserver:
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()
