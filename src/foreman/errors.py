from __future__ import annotations


class ForemanError(RuntimeError):
    """Base class for halts that report which step and phase stopped and why."""

    def __init__(
        self,
        reason: str,
        *,
        step: str | None = None,
        phase: str | None = None,
    ) -> None:
        self.reason = reason
        self.step = step
        self.phase = phase
        super().__init__(self._render())

    def _render(self) -> str:
        location = "/".join(part for part in (self.step, self.phase) if part)
        if location:
            return f"[{location}] {self.reason}"
        return self.reason

    def to_dict(self) -> dict[str, str | None]:
        return {"step": self.step, "phase": self.phase, "reason": self.reason}


class StructuralError(ForemanError):
    """Malformed or out-of-order state on disk. Never auto-repaired."""


class PhaseFailure(ForemanError):
    """A worker did not produce a usable result."""


class MalformedResponseError(PhaseFailure):
    """A worker answered, but the payload is missing or ill-typed."""


class EscalationError(ForemanError):
    """A decision request or its answer falls outside the fixed menu."""


class StepAborted(ForemanError):
    """A human (or policy) aborted the step."""

    def __init__(
        self,
        reason: str,
        *,
        step: str | None = None,
        phase: str | None = None,
        committed: bool = False,
    ) -> None:
        self.committed = committed
        super().__init__(reason, step=step, phase=phase)


class ReconciliationRequired(ForemanError):
    """A commit landed without its tracker closure and nobody acknowledged it."""
