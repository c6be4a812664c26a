from __future__ import annotations

from typing import Literal

Phase = Literal["strategy", "implementation", "verification", "quality_review", "logging", "commit"]

PHASES: tuple[Phase, ...] = (
    "strategy",
    "implementation",
    "verification",
    "quality_review",
    "logging",
    "commit",
)

# Phases whose worker can be invoked twice without side effects on the worktree.
IDEMPOTENT_PHASES: frozenset[str] = frozenset(
    {"strategy", "verification", "quality_review", "logging"}
)

RETRY_PHASES: frozenset[str] = frozenset({"verification", "quality_review"})


def phase_index(phase: str) -> int:
    try:
        return PHASES.index(phase)  # type: ignore[arg-type]
    except ValueError as exc:
        raise ValueError(f"Unknown phase: {phase}") from exc


def next_phase(phase: str | None) -> Phase | None:
    """Phase that follows ``phase``; the first phase for ``None``; ``None`` after commit."""
    if phase is None:
        return PHASES[0]
    index = phase_index(phase) + 1
    if index >= len(PHASES):
        return None
    return PHASES[index]
