from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Literal

import click

from foreman.errors import EscalationError

logger = logging.getLogger(__name__)

ContextTag = Literal[
    "drift",
    "verification_exhausted",
    "quality_review_exhausted",
    "worker_escalation",
    "partial_implementation",
    "phase_failure",
    "commit_confirmation",
    "reconciliation",
]

_REWORK_MENU = ("continue", "revise", "abort")

MENUS: dict[str, tuple[str, ...]] = {
    "drift": _REWORK_MENU,
    "verification_exhausted": _REWORK_MENU,
    "quality_review_exhausted": _REWORK_MENU,
    "worker_escalation": _REWORK_MENU,
    "partial_implementation": _REWORK_MENU,
    "phase_failure": ("retry", "abort"),
    "commit_confirmation": ("commit", "reject"),
    "reconciliation": ("acknowledge", "retry_close", "abort"),
}


@dataclass(slots=True)
class DecisionRequest:
    context: ContextTag
    summary: str
    data: dict[str, Any] = field(default_factory=dict)
    step: str | None = None
    phase: str | None = None

    @property
    def options(self) -> tuple[str, ...]:
        try:
            return MENUS[self.context]
        except KeyError as exc:
            raise EscalationError(
                f"No decision menu for context '{self.context}'.",
                step=self.step,
                phase=self.phase,
            ) from exc

    def to_dict(self) -> dict[str, Any]:
        return {
            "context": self.context,
            "summary": self.summary,
            "data": self.data,
            "step": self.step,
            "phase": self.phase,
            "options": list(self.options),
        }


Prompter = Callable[[DecisionRequest], str]
DecisionRecorder = Callable[[dict[str, Any]], None]


class EscalationGateway:
    """Routes every blocking condition to a human and validates the answer."""

    def __init__(self, prompter: Prompter, recorder: DecisionRecorder | None = None) -> None:
        self.prompter = prompter
        self.recorder = recorder

    def decide(self, request: DecisionRequest) -> str:
        options = request.options
        answer = self.prompter(request)
        choice = answer.strip().lower() if isinstance(answer, str) else answer
        if choice not in options:
            raise EscalationError(
                f"Answer {answer!r} is not one of {', '.join(options)} for '{request.context}'.",
                step=request.step,
                phase=request.phase,
            )
        logger.info(
            "Decision for %s at %s/%s: %s",
            request.context,
            request.step or "-",
            request.phase or "-",
            choice,
        )
        if self.recorder is not None:
            self.recorder({**request.to_dict(), "choice": choice})
        return choice

    async def decide_async(self, request: DecisionRequest) -> str:
        return await asyncio.to_thread(self.decide, request)


def click_prompter(request: DecisionRequest) -> str:
    """Interactive prompter for the terminal."""
    location = "/".join(part for part in (request.step, request.phase) if part)
    header = f"[{request.context}]"
    if location:
        header = f"{header} {location}"
    click.secho(header, fg="yellow", bold=True, err=True)
    click.echo(request.summary, err=True)
    if request.data:
        click.echo(json.dumps(request.data, ensure_ascii=False, indent=2), err=True)
    return click.prompt(
        "Decision",
        type=click.Choice(list(request.options), case_sensitive=False),
        err=True,
    )
