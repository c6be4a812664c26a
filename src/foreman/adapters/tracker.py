from __future__ import annotations

import json
import logging
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any, Protocol

from foreman.adapters.plan import StepSpec
from foreman.state.store import JsonFileStore, utcnow_iso

logger = logging.getLogger(__name__)


class TrackerError(RuntimeError):
    """Raised when the issue tracker rejects or cannot process a request."""


class IssueTracker(Protocol):
    def sync_and_map(
        self,
        steps: Sequence[StepSpec],
        existing: Mapping[str, str] | None = None,
    ) -> dict[str, str]: ...

    def close(self, item_id: str, reason: str) -> None: ...


class LocalTracker:
    """Tracker items kept in a JSON record inside the state directory."""

    ITEMS_KEY = "items"

    def __init__(self, root: Path) -> None:
        self.store = JsonFileStore(root)

    def items(self) -> dict[str, dict[str, Any]]:
        return dict(self.store.read(self.ITEMS_KEY, default={}) or {})

    def sync_and_map(
        self,
        steps: Sequence[StepSpec],
        existing: Mapping[str, str] | None = None,
    ) -> dict[str, str]:
        mapping = dict(existing or {})

        def _sync(current: Any) -> dict[str, Any]:
            items = dict(current or {})
            by_step = {
                item["step"]: item_id
                for item_id, item in items.items()
                if item.get("status") == "open"
            }
            for step in steps:
                if step.step_id in mapping and mapping[step.step_id] in items:
                    continue
                if step.step_id in by_step:
                    mapping[step.step_id] = by_step[step.step_id]
                    continue
                item_id = f"fm-{len(items) + 1:04d}"
                items[item_id] = {
                    "step": step.step_id,
                    "title": step.title,
                    "status": "open",
                    "created_at": utcnow_iso(),
                }
                mapping[step.step_id] = item_id
            return items

        self.store.update(self.ITEMS_KEY, _sync, default={})
        return {step.step_id: mapping[step.step_id] for step in steps}

    def close(self, item_id: str, reason: str) -> None:
        def _close(current: Any) -> dict[str, Any]:
            items = dict(current or {})
            if item_id not in items:
                raise TrackerError(f"Unknown tracker item: {item_id}")
            items[item_id] = {
                **items[item_id],
                "status": "closed",
                "reason": reason,
                "closed_at": utcnow_iso(),
            }
            return items

        self.store.update(self.ITEMS_KEY, _close, default={})
        logger.info("Closed tracker item %s", item_id)


class CommandTracker:
    """Beads-style tracker driven through its command-line client."""

    def __init__(self, repo_root: Path, binary: str = "bd") -> None:
        self.repo_root = repo_root
        self.binary = binary

    def _run(self, args: list[str]) -> str:
        try:
            proc = subprocess.run(
                [self.binary, *args],
                cwd=self.repo_root,
                text=True,
                capture_output=True,
            )
        except FileNotFoundError as exc:
            raise TrackerError(f"Tracker binary not found: {self.binary}") from exc
        if proc.returncode != 0:
            detail = proc.stderr.strip() or proc.stdout.strip()
            raise TrackerError(detail or f"{self.binary} {args[0]} failed")
        return proc.stdout

    def _create(self, step: StepSpec) -> str:
        args = ["create", "--json", f"{step.step_id}: {step.title}"]
        if step.tasks:
            args.extend(["--description", "\n".join(f"- {task}" for task in step.tasks)])
        output = self._run(args)
        try:
            payload = json.loads(output)
        except json.JSONDecodeError as exc:
            raise TrackerError(f"Tracker returned non-JSON output: {output[:200]}") from exc
        item_id = payload.get("id") if isinstance(payload, dict) else None
        if not isinstance(item_id, str) or not item_id:
            raise TrackerError("Tracker create response has no id.")
        return item_id

    def sync_and_map(
        self,
        steps: Sequence[StepSpec],
        existing: Mapping[str, str] | None = None,
    ) -> dict[str, str]:
        mapping = dict(existing or {})
        for step in steps:
            if step.step_id not in mapping:
                mapping[step.step_id] = self._create(step)
        for step in steps:
            for dependency in step.depends_on:
                if dependency in mapping:
                    self._run(["dep", "add", mapping[step.step_id], mapping[dependency], "--json"])
        return {step.step_id: mapping[step.step_id] for step in steps}

    def close(self, item_id: str, reason: str) -> None:
        self._run(["close", item_id, "--reason", reason])
