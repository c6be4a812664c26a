from __future__ import annotations

import graphlib
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from foreman.errors import StructuralError


@dataclass(frozen=True, slots=True)
class StepSpec:
    step_id: str
    title: str
    depends_on: tuple[str, ...] = ()
    tasks: tuple[str, ...] = ()
    expected_artifacts: tuple[str, ...] = ()
    verification_commands: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "title": self.title,
            "depends_on": list(self.depends_on),
            "tasks": list(self.tasks),
            "expected_artifacts": list(self.expected_artifacts),
            "verification_commands": list(self.verification_commands),
        }


class PlanReader(Protocol):
    def step_ids(self) -> list[str]: ...

    def get_step(self, step_id: str) -> StepSpec: ...


def _string_list(raw: dict[str, Any], key: str, step_id: str) -> tuple[str, ...]:
    value = raw.get(key, [])
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise StructuralError(f"Plan field '{key}' must be a list of strings.", step=step_id)
    return tuple(value)


class TomlPlanReader:
    """Plan document with one ``[[steps]]`` table per step."""

    def __init__(self, path: Path) -> None:
        self.path = path
        try:
            data = tomllib.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise StructuralError(f"Plan not found: {path}") from exc
        except tomllib.TOMLDecodeError as exc:
            raise StructuralError(f"Plan {path} is not valid TOML: {exc}") from exc
        self.title = str(data.get("title", path.stem))
        self._steps: dict[str, StepSpec] = {}
        for raw in data.get("steps", []):
            step = self._parse_step(raw)
            if step.step_id in self._steps:
                raise StructuralError(f"Duplicate step id in plan: {step.step_id}")
            self._steps[step.step_id] = step
        if not self._steps:
            raise StructuralError(f"Plan {path} declares no steps.")
        self._order = self._resolve_order()

    @staticmethod
    def _parse_step(raw: Any) -> StepSpec:
        if not isinstance(raw, dict) or not isinstance(raw.get("id"), str) or not raw["id"].strip():
            raise StructuralError("Every plan step needs a non-empty string 'id'.")
        step_id = raw["id"].strip()
        return StepSpec(
            step_id=step_id,
            title=str(raw.get("title", step_id)),
            depends_on=_string_list(raw, "depends_on", step_id),
            tasks=_string_list(raw, "tasks", step_id),
            expected_artifacts=_string_list(raw, "expected_artifacts", step_id),
            verification_commands=_string_list(raw, "verification_commands", step_id),
        )

    def _resolve_order(self) -> list[str]:
        position = {step_id: index for index, step_id in enumerate(self._steps)}
        sorter: graphlib.TopologicalSorter[str] = graphlib.TopologicalSorter()
        for step in self._steps.values():
            unknown = [dep for dep in step.depends_on if dep not in self._steps]
            if unknown:
                raise StructuralError(
                    f"Step depends on unknown steps: {', '.join(unknown)}", step=step.step_id
                )
            sorter.add(step.step_id, *step.depends_on)
        try:
            sorter.prepare()
        except graphlib.CycleError as exc:
            raise StructuralError(f"Plan dependencies form a cycle: {exc.args[1]}") from exc
        order: list[str] = []
        while sorter.is_active():
            ready = sorted(sorter.get_ready(), key=position.__getitem__)
            order.extend(ready)
            sorter.done(*ready)
        return order

    def step_ids(self) -> list[str]:
        return list(self._order)

    def get_step(self, step_id: str) -> StepSpec:
        try:
            return self._steps[step_id]
        except KeyError as exc:
            raise StructuralError(f"Plan has no step '{step_id}'.", step=step_id) from exc

