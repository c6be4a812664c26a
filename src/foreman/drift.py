from __future__ import annotations

import fnmatch
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any, Literal

from foreman.config import DriftConfig

Severity = Literal["none", "minor", "moderate", "major"]
Category = Literal["yellow", "red"]

SEVERITY_ORDER: tuple[Severity, ...] = ("none", "minor", "moderate", "major")


def normalize_path(path: str) -> str:
    cleaned = path.strip().replace("\\", "/")
    while cleaned.startswith("./"):
        cleaned = cleaned[2:]
    if not cleaned:
        return ""
    return PurePosixPath(cleaned).as_posix()


def _parent(path: str) -> str:
    parent = PurePosixPath(path).parent.as_posix()
    return "" if parent == "." else parent


@dataclass(frozen=True, slots=True)
class DriftPolicy:
    yellow_minor_max: int = 2
    yellow_max: int = 4
    red_max: int = 2
    yellow_cost: int = 1
    red_cost: int = 2
    leeway_discount: int = 1
    test_patterns: tuple[str, ...] = ()
    leeway_patterns: tuple[str, ...] = ()
    ignored_prefixes: tuple[str, ...] = (".foreman/",)
    ignored_files: tuple[str, ...] = ()

    @classmethod
    def from_config(
        cls,
        config: DriftConfig,
        *,
        state_directory: str = ".foreman",
        log_path: str | None = None,
    ) -> DriftPolicy:
        state_prefix = normalize_path(state_directory).rstrip("/") + "/"
        ignored_files = (normalize_path(log_path),) if log_path else ()
        return cls(
            yellow_minor_max=config.yellow_minor_max,
            yellow_max=config.yellow_max,
            red_max=config.red_max,
            yellow_cost=config.yellow_cost,
            red_cost=config.red_cost,
            leeway_discount=config.leeway_discount,
            test_patterns=tuple(config.test_patterns),
            leeway_patterns=tuple(config.leeway_patterns),
            ignored_prefixes=(state_prefix,),
            ignored_files=ignored_files,
        )

    def is_ignored(self, path: str) -> bool:
        if path in self.ignored_files:
            return True
        return any(path.startswith(prefix) for prefix in self.ignored_prefixes)

    def leeway_reason(self, path: str) -> str | None:
        name = PurePosixPath(path).name
        for pattern in self.test_patterns:
            if fnmatch.fnmatch(path, pattern) or fnmatch.fnmatch(name, pattern):
                return "test"
        for pattern in self.leeway_patterns:
            if fnmatch.fnmatch(path, pattern) or fnmatch.fnmatch(name, pattern):
                return "config"
        return None


@dataclass(frozen=True, slots=True)
class DriftEntry:
    path: str
    category: Category
    cost: int
    leeway: str | None = None
    charged_to: Category = "yellow"

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "category": self.category,
            "cost": self.cost,
            "leeway": self.leeway,
            "charged_to": self.charged_to,
        }


@dataclass(frozen=True, slots=True)
class DriftAssessment:
    severity: Severity
    expected: tuple[str, ...]
    actual: tuple[str, ...]
    entries: tuple[DriftEntry, ...] = field(default_factory=tuple)
    yellow_used: int = 0
    yellow_max: int = 0
    red_used: int = 0
    red_max: int = 0

    @property
    def blocking(self) -> bool:
        return self.severity in ("moderate", "major")

    def summary(self) -> str:
        if not self.entries:
            return "All changed files were expected."
        listed = ", ".join(f"{entry.path} ({entry.category})" for entry in self.entries)
        return (
            f"Drift {self.severity}: yellow {self.yellow_used}/{self.yellow_max}, "
            f"red {self.red_used}/{self.red_max}. Unexpected: {listed}"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "severity": self.severity,
            "expected": list(self.expected),
            "actual": list(self.actual),
            "entries": [entry.to_dict() for entry in self.entries],
            "yellow_used": self.yellow_used,
            "yellow_max": self.yellow_max,
            "red_used": self.red_used,
            "red_max": self.red_max,
            "blocking": self.blocking,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DriftAssessment:
        return cls(
            severity=data["severity"],
            expected=tuple(data.get("expected", [])),
            actual=tuple(data.get("actual", [])),
            entries=tuple(
                DriftEntry(
                    path=str(entry["path"]),
                    category=entry["category"],
                    cost=int(entry["cost"]),
                    leeway=entry.get("leeway"),
                    charged_to=entry.get("charged_to", entry["category"]),
                )
                for entry in data.get("entries", [])
            ),
            yellow_used=int(data.get("yellow_used", 0)),
            yellow_max=int(data.get("yellow_max", 0)),
            red_used=int(data.get("red_used", 0)),
            red_max=int(data.get("red_max", 0)),
        )


def _matches_expected(path: str, expected: Iterable[str]) -> bool:
    for candidate in expected:
        if path == candidate:
            return True
        if any(char in candidate for char in "*?[") and fnmatch.fnmatch(path, candidate):
            return True
    return False


def _is_adjacent(path: str, expected: Iterable[str]) -> bool:
    directory = _parent(path)
    for candidate in expected:
        expected_directory = _parent(candidate)
        if directory == expected_directory:
            return True
        # Sibling directories count only below the repository root.
        shared = _parent(expected_directory)
        if shared and expected_directory and directory and _parent(directory) == shared:
            return True
    return False


def classify_severity(yellow_used: int, red_used: int, policy: DriftPolicy) -> Severity:
    if yellow_used == 0 and red_used == 0:
        return "none"
    if yellow_used > policy.yellow_max or red_used >= policy.red_max:
        return "major"
    if yellow_used > policy.yellow_minor_max or red_used >= 1:
        return "moderate"
    return "minor"


def assess_drift(
    expected: Iterable[str],
    actual: Iterable[str],
    policy: DriftPolicy | None = None,
) -> DriftAssessment:
    """Classify the files an implementation touched against the ones it planned to touch."""
    policy = policy or DriftPolicy()
    expected_paths = tuple(sorted({p for p in (normalize_path(e) for e in expected) if p}))
    actual_paths = tuple(sorted({p for p in (normalize_path(a) for a in actual) if p}))

    entries: list[DriftEntry] = []
    yellow_used = 0
    red_used = 0
    for path in actual_paths:
        if policy.is_ignored(path) or _matches_expected(path, expected_paths):
            continue
        category: Category = "yellow" if _is_adjacent(path, expected_paths) else "red"
        base_cost = policy.yellow_cost if category == "yellow" else policy.red_cost
        leeway = policy.leeway_reason(path)
        cost = max(0, base_cost - policy.leeway_discount) if leeway else base_cost
        if category == "red" and cost >= policy.red_cost:
            red_used += 1
            charged_to: Category = "red"
        else:
            yellow_used += cost
            charged_to = "yellow"
        entries.append(
            DriftEntry(
                path=path,
                category=category,
                cost=cost,
                leeway=leeway,
                charged_to=charged_to,
            )
        )

    return DriftAssessment(
        severity=classify_severity(yellow_used, red_used, policy),
        expected=expected_paths,
        actual=actual_paths,
        entries=tuple(entries),
        yellow_used=yellow_used,
        yellow_max=policy.yellow_max,
        red_used=red_used,
        red_max=policy.red_max,
    )


def severity_at_least(severity: str, floor: str) -> bool:
    return SEVERITY_ORDER.index(severity) >= SEVERITY_ORDER.index(floor)  # type: ignore[arg-type]
