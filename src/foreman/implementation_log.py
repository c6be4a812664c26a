from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

HEADER = "# Implementation Log\n\nNewest entries first.\n\n"

_ENTRY_PATTERN = re.compile(r"^---\n(.*?)\n---\n", re.DOTALL | re.MULTILINE)


@dataclass(slots=True)
class LogEntry:
    entry_id: str
    step: str
    title: str
    summary: str
    session: str
    metadata: dict[str, Any] = field(default_factory=dict)

    def render(self, now: datetime) -> str:
        frontmatter = {
            "entry_id": self.entry_id,
            "step": self.step,
            "session": self.session,
            "date": now.replace(microsecond=0).isoformat(),
            **self.metadata,
        }
        rendered = yaml.safe_dump(frontmatter, sort_keys=False, allow_unicode=True).strip()
        return f"---\n{rendered}\n---\n\n## {self.step}: {self.title}\n\n{self.summary.strip()}\n\n"


class ImplementationLog:
    """Markdown log with YAML frontmatter entries, newest first, rotated by size."""

    def __init__(
        self,
        path: Path,
        archive_dir: Path,
        *,
        max_lines: int = 500,
        max_bytes: int = 102400,
    ) -> None:
        self.path = path
        self.archive_dir = archive_dir
        self.max_lines = max_lines
        self.max_bytes = max_bytes

    def read(self) -> str:
        if not self.path.exists():
            return HEADER
        return self.path.read_text(encoding="utf-8")

    def needs_rotation(self) -> bool:
        if not self.path.exists():
            return False
        content = self.path.read_bytes()
        return len(content) > self.max_bytes or content.count(b"\n") > self.max_lines

    def rotate(self, now: datetime | None = None) -> Path | None:
        if not self.needs_rotation():
            return None
        now = now or datetime.now(UTC)
        self.archive_dir.mkdir(parents=True, exist_ok=True)
        archive = self.archive_dir / f"implementation-log-{now.strftime('%Y-%m-%d-%H%M%S')}.md"
        suffix = 1
        while archive.exists():
            suffix += 1
            archive = archive.with_name(
                f"implementation-log-{now.strftime('%Y-%m-%d-%H%M%S')}-{suffix}.md"
            )
        self.path.replace(archive)
        self.path.write_text(HEADER, encoding="utf-8")
        logger.info("Rotated implementation log to %s", archive)
        return archive

    def contains(self, entry_id: str) -> bool:
        return any(entry.get("entry_id") == entry_id for entry in self.entries())

    def prepend(self, entry: LogEntry, now: datetime | None = None) -> list[Path]:
        """Insert ``entry`` after the header and return every file that changed."""
        now = now or datetime.now(UTC)
        if self.contains(entry.entry_id):
            return []
        changed: list[Path] = []
        archive = self.rotate(now)
        if archive is not None:
            changed.append(archive)
        content = self.read()
        if content.startswith(HEADER):
            body = content[len(HEADER) :]
        else:
            body = content
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(HEADER + entry.render(now) + body, encoding="utf-8")
        changed.append(self.path)
        return changed

    def entries(self) -> list[dict[str, Any]]:
        parsed: list[dict[str, Any]] = []
        for match in _ENTRY_PATTERN.finditer(self.read()):
            try:
                data = yaml.safe_load(match.group(1))
            except yaml.YAMLError as exc:
                logger.warning("Skipping unreadable log entry: %s", exc)
                continue
            if isinstance(data, dict):
                parsed.append(data)
        return parsed
