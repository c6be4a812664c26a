from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from foreman.errors import StructuralError

logger = logging.getLogger(__name__)


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class JsonFileStore:
    """Versioned JSON records under one directory, written atomically.

    Every record is an envelope ``{schema_version, revision, updated_at, data}``.
    Writes go to a temp file in the same directory, are fsynced and then renamed
    over the target, so a record on disk is always complete or absent.
    """

    SCHEMA_VERSION = 1

    def __init__(self, root: Path) -> None:
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.root / ".lock"

    def path_for(self, key: str) -> Path:
        relative = Path(key)
        if relative.is_absolute() or ".." in relative.parts:
            raise StructuralError(f"Refusing state key outside the store: {key}")
        return self.root / f"{key}.json"

    def _lock_owner(self) -> int | None:
        try:
            return int(self.lock_file.read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            return None

    def _lock_is_stale(self) -> bool:
        """True when the lock names a process that is no longer running."""
        owner = self._lock_owner()
        if owner is None or owner == os.getpid() or os.name != "posix":
            return False
        try:
            os.kill(owner, 0)
        except ProcessLookupError:
            return True
        except OSError:
            return False
        return False

    @contextmanager
    def lock(self, timeout_seconds: float = 3.0) -> Iterator[None]:
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if self._lock_is_stale():
                    logger.warning("Breaking stale state lock %s", self.lock_file)
                    self.lock_file.unlink(missing_ok=True)
                    continue
                if time.monotonic() - start > timeout_seconds:
                    if self._lock_owner() is None:
                        # A lock file without a pid was left between create and write.
                        logger.warning("Breaking unreadable state lock %s", self.lock_file)
                        self.lock_file.unlink(missing_ok=True)
                        start = time.monotonic()
                        continue
                    raise StructuralError(
                        f"Timed out waiting for state lock {self.lock_file}."
                    ) from exc
                time.sleep(0.02)
        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def exists(self, key: str) -> bool:
        return self.path_for(key).exists()

    def read_envelope(self, key: str) -> dict[str, Any] | None:
        path = self.path_for(key)
        if not path.exists():
            return None
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise StructuralError(f"State record {path} is not valid JSON: {exc}") from exc
        if not (
            isinstance(raw, dict)
            and "schema_version" in raw
            and "revision" in raw
            and "data" in raw
        ):
            raise StructuralError(f"State record {path} is missing its envelope.")
        if int(raw["schema_version"]) > self.SCHEMA_VERSION:
            raise StructuralError(
                f"State record {path} has schema {raw['schema_version']}, "
                f"newer than supported {self.SCHEMA_VERSION}."
            )
        return raw

    def read(self, key: str, default: Any = None) -> Any:
        envelope = self.read_envelope(key)
        if envelope is None:
            return default
        return envelope["data"]

    def write(self, key: str, data: Any, expected_revision: int | None = None) -> int:
        path = self.path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        with self.lock():
            current = self.read_envelope(key)
            current_revision = int(current["revision"]) if current else 0
            if expected_revision is not None and expected_revision != current_revision:
                raise StructuralError(f"Concurrent state update detected for '{key}'.")
            envelope = {
                "schema_version": self.SCHEMA_VERSION,
                "revision": current_revision + 1,
                "updated_at": utcnow_iso(),
                "data": data,
            }
            self._atomic_write(path, json.dumps(envelope, ensure_ascii=False, indent=2))
            return envelope["revision"]

    def update(self, key: str, updater: Callable[[Any], Any], default: Any = None) -> Any:
        last_error: StructuralError | None = None
        for _ in range(4):
            envelope = self.read_envelope(key)
            revision = int(envelope["revision"]) if envelope else 0
            current = envelope["data"] if envelope else default
            updated = updater(current)
            try:
                self.write(key, updated, expected_revision=revision)
                return updated
            except StructuralError as exc:
                if "Concurrent state update detected" not in str(exc):
                    raise
                last_error = exc
                time.sleep(0.01)
        raise last_error or StructuralError(f"State update failed for '{key}'.")

    def delete(self, key: str) -> None:
        try:
            self.path_for(key).unlink()
        except FileNotFoundError:
            pass

    def keys(self, prefix: str) -> list[str]:
        base = self.root / prefix
        if not base.is_dir():
            return []
        keys = [
            path.relative_to(self.root).with_suffix("").as_posix()
            for path in base.rglob("*.json")
        ]
        return sorted(keys)

    @staticmethod
    def _atomic_write(path: Path, content: str) -> None:
        fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_name, path)
        except BaseException:
            try:
                os.unlink(temp_name)
            except FileNotFoundError:
                pass
            raise
