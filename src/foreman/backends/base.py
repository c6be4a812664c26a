from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any


class BackendExecutionError(RuntimeError):
    """Raised when a worker transport fails to produce output."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class BackendTimeoutError(BackendExecutionError):
    """Raised when a worker invocation exceeds its time limit."""


class BackendProcessError(BackendExecutionError):
    """Raised when a worker subprocess cannot be started or read."""


class AgentBackend(ABC):
    name: str = "backend"

    @abstractmethod
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        """Invoke the agent and stream textual chunks."""


async def collect_text(
    backend: AgentBackend,
    system_prompt: str,
    user_prompt: str,
    context: dict[str, Any],
) -> str:
    chunks: list[str] = []
    async for chunk in backend.execute(system_prompt, user_prompt, context):
        chunks.append(chunk)
    return "".join(chunks).strip()
