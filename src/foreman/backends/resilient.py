from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any

from foreman.backends.base import AgentBackend, BackendExecutionError, BackendTimeoutError

logger = logging.getLogger(__name__)

BackendEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 600.0


class ResilientBackend(AgentBackend):
    """Primary/fallback transport with per-attempt timeout and exponential backoff.

    Output is buffered per attempt so a half-streamed failure never leaks
    partial text to the worker.
    """

    name = "resilient"

    def __init__(
        self,
        primary: AgentBackend,
        fallback: AgentBackend | None,
        retry_policy: RetryPolicy,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.primary = primary
        self.fallback = fallback
        self.retry_policy = retry_policy
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    @staticmethod
    def _fallback_context(context: dict[str, Any]) -> dict[str, Any]:
        # Role models name the primary backend's models; the fallback keeps its own.
        return {key: value for key, value in context.items() if key != "model"}

    def _candidates(self) -> list[AgentBackend]:
        candidates = [self.primary]
        if self.fallback is not None and self.fallback.name != self.primary.name:
            candidates.append(self.fallback)
        return candidates

    async def _collect(
        self,
        backend: AgentBackend,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> list[str]:
        async def _consume() -> list[str]:
            chunks: list[str] = []
            async for chunk in backend.execute(system_prompt, user_prompt, context):
                chunks.append(chunk)
            return chunks

        try:
            return await asyncio.wait_for(_consume(), timeout=self.retry_policy.timeout_seconds)
        except TimeoutError as exc:
            raise BackendTimeoutError(
                f"{backend.name} timed out after {self.retry_policy.timeout_seconds:.1f}s",
                backend=backend.name,
                retriable=True,
            ) from exc

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        errors: list[str] = []
        for backend in self._candidates():
            attempt_context = (
                context if backend is self.primary else self._fallback_context(context)
            )
            for attempt in range(self.retry_policy.max_retries + 1):
                if attempt > 0:
                    delay = self.retry_policy.backoff_seconds * (2 ** (attempt - 1))
                    self._emit(
                        {
                            "event": "backend_retry",
                            "backend": backend.name,
                            "attempt": attempt,
                            "delay_seconds": delay,
                            "phase": context.get("phase"),
                        }
                    )
                    await asyncio.sleep(delay)
                try:
                    chunks = await self._collect(
                        backend, system_prompt, user_prompt, attempt_context
                    )
                except BackendExecutionError as exc:
                    errors.append(f"{backend.name}[{attempt}]: {exc}")
                    logger.warning("Backend %s attempt %d failed: %s", backend.name, attempt, exc)
                    self._emit(
                        {
                            "event": "backend_attempt_failed",
                            "backend": backend.name,
                            "attempt": attempt,
                            "phase": context.get("phase"),
                            "error": str(exc),
                            "retriable": exc.retriable,
                        }
                    )
                    if not exc.retriable:
                        break
                    continue
                if backend is not self.primary:
                    self._emit(
                        {
                            "event": "backend_fallback_success",
                            "backend": backend.name,
                            "attempt": attempt,
                            "phase": context.get("phase"),
                        }
                    )
                for chunk in chunks:
                    yield chunk
                return

        raise BackendExecutionError(
            f"All backend attempts failed. {'; '.join(errors[-6:])}",
            backend=self.primary.name,
            retriable=False,
        )
