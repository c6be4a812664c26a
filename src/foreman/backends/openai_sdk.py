from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from foreman.backends.base import AgentBackend, BackendExecutionError
from foreman.backends.command import CodexBackend, render_user_prompt

logger = logging.getLogger(__name__)


class OpenAIBackend(AgentBackend):
    """Responses API backend; without a usable client it defers to the Codex CLI."""

    name = "openai"

    def __init__(
        self,
        *,
        model: str = "gpt-5-codex",
        working_directory: Path | None = None,
        client: Any | None = None,
    ) -> None:
        self.model = model
        self.cli_fallback = CodexBackend(working_directory=working_directory, model=model)
        self._client = client
        if self._client is None:
            try:
                from openai import OpenAI

                self._client = OpenAI()
            except Exception as exc:  # missing API key or package misconfiguration
                logger.info("OpenAI client unavailable, using codex CLI: %s", exc)
                self._client = None

    @property
    def uses_sdk(self) -> bool:
        return self._client is not None

    @staticmethod
    def _extract_text(payload: Any) -> str:
        output_text = getattr(payload, "output_text", None)
        if isinstance(output_text, str):
            return output_text
        if isinstance(payload, dict) and isinstance(payload.get("output_text"), str):
            return payload["output_text"]
        return ""

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        if self._client is None:
            async for chunk in self.cli_fallback.execute(system_prompt, user_prompt, context):
                yield chunk
            return

        requested = context.get("model")
        model_name = (
            requested.strip()
            if isinstance(requested, str) and requested.strip()
            else self.model
        )
        prompt = render_user_prompt(user_prompt, context)

        def _request() -> Any:
            return self._client.responses.create(
                model=model_name,
                input=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": prompt},
                ],
            )

        try:
            payload = await asyncio.to_thread(_request)
        except Exception as exc:
            raise BackendExecutionError(
                f"OpenAI request failed: {exc}",
                backend=self.name,
                retriable=True,
            ) from exc

        content = self._extract_text(payload).strip()
        if content:
            yield content
