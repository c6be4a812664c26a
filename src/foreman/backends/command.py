from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from foreman.backends.base import AgentBackend, BackendExecutionError, BackendProcessError

logger = logging.getLogger(__name__)


def render_user_prompt(user_prompt: str, context: dict[str, Any]) -> str:
    visible = {key: value for key, value in context.items() if not key.startswith("_")}
    if not visible:
        return user_prompt
    return f"{user_prompt}\n\nContext JSON:\n{json.dumps(visible, ensure_ascii=False, indent=2)}"


def extract_event_text(event: dict[str, Any]) -> str:
    content = event.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            item["text"]
            for item in content
            if isinstance(item, dict) and isinstance(item.get("text"), str)
        )
    for key in ("delta", "result"):
        value = event.get(key)
        if isinstance(value, str):
            return value
    message = event.get("message")
    if isinstance(message, str):
        return message
    if isinstance(message, dict):
        return extract_event_text(message)
    return ""


class CommandBackend(AgentBackend):
    """Runs an agent CLI that prints one JSON event per line on stdout."""

    name = "command"
    default_binary = ""

    def __init__(
        self,
        binary: str | None = None,
        working_directory: Path | None = None,
        model: str | None = None,
    ) -> None:
        self.binary = binary or self.default_binary
        self.working_directory = working_directory
        self.model = model

    def model_for(self, context: dict[str, Any]) -> str | None:
        requested = context.get("model")
        if isinstance(requested, str) and requested.strip():
            return requested.strip()
        return self.model or None

    def build_command(
        self, system_prompt: str, user_prompt: str, context: dict[str, Any]
    ) -> list[str]:
        raise NotImplementedError

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        prompt = render_user_prompt(user_prompt, context)
        command = self.build_command(system_prompt, prompt, context)
        logger.debug("Starting %s for phase %s", self.name, context.get("phase"))
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"{self.name} binary not found: {self.binary}",
                backend=self.name,
                retriable=False,
            ) from exc

        if process.stdout is None:
            raise BackendProcessError(
                f"{self.name} backend did not expose stdout.", backend=self.name, retriable=False
            )

        try:
            parse_buffer = ""
            async for raw_line in process.stdout:
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                candidate = f"{parse_buffer}{line}" if parse_buffer else line
                try:
                    event = json.loads(candidate)
                    parse_buffer = ""
                except json.JSONDecodeError:
                    if self._appears_partial_json(candidate):
                        parse_buffer = candidate
                        continue
                    parse_buffer = ""
                    yield line
                    continue
                text = extract_event_text(event) if isinstance(event, dict) else ""
                if text:
                    yield text
            if parse_buffer:
                yield parse_buffer

            return_code = await process.wait()
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

        stderr_output = ""
        if process.stderr is not None:
            stderr_output = (await process.stderr.read()).decode("utf-8", errors="replace").strip()
        if return_code != 0:
            raise BackendExecutionError(
                f"{self.name} failed with exit code {return_code}: {stderr_output}",
                backend=self.name,
                exit_code=return_code,
                retriable=True,
            )


class ClaudeCodeBackend(CommandBackend):
    name = "claude"
    default_binary = "claude"

    def build_command(
        self, system_prompt: str, user_prompt: str, context: dict[str, Any]
    ) -> list[str]:
        command = [
            self.binary,
            "-p",
            user_prompt,
            "--output-format",
            "stream-json",
            "--verbose",
            "--append-system-prompt",
            system_prompt,
        ]
        model = self.model_for(context)
        if model:
            command.extend(["--model", model])
        return command


class CodexBackend(CommandBackend):
    name = "codex"
    default_binary = "codex"

    def build_command(
        self, system_prompt: str, user_prompt: str, context: dict[str, Any]
    ) -> list[str]:
        command = [
            self.binary,
            "exec",
            "--json",
            "-c",
            f"instructions={json.dumps(system_prompt, ensure_ascii=False)}",
        ]
        model = self.model_for(context)
        if model:
            command.extend(["-m", model])
        command.append(user_prompt)
        return command
