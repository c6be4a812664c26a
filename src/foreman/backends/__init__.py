from foreman.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
    collect_text,
)
from foreman.backends.command import ClaudeCodeBackend, CodexBackend, CommandBackend
from foreman.backends.openai_sdk import OpenAIBackend
from foreman.backends.resilient import BackendEventHook, ResilientBackend, RetryPolicy

__all__ = [
    "AgentBackend",
    "BackendEventHook",
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
    "ClaudeCodeBackend",
    "CodexBackend",
    "CommandBackend",
    "OpenAIBackend",
    "ResilientBackend",
    "RetryPolicy",
    "collect_text",
]
