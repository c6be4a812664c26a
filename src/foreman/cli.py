from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from foreman import __version__
from foreman.adapters import CommandTracker, GitRepository, IssueTracker, LocalTracker
from foreman.backends import (
    AgentBackend,
    BackendEventHook,
    ClaudeCodeBackend,
    CodexBackend,
    OpenAIBackend,
    ResilientBackend,
    RetryPolicy,
)
from foreman.conductor import BackendTelemetry, Conductor, RunSummary
from foreman.config import BackendName, ForemanConfig, load_config, save_config
from foreman.errors import ForemanError
from foreman.escalation import Prompter, click_prompter
from foreman.pipeline import WorkerSet
from foreman.phases import PHASES
from foreman.session import SessionManager

GITIGNORE = "sessions/\ntracker/\n.lock\n"


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: ForemanConfig
    sessions: SessionManager
    vcs: GitRepository
    tracker: IssueTracker
    conductor: Conductor


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _build_single_backend(
    backend_name: BackendName, config: ForemanConfig, repo_root: Path
) -> AgentBackend:
    if backend_name == "codex":
        return CodexBackend(working_directory=repo_root, model=config.backend.codex_model)
    if backend_name == "openai":
        return OpenAIBackend(model=config.backend.openai_model, working_directory=repo_root)
    return ClaudeCodeBackend(working_directory=repo_root, model=config.backend.claude_model)


def _build_backend(
    config: ForemanConfig, repo_root: Path, event_hook: BackendEventHook
) -> AgentBackend:
    policy = RetryPolicy(
        max_retries=max(0, int(config.backend.max_retries)),
        backoff_seconds=max(0.0, float(config.backend.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(config.backend.timeout_seconds)),
    )
    return ResilientBackend(
        primary=_build_single_backend(config.backend.primary, config, repo_root),
        fallback=_build_single_backend(config.backend.fallback, config, repo_root),
        retry_policy=policy,
        event_hook=event_hook,
    )


def _build_tracker(config: ForemanConfig, repo_root: Path) -> IssueTracker:
    if config.tracker.kind == "beads":
        return CommandTracker(repo_root, binary=config.tracker.binary)
    return LocalTracker(repo_root / config.state.directory / "tracker")


def _build_prompter() -> Prompter:
    return click_prompter


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    config = load_config(config_path)
    sessions = SessionManager(repo_root / config.state.directory)
    vcs = GitRepository(repo_root)
    if not vcs.is_repository():
        raise click.ClickException(f"{repo_root} is not a git repository.")
    tracker = _build_tracker(config, repo_root)
    telemetry = BackendTelemetry(sessions)
    backend = _build_backend(config, repo_root, telemetry)
    conductor = Conductor(
        repo_root=repo_root,
        config=config,
        sessions=sessions,
        workers=WorkerSet.from_backend(backend, config.agents),
        vcs=vcs,
        tracker=tracker,
        prompter=_build_prompter(),
        telemetry=telemetry,
    )
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        sessions=sessions,
        vcs=vcs,
        tracker=tracker,
        conductor=conductor,
    )


def _runtime(config_value: str) -> Runtime:
    repo_root = Path.cwd().resolve()
    return _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))


def _echo_summary(summary: RunSummary) -> None:
    click.echo(f"Session: {summary.session_id}")
    click.echo(f"Status: {summary.status}")
    for outcome in summary.outcomes:
        if outcome.completed:
            click.echo(f"  {outcome.step_id}: committed {(outcome.revision or '')[:10]}")
        else:
            state = "committed, " if outcome.committed else ""
            click.echo(
                f"  {outcome.step_id}: halted at {outcome.halted_phase or '-'} "
                f"({state}{outcome.reason})"
            )
    if summary.needs_reconcile:
        click.echo(f"Reconciliation required: foreman reconcile {summary.session_id}")
    elif summary.steps_remaining:
        click.echo(f"Remaining: {', '.join(summary.steps_remaining)}")
        click.echo(f"Continue with: foreman resume {summary.session_id}")


@click.group()
@click.version_option(__version__, prog_name="foreman")
@click.option("--verbose", is_flag=True, default=False, help="Log debug output to stderr.")
def cli(verbose: bool) -> None:
    """Foreman CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--backend", type=click.Choice(["codex", "claude", "openai"]), default=None)
@click.option("--config", "config_value", default="foreman.toml", show_default=True)
def init_command(backend: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    if backend:
        config.backend.primary = backend  # type: ignore[assignment]
    save_config(config_path, config)

    state_root = repo_root / config.state.directory
    state_root.mkdir(parents=True, exist_ok=True)
    gitignore = state_root / ".gitignore"
    if not gitignore.exists():
        gitignore.write_text(GITIGNORE, encoding="utf-8")

    click.echo(f"Initialized Foreman in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Backend: {config.backend.primary}")
    click.echo(f"Commit policy: {config.workflow.commit_policy}")


@cli.command("run")
@click.argument("plan", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--commit-policy", type=click.Choice(["immediate", "confirmed"]), default=None
)
@click.option("--from-step", default=None, help="First step to run.")
@click.option("--to-step", default=None, help="Last step to run.")
@click.option("--config", "config_value", default="foreman.toml", show_default=True)
def run_command(
    plan: Path,
    commit_policy: str | None,
    from_step: str | None,
    to_step: str | None,
    config_value: str,
) -> None:
    runtime = _runtime(config_value)
    try:
        summary = asyncio.run(
            runtime.conductor.start(
                plan.resolve(),
                commit_policy=commit_policy,  # type: ignore[arg-type]
                from_step=from_step,
                to_step=to_step,
            )
        )
    except ForemanError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_summary(summary)
    if summary.halted is not None:
        raise SystemExit(1)


@cli.command("resume")
@click.argument("session_id")
@click.option("--config", "config_value", default="foreman.toml", show_default=True)
def resume_command(session_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        summary = asyncio.run(runtime.conductor.resume(session_id))
    except ForemanError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_summary(summary)
    if summary.halted is not None:
        raise SystemExit(1)


def _status_payload(runtime: Runtime, session_id: str) -> dict[str, Any]:
    session = runtime.sessions.load(session_id)
    artifacts = runtime.sessions.artifacts(session_id)
    steps: dict[str, Any] = {}
    for step_id in [*session.steps_completed, *session.steps_remaining]:
        latest = artifacts.latest_phase(step_id)
        steps[step_id] = {
            "latest_phase": latest,
            "phases_done": PHASES.index(latest) + 1 if latest else 0,  # type: ignore[arg-type]
            "retries": session.retry_counters.get(step_id, {}),
        }
    return {
        "session": session.to_dict(),
        "steps": steps,
        "decisions": len(runtime.sessions.decisions(session_id)),
        "backend_events": len(runtime.sessions.metrics(session_id).get("backend_events", [])),
    }


@cli.command("status")
@click.argument("session_id", required=False)
@click.option("--config", "config_value", default="foreman.toml", show_default=True)
def status_command(session_id: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    if session_id is None:
        sessions = runtime.sessions.list()
        if not sessions:
            click.echo("No sessions found.")
            return
        session_id = max(sessions, key=lambda item: item.last_updated_at).session_id
    try:
        payload = _status_payload(runtime, session_id)
    except ForemanError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("sessions")
@click.option("--config", "config_value", default="foreman.toml", show_default=True)
def sessions_command(config_value: str) -> None:
    runtime = _runtime(config_value)
    sessions = runtime.sessions.list()
    if not sessions:
        click.echo("No sessions found.")
        return
    for session in sessions:
        total = len(session.steps_completed) + len(session.steps_remaining)
        flag = " needs-reconcile" if session.needs_reconcile else ""
        click.echo(
            f"{session.session_id} {session.status:<11} "
            f"{len(session.steps_completed)}/{total} {session.plan_path}{flag}"
        )


@cli.command("reconcile")
@click.argument("session_id")
@click.option("--config", "config_value", default="foreman.toml", show_default=True)
def reconcile_command(session_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        session = runtime.sessions.load(session_id)
        if not session.needs_reconcile:
            click.echo(f"Session {session_id} has nothing to reconcile.")
            return
        asyncio.run(runtime.conductor.reconcile(session))
    except ForemanError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Reconciled session {session_id}.")
    if session.steps_remaining:
        click.echo(f"Continue with: foreman resume {session_id}")


@cli.command("publish")
@click.argument("session_id")
@click.option("--config", "config_value", default="foreman.toml", show_default=True)
def publish_command(session_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        result = runtime.conductor.publish(session_id)
    except ForemanError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Published {result['branch']} to {result['remote']}")
    click.echo(result["url"])


@cli.command("delete")
@click.argument("session_id")
@click.option("--yes", is_flag=True, default=False, help="Skip the confirmation prompt.")
@click.option("--config", "config_value", default="foreman.toml", show_default=True)
def delete_command(session_id: str, yes: bool, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        known = runtime.sessions.exists(session_id)
    except ForemanError as exc:
        raise click.ClickException(str(exc)) from exc
    if not known:
        raise click.ClickException(f"Session not found: {session_id}")
    if not yes:
        click.confirm(f"Delete session {session_id} and its artifacts?", abort=True)
    runtime.sessions.delete(session_id)
    click.echo(f"Deleted session {session_id}")


@cli.command("backend")
@click.argument("backend_name", type=click.Choice(["codex", "claude", "openai"]))
@click.option("--config", "config_value", default="foreman.toml", show_default=True)
def backend_command(backend_name: str, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    config.backend.primary = backend_name  # type: ignore[assignment]
    save_config(config_path, config)
    click.echo(f"Primary backend set to {backend_name}")
