import json
import subprocess
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from click.testing import CliRunner

from foreman.backends import ClaudeCodeBackend, CodexBackend, ResilientBackend
from foreman.backends.base import AgentBackend
from foreman.cli import _build_backend, cli
from foreman.config import ForemanConfig, load_config
from foreman.escalation import DecisionRequest

PLAN = """
title = "Users"

[[steps]]
id = "s1"
title = "Add user model"
tasks = ["Create the user model"]
verification_commands = ["pytest -q"]
"""


class FakeBackend(AgentBackend):
    name = "fake"

    def __init__(self, repo_root: Path, verification_verdict: str = "approve") -> None:
        self.repo_root = repo_root
        self.verification_verdict = verification_verdict

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt
        phase = context["phase"]
        if phase == "strategy":
            payload = {"expected_files": ["src/app/models.py"], "approach": "Add a class."}
        elif phase == "implementation":
            target = self.repo_root / "src" / "app" / "models.py"
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text("class User:\n    pass\n", encoding="utf-8")
            payload = {"touched_files": ["src/app/models.py"], "summary": "Added the model."}
        elif phase == "verification":
            yield json.dumps(
                {"verdict": self.verification_verdict, "payload": {"summary": "Checked."}}
            )
            return
        elif phase == "quality_review":
            payload = {"findings": [], "summary": "Looks good."}
        else:
            payload = {"summary": "Added the user model.", "commit_message": "Add user model"}
        yield json.dumps({"verdict": "approve", "payload": payload})


def _run(cmd: list[str], cwd: Path) -> str:
    proc = subprocess.run(cmd, cwd=cwd, check=True, text=True, capture_output=True)
    return proc.stdout.strip()


def _init_git_repo(repo_path: Path) -> None:
    repo_path.mkdir(parents=True, exist_ok=True)
    _run(["git", "init", "-b", "main"], cwd=repo_path)
    _run(["git", "config", "user.email", "test@example.com"], cwd=repo_path)
    _run(["git", "config", "user.name", "Test User"], cwd=repo_path)
    (repo_path / "README.md").write_text("seed\n", encoding="utf-8")
    (repo_path / "plan.toml").write_text(PLAN, encoding="utf-8")
    _run(["git", "add", "README.md", "plan.toml"], cwd=repo_path)
    _run(["git", "commit", "-m", "seed"], cwd=repo_path)


def _init_foreman(runner: CliRunner, repo: Path) -> None:
    init_result = runner.invoke(cli, ["init"])
    assert init_result.exit_code == 0, init_result.output
    assert "Initialized Foreman" in init_result.output
    _run(["git", "add", "foreman.toml", ".foreman/.gitignore"], cwd=repo)
    _run(["git", "commit", "-m", "configure foreman"], cwd=repo)


def _extract_session_id(output: str) -> str:
    for line in output.splitlines():
        if line.startswith("Session: "):
            return line.split(": ", maxsplit=1)[1].strip()
    raise AssertionError(f"No session id in output:\n{output}")


def _install_fakes(monkeypatch: Any, answers: list[str], **backend_options: Any) -> list[str]:
    contexts: list[str] = []

    def prompter(request: DecisionRequest) -> str:
        contexts.append(request.context)
        return answers.pop(0)

    monkeypatch.setattr(
        "foreman.cli._build_backend",
        lambda config, repo_root, event_hook: FakeBackend(repo_root, **backend_options),
    )
    monkeypatch.setattr("foreman.cli._build_prompter", lambda: prompter)
    return contexts


def test_cli_full_lifecycle_commands(tmp_path: Path, monkeypatch) -> None:
    repo = tmp_path / "repo"
    _init_git_repo(repo)
    monkeypatch.chdir(repo)
    contexts = _install_fakes(monkeypatch, ["commit"])
    runner = CliRunner()
    _init_foreman(runner, repo)

    assert (repo / ".foreman" / ".gitignore").read_text(encoding="utf-8").startswith("sessions/")
    assert load_config(repo / "foreman.toml").workflow.commit_policy == "confirmed"

    run_result = runner.invoke(cli, ["run", "plan.toml"])
    assert run_result.exit_code == 0, run_result.output
    assert "Status: completed" in run_result.output
    assert "s1: committed" in run_result.output
    assert contexts == ["commit_confirmation"]
    assert _run(["git", "log", "-1", "--format=%s"], cwd=repo) == "s1: Add user model"
    session_id = _extract_session_id(run_result.output)
    assert _run(["git", "branch", "--show-current"], cwd=repo) == f"foreman/{session_id}"

    sessions_result = runner.invoke(cli, ["sessions"])
    assert sessions_result.exit_code == 0
    assert session_id in sessions_result.output
    assert "1/1" in sessions_result.output

    status_result = runner.invoke(cli, ["status"])
    assert status_result.exit_code == 0
    payload = json.loads(status_result.output)
    assert payload["session"]["session_id"] == session_id
    assert payload["session"]["status"] == "completed"
    assert payload["steps"]["s1"]["latest_phase"] == "commit"
    assert payload["steps"]["s1"]["phases_done"] == 6
    assert payload["decisions"] == 1

    reconcile_result = runner.invoke(cli, ["reconcile", session_id])
    assert reconcile_result.exit_code == 0
    assert "nothing to reconcile" in reconcile_result.output

    publish_result = runner.invoke(cli, ["publish", session_id])
    assert publish_result.exit_code != 0
    assert "not configured" in publish_result.output

    delete_result = runner.invoke(cli, ["delete", session_id, "--yes"])
    assert delete_result.exit_code == 0
    assert runner.invoke(cli, ["sessions"]).output.strip() == "No sessions found."


def test_cli_publish_pushes_completed_session(tmp_path: Path, monkeypatch) -> None:
    remote = tmp_path / "remote.git"
    _run(["git", "init", "--bare", str(remote)], cwd=tmp_path)
    repo = tmp_path / "repo"
    _init_git_repo(repo)
    _run(["git", "remote", "add", "origin", str(remote)], cwd=repo)
    monkeypatch.chdir(repo)
    _install_fakes(monkeypatch, [])
    runner = CliRunner()
    _init_foreman(runner, repo)

    run_result = runner.invoke(cli, ["run", "plan.toml", "--commit-policy", "immediate"])
    assert run_result.exit_code == 0, run_result.output
    session_id = _extract_session_id(run_result.output)

    publish_result = runner.invoke(cli, ["publish", session_id])

    assert publish_result.exit_code == 0, publish_result.output
    branch = f"foreman/{session_id}"
    assert f"Published {branch} to origin" in publish_result.output
    assert _run(["git", "log", "-1", "--format=%s", branch], cwd=remote) == "s1: Add user model"
    assert _run(["git", "log", "-1", "--format=%s", "main"], cwd=repo) == "configure foreman"


def test_cli_halted_run_exits_nonzero(tmp_path: Path, monkeypatch) -> None:
    repo = tmp_path / "repo"
    _init_git_repo(repo)
    monkeypatch.chdir(repo)
    contexts = _install_fakes(monkeypatch, ["abort"], verification_verdict="revise")
    runner = CliRunner()
    _init_foreman(runner, repo)

    run_result = runner.invoke(cli, ["run", "plan.toml", "--commit-policy", "immediate"])

    assert run_result.exit_code == 1
    assert "halted at verification" in run_result.output
    assert "Continue with: foreman resume" in run_result.output
    assert contexts == ["verification_exhausted"]
    session_id = _extract_session_id(run_result.output)

    status_result = runner.invoke(cli, ["status", session_id])
    payload = json.loads(status_result.output)
    assert payload["session"]["status"] == "failed"
    assert payload["session"]["failure"]["phase"] == "verification"
    assert payload["steps"]["s1"]["retries"] == {"verification": 3}


def test_cli_reports_unknown_session_and_step(tmp_path: Path, monkeypatch) -> None:
    repo = tmp_path / "repo"
    _init_git_repo(repo)
    monkeypatch.chdir(repo)
    _install_fakes(monkeypatch, [])
    runner = CliRunner()
    _init_foreman(runner, repo)

    resume_result = runner.invoke(cli, ["resume", "missing-session"])
    assert resume_result.exit_code != 0
    assert "does not exist" in resume_result.output

    run_result = runner.invoke(cli, ["run", "plan.toml", "--from-step", "ghost"])
    assert run_result.exit_code != 0
    assert "ghost" in run_result.output

    delete_result = runner.invoke(cli, ["delete", "missing-session", "--yes"])
    assert delete_result.exit_code != 0
    assert "Session not found" in delete_result.output


def test_cli_backend_switch_and_non_repository(tmp_path: Path, monkeypatch) -> None:
    repo = tmp_path / "repo"
    _init_git_repo(repo)
    monkeypatch.chdir(repo)
    runner = CliRunner()

    backend_result = runner.invoke(cli, ["backend", "codex"])
    assert backend_result.exit_code == 0
    assert load_config(repo / "foreman.toml").backend.primary == "codex"

    plain = tmp_path / "plain"
    plain.mkdir()
    monkeypatch.chdir(plain)
    _install_fakes(monkeypatch, [])

    sessions_result = runner.invoke(cli, ["sessions"])
    assert sessions_result.exit_code != 0
    assert "not a git repository" in sessions_result.output


def test_each_backend_gets_its_own_default_model(tmp_path: Path) -> None:
    backend = _build_backend(ForemanConfig.default(), tmp_path, lambda event: None)

    assert isinstance(backend, ResilientBackend)
    assert isinstance(backend.primary, ClaudeCodeBackend)
    assert isinstance(backend.fallback, CodexBackend)
    assert backend.primary.model == "claude-sonnet-4-5"
    assert backend.fallback.model == "gpt-5-codex"
    assert backend.fallback.working_directory == tmp_path
