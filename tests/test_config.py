import tomllib
from pathlib import Path

from foreman import __version__
from foreman.config import ForemanConfig, dumps_toml, load_config, save_config


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "foreman.toml"
    config = ForemanConfig.default()
    config.project.name = "foreman-test"
    config.backend.primary = "codex"
    config.backend.max_retries = 3
    config.workflow.commit_policy = "immediate"
    config.workflow.verification_max_retries = 5
    config.workflow.observer_enabled = False
    config.drift.yellow_max = 6
    config.drift.leeway_patterns = ["guides/*"]
    config.tracker.kind = "beads"

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.project.name == "foreman-test"
    assert loaded.backend.primary == "codex"
    assert loaded.backend.max_retries == 3
    assert loaded.workflow.commit_policy == "immediate"
    assert loaded.workflow.verification_max_retries == 5
    assert loaded.workflow.quality_review_max_retries == 2
    assert loaded.workflow.observer_enabled is False
    assert loaded.drift.yellow_max == 6
    assert loaded.drift.red_max == 2
    assert loaded.drift.leeway_patterns == ["guides/*"]
    assert loaded.tracker.kind == "beads"
    assert loaded.log.max_lines == 500


def test_missing_config_uses_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path / "absent.toml")

    assert config.workflow.commit_policy == "confirmed"
    assert config.workflow.verification_max_retries == 3
    assert config.drift.yellow_minor_max == 2
    assert config.state.directory == ".foreman"


def test_dumps_toml_renders_every_section() -> None:
    rendered = dumps_toml(ForemanConfig.default())
    parsed = tomllib.loads(rendered)

    assert set(parsed) == set(ForemanConfig.SECTIONS)
    assert parsed["backend"]["retry_backoff_seconds"] == 0.5
    assert parsed["workflow"]["observer_enabled"] is True
    assert "tests/*" in parsed["drift"]["test_patterns"]


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
