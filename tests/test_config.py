import tomllib
from pathlib import Path

from boardbot import __version__
from boardbot.config import BoardbotConfig, dumps_toml, load_config, save_config


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "nested" / "boardbot.toml"
    config = BoardbotConfig.default()
    config.worker.name = "worker-7"
    config.worker.workspace_id = "acme"
    config.worker.max_concurrent_sessions = 3
    config.worker.stale_claim_timeout_seconds = 1800.0
    config.execution.max_loops = 20
    config.execution.no_progress_loops = 4
    config.selection.max_retries = 5
    config.backend.primary = "codex_sdk"
    config.backend.fallback = "claude"
    config.backend.max_retries = 3
    config.store.path = "/var/lib/boardbot/board.db"
    config.logging.level = "DEBUG"

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.worker.name == "worker-7"
    assert loaded.worker.workspace_id == "acme"
    assert loaded.worker.max_concurrent_sessions == 3
    assert loaded.worker.stale_claim_timeout_seconds == 1800.0
    assert loaded.worker.poll_interval_seconds == 15.0
    assert loaded.execution.max_loops == 20
    assert loaded.execution.no_progress_loops == 4
    assert loaded.execution.circuit_breaker_threshold == 5
    assert loaded.selection.max_retries == 5
    assert loaded.backend.primary == "codex_sdk"
    assert loaded.backend.fallback == "claude"
    assert loaded.backend.max_retries == 3
    assert loaded.store.path == "/var/lib/boardbot/board.db"
    assert loaded.logging.level == "DEBUG"


def test_missing_config_file_gives_defaults(tmp_path: Path) -> None:
    loaded = load_config(tmp_path / "absent.toml")

    assert loaded == BoardbotConfig.default()


def test_partial_config_keeps_defaults(tmp_path: Path) -> None:
    config_path = tmp_path / "boardbot.toml"
    config_path.write_text('[worker]\nname = "solo"\n', encoding="utf-8")

    loaded = load_config(config_path)

    assert loaded.worker.name == "solo"
    assert loaded.execution.max_loops == 50
    assert loaded.backend.timeout_seconds == 300.0


def test_toml_dump_contains_all_sections() -> None:
    rendered = dumps_toml(BoardbotConfig.default())

    for section in ("[worker]", "[execution]", "[selection]", "[backend]", "[store]", "[logging]"):
        assert section in rendered
    assert "poll_interval_seconds = 15.0" in rendered
    assert "circuit_breaker_threshold = 5" in rendered
    assert "stale_claim_timeout_seconds = 0.0" in rendered
    assert 'primary = "claude"' in rendered
    assert tomllib.loads(rendered)["backend"]["retry_backoff_seconds"] == 0.5


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
