import json
from pathlib import Path

from click.testing import CliRunner

from boardbot.backends.base import AgentBackend, SessionResult
from boardbot.cli import cli
from boardbot.config import load_config

DONE = (
    "modified: src/orders.py\n"
    'BOARDBOT_STATUS: {"EXIT_SIGNAL": true, "COMPLETION_INDICATORS": 2}'
)
APPROVE = 'REVIEW_VERDICT: {"verdict": "approve", "remarks": "fine"}'


class FakeBackend(AgentBackend):
    async def run_session(
        self,
        prompt: str,
        *,
        continuation_handle: str | None = None,
        working_directory: Path | None = None,
    ) -> SessionResult:
        _ = continuation_handle, working_directory
        if "gate for the following task" in prompt:
            return SessionResult(text=APPROVE)
        return SessionResult(
            text=DONE,
            files_modified=["src/orders.py"],
            completion_indicators=2,
            exit_signal=True,
        )


def test_cli_board_lifecycle(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("boardbot.cli._build_backend", lambda config, repo_root: FakeBackend())
    runner = CliRunner()

    init_result = runner.invoke(cli, ["init", "--workspace", "acme"])
    assert init_result.exit_code == 0
    assert "Initialized boardbot" in init_result.output
    assert "ai_review=off" in init_result.output
    assert load_config(tmp_path / "boardbot.toml").worker.workspace_id == "acme"
    assert (tmp_path / ".boardbot" / "board.db").exists()

    first = runner.invoke(cli, ["add", "Paginate orders", "--priority", "high"])
    assert first.exit_code == 0
    first_id = first.output.strip()
    second = runner.invoke(cli, ["add", "Document pagination", "--label", "docs"])
    second_id = second.output.strip()

    depend_result = runner.invoke(cli, ["depend", second_id, first_id])
    assert depend_result.exit_code == 0
    self_dependency = runner.invoke(cli, ["depend", first_id, first_id])
    assert self_dependency.exit_code != 0
    assert "itself" in self_dependency.output

    feature_result = runner.invoke(
        cli, ["feature", "ai_review", "--enable", "--set", "max_review_rounds=2"]
    )
    assert feature_result.exit_code == 0
    feature = json.loads(feature_result.output)
    assert feature["enabled"] is True
    assert feature["config"]["max_review_rounds"] == 2

    execution = runner.invoke(cli, ["poll"])
    assert execution.exit_code == 0
    report = json.loads(execution.output)
    assert report["task_id"] == first_id
    assert report["final_status"] == "ai_review"

    blocked = runner.invoke(cli, ["status", "--task", second_id])
    assert json.loads(blocked.output)["blocked"] == f"blocked by {first_id}"

    review = runner.invoke(cli, ["poll"])
    assert json.loads(review.output)["final_status"] == "done"

    follow_up = runner.invoke(cli, ["poll"])
    assert json.loads(follow_up.output)["task_id"] == second_id

    status_result = runner.invoke(cli, ["status"])
    assert status_result.exit_code == 0
    status = json.loads(status_result.output)
    assert status["workspace_id"] == "acme"
    assert status["counts"]["done"] == 1
    assert status["counts"]["ai_review"] == 1


def test_poll_on_empty_board(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("boardbot.cli._build_backend", lambda config, repo_root: FakeBackend())
    runner = CliRunner()

    result = runner.invoke(cli, ["poll"])

    assert result.exit_code == 0
    assert "No work available." in result.output


def test_status_for_unknown_task_fails(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()

    result = runner.invoke(cli, ["status", "--task", "missing"])

    assert result.exit_code != 0
    assert "Task not found: missing" in result.output


def test_add_rejects_status_of_disabled_stage(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()
    runner.invoke(cli, ["init", "--workspace", "acme"])

    rejected = runner.invoke(cli, ["add", "Ghost", "--status", "ai_review"])
    assert rejected.exit_code != 0
    assert "Status ai_review is not available" in rejected.output
    assert json.loads(runner.invoke(cli, ["status"]).output)["tasks"] == []

    runner.invoke(cli, ["feature", "ai_review", "--enable"])
    accepted = runner.invoke(
        cli, ["add", "Ghost", "--status", "ai_review", "--project", "web"]
    )
    assert accepted.exit_code == 0
    status = json.loads(runner.invoke(cli, ["status"]).output)
    assert status["counts"]["ai_review"] == 1
