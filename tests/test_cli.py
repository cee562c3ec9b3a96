import json
import sys
from collections.abc import AsyncIterator, Iterator
from pathlib import Path

import pytest
from click.testing import CliRunner
from loguru import logger

import automode.cli as cli_module
from automode.cli import cli
from automode.config import load_config, save_config
from automode.prompts import READ_ONLY_TOOLS
from automode.providers import ExecuteOptions, Provider, ProviderEvent

PLAN = "## Spec\n```tasks\n- [ ] T001: Add endpoint | File: app.py\n```\n"


class FakeProvider(Provider):
    name = "fake"

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.prompts: list[str] = []

    async def execute_query(self, options: ExecuteOptions) -> AsyncIterator[ProviderEvent]:
        self.prompts.append(options.prompt)
        if self.fail:
            yield ProviderEvent.failure("model unavailable")
            return
        if options.allowed_tools == READ_ONLY_TOOLS:
            yield ProviderEvent.assistant_text(f"{PLAN}[SPEC_GENERATED] Please review.")
        else:
            yield ProviderEvent.assistant_text("Implemented endpoint")
        yield ProviderEvent.success()


@pytest.fixture(autouse=True)
def _restore_logging() -> Iterator[None]:
    yield
    logger.remove()
    logger.add(sys.stderr)


def _init_project(
    runner: CliRunner,
    repo: Path,
    monkeypatch: pytest.MonkeyPatch,
    provider: Provider,
    verify_commands: list[str] | None = None,
) -> None:
    monkeypatch.chdir(repo)
    monkeypatch.setattr(
        cli_module, "_build_provider_factory", lambda config: lambda model: provider
    )
    result = runner.invoke(cli, ["init", "--max-concurrency", "2"])
    assert result.exit_code == 0, result.output
    config_path = repo / "automode.toml"
    config = load_config(config_path)
    config.execution.use_worktrees = False
    config.execution.poll_interval_seconds = 0.01
    config.logging.level = "ERROR"
    config.verify.commands = verify_commands or []
    save_config(config_path, config)


def _add_planned(runner: CliRunner, mode: str) -> None:
    args = ["add", "Add a health endpoint", "--id", "f1", "--planning-mode", mode]
    result = runner.invoke(cli, [*args, "--require-approval"])
    assert result.exit_code == 0, result.output


def test_init_add_list_and_show(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    runner = CliRunner()
    _init_project(runner, tmp_path, monkeypatch, FakeProvider())

    added = runner.invoke(cli, ["add", "Add a health endpoint", "--id", "f1", "--title", "Health"])
    listed = runner.invoke(cli, ["list"])
    shown = runner.invoke(cli, ["show", "f1"])
    duplicate = runner.invoke(cli, ["add", "Again", "--id", "f1"])

    assert (tmp_path / ".automode" / "features").is_dir()
    assert load_config(tmp_path / "automode.toml").execution.max_concurrency == 2
    assert added.exit_code == 0, added.output
    assert added.output.strip() == "f1"
    assert "f1\tpending\tHealth" in listed.output
    assert json.loads(shown.output)["description"] == "Add a health endpoint"
    assert duplicate.exit_code != 0
    assert "already exists" in duplicate.output


def test_run_reports_status_and_saves_output(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    runner = CliRunner()
    _init_project(runner, tmp_path, monkeypatch, FakeProvider())
    runner.invoke(cli, ["add", "Add a health endpoint", "--id", "f1"])

    result = runner.invoke(cli, ["run", "f1"])
    output = runner.invoke(cli, ["show", "f1", "--output"])

    assert result.exit_code == 0, result.output
    assert "Feature f1: waiting_approval" in result.output
    assert output.output.strip() == "Implemented endpoint"


def test_run_failure_exits_nonzero(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    runner = CliRunner()
    _init_project(runner, tmp_path, monkeypatch, FakeProvider(fail=True))
    runner.invoke(cli, ["add", "Add a health endpoint", "--id", "f1"])

    result = runner.invoke(cli, ["run", "f1"])
    listed = runner.invoke(cli, ["list", "--status", "backlog"])

    assert result.exit_code != 0
    assert "model unavailable" in result.output
    assert "f1\tbacklog" in listed.output


def test_plan_approval_flow_across_invocations(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    runner = CliRunner()
    provider = FakeProvider()
    _init_project(runner, tmp_path, monkeypatch, provider)
    _add_planned(runner, "spec")

    parked = runner.invoke(cli, ["run", "f1"])
    status = runner.invoke(cli, ["status"])
    approved = runner.invoke(cli, ["approve", "f1"])
    again = runner.invoke(cli, ["approve", "f1"])

    assert parked.exit_code == 0, parked.output
    assert "T001: Add endpoint" in parked.output
    assert "awaits approval" in parked.output
    payload = json.loads(status.output)
    assert payload["awaiting_plan_approval"] == ["f1"]
    assert payload["features"] == {"waiting_approval": 1}
    assert payload["running_count"] == 0
    assert approved.exit_code == 0, approved.output
    assert "approved; feature is waiting_approval" in approved.output
    assert "## Approved Plan" in provider.prompts[-1]
    assert again.exit_code != 0
    assert "No pending approval" in again.output


def test_reject_with_feedback_moves_to_backlog(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    runner = CliRunner()
    _init_project(runner, tmp_path, monkeypatch, FakeProvider())
    _add_planned(runner, "lite")
    runner.invoke(cli, ["run", "f1"])

    result = runner.invoke(cli, ["approve", "f1", "--reject", "--feedback", "Needs tests"])
    shown = json.loads(runner.invoke(cli, ["show", "f1"]).output)

    assert result.exit_code == 0, result.output
    assert "rejected; feature moved to backlog" in result.output
    assert shown["feedback"] == "Needs tests"
    assert shown["plan_spec"]["status"] == "rejected"


def test_approve_with_edited_plan_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    runner = CliRunner()
    provider = FakeProvider()
    _init_project(runner, tmp_path, monkeypatch, provider)
    _add_planned(runner, "spec")
    runner.invoke(cli, ["run", "f1"])
    plan_file = tmp_path / "plan.md"
    plan_file.write_text("- [ ] T001: Only the endpoint\n", encoding="utf-8")

    result = runner.invoke(cli, ["approve", "f1", "--plan-file", str(plan_file)])
    shown = json.loads(runner.invoke(cli, ["show", "f1"]).output)

    assert result.exit_code == 0, result.output
    assert shown["plan_spec"]["version"] == 2
    assert shown["plan_spec"]["tasks"][0]["description"] == "Only the endpoint"
    assert "T001: Only the endpoint" in provider.prompts[-1]


def test_auto_until_idle_processes_pending_features(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    runner = CliRunner()
    provider = FakeProvider()
    _init_project(runner, tmp_path, monkeypatch, provider)
    for index in range(3):
        runner.invoke(cli, ["add", f"Feature {index}", "--id", f"f{index}"])

    result = runner.invoke(cli, ["auto", "--until-idle", "--max-concurrency", "2"])
    listed = runner.invoke(cli, ["list", "--status", "waiting_approval"])

    assert result.exit_code == 0, result.output
    assert "Auto mode finished (0 executions stopped)." in result.output
    assert len(provider.prompts) == 3
    assert len(listed.output.strip().splitlines()) == 3


def test_verify_command_reports_results(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    runner = CliRunner()
    _init_project(runner, tmp_path, monkeypatch, FakeProvider(), verify_commands=["true"])
    runner.invoke(cli, ["add", "Add a health endpoint", "--id", "f1"])

    result = runner.invoke(cli, ["verify", "f1"])
    listed = runner.invoke(cli, ["list", "--status", "completed"])

    assert result.exit_code == 0, result.output
    assert "ok: true" in result.output
    assert "Feature f1 verified." in result.output
    assert "f1\tcompleted" in listed.output


def test_unknown_feature_is_reported(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    runner = CliRunner()
    _init_project(runner, tmp_path, monkeypatch, FakeProvider())

    shown = runner.invoke(cli, ["show", "ghost"])
    run = runner.invoke(cli, ["run", "ghost"])

    assert shown.exit_code != 0
    assert "Feature ghost not found" in shown.output
    assert run.exit_code != 0
    assert "not found" in run.output
