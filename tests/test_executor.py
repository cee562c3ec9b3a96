import asyncio
import subprocess
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from automode.config import AutoModeConfig
from automode.events import EventBus
from automode.models import Feature
from automode.prompts import READ_ONLY_TOOLS
from automode.providers import ExecuteOptions, Provider, ProviderEvent
from automode.scheduler import ExecutionScheduler
from automode.state import FeatureStore

SPEC_PLAN = "## Spec\n```tasks\n- [ ] T001: Build it | File: app.py\n```\n"


class ScriptedProvider(Provider):
    name = "scripted"

    def __init__(
        self,
        planning_text: str = f"{SPEC_PLAN}[SPEC_GENERATED] Please review the specification above.",
        implementation_text: str = "Implemented the feature",
        fail_with: Exception | None = None,
    ) -> None:
        self.planning_text = planning_text
        self.implementation_text = implementation_text
        self.fail_with = fail_with
        self.calls: list[ExecuteOptions] = []

    async def execute_query(self, options: ExecuteOptions) -> AsyncIterator[ProviderEvent]:
        self.calls.append(options)
        if self.fail_with is not None:
            raise self.fail_with
        planning = options.allowed_tools == READ_ONLY_TOOLS
        yield ProviderEvent.tool_use("Read", {"file_path": "README.md"})
        yield ProviderEvent.assistant_text(
            self.planning_text if planning else self.implementation_text
        )
        yield ProviderEvent.success()


class ResultOnlyProvider(Provider):
    name = "result-only"

    async def execute_query(self, options: ExecuteOptions) -> AsyncIterator[ProviderEvent]:
        _ = options
        yield ProviderEvent.success("Implemented via result")


class ErrorResultProvider(Provider):
    name = "error-result"

    async def execute_query(self, options: ExecuteOptions) -> AsyncIterator[ProviderEvent]:
        _ = options
        yield ProviderEvent.assistant_text("partial work")
        yield ProviderEvent.failure("context window exceeded")


def _config() -> AutoModeConfig:
    config = AutoModeConfig.default()
    config.execution.use_worktrees = False
    config.execution.poll_interval_seconds = 0.01
    config.execution.stop_grace_seconds = 1.0
    return config


def _scheduler(
    provider: Provider,
    config: AutoModeConfig | None = None,
    models: list[str] | None = None,
) -> tuple[ExecutionScheduler, list[dict[str, Any]]]:
    bus = EventBus()
    events: list[dict[str, Any]] = []
    bus.subscribe(lambda channel, payload: events.append(payload))

    def _factory(model: str) -> Provider:
        if models is not None:
            models.append(model)
        return provider

    scheduler = ExecutionScheduler(config or _config(), events=bus, provider_factory=_factory)
    return scheduler, events


def _add(project: Path, **fields: Any) -> Feature:
    feature = Feature(id=fields.pop("id", "f1"), description="Add a health endpoint", **fields)
    return FeatureStore().create(project, feature)


def _init_git_repo(repo_path: Path) -> None:
    subprocess.run(["git", "init"], cwd=repo_path, check=True, text=True, capture_output=True)
    subprocess.run(
        ["git", "config", "user.email", "test@example.com"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )
    subprocess.run(
        ["git", "config", "user.name", "Test User"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )
    (repo_path / "README.md").write_text("seed\n", encoding="utf-8")
    subprocess.run(
        ["git", "add", "README.md"], cwd=repo_path, check=True, text=True, capture_output=True
    )
    subprocess.run(
        ["git", "commit", "-m", "seed"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )


def test_skip_mode_success_waits_for_review_with_output(tmp_path: Path) -> None:
    _add(tmp_path)
    scheduler, events = _scheduler(ResultOnlyProvider())

    outcome = asyncio.run(scheduler.execute_feature(tmp_path, "f1", use_worktrees=False))

    feature = scheduler.store.require(tmp_path, "f1")
    assert outcome.status == "waiting_approval"
    assert outcome.ok is True
    assert feature.status == "waiting_approval"
    assert feature.started_at is not None
    assert scheduler.store.get_agent_output(tmp_path, "f1") == "Implemented via result"
    types = [event["type"] for event in events]
    assert types[0] == "auto_mode_feature_start"
    assert types[-1] == "auto_mode_feature_complete"
    assert "planning_started" not in types


def test_completion_without_review_marks_completed(tmp_path: Path) -> None:
    _add(tmp_path)
    config = _config()
    config.review.require_completion_review = False
    scheduler, events = _scheduler(ScriptedProvider(), config)

    outcome = asyncio.run(scheduler.execute_feature(tmp_path, "f1"))

    feature = scheduler.store.require(tmp_path, "f1")
    assert outcome.status == "completed"
    assert feature.completed_at is not None
    assert events[-1]["passes"] is True


def test_provider_exception_moves_feature_to_backlog(tmp_path: Path) -> None:
    _add(tmp_path)
    scheduler, events = _scheduler(ScriptedProvider(fail_with=RuntimeError("agent crashed")))

    outcome = asyncio.run(scheduler.execute_feature(tmp_path, "f1"))

    feature = scheduler.store.require(tmp_path, "f1")
    assert outcome.status == "backlog"
    assert feature.status == "backlog"
    assert feature.error == "agent crashed"
    errors = [event for event in events if event["type"] == "auto_mode_error"]
    assert errors[0]["feature_id"] == "f1"
    assert errors[0]["error"] == "agent crashed"
    assert errors[0]["error_type"] == "provider_failure"
    assert scheduler.status()["running_feature_ids"] == []


def test_error_result_keeps_partial_output(tmp_path: Path) -> None:
    _add(tmp_path)
    scheduler, _ = _scheduler(ErrorResultProvider())

    outcome = asyncio.run(scheduler.execute_feature(tmp_path, "f1"))

    assert outcome.status == "backlog"
    assert outcome.error == "context window exceeded"
    assert scheduler.store.get_agent_output(tmp_path, "f1") == "partial work"


def test_missing_feature_emits_error_event(tmp_path: Path) -> None:
    scheduler, events = _scheduler(ScriptedProvider())

    outcome = asyncio.run(scheduler.execute_feature(tmp_path, "ghost"))

    assert outcome.status is None
    assert outcome.error is not None and "not found" in outcome.error
    assert events == [
        {
            "type": "auto_mode_error",
            "feature_id": "ghost",
            "project_path": str(tmp_path.resolve()),
            "error": "Feature ghost not found",
            "error_type": "not_found",
        }
    ]


def test_worktree_run_creates_feature_branch(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    _add(tmp_path)
    provider = ScriptedProvider()
    scheduler, events = _scheduler(provider)

    outcome = asyncio.run(scheduler.execute_feature(tmp_path, "f1", use_worktrees=True))

    branches = subprocess.run(
        ["git", "branch", "--list", "feature/f1"],
        cwd=tmp_path,
        check=True,
        text=True,
        capture_output=True,
    ).stdout
    worktree = tmp_path.resolve() / ".worktrees" / "f1"
    assert outcome.status == "waiting_approval"
    assert outcome.worktree_path == worktree
    assert "feature/f1" in branches
    assert provider.calls[0].cwd == worktree
    assert scheduler.store.require(tmp_path, "f1").branch_name == "feature/f1"
    assert events[0]["worktree_path"] == str(worktree)


def test_worktree_failure_moves_feature_to_backlog(tmp_path: Path) -> None:
    _add(tmp_path)
    scheduler, events = _scheduler(ScriptedProvider())

    outcome = asyncio.run(scheduler.execute_feature(tmp_path, "f1", use_worktrees=True))

    assert outcome.status == "backlog"
    assert events[-1]["type"] == "auto_mode_error"
    assert events[-1]["error_type"] == "worktree_failure"


def test_lite_plan_without_approval_continues_to_implementation(tmp_path: Path) -> None:
    _add(tmp_path, planning_mode="lite", require_plan_approval=False)
    provider = ScriptedProvider(
        planning_text="Goal: ship\n[PLAN_GENERATED] Planning outline complete.\nStarting now"
    )
    scheduler, events = _scheduler(provider)

    outcome = asyncio.run(scheduler.execute_feature(tmp_path, "f1"))

    feature = scheduler.store.require(tmp_path, "f1")
    assert outcome.status == "waiting_approval"
    assert outcome.awaiting_plan_approval is False
    assert feature.plan_spec is not None
    assert feature.plan_spec.content == "Goal: ship"
    assert len(provider.calls) == 2
    assert provider.calls[0].allowed_tools == READ_ONLY_TOOLS
    assert "Write" in (provider.calls[1].allowed_tools or [])
    assert "Goal: ship" in provider.calls[1].prompt
    started = [event for event in events if event["type"] == "planning_started"]
    assert started[0]["mode"] == "lite"
    assert scheduler.has_pending_approval("f1") is False


def test_planning_without_marker_uses_whole_output(tmp_path: Path) -> None:
    _add(tmp_path, planning_mode="lite")
    scheduler, _ = _scheduler(ScriptedProvider(planning_text="Just a plan"))

    asyncio.run(scheduler.execute_feature(tmp_path, "f1"))

    plan = scheduler.store.require(tmp_path, "f1").plan_spec
    assert plan is not None
    assert plan.content == "Just a plan"


def test_spec_plan_requiring_approval_parks_then_resumes(tmp_path: Path) -> None:
    _add(tmp_path, planning_mode="spec", require_plan_approval=True)
    provider = ScriptedProvider()
    scheduler, events = _scheduler(provider)

    async def _scenario() -> Any:
        outcome = await scheduler.execute_feature(tmp_path, "f1")
        parked = scheduler.store.require(tmp_path, "f1")
        assert outcome.awaiting_plan_approval is True
        assert parked.status == "waiting_approval"
        assert parked.awaiting_plan_decision is True
        assert scheduler.has_pending_approval("f1") is True
        assert scheduler.status()["running_feature_ids"] == []

        result = scheduler.resolve_plan_approval("f1", True)
        await scheduler.wait_idle()
        return result

    result = asyncio.run(_scenario())

    feature = scheduler.store.require(tmp_path, "f1")
    assert result.success is True
    assert feature.status == "waiting_approval"
    assert feature.plan_spec is not None
    assert feature.plan_spec.status == "approved"
    assert [task.id for task in feature.plan_spec.tasks] == ["T001"]
    assert len(provider.calls) == 2
    assert "## Approved Plan" in provider.calls[1].prompt
    assert "T001: Build it" in provider.calls[1].prompt
    types = [event["type"] for event in events]
    assert types.index("planning_started") < types.index("plan_approval_required")
    assert types.index("plan_approved") < types.index("auto_mode_feature_complete")
    started = [event for event in events if event["type"] == "planning_started"]
    assert started[0]["mode"] == "spec"
    required = [event for event in events if event["type"] == "plan_approval_required"]
    assert "T001" in required[0]["plan_content"]


def test_approval_recovers_after_restart(tmp_path: Path) -> None:
    _add(tmp_path, planning_mode="full", require_plan_approval=True)
    first, _ = _scheduler(ScriptedProvider())
    asyncio.run(first.execute_feature(tmp_path, "f1"))

    provider = ScriptedProvider()
    restarted, _ = _scheduler(provider)
    assert restarted.has_pending_approval("f1") is False

    async def _scenario() -> Any:
        result = restarted.resolve_plan_approval(
            "f1", True, edited_plan="Edited plan", project_path=tmp_path
        )
        await restarted.wait_idle()
        return result

    result = asyncio.run(_scenario())

    feature = restarted.store.require(tmp_path, "f1")
    assert result.success is True
    assert result.recovered is True
    assert feature.status == "waiting_approval"
    assert len(provider.calls) == 1
    assert "Edited plan" in provider.calls[0].prompt
    assert restarted.store.get_agent_output(tmp_path, "f1") == "Implemented the feature"


def test_rejected_plan_feedback_reaches_next_planning_run(tmp_path: Path) -> None:
    _add(tmp_path, planning_mode="spec", require_plan_approval=True)
    provider = ScriptedProvider()
    scheduler, _ = _scheduler(provider)

    async def _scenario() -> None:
        await scheduler.execute_feature(tmp_path, "f1")
        result = scheduler.resolve_plan_approval("f1", False, feedback="Split into two tasks")
        assert result.success is True
        assert scheduler.store.require(tmp_path, "f1").status == "backlog"

        def _requeue(item: Feature) -> None:
            item.status = "pending"

        scheduler.store.update(tmp_path, "f1", _requeue)
        await scheduler.execute_feature(tmp_path, "f1")

    asyncio.run(_scenario())

    assert len(provider.calls) == 2
    assert "Split into two tasks" in provider.calls[1].prompt
    feature = scheduler.store.require(tmp_path, "f1")
    assert feature.plan_spec is not None
    assert feature.plan_spec.status == "generated"
    assert feature.plan_spec.version == 2


def test_model_override_is_passed_to_provider_factory(tmp_path: Path) -> None:
    _add(tmp_path, id="f1", model="gpt-5-codex")
    _add(tmp_path, id="f2")
    models: list[str] = []
    provider = ScriptedProvider()
    scheduler, _ = _scheduler(provider, models=models)

    asyncio.run(scheduler.execute_feature(tmp_path, "f1"))
    asyncio.run(scheduler.execute_feature(tmp_path, "f2"))

    assert models == ["gpt-5-codex", scheduler.config.provider.default_model]
    assert provider.calls[0].model == "gpt-5-codex"


def test_follow_up_appends_to_previous_output(tmp_path: Path) -> None:
    _add(tmp_path)
    provider = ScriptedProvider()
    scheduler, _ = _scheduler(provider)

    asyncio.run(scheduler.execute_feature(tmp_path, "f1"))
    provider.implementation_text = "Added tests"
    outcome = asyncio.run(scheduler.follow_up_feature(tmp_path, "f1", "Please add tests"))

    output = scheduler.store.get_agent_output(tmp_path, "f1")
    assert outcome.status == "waiting_approval"
    assert output == "Implemented the feature\n\n---\n\nAdded tests"
    assert "Please add tests" in provider.calls[1].prompt
    assert "Implemented the feature" in provider.calls[1].prompt


class StallingImplementationProvider(ScriptedProvider):
    name = "stalling"

    def __init__(self, planning_text: str) -> None:
        super().__init__(planning_text=planning_text)
        self.implementing = asyncio.Event()

    async def execute_query(self, options: ExecuteOptions) -> AsyncIterator[ProviderEvent]:
        self.calls.append(options)
        if options.allowed_tools == READ_ONLY_TOOLS:
            yield ProviderEvent.assistant_text(self.planning_text)
            yield ProviderEvent.success()
            return
        self.implementing.set()
        await asyncio.sleep(30)
        yield ProviderEvent.success()


def test_stop_after_plan_was_stored_keeps_feature_in_progress(tmp_path: Path) -> None:
    _add(tmp_path, planning_mode="lite", require_plan_approval=False)
    provider = StallingImplementationProvider("Goal: ship\n[PLAN_GENERATED] Outline done.")
    scheduler, events = _scheduler(provider)

    async def _scenario() -> Any:
        run = asyncio.create_task(scheduler.execute_feature(tmp_path, "f1"))
        await asyncio.wait_for(provider.implementing.wait(), timeout=5.0)
        assert await scheduler.stop_feature("f1") is True
        return await run

    outcome = asyncio.run(_scenario())

    feature = scheduler.store.require(tmp_path, "f1")
    assert outcome.stopped is True
    assert outcome.status == "in_progress"
    assert feature.status == "in_progress"
    assert feature.plan_spec is not None
    assert feature.plan_spec.status == "generated"
    assert feature.plan_spec.content == "Goal: ship"
    stopped = [event for event in events if event["type"] == "auto_mode_feature_stopped"]
    assert stopped[0]["status"] == "in_progress"


def test_follow_up_and_resume_of_unknown_feature_report_not_found(tmp_path: Path) -> None:
    provider = ScriptedProvider()
    scheduler, events = _scheduler(provider)

    follow_up = asyncio.run(scheduler.follow_up_feature(tmp_path, "ghost", "Add tests"))
    resumed = asyncio.run(scheduler.resume_feature(tmp_path, "ghost"))

    for outcome in (follow_up, resumed):
        assert outcome.status is None
        assert outcome.error == "Feature ghost not found"
    assert [event["error_type"] for event in events] == ["not_found", "not_found"]
    assert provider.calls == []
