from __future__ import annotations

import asyncio
import json
import sys
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click
from loguru import logger

from automode.config import (
    DEFAULT_CONFIG_FILENAME,
    AutoModeConfig,
    LoggingConfig,
    load_config,
    save_config,
)
from automode.errors import AutoModeError
from automode.events import EventBus
from automode.executor import ProviderFactory
from automode.models import PLANNING_MODES, Feature
from automode.providers import get_provider_for_model
from automode.scheduler import ExecutionScheduler
from automode.state import FeatureStore
from automode.worktrees import WorktreeManager

QUIET_EVENTS = {"auto_mode_progress", "auto_mode_tool"}


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: AutoModeConfig
    store: FeatureStore
    events: EventBus
    scheduler: ExecutionScheduler


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _configure_logging(settings: LoggingConfig) -> None:
    logger.remove()
    logger.add(
        sys.stderr,
        level=settings.level.upper(),
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
    )
    if settings.file:
        logger.add(
            settings.file,
            level=settings.level.upper(),
            rotation="10 MB",
            retention=5,
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {module}:{line} | {message}",
        )


def _build_provider_factory(config: AutoModeConfig) -> ProviderFactory:
    return lambda model: get_provider_for_model(model, config.provider)


def _echo_event(verbose: bool, channel: str, payload: dict[str, Any]) -> None:
    _ = channel
    event_type = str(payload.get("type", ""))
    if event_type in QUIET_EVENTS and not verbose:
        return
    feature_id = payload.get("feature_id")
    prefix = f"[{event_type}]" + (f" {feature_id}" if feature_id else "")
    if event_type == "auto_mode_progress":
        click.echo(str(payload.get("content", "")))
    elif event_type == "auto_mode_tool":
        click.echo(f"{prefix}: {payload.get('tool')}")
    elif payload.get("error"):
        click.echo(f"{prefix}: {payload['error']}", err=True)
    elif payload.get("message"):
        click.echo(f"{prefix}: {payload['message']}")
    elif payload.get("mode"):
        click.echo(f"{prefix}: {payload['mode']}")
    else:
        click.echo(prefix)


def _load_runtime(repo_root: Path, config_path: Path, verbose: bool = False) -> Runtime:
    config = load_config(config_path)
    _configure_logging(config.logging)
    store = FeatureStore()
    events = EventBus()
    events.subscribe(lambda channel, payload: _echo_event(verbose, channel, payload))
    scheduler = ExecutionScheduler(
        config,
        store=store,
        worktrees=WorktreeManager(),
        events=events,
        provider_factory=_build_provider_factory(config),
    )
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        store=store,
        events=events,
        scheduler=scheduler,
    )


def _runtime(config_value: str, verbose: bool = False) -> Runtime:
    repo_root = Path.cwd().resolve()
    try:
        return _load_runtime(repo_root, _resolve_config_path(repo_root, config_value), verbose)
    except (TypeError, ValueError) as exc:
        raise click.ClickException(f"Invalid configuration: {exc}") from exc


def _run(coro: Any) -> Any:
    try:
        return asyncio.run(coro)
    except AutoModeError as exc:
        raise click.ClickException(str(exc)) from exc


def _new_feature_id() -> str:
    return f"feature-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"


config_option = click.option(
    "--config", "config_value", default=DEFAULT_CONFIG_FILENAME, show_default=True
)


@click.group()
def cli() -> None:
    """Autonomous feature execution."""


@cli.command("init")
@click.option("--model", default=None, help="Default model for new features.")
@click.option("--max-concurrency", type=int, default=None)
@config_option
def init_command(model: str | None, max_concurrency: int | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    if model:
        config.provider.default_model = model
    if max_concurrency is not None:
        config.execution.max_concurrency = max_concurrency
    if config.project.name == "my-project":
        config.project.name = repo_root.name
    save_config(config_path, config)
    FeatureStore.features_dir(repo_root).mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized automode in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Model: {config.provider.default_model}")


@cli.command("add")
@click.argument("description")
@click.option("--id", "feature_id", default=None)
@click.option("--title", default="")
@click.option("--category", default="")
@click.option("--planning-mode", type=click.Choice(sorted(PLANNING_MODES)), default=None)
@click.option("--require-approval/--no-require-approval", default=None)
@click.option("--model", default=None)
@config_option
def add_command(
    description: str,
    feature_id: str | None,
    title: str,
    category: str,
    planning_mode: str | None,
    require_approval: bool | None,
    model: str | None,
    config_value: str,
) -> None:
    runtime = _runtime(config_value)
    planning = runtime.config.planning
    feature = Feature(
        id=feature_id or _new_feature_id(),
        description=description,
        title=title,
        category=category,
        planning_mode=planning_mode or planning.default_mode,  # type: ignore[arg-type]
        require_plan_approval=(
            planning.require_plan_approval if require_approval is None else require_approval
        ),
        model=model,
    )
    try:
        runtime.store.create(runtime.repo_root, feature)
    except AutoModeError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(feature.id)


@cli.command("list")
@click.option("--status", "status_filter", default=None)
@config_option
def list_command(status_filter: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    features = runtime.store.list(runtime.repo_root)
    if status_filter:
        features = [feature for feature in features if feature.status == status_filter]
    if not features:
        click.echo("No features found.")
        return
    for feature in features:
        click.echo(f"{feature.id}\t{feature.status}\t{feature.display_name()}")


@cli.command("show")
@click.argument("feature_id")
@click.option("--output", "show_output", is_flag=True, default=False)
@config_option
def show_command(feature_id: str, show_output: bool, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        feature = runtime.store.require(runtime.repo_root, feature_id)
    except AutoModeError as exc:
        raise click.ClickException(str(exc)) from exc
    if show_output:
        click.echo(runtime.store.get_agent_output(runtime.repo_root, feature_id) or "")
        return
    click.echo(json.dumps(feature.to_dict(), ensure_ascii=False, indent=2))


def _report_outcome(runtime: Runtime, outcome: Any) -> None:
    if outcome.stopped:
        click.echo(f"Feature {outcome.feature_id} stopped.")
        return
    if outcome.status is None or outcome.status == "backlog":
        raise click.ClickException(outcome.error or f"Feature {outcome.feature_id} failed")
    if outcome.awaiting_plan_approval:
        feature = runtime.store.require(runtime.repo_root, outcome.feature_id)
        if feature.plan_spec is not None:
            click.echo(feature.plan_spec.content)
        click.echo(
            f"Plan for {outcome.feature_id} awaits approval: automode approve {outcome.feature_id}"
        )
        return
    click.echo(f"Feature {outcome.feature_id}: {outcome.status}")


@cli.command("run")
@click.argument("feature_id")
@click.option("--worktree/--no-worktree", "use_worktrees", default=None)
@click.option("--resume", is_flag=True, default=False)
@click.option("--verbose", is_flag=True, default=False)
@config_option
def run_command(
    feature_id: str,
    use_worktrees: bool | None,
    resume: bool,
    verbose: bool,
    config_value: str,
) -> None:
    runtime = _runtime(config_value, verbose)
    scheduler = runtime.scheduler
    if resume:
        outcome = _run(
            scheduler.resume_feature(runtime.repo_root, feature_id, use_worktrees=use_worktrees)
        )
    else:
        outcome = _run(
            scheduler.execute_feature(runtime.repo_root, feature_id, use_worktrees=use_worktrees)
        )
    _report_outcome(runtime, outcome)


@cli.command("follow-up")
@click.argument("feature_id")
@click.argument("instructions")
@click.option("--verbose", is_flag=True, default=False)
@config_option
def follow_up_command(feature_id: str, instructions: str, verbose: bool, config_value: str) -> None:
    runtime = _runtime(config_value, verbose)
    outcome = _run(
        runtime.scheduler.follow_up_feature(runtime.repo_root, feature_id, instructions)
    )
    _report_outcome(runtime, outcome)


async def _auto(runtime: Runtime, max_concurrency: int | None, until_idle: bool) -> int:
    scheduler = runtime.scheduler
    scheduler.start_auto_loop(runtime.repo_root, max_concurrency)
    try:
        while True:
            await asyncio.sleep(runtime.config.execution.poll_interval_seconds)
            if until_idle and scheduler.auto_loop_idle():
                break
    finally:
        stopped = await scheduler.stop_auto_loop()
    return stopped


@cli.command("auto")
@click.option("--max-concurrency", type=int, default=None)
@click.option("--until-idle", is_flag=True, default=False)
@click.option("--verbose", is_flag=True, default=False)
@config_option
def auto_command(
    max_concurrency: int | None, until_idle: bool, verbose: bool, config_value: str
) -> None:
    runtime = _runtime(config_value, verbose)
    try:
        stopped = _run(_auto(runtime, max_concurrency, until_idle))
    except KeyboardInterrupt:
        click.echo("Auto mode interrupted.")
        return
    click.echo(f"Auto mode finished ({stopped} executions stopped).")


async def _approve(
    runtime: Runtime,
    feature_id: str,
    approved: bool,
    edited_plan: str | None,
    feedback: str | None,
) -> Feature:
    result = runtime.scheduler.resolve_plan_approval(
        feature_id,
        approved,
        edited_plan=edited_plan,
        feedback=feedback,
        project_path=runtime.repo_root,
    )
    if not result.success:
        raise AutoModeError(result.error or "Plan approval failed", feature_id=feature_id)
    await runtime.scheduler.wait_idle()
    return runtime.store.require(runtime.repo_root, feature_id)


@cli.command("approve")
@click.argument("feature_id")
@click.option("--reject", is_flag=True, default=False)
@click.option("--feedback", default=None)
@click.option("--plan-file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--verbose", is_flag=True, default=False)
@config_option
def approve_command(
    feature_id: str,
    reject: bool,
    feedback: str | None,
    plan_file: Path | None,
    verbose: bool,
    config_value: str,
) -> None:
    runtime = _runtime(config_value, verbose)
    edited_plan = plan_file.read_text(encoding="utf-8") if plan_file else None
    feature = _run(_approve(runtime, feature_id, not reject, edited_plan, feedback))
    if reject:
        click.echo(f"Plan for {feature_id} rejected; feature moved to {feature.status}.")
        return
    click.echo(f"Plan for {feature_id} approved; feature is {feature.status}.")
    if feature.status == "backlog" and feature.error:
        raise click.ClickException(feature.error)


@cli.command("status")
@config_option
def status_command(config_value: str) -> None:
    runtime = _runtime(config_value)
    counts: dict[str, int] = {}
    for feature in runtime.store.list(runtime.repo_root):
        counts[feature.status] = counts.get(feature.status, 0) + 1
    awaiting = [
        feature.id
        for feature in runtime.store.list(runtime.repo_root)
        if feature.awaiting_plan_decision
    ]
    payload = {
        **runtime.scheduler.status(),
        "features": counts,
        "awaiting_plan_approval": awaiting,
    }
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("verify")
@click.argument("feature_id")
@config_option
def verify_command(feature_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    result = _run(runtime.scheduler.verify_feature(runtime.repo_root, feature_id))
    for item in result.results:
        marker = "ok" if item.passed else "FAILED"
        click.echo(f"{marker}: {item.command}")
    if not result.passed:
        raise click.ClickException(result.failure_summary())
    click.echo(f"Feature {feature_id} verified.")


@cli.command("commit")
@click.argument("feature_id")
@click.option("-m", "--message", default=None)
@config_option
def commit_command(feature_id: str, message: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    result = _run(runtime.scheduler.commit_feature(runtime.repo_root, feature_id, message))
    if not result.committed:
        click.echo("No changes to commit.")
        return
    click.echo(f"Committed {result.commit_hash} on {result.branch}")


def _feature_worktree(runtime: Runtime, feature_id: str) -> Path:
    path = WorktreeManager.worktree_path(runtime.repo_root, feature_id)
    if not path.is_dir():
        raise click.ClickException(f"No worktree for feature {feature_id} at {path}")
    return path


@cli.command("merge")
@click.argument("feature_id")
@click.option("--squash", is_flag=True, default=False)
@click.option("-m", "--message", default=None)
@config_option
def merge_command(feature_id: str, squash: bool, message: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    result = _run(
        runtime.scheduler.worktrees.merge(
            runtime.repo_root, feature_id, squash=squash, message=message
        )
    )
    click.echo(f"Merged {result.merged_branch} into {result.target_branch}")
    for warning in result.warnings:
        click.echo(f"warning: {warning}", err=True)


@cli.command("push")
@click.argument("feature_id")
@click.option("--force", is_flag=True, default=False)
@config_option
def push_command(feature_id: str, force: bool, config_value: str) -> None:
    runtime = _runtime(config_value)
    worktree = _feature_worktree(runtime, feature_id)
    result = _run(runtime.scheduler.worktrees.push(worktree, force=force))
    click.echo(f"Pushed {result.branch} to {result.remote}")


@cli.command("pull")
@click.argument("feature_id")
@config_option
def pull_command(feature_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    worktree = _feature_worktree(runtime, feature_id)
    result = _run(runtime.scheduler.worktrees.pull(worktree))
    click.echo(f"Pulled {result.branch}")


@cli.command("switch-branch")
@click.argument("branch")
@config_option
def switch_branch_command(branch: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    result = _run(runtime.scheduler.worktrees.switch_branch(runtime.repo_root, branch))
    click.echo(f"Switched from {result.previous_branch} to {result.current_branch}")


@cli.command("checkout-branch")
@click.argument("branch")
@click.option("--from", "start_point", default=None)
@config_option
def checkout_branch_command(branch: str, start_point: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    result = _run(
        runtime.scheduler.worktrees.checkout_new_branch(
            runtime.repo_root, branch, start_point=start_point
        )
    )
    click.echo(f"Created and checked out {result.current_branch}")


@cli.command("remove-worktree")
@click.argument("feature_id")
@click.option("--force", is_flag=True, default=False)
@config_option
def remove_worktree_command(feature_id: str, force: bool, config_value: str) -> None:
    runtime = _runtime(config_value)
    worktree = _feature_worktree(runtime, feature_id)
    _run(runtime.scheduler.worktrees.remove(runtime.repo_root, worktree, force=force))
    click.echo(f"Removed worktree {worktree}")
