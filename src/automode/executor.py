from __future__ import annotations

import asyncio
from collections.abc import Callable
from contextlib import aclosing
from dataclasses import dataclass, field
from pathlib import Path

from loguru import logger

from automode.approvals import PendingApproval, PlanApprovalRegistry, PlanResolver
from automode.config import AutoModeConfig
from automode.errors import AutoModeError, ExecutionCancelledError, ProviderError
from automode.events import EventBus
from automode.models import Feature, PlanSpec, utcnow_iso
from automode.prompts import (
    FULL_TOOLS,
    READ_ONLY_TOOLS,
    SYSTEM_PROMPT,
    build_implementation_prompt,
    build_planning_prompt,
    marker_for_mode,
    parse_tasks_from_spec,
    split_at_marker,
)
from automode.providers import ExecuteOptions, Provider, get_provider_for_model
from automode.state import FeatureStore
from automode.worktrees import WorktreeManager

ProviderFactory = Callable[[str], Provider]


@dataclass(slots=True)
class ExecutionContext:
    project_path: Path
    feature_id: str
    use_worktrees: bool = False
    is_auto_mode: bool = False
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    approved_plan: str | None = None
    follow_up: str | None = None
    resume: bool = False
    on_plan_approved: PlanResolver | None = None
    persisted: bool = False


@dataclass(slots=True)
class ExecutionOutcome:
    feature_id: str
    status: str | None
    error: str | None = None
    stopped: bool = False
    awaiting_plan_approval: bool = False
    worktree_path: Path | None = None

    @property
    def ok(self) -> bool:
        return self.status in {"waiting_approval", "completed"} and self.error is None


class _PlanParked:
    """Returned by the planning phase when the run stops for a plan decision."""


PARKED = _PlanParked()


class FeatureExecutor:
    """Drives one feature run from ``pending`` to a settled status.

    Failures inside a run never escape ``run``: they become a ``backlog``
    transition plus an ``auto_mode_error`` event. Only cancellation that was
    not requested through the run's ``cancel_event`` is re-raised.
    """

    def __init__(
        self,
        store: FeatureStore,
        worktrees: WorktreeManager,
        approvals: PlanApprovalRegistry,
        events: EventBus,
        config: AutoModeConfig | None = None,
        provider_factory: ProviderFactory | None = None,
    ) -> None:
        self.store = store
        self.worktrees = worktrees
        self.approvals = approvals
        self.events = events
        self.config = config or AutoModeConfig.default()
        self.provider_factory = provider_factory or (
            lambda model: get_provider_for_model(model, self.config.provider)
        )

    def _emit(self, event_type: str, ctx: ExecutionContext, **payload: object) -> None:
        self.events.emit_auto_mode(
            event_type,
            feature_id=ctx.feature_id,
            project_path=str(ctx.project_path),
            **payload,
        )

    def _load(self, ctx: ExecutionContext) -> Feature | None:
        try:
            return self.store.get(ctx.project_path, ctx.feature_id)
        except AutoModeError as exc:
            logger.error("Cannot load feature {}: {}", ctx.feature_id, exc)
            return None

    async def run(self, ctx: ExecutionContext) -> ExecutionOutcome:
        ctx.project_path = Path(ctx.project_path).resolve()
        feature = self._load(ctx)
        if feature is None:
            message = f"Feature {ctx.feature_id} not found"
            logger.error(message)
            self._emit("auto_mode_error", ctx, error=message, error_type="not_found")
            return ExecutionOutcome(feature_id=ctx.feature_id, status=None, error=message)

        transcript: list[str] = []
        work_dir = ctx.project_path
        try:
            if ctx.use_worktrees:
                work_dir = await self._prepare_worktree(ctx, feature)
            feature = self._mark_in_progress(ctx)
            self._emit(
                "auto_mode_feature_start",
                ctx,
                feature={
                    "id": feature.id,
                    "title": feature.display_name(),
                    "description": feature.description,
                },
                is_auto_mode=ctx.is_auto_mode,
                worktree_path=str(work_dir) if ctx.use_worktrees else None,
            )

            plan = await self._plan_phase(ctx, feature, work_dir)
            if plan is PARKED:
                return ExecutionOutcome(
                    feature_id=ctx.feature_id,
                    status="waiting_approval",
                    awaiting_plan_approval=True,
                    worktree_path=work_dir if ctx.use_worktrees else None,
                )

            output = await self._implement(ctx, feature, work_dir, plan, transcript)
            status = self._finish(ctx, feature, output)
            return ExecutionOutcome(
                feature_id=ctx.feature_id,
                status=status,
                worktree_path=work_dir if ctx.use_worktrees else None,
            )
        except asyncio.CancelledError:
            self._save_partial_output(ctx, transcript)
            if ctx.cancel_event.is_set():
                status = self._settle_after_stop(ctx)
                logger.info("Feature {} stopped (status {})", ctx.feature_id, status)
                self._emit("auto_mode_feature_stopped", ctx, status=status)
                return ExecutionOutcome(feature_id=ctx.feature_id, status=status, stopped=True)
            self._mark_backlog(ctx, "Execution was cancelled")
            self._emit(
                "auto_mode_error",
                ctx,
                error="Execution was cancelled",
                error_type=ExecutionCancelledError.code,
            )
            raise
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__
            error_type = exc.code if isinstance(exc, AutoModeError) else "provider_failure"
            logger.error("Feature {} failed ({}): {}", ctx.feature_id, error_type, error)
            self._save_partial_output(ctx, transcript)
            self._mark_backlog(ctx, error)
            self._emit("auto_mode_error", ctx, error=error, error_type=error_type)
            return ExecutionOutcome(feature_id=ctx.feature_id, status="backlog", error=error)

    async def _prepare_worktree(self, ctx: ExecutionContext, feature: Feature) -> Path:
        branch = self.worktrees.branch_name(feature.id)
        path = await self.worktrees.create_worktree(
            ctx.project_path, feature.id, resume=feature.branch_name == branch
        )
        if feature.branch_name != branch:

            def _set_branch(item: Feature) -> None:
                item.branch_name = branch

            self.store.update(ctx.project_path, feature.id, _set_branch)
        return path

    def _mark_in_progress(self, ctx: ExecutionContext) -> Feature:
        def _start(item: Feature) -> None:
            item.status = "in_progress"
            item.started_at = utcnow_iso()
            item.completed_at = None
            item.error = None

        return self.store.update(ctx.project_path, ctx.feature_id, _start)

    def _mark_backlog(self, ctx: ExecutionContext, error: str) -> None:
        def _fail(item: Feature) -> None:
            item.status = "backlog"
            item.error = error

        try:
            self.store.update(ctx.project_path, ctx.feature_id, _fail)
        except AutoModeError as exc:
            logger.error("Could not move feature {} to backlog: {}", ctx.feature_id, exc)

    def _settle_after_stop(self, ctx: ExecutionContext) -> str | None:
        """Put a stopped run's feature back in the queue unless it made progress.

        A run that already stored a plan or agent output keeps its status.
        """

        def _revert(item: Feature) -> None:
            if item.status == "in_progress" and not ctx.persisted:
                item.status = "pending"

        try:
            return self.store.update(ctx.project_path, ctx.feature_id, _revert).status
        except AutoModeError as exc:
            logger.error("Could not settle stopped feature {}: {}", ctx.feature_id, exc)
            return None

    def _save_partial_output(self, ctx: ExecutionContext, transcript: list[str]) -> None:
        if not transcript:
            return
        try:
            self.store.append_agent_output(
                ctx.project_path, ctx.feature_id, "\n\n".join(transcript)
            )
            ctx.persisted = True
        except OSError as exc:
            logger.warning("Could not save partial output for {}: {}", ctx.feature_id, exc)

    async def _stream(
        self,
        ctx: ExecutionContext,
        feature: Feature,
        work_dir: Path,
        *,
        prompt: str,
        allowed_tools: list[str],
        max_turns: int,
        transcript: list[str],
        stop_marker: str | None = None,
    ) -> str:
        model = feature.model or self.config.provider.default_model
        provider = self.provider_factory(model)
        options = ExecuteOptions(
            prompt=prompt,
            model=model,
            cwd=work_dir,
            system_prompt=SYSTEM_PROMPT,
            allowed_tools=list(allowed_tools),
            max_turns=max_turns,
            cancel_event=ctx.cancel_event,
        )
        start = len(transcript)
        logger.debug("Querying {} ({}) for feature {}", provider.name, model, feature.id)
        async with aclosing(provider.execute_query(options)) as stream:
            async for event in stream:
                if event.type == "assistant_text":
                    if not event.text:
                        continue
                    transcript.append(event.text)
                    self._emit("auto_mode_progress", ctx, content=event.text)
                    if stop_marker and stop_marker in event.text:
                        break
                elif event.type == "tool_use":
                    self._emit(
                        "auto_mode_tool", ctx, tool=event.tool_name, input=event.tool_input
                    )
                elif event.type == "result":
                    if event.subtype == "error":
                        raise ProviderError(
                            event.error or f"{provider.name} returned an error result",
                            provider=provider.name,
                            feature_id=feature.id,
                        )
                    if event.text and len(transcript) == start:
                        transcript.append(event.text)
        return "\n\n".join(transcript[start:])

    async def _plan_phase(
        self, ctx: ExecutionContext, feature: Feature, work_dir: Path
    ) -> str | None | _PlanParked:
        if ctx.approved_plan is not None:
            return ctx.approved_plan
        mode = feature.planning_mode
        marker = marker_for_mode(mode)
        if marker is None:
            return None

        existing = feature.plan_spec
        if existing is not None and existing.status == "approved":
            return existing.content
        if existing is not None and existing.status == "generated":
            if not feature.require_plan_approval:
                return existing.content
            logger.info("Feature {} already has a plan awaiting review", feature.id)
            self._park(ctx, feature, existing.content)
            return PARKED

        self._emit("planning_started", ctx, mode=mode)
        planning_transcript: list[str] = []
        text = await self._stream(
            ctx,
            feature,
            work_dir,
            prompt=build_planning_prompt(feature),
            allowed_tools=READ_ONLY_TOOLS,
            max_turns=self.config.provider.planning_max_turns,
            transcript=planning_transcript,
            stop_marker=marker,
        )
        split = split_at_marker(text, marker)
        if split is None:
            logger.warning("Planning output for {} has no {} marker", feature.id, marker)
            plan = text.strip()
        else:
            plan = split[0]

        tasks = parse_tasks_from_spec(plan)

        def _store_plan(item: Feature) -> None:
            version = item.plan_spec.version + 1 if item.plan_spec else 1
            item.plan_spec = PlanSpec(
                status="generated", content=plan, version=version, tasks=tasks
            )

        self.store.update(ctx.project_path, feature.id, _store_plan)
        ctx.persisted = True
        self._emit("planning_complete", ctx, mode=mode, task_count=len(tasks))

        if feature.require_plan_approval:
            self._park(ctx, feature, plan)
            return PARKED
        return plan

    def _park(self, ctx: ExecutionContext, feature: Feature, plan: str) -> None:
        def _wait(item: Feature) -> None:
            item.status = "waiting_approval"

        self.store.update(ctx.project_path, feature.id, _wait)
        self.approvals.cancel(feature.id)
        self.approvals.register(
            PendingApproval(
                feature_id=feature.id,
                project_path=ctx.project_path,
                plan=plan,
                planning_mode=feature.planning_mode,
                resolver=ctx.on_plan_approved or self._unattended_resolver(feature.id),
                timeout_seconds=self.config.planning.approval_timeout_seconds,
            )
        )
        self._emit(
            "plan_approval_required",
            ctx,
            plan_content=plan,
            planning_mode=feature.planning_mode,
        )

    @staticmethod
    def _unattended_resolver(feature_id: str) -> PlanResolver:
        def _resolver(plan: str) -> None:
            logger.warning("Plan for {} approved but no run is attached to resume it", feature_id)

        return _resolver

    async def _implement(
        self,
        ctx: ExecutionContext,
        feature: Feature,
        work_dir: Path,
        plan: str | None,
        transcript: list[str],
    ) -> str:
        previous = None
        if ctx.follow_up or ctx.resume:
            previous = self.store.get_agent_output(ctx.project_path, feature.id)
        prompt = build_implementation_prompt(
            feature, plan=plan, previous_output=previous, follow_up=ctx.follow_up
        )
        output = await self._stream(
            ctx,
            feature,
            work_dir,
            prompt=prompt,
            allowed_tools=FULL_TOOLS,
            max_turns=self.config.provider.max_turns,
            transcript=transcript,
        )
        transcript.clear()
        return output

    def _finish(self, ctx: ExecutionContext, feature: Feature, output: str) -> str:
        if ctx.follow_up or ctx.resume:
            self.store.append_agent_output(ctx.project_path, feature.id, output)
        else:
            self.store.save_agent_output(ctx.project_path, feature.id, output)

        final_status = (
            "waiting_approval" if self.config.review.require_completion_review else "completed"
        )

        def _complete(item: Feature) -> None:
            item.status = final_status
            item.error = None
            if final_status == "completed":
                item.completed_at = utcnow_iso()

        self.store.update(ctx.project_path, feature.id, _complete)
        logger.info("Feature {} finished with status {}", feature.id, final_status)
        self._emit(
            "auto_mode_feature_complete",
            ctx,
            status=final_status,
            passes=final_status == "completed",
            message=f"Feature {feature.display_name()} finished",
        )
        return final_status
