from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from loguru import logger

from automode.approvals import ApprovalResult, PlanApprovalRegistry, PlanResolver
from automode.config import AutoModeConfig
from automode.errors import AutoModeError, FeatureAlreadyRunningError
from automode.events import EventBus
from automode.executor import ExecutionContext, ExecutionOutcome, FeatureExecutor, ProviderFactory
from automode.models import Feature, utcnow_iso
from automode.state import FeatureStore
from automode.verify import VerificationResult, run_verification
from automode.worktrees import CommitResult, WorktreeManager

ExecutionKey = tuple[str, str]


@dataclass(slots=True)
class ExecutionHandle:
    project_path: Path
    feature_id: str
    is_auto_mode: bool = False
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task[ExecutionOutcome] | None = None
    started_at: str = field(default_factory=utcnow_iso)

    @property
    def key(self) -> ExecutionKey:
        return (str(self.project_path), self.feature_id)

    def cancel(self) -> None:
        self.cancel_event.set()
        if self.task is not None and not self.task.done():
            self.task.cancel()


@dataclass(slots=True)
class AutoLoopState:
    project_path: Path
    max_concurrency: int
    task: asyncio.Task[None] | None = None
    started_at: str = field(default_factory=utcnow_iso)
    stopped_ids: set[str] = field(default_factory=set)
    dispatched: int = 0


class ExecutionScheduler:
    """Bounded-concurrency dispatcher and control surface for feature runs.

    The active-execution table is checked and filled synchronously, with no
    await in between, so two dispatch attempts for one feature can never both
    pass the check on the single event loop thread.
    """

    def __init__(
        self,
        config: AutoModeConfig | None = None,
        *,
        store: FeatureStore | None = None,
        worktrees: WorktreeManager | None = None,
        events: EventBus | None = None,
        provider_factory: ProviderFactory | None = None,
    ) -> None:
        self.config = config or AutoModeConfig.default()
        self.store = store or FeatureStore()
        self.worktrees = worktrees or WorktreeManager()
        self.events = events or EventBus()
        self.approvals = PlanApprovalRegistry(
            self.store, self.events, recover=self._recover_after_restart
        )
        self.executor = FeatureExecutor(
            self.store,
            self.worktrees,
            self.approvals,
            self.events,
            self.config,
            provider_factory=provider_factory,
        )
        self._active: dict[ExecutionKey, ExecutionHandle] = {}
        self._auto_loop: AutoLoopState | None = None
        self._background: set[asyncio.Task[Any]] = set()

    @staticmethod
    def _key(project_path: Path, feature_id: str) -> ExecutionKey:
        return (str(Path(project_path).resolve()), feature_id)

    def is_running(self, project_path: Path, feature_id: str) -> bool:
        return self._key(project_path, feature_id) in self._active

    def _active_count(self, project_path: Path) -> int:
        project = str(Path(project_path).resolve())
        return sum(1 for key in self._active if key[0] == project)

    def _reserve(self, project_path: Path, feature_id: str, is_auto_mode: bool) -> ExecutionHandle:
        key = self._key(project_path, feature_id)
        if key in self._active:
            raise FeatureAlreadyRunningError(
                f"Feature {feature_id} is already running", feature_id=feature_id
            )
        handle = ExecutionHandle(
            project_path=Path(key[0]), feature_id=feature_id, is_auto_mode=is_auto_mode
        )
        self._active[key] = handle
        return handle

    def _release(self, handle: ExecutionHandle, task: asyncio.Task[ExecutionOutcome]) -> None:
        if self._active.get(handle.key) is handle:
            del self._active[handle.key]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.opt(exception=exc).error("Run of feature {} crashed", handle.feature_id)

    def _launch(
        self,
        handle: ExecutionHandle,
        *,
        use_worktrees: bool,
        approved_plan: str | None = None,
        follow_up: str | None = None,
        resume: bool = False,
    ) -> asyncio.Task[ExecutionOutcome]:
        ctx = ExecutionContext(
            project_path=handle.project_path,
            feature_id=handle.feature_id,
            use_worktrees=use_worktrees,
            is_auto_mode=handle.is_auto_mode,
            cancel_event=handle.cancel_event,
            approved_plan=approved_plan,
            follow_up=follow_up,
            resume=resume,
            on_plan_approved=self._continuation(
                handle.project_path, handle.feature_id, use_worktrees, handle.is_auto_mode
            ),
        )
        task = asyncio.create_task(
            self.executor.run(ctx), name=f"automode-feature-{handle.feature_id}"
        )
        handle.task = task
        task.add_done_callback(lambda done: self._release(handle, done))
        return task

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def execute_feature(
        self,
        project_path: Path,
        feature_id: str,
        *,
        use_worktrees: bool | None = None,
        is_auto_mode: bool = False,
        approved_plan: str | None = None,
        follow_up: str | None = None,
        resume: bool = False,
    ) -> ExecutionOutcome:
        handle = self._reserve(project_path, feature_id, is_auto_mode)
        if use_worktrees is None:
            use_worktrees = self.config.execution.use_worktrees
        task = self._launch(
            handle,
            use_worktrees=use_worktrees,
            approved_plan=approved_plan,
            follow_up=follow_up,
            resume=resume,
        )
        try:
            return await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if handle.cancel_event.is_set() and (current is None or not current.cancelling()):
                # Stopped before the run got going; nothing was persisted.
                return ExecutionOutcome(feature_id=feature_id, status=None, stopped=True)
            raise

    def _infer_worktrees(self, project_path: Path, feature_id: str) -> bool:
        feature = self.store.get(project_path, feature_id)
        if feature is not None and feature.branch_name:
            return True
        return self.config.execution.use_worktrees

    async def follow_up_feature(
        self,
        project_path: Path,
        feature_id: str,
        instructions: str,
        *,
        use_worktrees: bool | None = None,
    ) -> ExecutionOutcome:
        if use_worktrees is None:
            use_worktrees = self._infer_worktrees(project_path, feature_id)
        return await self.execute_feature(
            project_path, feature_id, use_worktrees=use_worktrees, follow_up=instructions
        )

    async def resume_feature(
        self, project_path: Path, feature_id: str, *, use_worktrees: bool | None = None
    ) -> ExecutionOutcome:
        if use_worktrees is None:
            use_worktrees = self._infer_worktrees(project_path, feature_id)
        feature = self.store.get(project_path, feature_id)
        approved_plan = None
        if feature is not None and feature.plan_spec is not None and (
            feature.plan_spec.status == "approved"
        ):
            approved_plan = feature.plan_spec.content
        return await self.execute_feature(
            project_path,
            feature_id,
            use_worktrees=use_worktrees,
            approved_plan=approved_plan,
            resume=True,
        )

    def _continuation(
        self, project_path: Path, feature_id: str, use_worktrees: bool, is_auto_mode: bool
    ) -> PlanResolver:
        def _resume(plan: str) -> None:
            self._resume_approved(project_path, feature_id, use_worktrees, is_auto_mode, plan)

        return _resume

    def _recover_after_restart(self, project_path: Path, feature_id: str, plan: str) -> None:
        feature = self.store.get(project_path, feature_id)
        use_worktrees = bool(feature and feature.branch_name)
        self._resume_approved(project_path, feature_id, use_worktrees, False, plan)

    def _resume_approved(
        self,
        project_path: Path,
        feature_id: str,
        use_worktrees: bool,
        is_auto_mode: bool,
        plan: str,
    ) -> None:
        state = self._auto_loop
        if state is not None and state.project_path == Path(project_path).resolve():
            # The loop dispatches it under the concurrency cap; the approved
            # plan_spec is picked up by the planning phase.
            self._requeue(state, feature_id)
            return
        self._spawn(
            self._continue_after_plan(project_path, feature_id, use_worktrees, is_auto_mode, plan)
        )

    def _requeue(self, state: AutoLoopState, feature_id: str) -> None:
        def _pending(item: Feature) -> None:
            item.status = "pending"

        self.store.update(state.project_path, feature_id, _pending)
        state.stopped_ids.discard(feature_id)
        logger.info("Feature {} queued for the auto loop with its approved plan", feature_id)

    async def _continue_after_plan(
        self,
        project_path: Path,
        feature_id: str,
        use_worktrees: bool,
        is_auto_mode: bool,
        plan: str,
    ) -> ExecutionOutcome | None:
        logger.info("Resuming feature {} with the approved plan", feature_id)
        try:
            return await self.execute_feature(
                project_path,
                feature_id,
                use_worktrees=use_worktrees,
                is_auto_mode=is_auto_mode,
                approved_plan=plan,
            )
        except FeatureAlreadyRunningError as exc:
            logger.warning("Cannot resume feature {}: {}", feature_id, exc)
            return None

    async def stop_feature(self, feature_id: str, project_path: Path | None = None) -> bool:
        handles = [
            handle
            for handle in self._active.values()
            if handle.feature_id == feature_id
            and (project_path is None or handle.key[0] == str(Path(project_path).resolve()))
        ]
        if not handles:
            return False
        for handle in handles:
            logger.info("Stopping feature {}", feature_id)
            if self._auto_loop is not None:
                self._auto_loop.stopped_ids.add(feature_id)
            handle.cancel()
        await self._settle(handles)
        return True

    async def _settle(self, handles: list[ExecutionHandle]) -> None:
        tasks = [handle.task for handle in handles if handle.task is not None]
        if tasks:
            _, pending = await asyncio.wait(
                tasks, timeout=self.config.execution.stop_grace_seconds
            )
        else:
            pending = set()
        for handle in handles:
            if handle.task in pending and self._active.get(handle.key) is handle:
                logger.warning(
                    "Feature {} did not stop within {}s; abandoning it",
                    handle.feature_id,
                    self.config.execution.stop_grace_seconds,
                )
                del self._active[handle.key]

    def start_auto_loop(self, project_path: Path, max_concurrency: int | None = None) -> None:
        if self._auto_loop is not None:
            raise AutoModeError("Auto mode is already running")
        limit = max_concurrency if max_concurrency is not None else (
            self.config.execution.max_concurrency
        )
        if limit < 1:
            raise AutoModeError(f"max_concurrency must be at least 1, got {limit}")

        state = AutoLoopState(project_path=Path(project_path).resolve(), max_concurrency=limit)
        self._auto_loop = state
        self.events.emit_auto_mode(
            "auto_mode_started",
            project_path=str(state.project_path),
            max_concurrency=limit,
            message=f"Auto mode started with max {limit} concurrent features",
        )
        logger.info("Auto mode started for {} (max {} concurrent)", state.project_path, limit)
        state.task = asyncio.create_task(self._run_auto_loop(state), name="automode-auto-loop")

    async def _run_auto_loop(self, state: AutoLoopState) -> None:
        try:
            while True:
                try:
                    self._dispatch_pending(state)
                except Exception as exc:
                    logger.exception("Auto loop pass failed: {}", exc)
                    self.events.emit_auto_mode(
                        "auto_mode_error",
                        project_path=str(state.project_path),
                        error=str(exc),
                        error_type=getattr(exc, "code", "auto_loop_failure"),
                    )
                await asyncio.sleep(self.config.execution.poll_interval_seconds)
        finally:
            logger.info("Auto mode stopped after dispatching {} features", state.dispatched)
            self.events.emit_auto_mode(
                "auto_mode_stopped",
                project_path=str(state.project_path),
                dispatched=state.dispatched,
                message="Auto mode stopped",
            )

    def _dispatch_pending(self, state: AutoLoopState) -> None:
        for feature in self._runnable(state):
            if self._active_count(state.project_path) >= state.max_concurrency:
                return
            handle = self._reserve(state.project_path, feature.id, is_auto_mode=True)
            state.dispatched += 1
            logger.debug("Dispatching feature {}", feature.id)
            self._launch(handle, use_worktrees=self.config.execution.use_worktrees)

    def _runnable(self, state: AutoLoopState) -> list[Feature]:
        return [
            feature
            for feature in self.store.list(state.project_path)
            if feature.status == "pending"
            and feature.id not in state.stopped_ids
            and not self.is_running(state.project_path, feature.id)
        ]

    async def stop_auto_loop(self) -> int:
        state = self._auto_loop
        if state is None:
            return 0
        self._auto_loop = None
        handles = list(self._active.values())
        for handle in handles:
            handle.cancel()
        if state.task is not None:
            state.task.cancel()
            await asyncio.wait([state.task])
        await self._settle(handles)
        return len(handles)

    @property
    def auto_loop_active(self) -> bool:
        return self._auto_loop is not None

    def auto_loop_idle(self) -> bool:
        """True when the loop has nothing running and nothing left to dispatch."""
        state = self._auto_loop
        if state is None:
            return True
        if self._active or self._background:
            return False
        return not self._runnable(state)

    def status(self) -> dict[str, Any]:
        state = self._auto_loop
        return {
            "running_feature_ids": [handle.feature_id for handle in self._active.values()],
            "running_count": len(self._active),
            "auto_loop_active": state is not None,
            "auto_loop_project": str(state.project_path) if state else None,
            "max_concurrency": state.max_concurrency if state else None,
            "pending_approvals": self.approvals.pending_ids(),
        }

    async def wait_idle(self) -> None:
        """Wait until no run or approval continuation is in flight."""
        while self._background or self._active:
            tasks: list[asyncio.Task[Any]] = list(self._background)
            tasks.extend(handle.task for handle in self._active.values() if handle.task)
            if not tasks:
                await asyncio.sleep(0)
                continue
            await asyncio.wait(tasks)

    def resolve_plan_approval(
        self,
        feature_id: str,
        approved: bool,
        *,
        edited_plan: str | None = None,
        feedback: str | None = None,
        project_path: Path | None = None,
    ) -> ApprovalResult:
        return self.approvals.resolve(
            feature_id,
            approved,
            edited_plan=edited_plan,
            feedback=feedback,
            project_path=Path(project_path).resolve() if project_path else None,
        )

    def has_pending_approval(self, feature_id: str) -> bool:
        return self.approvals.has_pending_approval(feature_id)

    def cancel_plan_approval(self, feature_id: str) -> None:
        self.approvals.cancel(feature_id)

    def _feature_checkout(self, project_path: Path, feature: Feature) -> Path:
        worktree = self.worktrees.worktree_path(project_path, feature.id)
        if feature.branch_name and worktree.is_dir():
            return worktree
        return Path(project_path).resolve()

    async def verify_feature(self, project_path: Path, feature_id: str) -> VerificationResult:
        if self.is_running(project_path, feature_id):
            raise FeatureAlreadyRunningError(
                f"Feature {feature_id} is already running", feature_id=feature_id
            )
        feature = self.store.require(project_path, feature_id)
        commands = self.config.verify.commands
        if not commands:
            raise AutoModeError("No verification commands configured", feature_id=feature_id)

        cwd = self._feature_checkout(project_path, feature)
        result = await run_verification(
            feature_id, commands, cwd, self.config.verify.timeout_seconds
        )
        error = result.failure_summary() or None

        def _apply(item: Feature) -> None:
            if result.passed:
                item.status = "completed"
                item.completed_at = utcnow_iso()
                item.error = None
            else:
                item.status = "backlog"
                item.error = error

        self.store.update(project_path, feature_id, _apply)
        self.events.emit_auto_mode(
            "verification_complete",
            feature_id=feature_id,
            project_path=str(Path(project_path).resolve()),
            passed=result.passed,
            results=[item.to_dict() for item in result.results],
            error=error,
        )
        return result

    async def commit_feature(
        self, project_path: Path, feature_id: str, message: str | None = None
    ) -> CommitResult:
        feature = self.store.require(project_path, feature_id)
        cwd = self._feature_checkout(project_path, feature)
        return await self.worktrees.commit(cwd, message or f"feat: {feature.display_name()}")
