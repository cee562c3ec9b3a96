from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from loguru import logger

from automode.errors import AutoModeError
from automode.events import EventBus
from automode.models import Feature, PlanningMode, PlanSpec, utcnow_iso
from automode.prompts import parse_tasks_from_spec
from automode.state import FeatureStore

PlanResolver = Callable[[str], None]
RecoveryResolver = Callable[[Path, str, str], None]


@dataclass(slots=True)
class PendingApproval:
    feature_id: str
    project_path: Path
    plan: str
    planning_mode: PlanningMode
    resolver: PlanResolver
    created_at: str = field(default_factory=utcnow_iso)
    timeout_seconds: float = 0.0
    timer: asyncio.TimerHandle | None = None


@dataclass(slots=True)
class ApprovalResult:
    success: bool
    feature_id: str
    error: str | None = None
    recovered: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "success": self.success,
            "feature_id": self.feature_id,
            "error": self.error,
            "recovered": self.recovered,
        }


class PlanApprovalRegistry:
    """In-memory table of features parked on a plan decision.

    The table is ephemeral. A decision for a feature that is missing from the
    table is resolved against the durable feature record when that record
    still shows a generated, undecided plan.
    """

    def __init__(
        self,
        store: FeatureStore,
        events: EventBus,
        recover: RecoveryResolver | None = None,
    ) -> None:
        self.store = store
        self.events = events
        self.recover = recover
        self._pending: dict[str, PendingApproval] = {}

    def register(self, approval: PendingApproval) -> None:
        if approval.feature_id in self._pending:
            raise AutoModeError(
                f"Feature {approval.feature_id} already has a pending plan approval",
                feature_id=approval.feature_id,
            )
        if approval.timeout_seconds > 0:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                logger.warning(
                    "No running event loop; approval timeout for {} is disabled",
                    approval.feature_id,
                )
            else:
                approval.timer = loop.call_later(
                    approval.timeout_seconds, self._expire, approval.feature_id
                )
        self._pending[approval.feature_id] = approval
        logger.info("Plan for feature {} is waiting for approval", approval.feature_id)

    def has_pending_approval(self, feature_id: str) -> bool:
        return feature_id in self._pending

    def pending_ids(self) -> list[str]:
        return list(self._pending)

    def cancel(self, feature_id: str) -> None:
        approval = self._pending.pop(feature_id, None)
        if approval is None:
            return
        if approval.timer is not None:
            approval.timer.cancel()
        logger.debug("Discarded pending approval for feature {}", feature_id)

    def _expire(self, feature_id: str) -> None:
        approval = self._pending.pop(feature_id, None)
        if approval is None:
            return
        logger.warning(
            "Plan approval for feature {} timed out after {}s",
            feature_id,
            approval.timeout_seconds,
        )
        self.events.emit_auto_mode(
            "plan_approval_timeout",
            feature_id=feature_id,
            project_path=str(approval.project_path),
        )

    @staticmethod
    def _no_pending(feature_id: str) -> ApprovalResult:
        return ApprovalResult(
            success=False,
            feature_id=feature_id,
            error=f"No pending approval for feature {feature_id}",
        )

    def _recoverable(self, project_path: Path, feature_id: str) -> Feature | None:
        try:
            feature = self.store.get(project_path, feature_id)
        except AutoModeError as exc:
            logger.warning("Cannot load feature {} for approval recovery: {}", feature_id, exc)
            return None
        if feature is None or not feature.awaiting_plan_decision:
            return None
        return feature

    def resolve(
        self,
        feature_id: str,
        approved: bool,
        *,
        edited_plan: str | None = None,
        feedback: str | None = None,
        project_path: Path | None = None,
    ) -> ApprovalResult:
        pending = self._pending.get(feature_id)
        recovered = False
        if pending is not None:
            project = pending.project_path
        elif project_path is not None and self._recoverable(Path(project_path), feature_id):
            project = Path(project_path)
            recovered = True
            logger.info("Recovering plan approval for feature {} from durable state", feature_id)
        else:
            return self._no_pending(feature_id)

        if recovered and approved and self.recover is None:
            return ApprovalResult(
                success=False,
                feature_id=feature_id,
                error=f"Cannot resume feature {feature_id}: no recovery handler configured",
            )

        self.cancel(feature_id)
        fallback_plan = pending.plan if pending is not None else ""
        try:
            if approved:
                feature = self.store.update(
                    project, feature_id, _approve(edited_plan, fallback_plan)
                )
            else:
                feature = self.store.update(project, feature_id, _reject(feedback, fallback_plan))
        except AutoModeError as exc:
            return ApprovalResult(success=False, feature_id=feature_id, error=str(exc))

        if not approved:
            self.events.emit_auto_mode(
                "plan_rejected",
                feature_id=feature_id,
                project_path=str(project),
                feedback=feedback,
            )
            logger.info("Plan for feature {} rejected", feature_id)
            return ApprovalResult(success=True, feature_id=feature_id, recovered=recovered)

        plan = feature.plan_spec.content if feature.plan_spec else fallback_plan
        self.events.emit_auto_mode(
            "plan_approved",
            feature_id=feature_id,
            project_path=str(project),
            has_edits=edited_plan is not None,
            recovered=recovered,
        )
        logger.info("Plan for feature {} approved", feature_id)
        if pending is not None:
            pending.resolver(plan)
        elif self.recover is not None:
            self.recover(project, feature_id, plan)
        return ApprovalResult(success=True, feature_id=feature_id, recovered=recovered)


def _approve(edited_plan: str | None, fallback_plan: str) -> Callable[[Feature], None]:
    def _apply(feature: Feature) -> None:
        if feature.plan_spec is None:
            feature.plan_spec = PlanSpec(status="generated", content=fallback_plan)
        spec = feature.plan_spec
        if edited_plan is not None and edited_plan != spec.content:
            spec.content = edited_plan
            spec.tasks = parse_tasks_from_spec(edited_plan)
            spec.version += 1
        spec.status = "approved"
        spec.approved_at = utcnow_iso()
        spec.reviewed_by_user = True
        feature.feedback = None

    return _apply


def _reject(feedback: str | None, fallback_plan: str) -> Callable[[Feature], None]:
    def _apply(feature: Feature) -> None:
        if feature.plan_spec is None:
            feature.plan_spec = PlanSpec(status="generated", content=fallback_plan)
        feature.plan_spec.status = "rejected"
        feature.plan_spec.reviewed_by_user = True
        feature.status = "backlog"
        if feedback:
            feature.feedback = feedback

    return _apply
