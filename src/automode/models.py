from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import UTC, datetime
from typing import Any, Literal

FeatureStatus = Literal["pending", "in_progress", "waiting_approval", "backlog", "completed"]
PlanningMode = Literal["skip", "lite", "spec", "full"]
PlanStatus = Literal["generated", "approved", "rejected"]

FEATURE_STATUSES: frozenset[str] = frozenset(
    {"pending", "in_progress", "waiting_approval", "backlog", "completed"}
)
PLANNING_MODES: frozenset[str] = frozenset({"skip", "lite", "spec", "full"})


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def _known_fields(cls: type, data: dict[str, Any]) -> dict[str, Any]:
    names = {item.name for item in fields(cls)}
    return {key: value for key, value in data.items() if key in names}


@dataclass(slots=True)
class PlanTask:
    id: str
    description: str
    file_path: str | None = None
    phase: str | None = None
    status: str = "pending"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "file_path": self.file_path,
            "phase": self.phase,
            "status": self.status,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PlanTask:
        return cls(**_known_fields(cls, data))


@dataclass(slots=True)
class PlanSpec:
    status: PlanStatus
    content: str
    version: int = 1
    generated_at: str = field(default_factory=utcnow_iso)
    approved_at: str | None = None
    reviewed_by_user: bool = False
    tasks: list[PlanTask] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "content": self.content,
            "version": self.version,
            "generated_at": self.generated_at,
            "approved_at": self.approved_at,
            "reviewed_by_user": self.reviewed_by_user,
            "tasks": [task.to_dict() for task in self.tasks],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PlanSpec:
        payload = _known_fields(cls, data)
        raw_tasks = payload.pop("tasks", None) or []
        tasks = [PlanTask.from_dict(item) for item in raw_tasks if isinstance(item, dict)]
        return cls(tasks=tasks, **payload)


@dataclass(slots=True)
class Feature:
    id: str
    description: str = ""
    category: str = ""
    title: str = ""
    status: FeatureStatus = "pending"
    planning_mode: PlanningMode = "skip"
    require_plan_approval: bool = False
    model: str | None = None
    branch_name: str | None = None
    plan_spec: PlanSpec | None = None
    error: str | None = None
    feedback: str | None = None
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str | None = None
    started_at: str | None = None
    completed_at: str | None = None

    @property
    def awaiting_plan_decision(self) -> bool:
        return (
            self.status == "waiting_approval"
            and self.plan_spec is not None
            and self.plan_spec.status == "generated"
        )

    def display_name(self) -> str:
        if self.title:
            return self.title
        first_line = self.description.strip().splitlines()[0] if self.description.strip() else ""
        return first_line[:80] or self.id

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "category": self.category,
            "title": self.title,
            "status": self.status,
            "planning_mode": self.planning_mode,
            "require_plan_approval": self.require_plan_approval,
            "model": self.model,
            "branch_name": self.branch_name,
            "plan_spec": self.plan_spec.to_dict() if self.plan_spec else None,
            "error": self.error,
            "feedback": self.feedback,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Feature:
        payload = _known_fields(cls, data)
        raw_plan = payload.pop("plan_spec", None)
        plan_spec = PlanSpec.from_dict(raw_plan) if isinstance(raw_plan, dict) else None
        status = payload.get("status")
        if status not in FEATURE_STATUSES:
            payload["status"] = "pending"
        if payload.get("planning_mode") not in PLANNING_MODES:
            payload["planning_mode"] = "skip"
        return cls(plan_spec=plan_spec, **payload)
