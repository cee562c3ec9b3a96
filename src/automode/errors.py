from __future__ import annotations


class AutoModeError(RuntimeError):
    """Base class for orchestrator failures surfaced to callers."""

    code = "auto_mode_error"

    def __init__(self, message: str, *, feature_id: str | None = None) -> None:
        super().__init__(message)
        self.feature_id = feature_id


class FeatureNotFoundError(AutoModeError):
    code = "not_found"


class FeatureAlreadyRunningError(AutoModeError):
    code = "already_running"


class ProviderError(AutoModeError):
    """Raised when an agent invocation fails or ends with an error result."""

    code = "provider_failure"

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        exit_code: int | None = None,
        feature_id: str | None = None,
    ) -> None:
        super().__init__(message, feature_id=feature_id)
        self.provider = provider
        self.exit_code = exit_code


class WorktreeError(AutoModeError):
    """Raised when a git operation fails; ``reason`` is a stable subtype."""

    code = "worktree_failure"

    UNCOMMITTED_CHANGES = "uncommitted_changes"
    NO_UPSTREAM = "no_upstream"
    MERGE_CONFLICT = "merge_conflict"
    BRANCH_EXISTS = "branch_exists"
    BRANCH_NOT_FOUND = "branch_not_found"
    INVALID_BRANCH_NAME = "invalid_branch_name"
    NOT_A_REPOSITORY = "not_a_repository"
    GIT_FAILED = "git_failed"

    def __init__(
        self,
        message: str,
        *,
        reason: str = GIT_FAILED,
        stderr: str = "",
        feature_id: str | None = None,
    ) -> None:
        super().__init__(message, feature_id=feature_id)
        self.reason = reason
        self.stderr = stderr


class ExecutionCancelledError(AutoModeError):
    code = "cancelled"


class FeatureStoreError(AutoModeError):
    """Raised when feature records cannot be read or written."""

    code = "store_failure"
