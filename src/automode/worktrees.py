from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field
from pathlib import Path

from loguru import logger

from automode.errors import WorktreeError

WORKTREES_DIRNAME = ".worktrees"
BRANCH_PREFIX = "feature/"
HOUSEKEEPING_PREFIXES = (f"{WORKTREES_DIRNAME}/", ".automode/")
INVALID_BRANCH_CHARS = re.compile(r"[\s~^:?*\[\\]")
SUMMARY_LIMIT = 5


@dataclass(slots=True)
class GitResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return f"{self.stdout}\n{self.stderr}".strip()


@dataclass(slots=True)
class CommitResult:
    committed: bool
    branch: str
    commit_hash: str | None = None
    message: str = ""


@dataclass(slots=True)
class PushResult:
    branch: str
    remote: str
    used_set_upstream: bool = False


@dataclass(slots=True)
class PullResult:
    branch: str
    output: str


@dataclass(slots=True)
class SwitchResult:
    previous_branch: str
    current_branch: str


@dataclass(slots=True)
class MergeResult:
    merged_branch: str
    target_branch: str
    squashed: bool
    warnings: list[str] = field(default_factory=list)


def _status_line_path(status_line: str) -> str:
    candidate = status_line[3:].strip()
    if " -> " in candidate:
        candidate = candidate.split(" -> ", maxsplit=1)[1].strip()
    return candidate.strip('"')


def _is_housekeeping(path: str) -> bool:
    normalized = path.rstrip("/") + "/"
    return any(normalized.startswith(prefix) for prefix in HOUSEKEEPING_PREFIXES)


def format_changes_summary(paths: list[str], limit: int = SUMMARY_LIMIT) -> str:
    if not paths:
        return ""
    shown = ", ".join(paths[:limit])
    if len(paths) > limit:
        return f"{shown} and {len(paths) - limit} more files"
    return shown


class WorktreeManager:
    """Per-feature branches and working trees plus the git actions around them.

    Every git call is an argument list run through ``git --no-pager``. Failures
    are raised as ``WorktreeError`` with a stable ``reason`` instead of raw git
    output, so callers can branch on them.
    """

    @staticmethod
    def branch_name(feature_id: str) -> str:
        return f"{BRANCH_PREFIX}{feature_id}"

    @staticmethod
    def worktree_path(project_path: Path, feature_id: str) -> Path:
        return Path(project_path).resolve() / WORKTREES_DIRNAME / feature_id

    @staticmethod
    async def _terminate(process: asyncio.subprocess.Process) -> None:
        process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=5.0)
        except TimeoutError:
            process.kill()
            await process.wait()

    async def _run_git(self, cwd: Path, args: list[str], check: bool = True) -> GitResult:
        try:
            process = await asyncio.create_subprocess_exec(
                "git",
                "--no-pager",
                *args,
                cwd=str(cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, NotADirectoryError) as exc:
            raise WorktreeError(
                f"Cannot run git in {cwd}: {exc}", reason=WorktreeError.NOT_A_REPOSITORY
            ) from exc
        try:
            stdout, stderr = await process.communicate()
        finally:
            if process.returncode is None:
                await self._terminate(process)
        result = GitResult(
            returncode=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace").strip(),
            stderr=stderr.decode("utf-8", errors="replace").strip(),
        )
        if check and not result.ok:
            raise WorktreeError(
                result.stderr or result.stdout or f"git {args[0]} failed",
                reason=WorktreeError.GIT_FAILED,
                stderr=result.stderr,
            )
        return result

    async def is_git_repo(self, path: Path) -> bool:
        if not Path(path).is_dir():
            return False
        result = await self._run_git(
            Path(path), ["rev-parse", "--is-inside-work-tree"], check=False
        )
        return result.ok and result.stdout == "true"

    async def _require_repo(self, path: Path) -> None:
        if not await self.is_git_repo(path):
            raise WorktreeError(
                f"{path} is not a git repository", reason=WorktreeError.NOT_A_REPOSITORY
            )

    async def current_branch(self, path: Path) -> str:
        result = await self._run_git(Path(path), ["rev-parse", "--abbrev-ref", "HEAD"])
        return result.stdout

    async def branch_exists(self, path: Path, branch: str) -> bool:
        result = await self._run_git(
            Path(path), ["rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"], check=False
        )
        return result.ok

    async def changed_paths(self, path: Path) -> list[str]:
        result = await self._run_git(Path(path), ["status", "--porcelain"])
        paths: list[str] = []
        for line in result.stdout.splitlines():
            if not line.strip():
                continue
            candidate = _status_line_path(line)
            if candidate and not _is_housekeeping(candidate):
                paths.append(candidate)
        return paths

    async def has_uncommitted_changes(self, path: Path) -> bool:
        return bool(await self.changed_paths(path))

    async def changes_summary(self, path: Path) -> str:
        return format_changes_summary(await self.changed_paths(path))

    async def create_worktree(
        self, project_path: Path, feature_id: str, *, resume: bool = False
    ) -> Path:
        project = Path(project_path).resolve()
        await self._require_repo(project)
        branch = self.branch_name(feature_id)
        target = self.worktree_path(project, feature_id)

        if target.is_dir() and (target / ".git").exists():
            logger.info("Reusing worktree {} for feature {}", target, feature_id)
            return target

        exists = await self.branch_exists(project, branch)
        if exists and not resume:
            raise WorktreeError(
                f"Branch {branch} already exists",
                reason=WorktreeError.BRANCH_EXISTS,
                feature_id=feature_id,
            )

        target.parent.mkdir(parents=True, exist_ok=True)
        await self._run_git(project, ["worktree", "prune"], check=False)
        if exists:
            args = ["worktree", "add", str(target), branch]
        else:
            args = ["worktree", "add", "-b", branch, str(target), "HEAD"]
        result = await self._run_git(project, args, check=False)
        if not result.ok:
            raise WorktreeError(
                f"Failed to create worktree for {feature_id}: {result.stderr or result.stdout}",
                reason=WorktreeError.GIT_FAILED,
                stderr=result.stderr,
                feature_id=feature_id,
            )
        logger.info("Created worktree {} on branch {}", target, branch)
        return target

    async def commit(self, worktree_path: Path, message: str) -> CommitResult:
        path = Path(worktree_path)
        await self._require_repo(path)
        branch = await self.current_branch(path)
        if not await self.has_uncommitted_changes(path):
            return CommitResult(committed=False, branch=branch, message="No changes to commit")

        pathspec = ["."] + [f":(exclude){prefix.rstrip('/')}" for prefix in HOUSEKEEPING_PREFIXES]
        await self._run_git(path, ["add", "-A", "--", *pathspec])
        await self._run_git(path, ["commit", "-m", message])
        short_hash = (await self._run_git(path, ["rev-parse", "--short", "HEAD"])).stdout
        logger.info("Committed {} on {}: {}", short_hash, branch, message)
        return CommitResult(committed=True, branch=branch, commit_hash=short_hash, message=message)

    async def push(
        self, worktree_path: Path, *, force: bool = False, remote: str = "origin"
    ) -> PushResult:
        path = Path(worktree_path)
        await self._require_repo(path)
        branch = await self.current_branch(path)
        force_args = ["--force"] if force else []

        result = await self._run_git(path, ["push", "-u", remote, branch, *force_args], check=False)
        if result.ok:
            return PushResult(branch=branch, remote=remote)

        logger.debug("Push of {} failed, retrying with --set-upstream: {}", branch, result.stderr)
        retry = await self._run_git(
            path, ["push", "--set-upstream", remote, branch, *force_args], check=False
        )
        if retry.ok:
            return PushResult(branch=branch, remote=remote, used_set_upstream=True)

        output = retry.output
        reason = WorktreeError.GIT_FAILED
        if (
            "does not appear to be a git repository" in output
            or "No configured push destination" in output
            or "No such remote" in output
        ):
            reason = WorktreeError.NO_UPSTREAM
        raise WorktreeError(
            f"Failed to push {branch}: {retry.stderr or retry.stdout}",
            reason=reason,
            stderr=retry.stderr,
        )

    async def pull(self, worktree_path: Path, *, remote: str = "origin") -> PullResult:
        path = Path(worktree_path)
        await self._require_repo(path)
        branch = await self.current_branch(path)

        fetched = await self._run_git(path, ["fetch", remote], check=False)
        if not fetched.ok:
            logger.warning("git fetch {} failed in {}: {}", remote, path, fetched.stderr)

        if await self.has_uncommitted_changes(path):
            raise WorktreeError(
                "You have local changes. Please commit them before pulling.",
                reason=WorktreeError.UNCOMMITTED_CHANGES,
            )

        result = await self._run_git(path, ["pull", remote, branch], check=False)
        if result.ok:
            return PullResult(branch=branch, output=result.stdout)

        output = result.output
        if (
            "no tracking information" in output
            or "couldn't find remote ref" in output
            or "does not appear to be a git repository" in output
        ):
            reason = WorktreeError.NO_UPSTREAM
        elif "CONFLICT" in output:
            reason = WorktreeError.MERGE_CONFLICT
        else:
            reason = WorktreeError.GIT_FAILED
        raise WorktreeError(
            f"Failed to pull {branch}: {result.stderr or result.stdout}",
            reason=reason,
            stderr=result.stderr,
        )

    async def switch_branch(self, project_path: Path, branch: str) -> SwitchResult:
        project = Path(project_path)
        await self._require_repo(project)
        previous = await self.current_branch(project)
        if previous == branch:
            return SwitchResult(previous_branch=previous, current_branch=branch)

        if not await self.branch_exists(project, branch):
            raise WorktreeError(
                f"Branch {branch} does not exist", reason=WorktreeError.BRANCH_NOT_FOUND
            )

        changed = await self.changed_paths(project)
        if changed:
            raise WorktreeError(
                "Cannot switch branches with uncommitted changes: "
                f"{format_changes_summary(changed)}. Commit or stash them first.",
                reason=WorktreeError.UNCOMMITTED_CHANGES,
            )

        await self._run_git(project, ["checkout", branch])
        return SwitchResult(previous_branch=previous, current_branch=branch)

    async def checkout_new_branch(
        self, project_path: Path, branch: str, *, start_point: str | None = None
    ) -> SwitchResult:
        project = Path(project_path)
        await self._require_repo(project)
        if not branch or INVALID_BRANCH_CHARS.search(branch):
            raise WorktreeError(
                f"Invalid branch name: {branch!r}", reason=WorktreeError.INVALID_BRANCH_NAME
            )
        if await self.branch_exists(project, branch):
            raise WorktreeError(
                f"Branch {branch} already exists", reason=WorktreeError.BRANCH_EXISTS
            )

        previous = await self.current_branch(project)
        args = ["checkout", "-b", branch]
        if start_point:
            args.append(start_point)
        result = await self._run_git(project, args, check=False)
        if not result.ok:
            reason = WorktreeError.GIT_FAILED
            if "not a valid branch name" in result.output:
                reason = WorktreeError.INVALID_BRANCH_NAME
            raise WorktreeError(
                f"Failed to create branch {branch}: {result.stderr}",
                reason=reason,
                stderr=result.stderr,
            )
        return SwitchResult(previous_branch=previous, current_branch=branch)

    async def _abort_merge(self, project: Path, squash: bool) -> None:
        args = ["reset", "--merge"] if squash else ["merge", "--abort"]
        result = await self._run_git(project, args, check=False)
        if not result.ok:
            logger.warning("Could not abort merge in {}: {}", project, result.stderr)

    async def merge(
        self,
        project_path: Path,
        feature_id: str,
        *,
        squash: bool = False,
        message: str | None = None,
    ) -> MergeResult:
        project = Path(project_path).resolve()
        await self._require_repo(project)
        branch = self.branch_name(feature_id)
        if not await self.branch_exists(project, branch):
            raise WorktreeError(
                f"Branch {branch} does not exist",
                reason=WorktreeError.BRANCH_NOT_FOUND,
                feature_id=feature_id,
            )

        target = await self.current_branch(project)
        commit_message = message or f"Merge {branch} into {target}"
        if squash:
            result = await self._run_git(project, ["merge", "--squash", branch], check=False)
        else:
            result = await self._run_git(
                project, ["merge", branch, "-m", commit_message], check=False
            )

        if not result.ok:
            if "CONFLICT" in result.output:
                await self._abort_merge(project, squash)
                raise WorktreeError(
                    f"Merge of {branch} into {target} has conflicts and was aborted",
                    reason=WorktreeError.MERGE_CONFLICT,
                    stderr=result.stderr,
                    feature_id=feature_id,
                )
            raise WorktreeError(
                f"Failed to merge {branch}: {result.stderr or result.stdout}",
                reason=WorktreeError.GIT_FAILED,
                stderr=result.stderr,
                feature_id=feature_id,
            )

        if squash:
            staged = await self._run_git(project, ["diff", "--cached", "--quiet"], check=False)
            if staged.returncode != 0:
                await self._run_git(project, ["commit", "-m", commit_message])

        merged = MergeResult(merged_branch=branch, target_branch=target, squashed=squash)
        await self._cleanup_after_merge(project, feature_id, merged)
        logger.info("Merged {} into {}", branch, target)
        return merged

    async def _cleanup_after_merge(
        self, project: Path, feature_id: str, merged: MergeResult
    ) -> None:
        worktree = self.worktree_path(project, feature_id)
        if worktree.exists():
            try:
                await self.remove(project, worktree, force=True)
            except WorktreeError as exc:
                logger.warning("Could not remove worktree {}: {}", worktree, exc)
                merged.warnings.append(f"Failed to remove worktree {worktree}: {exc}")

        deleted = await self._run_git(project, ["branch", "-D", merged.merged_branch], check=False)
        if not deleted.ok:
            logger.warning("Could not delete branch {}: {}", merged.merged_branch, deleted.stderr)
            merged.warnings.append(
                f"Failed to delete branch {merged.merged_branch}: {deleted.stderr}"
            )

    async def remove(self, project_path: Path, worktree_path: Path, *, force: bool = False) -> None:
        project = Path(project_path).resolve()
        target = Path(worktree_path)
        args = ["worktree", "remove"]
        if force:
            args.append("--force")
        args.append(str(target))
        result = await self._run_git(project, args, check=False)
        if result.ok:
            logger.info("Removed worktree {}", target)
            return
        if not target.exists():
            await self._run_git(project, ["worktree", "prune"], check=False)
            return
        raise WorktreeError(
            f"Failed to remove worktree {target}: {result.stderr}",
            reason=WorktreeError.GIT_FAILED,
            stderr=result.stderr,
        )
