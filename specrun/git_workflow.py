"""Per-spec git checkpoint/rollback workflow: worktree or branch isolation."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from . import git_ops
from .db import Database
from .git_ops import CommitResult, GitResult, PRResult
from .models import Spec
from .paths import PathValidationError, validate_project_path

logger = logging.getLogger(__name__)


@dataclass
class GitWorkflowState:
    enabled: bool
    project_dir: str
    working_dir: str  # worktree path or project dir
    is_worktree: bool = False
    original_branch: str | None = None
    spec_branch: str | None = None

    @classmethod
    def disabled(cls, project_dir: str, original_branch: str | None = None) -> GitWorkflowState:
        return cls(False, project_dir, project_dir, original_branch=original_branch)

    @property
    def base_branch(self) -> str:
        return self.original_branch or "main"


def build_pr_body(spec: Spec, passed_chunks: int, commit_count: int, files_changed: int) -> str:
    excerpt = spec.content[:500] + ("..." if len(spec.content) > 500 else "")
    return (
        "## Summary\n\n"
        f"{excerpt}\n\n"
        "## Stats\n\n"
        f"- Chunks completed: {passed_chunks}\n"
        f"- Commits: {commit_count}\n"
        f"- Files changed: {files_changed}\n\n"
        "## Test Plan\n\n"
        "- [ ] Review all changed files\n"
        "- [ ] Run tests locally\n"
        "- [ ] Verify the specification requirements are met\n"
    )


class GitWorkflow:
    """Isolates one spec's work and checkpoints it chunk by chunk."""

    def __init__(self, db: Database, allowed_roots: list[str] | None = None):
        self.db = db
        self.allowed_roots = allowed_roots or None

    async def init_workflow(
        self, spec_id: str, project_dir: str, base_branch: str = ""
    ) -> GitWorkflowState:
        try:
            validate_project_path(project_dir, self.allowed_roots)
        except PathValidationError as e:
            logger.warning("Git disabled for %s: %s", project_dir, e)
            return GitWorkflowState.disabled(project_dir)

        if not await git_ops.is_git_repo(project_dir):
            logger.info("Not a git repository, checkpointing disabled: %s", project_dir)
            return GitWorkflowState.disabled(project_dir)

        original_branch = await git_ops.get_current_branch(project_dir)
        spec = await self.db.get_spec(spec_id)
        if spec is None:
            logger.error("Spec not found: %s", spec_id)
            return GitWorkflowState.disabled(project_dir, original_branch)

        if spec.worktree_path:
            if self._worktree_usable(spec.worktree_path):
                logger.info("Reusing worktree %s", spec.worktree_path)
                return GitWorkflowState(
                    True, project_dir, spec.worktree_path, True,
                    spec.original_branch or original_branch, spec.branch_name,
                )
            logger.warning("Stale worktree path cleared: %s", spec.worktree_path)
            await self.db.update_spec(spec_id, worktree_path=None)

        branch = spec.branch_name or git_ops.generate_spec_branch_name(spec.title)
        base = base_branch or original_branch

        result = await git_ops.create_worktree(project_dir, spec_id, branch, base)
        if result.success and result.path:
            logger.info("Created worktree %s on %s", result.path, branch)
            await self.db.update_spec(
                spec_id, branch_name=branch, original_branch=original_branch,
                worktree_path=result.path,
            )
            return GitWorkflowState(True, project_dir, result.path, True, original_branch, branch)

        logger.info("Worktree unavailable (%s), falling back to branch", result.error)
        branch_result = await git_ops.create_branch(project_dir, branch, base or "main")
        if not branch_result.success and branch_result.error_type == "branch_exists":
            if await git_ops.checkout_branch(project_dir, branch):
                branch_result = GitResult(True, output=branch)
        if not branch_result.success:
            logger.error("Failed to create branch %s: %s", branch, branch_result.error)
            return GitWorkflowState.disabled(project_dir, original_branch)

        await self.db.update_spec(spec_id, branch_name=branch, original_branch=original_branch)
        return GitWorkflowState(True, project_dir, project_dir, False, original_branch, branch)

    def _worktree_usable(self, path: str) -> bool:
        try:
            resolved = validate_project_path(path, self.allowed_roots)
        except PathValidationError:
            return False
        return resolved.is_dir()

    async def commit_chunk(
        self, state: GitWorkflowState, chunk_id: str, title: str, order: int
    ) -> CommitResult:
        if not state.enabled:
            return CommitResult(False, error="Git not enabled")
        result = await git_ops.create_commit(state.working_dir, f"chunk {order + 1}: {title}")
        if result.success:
            logger.info("Committed chunk %s: %s", chunk_id, result.commit_hash)
        else:
            logger.warning("Commit failed for chunk %s: %s", chunk_id, result.error)
        return result

    async def reset_hard(self, state: GitWorkflowState) -> GitResult:
        if not state.enabled:
            return GitResult(False, error="Git not enabled")
        logger.info("Resetting %s to HEAD", state.working_dir)
        return await git_ops.reset_hard(state.working_dir)

    async def push_and_create_pr(
        self, state: GitWorkflowState, spec: Spec, passed_chunks: int
    ) -> PRResult:
        """Push the spec branch and open a pull request. Only after a final pass."""
        if not state.enabled or not state.spec_branch:
            return PRResult(False, error="Git not enabled or no branch")

        push = await git_ops.push_branch(state.working_dir, state.spec_branch)
        if not push.success:
            logger.error("Push of %s failed: %s", state.spec_branch, push.error)
            return PRResult(False, error=push.error)

        base = state.base_branch
        commits = await git_ops.get_commit_count(state.working_dir, base)
        files = await git_ops.get_changed_files_count(state.working_dir, base)
        body = build_pr_body(spec, passed_chunks, commits, files)

        result = await git_ops.create_pull_request(state.working_dir, spec.title, body, base)
        if result.success:
            logger.info("Created PR %s", result.pr_url)
        else:
            logger.error("PR creation failed: %s", result.error)
        return result

    async def cleanup(self, state: GitWorkflowState) -> None:
        """Worktrees stay for inspection; branch runs return to the original branch."""
        if not state.enabled:
            return
        if state.is_worktree:
            logger.info("Worktree preserved at %s", state.working_dir)
        elif state.original_branch:
            await git_ops.checkout_branch(state.project_dir, state.original_branch)

    async def remove_worktree(self, state: GitWorkflowState) -> GitResult:
        if not state.is_worktree:
            return GitResult(False, error="Not a worktree")
        return await git_ops.remove_worktree(state.project_dir, state.working_dir)


@dataclass
class CleanupReport:
    cleaned: int = 0
    errors: list[str] = field(default_factory=list)


async def cleanup_merged_worktrees(db: Database) -> CleanupReport:
    """Remove worktrees whose pull request merged, plus orphaned spec worktrees."""
    report = CleanupReport()
    known: dict[str, set[str]] = {}

    for spec in await db.list_specs_with_worktrees():
        project = await db.get_project(spec.project_id)
        if project is None:
            continue
        known.setdefault(project.id, set()).add(spec.worktree_path)
        if spec.pr_merged or spec.pr_number is None:
            continue
        if not await git_ops.check_pr_merged(project.directory, spec.pr_number):
            continue
        removed = await git_ops.remove_worktree(project.directory, spec.worktree_path)
        if removed.success:
            await db.update_spec(spec.id, pr_merged=True, worktree_path=None)
            known[project.id].discard(spec.worktree_path)
            report.cleaned += 1
            logger.info("Removed merged worktree %s", spec.worktree_path)
        else:
            report.errors.append(f"Failed to remove {spec.worktree_path}: {removed.error}")

    for project in await db.list_projects():
        prefix = f"{Path(project.directory).resolve()}-spec-"
        for worktree in await git_ops.list_worktrees(project.directory):
            if not worktree.path.startswith(prefix):
                continue
            if worktree.path in known.get(project.id, set()):
                continue
            removed = await git_ops.remove_worktree(project.directory, worktree.path)
            if removed.success:
                report.cleaned += 1
                logger.info("Removed orphaned worktree %s", worktree.path)
            else:
                report.errors.append(f"Failed to remove orphaned {worktree.path}: {removed.error}")
    return report
