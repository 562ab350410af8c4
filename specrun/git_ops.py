"""Git and GitHub CLI operations wrapped with subprocess / anyio."""

from __future__ import annotations

import logging
import re
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path

import anyio

logger = logging.getLogger(__name__)

_BRANCH_RE = re.compile(r"^[\w\-/.]+$")
_PR_NUMBER_RE = re.compile(r"/pull/(\d+)$")


@dataclass
class GitResult:
    success: bool
    output: str = ""
    error: str | None = None
    error_type: str | None = None  # not_a_repo | invalid_branch_name | branch_exists | checkout_failed | unknown
    path: str | None = None


@dataclass
class CommitResult:
    success: bool
    commit_hash: str | None = None
    files_changed: int = 0
    error: str | None = None


@dataclass
class PRResult:
    success: bool
    pr_url: str | None = None
    pr_number: int | None = None
    error: str | None = None


@dataclass
class WorktreeInfo:
    path: str
    branch: str | None = None
    head: str | None = None


async def _run(cmd: list[str], cwd: Path | str) -> subprocess.CompletedProcess:
    """Run a command without raising on non-zero exit."""
    return await anyio.to_thread.run_sync(
        lambda: subprocess.run(
            cmd,
            cwd=str(cwd),
            capture_output=True,
            text=True,
        )
    )


async def _run_git(args: list[str], cwd: Path | str) -> str:
    """Run a git command and return stdout. Raises CalledProcessError."""
    result = await anyio.to_thread.run_sync(
        lambda: subprocess.run(
            ["git"] + args,
            cwd=str(cwd),
            capture_output=True,
            text=True,
            check=True,
        )
    )
    return result.stdout.strip()


def _failure(proc: subprocess.CompletedProcess) -> str:
    return (proc.stderr or proc.stdout or f"exit code {proc.returncode}").strip()


# ---------------------------------------------------------------------------
# Repository / branch queries
# ---------------------------------------------------------------------------

async def is_git_repo(cwd: Path | str) -> bool:
    try:
        out = await _run_git(["rev-parse", "--is-inside-work-tree"], cwd)
    except (subprocess.CalledProcessError, OSError):
        return False
    return out == "true"


async def get_current_branch(cwd: Path | str) -> str | None:
    try:
        out = await _run_git(["branch", "--show-current"], cwd)
    except subprocess.CalledProcessError:
        return None
    return out or None


async def branch_exists(cwd: Path | str, branch: str) -> bool:
    proc = await _run(["git", "rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"], cwd)
    return proc.returncode == 0


def validate_branch_name(name: str) -> str | None:
    """Return an error message, or None when ``name`` is a safe branch name."""
    if not name:
        return "Branch name is empty"
    if len(name) > 255:
        return "Branch name is too long"
    if not _BRANCH_RE.match(name):
        return "Branch name contains invalid characters"
    if name.startswith(("-", ".")):
        return "Branch name cannot start with '-' or '.'"
    if name.endswith((".lock", "/")):
        return "Branch name cannot end with '.lock' or '/'"
    if ".." in name or "//" in name:
        return "Branch name cannot contain '..' or '//'"
    return None


def slugify(title: str, max_length: int = 40) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")
    slug = slug[:max_length].rstrip("-")
    return slug or "untitled"


def generate_spec_branch_name(title: str) -> str:
    return f"spec/{slugify(title, 44)}"


async def create_branch(cwd: Path | str, branch: str, base: str = "main") -> GitResult:
    """Check out ``base``, try to update it, then create and switch to ``branch``."""
    error = validate_branch_name(branch)
    if error:
        return GitResult(False, error=error, error_type="invalid_branch_name")
    if not await is_git_repo(cwd):
        return GitResult(False, error="Not a git repository", error_type="not_a_repo")

    proc = await _run(["git", "checkout", base], cwd)
    if proc.returncode != 0:
        return GitResult(False, error=_failure(proc), error_type="checkout_failed")

    pull = await _run(["git", "pull", "--ff-only"], cwd)
    if pull.returncode != 0:
        logger.debug("Pull of %s skipped: %s", base, _failure(pull))

    proc = await _run(["git", "checkout", "-b", branch], cwd)
    if proc.returncode != 0:
        message = _failure(proc)
        error_type = "branch_exists" if "already exists" in message else "unknown"
        return GitResult(False, error=message, error_type=error_type)
    return GitResult(True, output=branch)


async def checkout_branch(cwd: Path | str, branch: str) -> bool:
    proc = await _run(["git", "checkout", branch], cwd)
    if proc.returncode != 0:
        logger.warning("Checkout of %s failed: %s", branch, _failure(proc))
    return proc.returncode == 0


# ---------------------------------------------------------------------------
# Worktrees
# ---------------------------------------------------------------------------

def worktree_path_for(project_dir: Path | str, spec_id: str) -> Path:
    project_dir = Path(project_dir)
    name = f"{project_dir.name}-spec-{spec_id[:8]}-{int(time.time())}"
    return project_dir.parent / name


async def create_worktree(
    project_dir: Path | str, spec_id: str, branch: str, base: str | None = None
) -> GitResult:
    """Create a sibling worktree on ``branch``, creating the branch if needed."""
    error = validate_branch_name(branch)
    if error:
        return GitResult(False, error=error, error_type="invalid_branch_name")

    path = worktree_path_for(project_dir, spec_id)
    if await branch_exists(project_dir, branch):
        cmd = ["git", "worktree", "add", str(path), branch]
    else:
        cmd = ["git", "worktree", "add", "-b", branch, str(path)]
        if base:
            cmd.append(base)
    proc = await _run(cmd, project_dir)
    if proc.returncode != 0:
        return GitResult(False, error=_failure(proc), error_type="unknown")
    return GitResult(True, path=str(path))


async def remove_worktree(project_dir: Path | str, worktree_path: Path | str) -> GitResult:
    proc = await _run(["git", "worktree", "remove", "--force", str(worktree_path)], project_dir)
    if proc.returncode != 0:
        return GitResult(False, error=_failure(proc))
    await _run(["git", "worktree", "prune"], project_dir)
    return GitResult(True)


async def list_worktrees(project_dir: Path | str) -> list[WorktreeInfo]:
    try:
        out = await _run_git(["worktree", "list", "--porcelain"], project_dir)
    except subprocess.CalledProcessError:
        return []
    worktrees: list[WorktreeInfo] = []
    for line in out.splitlines():
        if line.startswith("worktree "):
            worktrees.append(WorktreeInfo(path=line[len("worktree "):]))
        elif line.startswith("HEAD ") and worktrees:
            worktrees[-1].head = line[len("HEAD "):]
        elif line.startswith("branch ") and worktrees:
            worktrees[-1].branch = line[len("branch "):].removeprefix("refs/heads/")
    return worktrees


# ---------------------------------------------------------------------------
# Working tree state
# ---------------------------------------------------------------------------

async def get_status_lines(cwd: Path | str) -> list[str]:
    """``git status --porcelain`` lines. Raises CalledProcessError."""
    result = await anyio.to_thread.run_sync(
        lambda: subprocess.run(
            ["git", "status", "--porcelain"],
            cwd=str(cwd),
            capture_output=True,
            text=True,
            check=True,
        )
    )
    return [line for line in result.stdout.splitlines() if line.strip()]


async def get_changed_files(cwd: Path | str) -> list[str]:
    """Changed paths (staged + unstaged + untracked)."""
    try:
        lines = await get_status_lines(cwd)
    except subprocess.CalledProcessError:
        return []
    files = []
    for line in lines:
        path = line[3:]
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        files.append(path.strip('"'))
    return sorted(set(files))


async def get_diff_stat(cwd: Path | str, max_lines: int = 100) -> str:
    try:
        out = await _run_git(["diff", "--stat", "HEAD"], cwd)
    except subprocess.CalledProcessError:
        return ""
    return "\n".join(out.splitlines()[:max_lines])


async def get_latest_commit(cwd: Path | str) -> str:
    """Get the full hash of HEAD."""
    try:
        return await _run_git(["rev-parse", "HEAD"], cwd)
    except subprocess.CalledProcessError:
        return ""


async def create_commit(cwd: Path | str, message: str) -> CommitResult:
    """Stage everything and commit. Empty working trees are reported, not committed."""
    try:
        lines = await get_status_lines(cwd)
        if not lines:
            return CommitResult(False, error="No changes to commit")
        await _run_git(["add", "-A"], cwd)
        await _run_git(["commit", "-m", message], cwd)
        commit_hash = await _run_git(["rev-parse", "HEAD"], cwd)
    except subprocess.CalledProcessError as e:
        return CommitResult(False, error=(e.stderr or str(e)).strip())
    return CommitResult(True, commit_hash=commit_hash, files_changed=len(lines))


async def reset_hard(cwd: Path | str) -> GitResult:
    """Discard tracked changes and untracked files."""
    try:
        await _run_git(["reset", "--hard", "HEAD"], cwd)
        await _run_git(["clean", "-fd"], cwd)
    except subprocess.CalledProcessError as e:
        return GitResult(False, error=(e.stderr or str(e)).strip())
    return GitResult(True)


async def get_commit_count(cwd: Path | str, base: str = "main") -> int:
    try:
        return int(await _run_git(["rev-list", "--count", f"{base}..HEAD"], cwd))
    except (subprocess.CalledProcessError, ValueError):
        return 0


async def get_changed_files_count(cwd: Path | str, base: str = "main") -> int:
    try:
        out = await _run_git(["diff", "--name-only", f"{base}...HEAD"], cwd)
    except subprocess.CalledProcessError:
        return 0
    return len([f for f in out.splitlines() if f])


# ---------------------------------------------------------------------------
# Remote / pull requests
# ---------------------------------------------------------------------------

async def push_branch(cwd: Path | str, branch: str) -> GitResult:
    proc = await _run(["git", "push", "-u", "origin", branch], cwd)
    combined = f"{proc.stdout}\n{proc.stderr}"
    if proc.returncode == 0 or "Everything up-to-date" in combined:
        return GitResult(True, output=combined.strip())
    return GitResult(False, error=_failure(proc))


def parse_pr_number(url: str) -> int | None:
    match = _PR_NUMBER_RE.search(url.strip())
    return int(match.group(1)) if match else None


async def create_pull_request(
    cwd: Path | str, title: str, body: str, base: str = "main"
) -> PRResult:
    try:
        proc = await _run(
            ["gh", "pr", "create", "--title", title, "--body", body, "--base", base],
            cwd,
        )
    except FileNotFoundError:
        return PRResult(False, error="GitHub CLI (gh) not installed")
    if proc.returncode != 0:
        return PRResult(False, error=_failure(proc))
    url = proc.stdout.strip().splitlines()[-1] if proc.stdout.strip() else ""
    return PRResult(True, pr_url=url, pr_number=parse_pr_number(url))


async def check_pr_merged(cwd: Path | str, pr_number: int) -> bool:
    try:
        proc = await _run(
            ["gh", "pr", "view", str(pr_number), "--json", "state", "-q", ".state"],
            cwd,
        )
    except FileNotFoundError:
        return False
    return proc.returncode == 0 and proc.stdout.strip() == "MERGED"
