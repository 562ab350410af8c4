"""Core data models for specrun."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class SpecStatus(str, Enum):
    DRAFT = "draft"
    RUNNING = "running"
    REVIEW = "review"
    COMPLETED = "completed"


class ChunkStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ReviewStatus(str, Enum):
    PASS = "pass"
    NEEDS_FIX = "needs_fix"
    FAIL = "fail"


class ToolCallStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class WorkerStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class WorkerStep(str, Enum):
    EXECUTING = "executing"
    REVIEWING = "reviewing"


# Chunk statuses the scheduler may (re)dispatch.
RUNNABLE_STATUSES = (ChunkStatus.PENDING, ChunkStatus.FAILED, ChunkStatus.CANCELLED)

# Worker statuses that hold a pool slot.
ACTIVE_WORKER_STATUSES = (WorkerStatus.IDLE, WorkerStatus.RUNNING, WorkerStatus.PAUSED)


# ---------------------------------------------------------------------------
# Persisted entities
# ---------------------------------------------------------------------------

@dataclass
class Project:
    id: str
    name: str
    directory: str
    # Overrides only; merged onto Config.defaults by config.project_config().
    config: dict = field(default_factory=dict)
    created_at: str = ""
    updated_at: str = ""


@dataclass
class Spec:
    """A specification decomposed into chunks."""

    id: str
    project_id: str
    title: str
    content: str = ""
    version: int = 1
    status: SpecStatus = SpecStatus.DRAFT
    branch_name: str | None = None
    original_branch: str | None = None
    worktree_path: str | None = None
    pr_url: str | None = None
    pr_number: int | None = None
    pr_merged: bool = False
    created_at: str = ""
    updated_at: str = ""


@dataclass
class Chunk:
    """One unit of specification work."""

    id: str
    spec_id: str
    title: str
    description: str = ""
    order: int = 0
    status: ChunkStatus = ChunkStatus.PENDING
    dependencies: list[str] = field(default_factory=list)
    review_status: ReviewStatus | None = None
    review_feedback: str | None = None
    output: str | None = None
    output_summary: str | None = None
    error: str | None = None
    commit_hash: str | None = None
    started_at: str | None = None
    completed_at: str | None = None


@dataclass
class ToolCall:
    id: str
    chunk_id: str
    tool: str
    input: dict = field(default_factory=dict)
    output: str | None = None
    status: ToolCallStatus = ToolCallStatus.RUNNING
    started_at: str = ""
    completed_at: str | None = None


@dataclass
class WorkerProgress:
    current: int = 0
    total: int = 0
    passed: int = 0
    failed: int = 0


@dataclass
class Worker:
    id: str
    spec_id: str
    project_id: str
    status: WorkerStatus = WorkerStatus.IDLE
    current_chunk_id: str | None = None
    current_step: WorkerStep | None = None
    progress: WorkerProgress = field(default_factory=WorkerProgress)
    started_at: str = ""
    completed_at: str | None = None
    error: str | None = None


@dataclass
class QueueItem:
    id: str
    spec_id: str
    project_id: str
    priority: int = 0
    added_at: str = ""


@dataclass
class ReviewLog:
    """Append-only audit row for one review attempt."""

    id: str
    spec_id: str
    review_type: str  # "chunk" | "final"
    model: str
    status: str  # pass | needs_fix | fail | error
    chunk_id: str | None = None
    feedback: str | None = None
    error_message: str | None = None
    error_type: str | None = None
    attempt_number: int = 1
    duration_ms: int = 0
    created_at: str = ""


# ---------------------------------------------------------------------------
# Review verdicts (validated at the parse boundary, see prompts.py)
# ---------------------------------------------------------------------------

@dataclass
class FixSpec:
    title: str
    description: str
    target_chunk_index: int | None = None
    parent_chunk_id: str | None = None


@dataclass
class ChunkVerdict:
    status: ReviewStatus
    feedback: str
    fix: FixSpec | None = None


@dataclass
class FinalVerdict:
    status: ReviewStatus
    feedback: str
    integration_issues: list[str] = field(default_factory=list)
    missing_requirements: list[str] = field(default_factory=list)
    fix_chunks: list[FixSpec] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Step results
# ---------------------------------------------------------------------------

@dataclass
class ExecutionResult:
    """Outcome of running one chunk through the execution backend."""

    status: ChunkStatus
    output: str = ""
    error: str | None = None
    duration_sec: float = 0.0
    tool_calls: int = 0


@dataclass
class AutoFail:
    reason: str  # no_changes | build_failed | validation_error
    feedback: str


@dataclass
class BuildResult:
    success: bool
    exit_code: int
    output: str = ""
    duration_sec: float = 0.0


@dataclass
class ValidationResult:
    files_changed: int = 0
    changed_files: list[str] = field(default_factory=list)
    diff_stat: str = ""
    build: BuildResult | None = None
    auto_fail: AutoFail | None = None
    changes_checked: bool = True

    @property
    def ok(self) -> bool:
        return self.auto_fail is None


@dataclass
class ReviewOutcome:
    """Chunk review as seen by the pipeline: a verdict or a classified error."""

    status: str  # pass | needs_fix | fail | error
    feedback: str = ""
    fix: FixSpec | None = None
    fix_chunk_id: str | None = None
    error: str | None = None
    error_type: str | None = None


@dataclass
class FinalReviewOutcome:
    status: str  # pass | needs_fix | fail | error
    feedback: str = ""
    integration_issues: list[str] = field(default_factory=list)
    missing_requirements: list[str] = field(default_factory=list)
    fix_chunks: list[FixSpec] = field(default_factory=list)
    error: str | None = None
    error_type: str | None = None


@dataclass
class PipelineResult:
    """Terminal outcome of one Execute -> Validate -> Review pass."""

    status: str  # pass | fail | needs_fix | cancelled | error
    chunk_id: str
    feedback: str = ""
    error: str | None = None
    auto_fail: AutoFail | None = None
    fix_chunk_id: str | None = None
    commit_hash: str | None = None


@dataclass
class RunStats:
    total: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    fix_chunks_created: int = 0
    pr_url: str | None = None
    pr_number: int | None = None
    duration_sec: float = 0.0
    aborted: bool = False
