"""Drives one spec's chunks to completion, then the final review and PR."""

from __future__ import annotations

import logging
import time
from dataclasses import asdict

import anyio

from .config import Config, ProjectConfig, project_config
from .db import Database
from .events import EventChannel
from .executor import ChunkExecutor, ExecutionBackend, ExecutionRegistry
from .git_workflow import GitWorkflow, GitWorkflowState
from .models import Chunk, ChunkStatus, PipelineResult, ReviewStatus, RunStats, SpecStatus
from .pipeline import ChunkPipeline
from .providers import create_execution_backend, create_reviewer
from .review import ReviewBackend, ReviewService
from .scheduler import cascade_cancel, find_runnable_chunks, is_settled, validate_dependencies

logger = logging.getLogger(__name__)


class SpecRunError(RuntimeError):
    """A spec run could not start."""


class SpecRunner:
    """One run of one spec: scheduling loop, fix chunks, final review, PR.

    Chunks run strictly one at a time; the working directory belongs to the
    chunk currently executing.
    """

    def __init__(
        self,
        db: Database,
        spec_id: str,
        backend: ExecutionBackend,
        chunk_reviewer: ReviewBackend,
        final_reviewer: ReviewBackend | None = None,
        project: ProjectConfig | None = None,
        allowed_roots: list[str] | None = None,
        channel: EventChannel | None = None,
        registry: ExecutionRegistry | None = None,
    ):
        self.db = db
        self.spec_id = spec_id
        self.project = project or ProjectConfig()
        self.channel = channel or EventChannel()
        self.executor = ChunkExecutor(
            db, backend, registry,
            timeout_sec=self.project.executor.timeout_sec,
            model=self.project.executor.model,
            channel=self.channel,
        )
        self.review = ReviewService(db, chunk_reviewer, final_reviewer, self.project.reviewer)
        self.git = GitWorkflow(db, allowed_roots)
        self.pipeline = ChunkPipeline(
            db, self.executor, self.review, self.git, self.project.validation, self.channel
        )
        self.state: GitWorkflowState | None = None
        self.current_chunk_id: str | None = None
        self._abort_requested = False
        self._paused = False
        self._resumed = anyio.Event()

    # -- control -------------------------------------------------------

    @property
    def paused(self) -> bool:
        return self._paused

    def abort(self) -> None:
        self._abort_requested = True
        if self.current_chunk_id:
            self.executor.abort(self.current_chunk_id)
        self.resume()

    def pause(self) -> None:
        """Stop dispatching after the current chunk finishes."""
        self._paused = True

    def resume(self) -> None:
        if self._paused:
            self._paused = False
            self._resumed.set()
            self._resumed = anyio.Event()

    async def _wait_if_paused(self) -> None:
        if self._paused:
            self._emit("paused")
            while self._paused:
                await self._resumed.wait()
            self._emit("resumed")

    def _emit(self, type: str, chunk_id: str | None = None, **data) -> None:
        self.channel.emit(type, spec_id=self.spec_id, chunk_id=chunk_id, data=data)

    # -- run -----------------------------------------------------------

    async def run(self) -> RunStats:
        start = time.monotonic()
        spec = await self.db.get_spec(self.spec_id)
        if spec is None:
            raise SpecRunError(f"Spec not found: {self.spec_id}")
        if spec.status == SpecStatus.RUNNING:
            raise SpecRunError(f"Spec {self.spec_id} is already running")
        project = await self.db.get_project(spec.project_id)
        if project is None:
            raise SpecRunError(f"Project not found: {spec.project_id}")

        await self.db.update_spec(self.spec_id, status=SpecStatus.RUNNING)
        self._emit("spec_start", title=spec.title)
        stats = RunStats()
        self.state = GitWorkflowState.disabled(project.directory)
        try:
            try:
                self.state = await self.git.init_workflow(
                    self.spec_id, project.directory, self.project.base_branch
                )
            except Exception:
                logger.exception("Git workflow init failed for %s, running without checkpoints",
                                 self.spec_id)

            await self._run_loop(stats)
            await self._finish(stats)
        finally:
            try:
                await self.git.cleanup(self.state)
            except Exception:
                logger.exception("Git cleanup failed for %s", self.spec_id)
            spec = await self.db.get_spec(self.spec_id)
            if spec is not None and spec.status == SpecStatus.RUNNING:
                await self.db.update_spec(self.spec_id, status=SpecStatus.REVIEW)
            stats.duration_sec = time.monotonic() - start
            self._emit("spec_complete", **asdict(stats))
        return stats

    async def _run_loop(self, stats: RunStats) -> None:
        chunks = await self.db.list_chunks(self.spec_id)
        completed = {c.id for c in chunks if is_settled(c)}
        failed: set[str] = set()

        while True:
            await self._wait_if_paused()
            if self._abort_requested:
                stats.aborted = True
                logger.info("Run of %s aborted", self.spec_id)
                return

            chunks = await self.db.list_chunks(self.spec_id)
            runnable = find_runnable_chunks(chunks, completed, failed)
            if not runnable:
                return
            chunk = runnable[0]

            # A dependency may have changed since the runnable set was computed.
            chunks = await self.db.list_chunks(self.spec_id)
            check = validate_dependencies(chunk, chunks, completed)
            if not check.valid:
                failed.add(chunk.id)
                await self._cancel(chunk, f"Blocked: {check.reason}")
                await self._cascade(chunk, chunks, completed, failed)
                continue

            result = await self._run_chunk(chunk)
            if result.status == "pass":
                completed.add(chunk.id)
                continue
            if result.status == "cancelled":
                stats.aborted = True
                return
            if result.status == "needs_fix" and result.fix_chunk_id:
                stats.fix_chunks_created += 1
                fix_status = await self._run_fix(chunk, result.fix_chunk_id, completed, failed)
                if fix_status == "pass":
                    continue
                if fix_status == "cancelled":
                    stats.aborted = True
                    return

            failed.add(chunk.id)
            await self._reset()
            await self._cascade(chunk, await self.db.list_chunks(self.spec_id), completed, failed)
            logger.info("Chunk %s did not pass (%s), halting %s",
                        chunk.id, result.status, self.spec_id)
            return

    async def _run_chunk(self, chunk: Chunk) -> PipelineResult:
        self.current_chunk_id = chunk.id
        self._emit("chunk_start", chunk.id, title=chunk.title, order=chunk.order)
        try:
            result = await self.pipeline.run(chunk.id, self.state)
        finally:
            self.current_chunk_id = None
        self._emit(
            "chunk_complete", chunk.id,
            status=result.status, error=result.error, feedback=result.feedback,
        )
        return result

    async def _run_fix(
        self, chunk: Chunk, fix_chunk_id: str, completed: set[str], failed: set[str]
    ) -> str:
        """Run a freshly inserted fix chunk; on pass the fixed chunk counts as done."""
        if self._abort_requested:
            return "cancelled"
        result = await self._run_chunk(await self.db.get_chunk(fix_chunk_id))
        if result.status != "pass":
            if result.status != "cancelled":
                failed.add(fix_chunk_id)
            return result.status
        await self.db.update_chunk(
            chunk.id, status=ChunkStatus.COMPLETED, review_status=ReviewStatus.PASS
        )
        completed.update((chunk.id, fix_chunk_id))
        return "pass"

    async def _cancel(self, chunk: Chunk, reason: str) -> None:
        await self.db.update_chunk(chunk.id, status=ChunkStatus.CANCELLED, error=reason)
        self._emit("chunk_cancelled", chunk.id, reason=reason)

    async def _cascade(
        self, chunk: Chunk, chunks: list[Chunk], completed: set[str], failed: set[str]
    ) -> None:
        for dependent in cascade_cancel(chunk.id, chunks, completed, failed):
            await self._cancel(dependent, f'Cancelled: dependency "{chunk.title}" did not complete')

    async def _reset(self) -> None:
        if not self.state.enabled:
            return
        result = await self.git.reset_hard(self.state)
        if result.success:
            self._emit("git_reset")
        else:
            logger.warning("Reset of %s failed: %s", self.state.working_dir, result.error)

    async def _finish(self, stats: RunStats) -> None:
        chunks = await self.db.list_chunks(self.spec_id)
        stats.total = len(chunks)
        stats.passed = sum(1 for c in chunks if is_settled(c))
        stats.failed = sum(1 for c in chunks if c.status == ChunkStatus.FAILED)
        stats.skipped = stats.total - stats.passed - stats.failed

        if stats.aborted or stats.passed < stats.total:
            await self.db.update_spec(self.spec_id, status=SpecStatus.REVIEW)
            return
        if self.project.reviewer.skip_final_review:
            await self.db.update_spec(self.spec_id, status=SpecStatus.COMPLETED)
            return

        self._emit("final_review_start")
        outcome = await self.review.review_spec_final(self.spec_id)
        self._emit(
            "final_review_complete",
            status=outcome.status, feedback=outcome.feedback, error=outcome.error,
            integration_issues=outcome.integration_issues,
            missing_requirements=outcome.missing_requirements,
        )

        if outcome.status == ReviewStatus.PASS.value:
            spec = await self.db.get_spec(self.spec_id)
            pr = await self.git.push_and_create_pr(self.state, spec, stats.passed)
            if pr.success:
                stats.pr_url, stats.pr_number = pr.pr_url, pr.pr_number
                await self.db.update_spec(self.spec_id, pr_url=pr.pr_url, pr_number=pr.pr_number)
                self._emit("pr_created", pr_url=pr.pr_url, pr_number=pr.pr_number)
            elif self.state.enabled:
                self._emit("error", stage="pr", error=pr.error)
            await self.db.update_spec(self.spec_id, status=SpecStatus.COMPLETED)
        elif outcome.status == ReviewStatus.NEEDS_FIX.value:
            created = await self.review.create_fix_chunks(self.spec_id, outcome.fix_chunks)
            stats.fix_chunks_created += len(created)
            await self.db.update_spec(self.spec_id, status=SpecStatus.REVIEW)
        else:
            await self.db.update_spec(self.spec_id, status=SpecStatus.REVIEW)


async def create_spec_runner(
    db: Database,
    config: Config,
    spec_id: str,
    channel: EventChannel | None = None,
    registry: ExecutionRegistry | None = None,
) -> SpecRunner:
    """Build a runner with backends from the project's effective configuration."""
    spec = await db.get_spec(spec_id)
    if spec is None:
        raise SpecRunError(f"Spec not found: {spec_id}")
    project = await db.get_project(spec.project_id)
    if project is None:
        raise SpecRunError(f"Project not found: {spec.project_id}")

    effective = project_config(config, project)
    return SpecRunner(
        db,
        spec_id,
        backend=create_execution_backend(effective),
        chunk_reviewer=create_reviewer(config, effective, effective.reviewer.chunk_model),
        final_reviewer=create_reviewer(config, effective, effective.reviewer.final_model),
        project=effective,
        allowed_roots=config.allowed_roots,
        channel=channel,
        registry=registry,
    )
