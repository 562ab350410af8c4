"""Per-chunk pipeline: Execute -> Validate -> Review -> Commit | Reset."""

from __future__ import annotations

import logging

from .config import ValidationConfig
from .db import Database
from .events import EventChannel
from .executor import ChunkExecutor
from .git_workflow import GitWorkflow, GitWorkflowState
from .models import ChunkStatus, PipelineResult, ReviewStatus
from .review import ReviewService
from .validation import validate_chunk

logger = logging.getLogger(__name__)


class ChunkPipeline:
    def __init__(
        self,
        db: Database,
        executor: ChunkExecutor,
        review: ReviewService,
        git: GitWorkflow,
        validation: ValidationConfig | None = None,
        channel: EventChannel | None = None,
    ):
        self.db = db
        self.executor = executor
        self.review = review
        self.git = git
        self.validation = validation or ValidationConfig()
        self.channel = channel or EventChannel()

    def _emit(self, type: str, spec_id: str, chunk_id: str, **data) -> None:
        self.channel.emit(type, spec_id=spec_id, chunk_id=chunk_id, data=data)

    def _has_build(self) -> bool:
        return bool(self.validation.build_command) and not self.validation.skip_build

    async def run(self, chunk_id: str, state: GitWorkflowState) -> PipelineResult:
        chunk = await self.db.get_chunk(chunk_id)
        if chunk is None:
            return PipelineResult("error", chunk_id, error="Chunk not found")
        spec_id = chunk.spec_id

        # ① Execute
        execution = await self.executor.execute(chunk_id, state.working_dir)
        if execution.status == ChunkStatus.CANCELLED:
            return PipelineResult("cancelled", chunk_id, error=execution.error)
        if execution.status != ChunkStatus.COMPLETED:
            self._emit("error", spec_id, chunk_id, stage="execution", error=execution.error)
            return PipelineResult("fail", chunk_id, error=execution.error)

        # ② Validate
        validation = None
        if state.enabled or self._has_build():
            self._emit("validation_start", spec_id, chunk_id)
            validation = await validate_chunk(
                chunk_id, state.working_dir, self.validation, check_changes=state.enabled
            )
            self._emit(
                "validation_complete", spec_id, chunk_id,
                files_changed=validation.files_changed,
                auto_fail=validation.auto_fail.reason if validation.auto_fail else None,
            )
            if validation.auto_fail is not None:
                auto_fail = validation.auto_fail
                await self.db.update_chunk(
                    chunk_id,
                    status=ChunkStatus.FAILED,
                    review_status=ReviewStatus.FAIL,
                    review_feedback=auto_fail.feedback,
                    error=auto_fail.reason,
                )
                return PipelineResult(
                    "fail", chunk_id, feedback=auto_fail.feedback,
                    error=auto_fail.reason, auto_fail=auto_fail,
                )

        # ③ Review
        self._emit("review_start", spec_id, chunk_id)
        outcome = await self.review.review_chunk(chunk_id, validation)
        self._emit(
            "review_complete", spec_id, chunk_id,
            status=outcome.status, feedback=outcome.feedback, error_type=outcome.error_type,
        )

        if outcome.status == "error":
            await self.db.update_chunk(
                chunk_id, status=ChunkStatus.FAILED, error=f"Review failed: {outcome.error}"
            )
            self._emit(
                "error", spec_id, chunk_id,
                stage="review", error=outcome.error, error_type=outcome.error_type,
            )
            return PipelineResult("error", chunk_id, error=outcome.error)

        # ④ Commit | Reset
        if outcome.status == ReviewStatus.PASS.value:
            commit_hash = await self._commit(state, chunk_id, chunk.title, chunk.order, spec_id)
            return PipelineResult(
                "pass", chunk_id, feedback=outcome.feedback, commit_hash=commit_hash
            )

        await self.db.update_chunk(chunk_id, status=ChunkStatus.FAILED)
        if state.enabled:
            reset = await self.git.reset_hard(state)
            if not reset.success:
                logger.warning("Reset after %s of chunk %s failed: %s",
                               outcome.status, chunk_id, reset.error)
        return PipelineResult(
            outcome.status, chunk_id,
            feedback=outcome.feedback, fix_chunk_id=outcome.fix_chunk_id,
        )

    async def _commit(
        self, state: GitWorkflowState, chunk_id: str, title: str, order: int, spec_id: str
    ) -> str | None:
        if not state.enabled:
            return None
        result = await self.git.commit_chunk(state, chunk_id, title, order)
        if not result.success:
            # Chunk still passes; it simply has no checkpoint of its own.
            self._emit("error", spec_id, chunk_id, stage="commit", error=result.error)
            return None
        await self.db.update_chunk(chunk_id, commit_hash=result.commit_hash)
        self._emit("commit", spec_id, chunk_id, commit_hash=result.commit_hash)
        return result.commit_hash
