"""Chunk and whole-spec review through a review backend."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Protocol, TypeVar

from .config import ReviewerConfig
from .db import Database
from .models import (
    Chunk,
    FinalReviewOutcome,
    FixSpec,
    ReviewLog,
    ReviewOutcome,
    ReviewStatus,
    ValidationResult,
)
from .prompts import (
    build_final_review_prompt,
    build_review_prompt,
    parse_chunk_verdict,
    parse_final_verdict,
)
from .retry import classify_error, retry_with_backoff

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class ReviewCall:
    success: bool
    output: str


class ReviewBackend(Protocol):
    async def execute(self, prompt: str, timeout: float) -> ReviewCall: ...


class ReviewBackendError(RuntimeError):
    """The review backend reported an unsuccessful call."""


class ReviewService:
    def __init__(
        self,
        db: Database,
        chunk_backend: ReviewBackend,
        final_backend: ReviewBackend | None = None,
        config: ReviewerConfig | None = None,
    ):
        self.db = db
        self.chunk_backend = chunk_backend
        self.final_backend = final_backend or chunk_backend
        self.config = config or ReviewerConfig()

    async def _reviewed(
        self,
        backend: ReviewBackend,
        prompt: str,
        timeout: float,
        parse: Callable[[str], T],
        log: ReviewLog,
    ) -> T:
        """Call the backend under the retry policy, logging every attempt."""
        attempt = 0

        async def operation() -> T:
            nonlocal attempt
            attempt += 1
            start = time.monotonic()
            entry = ReviewLog(
                id="", spec_id=log.spec_id, chunk_id=log.chunk_id,
                review_type=log.review_type, model=log.model, status="error",
                attempt_number=attempt,
            )
            try:
                call = await backend.execute(prompt, timeout)
                if not call.success:
                    raise ReviewBackendError(call.output or "Review backend call failed")
                verdict = parse(call.output)
            except Exception as e:
                entry.error_message = str(e)
                entry.error_type = classify_error(e)
                entry.duration_ms = int((time.monotonic() - start) * 1000)
                await self.db.insert_review_log(entry)
                raise
            entry.status = verdict.status.value
            entry.feedback = verdict.feedback
            entry.duration_ms = int((time.monotonic() - start) * 1000)
            await self.db.insert_review_log(entry)
            return verdict

        return await retry_with_backoff(
            operation,
            max_retries=self.config.max_retries,
            backoff_ms=self.config.retry_backoff_ms,
        )

    async def review_chunk(
        self, chunk_id: str, validation: ValidationResult | None = None
    ) -> ReviewOutcome:
        chunk = await self.db.get_chunk(chunk_id)
        if chunk is None:
            return ReviewOutcome("error", error="Chunk not found", error_type="unknown")

        log = ReviewLog(
            id="", spec_id=chunk.spec_id, chunk_id=chunk.id, review_type="chunk",
            model=self.config.chunk_model, status="",
        )
        try:
            verdict = await self._reviewed(
                self.chunk_backend,
                build_review_prompt(chunk, validation),
                self.config.chunk_timeout_sec,
                parse_chunk_verdict,
                log,
            )
        except Exception as e:
            error_type = classify_error(e)
            logger.error("Review of chunk %s failed (%s): %s", chunk.id, error_type, e)
            return ReviewOutcome("error", error=str(e), error_type=error_type)

        status = verdict.status
        if status == ReviewStatus.NEEDS_FIX and verdict.fix is None:
            logger.info("Chunk %s needs a fix but none was described, failing it", chunk.id)
            status = ReviewStatus.FAIL
        await self.db.update_chunk(
            chunk.id, review_status=status, review_feedback=verdict.feedback
        )

        outcome = ReviewOutcome(status.value, feedback=verdict.feedback, fix=verdict.fix)
        if status == ReviewStatus.NEEDS_FIX:
            fix_chunk = await self.db.insert_fix_chunk(
                chunk.id, verdict.fix.title, verdict.fix.description
            )
            outcome.fix_chunk_id = fix_chunk.id if fix_chunk else None
            logger.info("Inserted fix chunk %s after %s", outcome.fix_chunk_id, chunk.id)
        return outcome

    async def review_spec_final(self, spec_id: str) -> FinalReviewOutcome:
        spec = await self.db.get_spec(spec_id)
        if spec is None:
            return FinalReviewOutcome("error", error="Spec not found", error_type="unknown")
        chunks = await self.db.list_chunks(spec_id)

        log = ReviewLog(
            id="", spec_id=spec_id, review_type="final",
            model=self.config.final_model, status="",
        )
        try:
            verdict = await self._reviewed(
                self.final_backend,
                build_final_review_prompt(spec, chunks),
                self.config.final_timeout_sec,
                parse_final_verdict,
                log,
            )
        except Exception as e:
            error_type = classify_error(e)
            logger.error("Final review of spec %s failed (%s): %s", spec_id, error_type, e)
            return FinalReviewOutcome("error", error=str(e), error_type=error_type)

        return FinalReviewOutcome(
            verdict.status.value,
            feedback=verdict.feedback,
            integration_issues=verdict.integration_issues,
            missing_requirements=verdict.missing_requirements,
            fix_chunks=verdict.fix_chunks,
        )

    async def create_fix_chunks(self, spec_id: str, fixes: list[FixSpec]) -> list[Chunk]:
        """Insert fix chunks from a final review, each after its parent chunk.

        The parent is ``parent_chunk_id`` when it names a chunk of this spec,
        else the chunk at ``target_chunk_index``, else the last chunk.
        """
        created: list[Chunk] = []
        for fix in fixes:
            chunks = await self.db.list_chunks(spec_id)
            if not chunks:
                break
            by_id = {c.id: c for c in chunks}
            if fix.parent_chunk_id in by_id:
                parent = by_id[fix.parent_chunk_id]
            elif fix.target_chunk_index is not None and 0 <= fix.target_chunk_index < len(chunks):
                parent = chunks[fix.target_chunk_index]
            else:
                parent = created[-1] if created else chunks[-1]
            chunk = await self.db.insert_fix_chunk(parent.id, fix.title, fix.description)
            if chunk is not None:
                created.append(chunk)
        return created
