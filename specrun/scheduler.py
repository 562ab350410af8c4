"""Scheduler: runnable-set computation and failure cascading."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass

from .dag import build_dependents
from .models import RUNNABLE_STATUSES, Chunk, ChunkStatus, ReviewStatus


def find_runnable_chunks(
    chunks: list[Chunk],
    completed_ids: set[str],
    failed_ids: set[str],
) -> list[Chunk]:
    """Chunks ready to dispatch, in ``order`` sequence.

    A chunk is runnable when its status allows a (re)run, it was not already
    settled in this run, and every dependency is in ``completed_ids``.
    """
    runnable = [
        c for c in chunks
        if c.id not in completed_ids
        and c.id not in failed_ids
        and c.status in RUNNABLE_STATUSES
        and all(dep in completed_ids for dep in c.dependencies)
    ]
    runnable.sort(key=lambda c: c.order)
    return runnable


def find_dependents(chunk_id: str, chunks: list[Chunk]) -> list[Chunk]:
    """Transitive dependents of ``chunk_id`` in breadth-first order, each once."""
    by_id = {c.id: c for c in chunks}
    reverse = build_dependents(chunks)

    visited: set[str] = {chunk_id}
    result: list[Chunk] = []
    queue = deque(reverse.get(chunk_id, []))
    while queue:
        cid = queue.popleft()
        if cid in visited:
            continue
        visited.add(cid)
        result.append(by_id[cid])
        queue.extend(reverse.get(cid, []))
    return result


def cascade_cancel(
    failed_chunk_id: str,
    chunks: list[Chunk],
    completed_ids: set[str],
    failed_ids: set[str],
) -> list[Chunk]:
    """Select the dependents to cancel after ``failed_chunk_id`` failed.

    Every transitive dependent not already settled is returned once and added
    to ``failed_ids`` so later runnable-set queries skip it. Persisting the
    cancellation is the caller's job.
    """
    cancelled: list[Chunk] = []
    for chunk in find_dependents(failed_chunk_id, chunks):
        if chunk.id in completed_ids or chunk.id in failed_ids:
            continue
        failed_ids.add(chunk.id)
        cancelled.append(chunk)
    return cancelled


@dataclass
class DependencyCheck:
    valid: bool
    reason: str = ""
    blocking_chunk_id: str | None = None
    blocking_chunk_title: str | None = None


def validate_dependencies(
    chunk: Chunk, chunks: list[Chunk], completed_ids: set[str]
) -> DependencyCheck:
    """Re-check a chunk's dependencies right before dispatch."""
    by_id = {c.id: c for c in chunks}
    for dep_id in chunk.dependencies:
        dep = by_id.get(dep_id)
        if dep is None:
            return DependencyCheck(False, f"Dependency {dep_id} not found", dep_id)
        if dep_id in completed_ids:
            continue
        if dep.status != ChunkStatus.COMPLETED:
            return DependencyCheck(
                False,
                f'Dependency "{dep.title}" not completed ({dep.status.value})',
                dep_id,
                dep.title,
            )
        if dep.review_status in (ReviewStatus.NEEDS_FIX, ReviewStatus.FAIL):
            return DependencyCheck(
                False,
                f'Dependency "{dep.title}" {dep.review_status.value}',
                dep_id,
                dep.title,
            )
    return DependencyCheck(True)


def is_settled(chunk: Chunk) -> bool:
    """Completed with an acceptable review status (pass, or never reviewed)."""
    return chunk.status == ChunkStatus.COMPLETED and chunk.review_status in (
        None, ReviewStatus.PASS,
    )
