"""Tests for the per-chunk pipeline: execute, validate, review, commit or reset."""

import sys

import pytest
from specrun import git_ops, retry
from specrun.config import ReviewerConfig, ValidationConfig
from specrun.events import EventChannel
from specrun.executor import BackendEvent, ChunkExecutor
from specrun.git_workflow import GitWorkflow, GitWorkflowState
from specrun.models import ChunkStatus, ReviewStatus
from specrun.pipeline import ChunkPipeline
from specrun.review import ReviewService

from conftest import FakeBackend, FakeReviewer, RateLimitError, make_spec, verdict


def _pipeline(db, backend, reviewer, channel=None, **review_config):
    executor = ChunkExecutor(db, backend)
    review = ReviewService(db, reviewer, config=ReviewerConfig(**review_config))
    return ChunkPipeline(db, executor, review, GitWorkflow(db), ValidationConfig(), channel)


def _git_state(repo):
    return GitWorkflowState(True, str(repo), str(repo), spec_branch="main")


async def _drain(receive):
    async with receive:
        return [e async for e in receive]


@pytest.mark.asyncio
async def test_pass_commits_checkpoint(memory_db, git_repo):
    _, _, chunks = await make_spec(memory_db, git_repo, [("A", [])])
    chunk = chunks["A"]
    channel = EventChannel()
    receive = channel.subscribe()
    pipeline = _pipeline(memory_db, FakeBackend(), FakeReviewer([verdict("pass", "ok")]), channel)

    result = await pipeline.run(chunk.id, _git_state(git_repo))
    channel.close()

    assert result.status == "pass"
    assert result.commit_hash == await git_ops.get_latest_commit(git_repo)
    stored = await memory_db.get_chunk(chunk.id)
    assert stored.status == ChunkStatus.COMPLETED
    assert stored.review_status == ReviewStatus.PASS
    assert stored.commit_hash == result.commit_hash
    assert await git_ops.get_changed_files(git_repo) == []

    types = [e.type for e in await _drain(receive)]
    assert types == [
        "validation_start", "validation_complete", "review_start", "review_complete", "commit",
    ]


@pytest.mark.asyncio
async def test_no_changes_auto_fails_without_review(memory_db, git_repo):
    """Zero file changes → no_changes auto-fail, review backend never called."""
    _, _, chunks = await make_spec(memory_db, git_repo, [("A", [])])
    reviewer = FakeReviewer()
    pipeline = _pipeline(memory_db, FakeBackend(write_files=False), reviewer)

    result = await pipeline.run(chunks["A"].id, _git_state(git_repo))

    assert result.status == "fail"
    assert result.auto_fail.reason == "no_changes"
    assert reviewer.prompts == []
    stored = await memory_db.get_chunk(chunks["A"].id)
    assert stored.status == ChunkStatus.FAILED
    assert stored.review_status == ReviewStatus.FAIL
    assert stored.error == "no_changes"


@pytest.mark.asyncio
async def test_rate_limited_review_still_passes(memory_db, git_repo, monkeypatch):
    """Two rate limits then pass: three review calls, waits of 1x and 2x backoff."""
    waited = []

    async def fake_sleep(seconds):
        waited.append(seconds)

    monkeypatch.setattr(retry.anyio, "sleep", fake_sleep)
    _, _, chunks = await make_spec(memory_db, git_repo, [("A", [])])
    reviewer = FakeReviewer([RateLimitError("429"), RateLimitError("429"), verdict("pass")])
    pipeline = _pipeline(memory_db, FakeBackend(), reviewer, retry_backoff_ms=2000)

    result = await pipeline.run(chunks["A"].id, _git_state(git_repo))

    assert result.status == "pass"
    assert len(reviewer.prompts) == 3
    assert waited == [2.0, 4.0]


@pytest.mark.asyncio
async def test_fail_verdict_resets_working_tree(memory_db, git_repo):
    _, _, chunks = await make_spec(memory_db, git_repo, [("A", [])])
    head = await git_ops.get_latest_commit(git_repo)
    pipeline = _pipeline(memory_db, FakeBackend(), FakeReviewer([verdict("fail", "wrong")]))

    result = await pipeline.run(chunks["A"].id, _git_state(git_repo))

    assert result.status == "fail"
    assert result.feedback == "wrong"
    assert await git_ops.get_changed_files(git_repo) == []
    assert await git_ops.get_latest_commit(git_repo) == head
    stored = await memory_db.get_chunk(chunks["A"].id)
    assert stored.status == ChunkStatus.FAILED
    assert stored.review_status == ReviewStatus.FAIL


@pytest.mark.asyncio
async def test_needs_fix_returns_fix_chunk(memory_db, git_repo):
    _, _, chunks = await make_spec(memory_db, git_repo, [("A", [])])
    reviewer = FakeReviewer([verdict("needs_fix", "no tests",
                                     fix={"title": "Add tests", "description": "d"})])
    result = await _pipeline(memory_db, FakeBackend(), reviewer).run(
        chunks["A"].id, _git_state(git_repo)
    )
    assert result.status == "needs_fix"
    fix = await memory_db.get_chunk(result.fix_chunk_id)
    assert fix.dependencies == [chunks["A"].id]
    assert (await memory_db.get_chunk(chunks["A"].id)).status == ChunkStatus.FAILED


@pytest.mark.asyncio
async def test_review_error_fails_chunk(memory_db, git_repo):
    _, _, chunks = await make_spec(memory_db, git_repo, [("A", [])])
    pipeline = _pipeline(memory_db, FakeBackend(), FakeReviewer(["garbage"]))
    result = await pipeline.run(chunks["A"].id, _git_state(git_repo))

    assert result.status == "error"
    stored = await memory_db.get_chunk(chunks["A"].id)
    assert stored.status == ChunkStatus.FAILED
    assert stored.error.startswith("Review failed:")


@pytest.mark.asyncio
async def test_execution_failure_skips_review(memory_db, git_repo):
    _, _, chunks = await make_spec(memory_db, git_repo, [("A", [])])
    reviewer = FakeReviewer()
    backend = FakeBackend(scripts=[[BackendEvent("error", error="Agent error: boom")]])
    result = await _pipeline(memory_db, backend, reviewer).run(
        chunks["A"].id, _git_state(git_repo)
    )
    assert result.status == "fail"
    assert result.error == "Agent error: boom"
    assert reviewer.prompts == []


@pytest.mark.asyncio
async def test_without_git_reviews_and_passes(memory_db, tmp_path):
    _, _, chunks = await make_spec(memory_db, tmp_path, [("A", [])])
    reviewer = FakeReviewer()
    result = await _pipeline(memory_db, FakeBackend(), reviewer).run(
        chunks["A"].id, GitWorkflowState.disabled(str(tmp_path))
    )
    assert result.status == "pass"
    assert result.commit_hash is None
    assert len(reviewer.prompts) == 1
    assert "## Code Changes" not in reviewer.prompts[0]


@pytest.mark.asyncio
async def test_without_git_still_runs_build(memory_db, tmp_path):
    _, _, chunks = await make_spec(memory_db, tmp_path, [("A", [])])
    reviewer = FakeReviewer()
    validation = ValidationConfig(build_command=f"{sys.executable} -c \"print('ok')\"")
    pipeline = ChunkPipeline(
        memory_db, ChunkExecutor(memory_db, FakeBackend()),
        ReviewService(memory_db, reviewer), GitWorkflow(memory_db), validation,
    )

    result = await pipeline.run(chunks["A"].id, GitWorkflowState.disabled(str(tmp_path)))

    assert result.status == "pass"
    [prompt] = reviewer.prompts
    assert "## Build Validation\nBuild status: PASSED" in prompt
    assert "## Code Changes" not in prompt


@pytest.mark.asyncio
async def test_without_git_build_failure_auto_fails(memory_db, tmp_path):
    _, _, chunks = await make_spec(memory_db, tmp_path, [("A", [])])
    reviewer = FakeReviewer()
    validation = ValidationConfig(build_command=f"{sys.executable} -c \"raise SystemExit(2)\"")
    pipeline = ChunkPipeline(
        memory_db, ChunkExecutor(memory_db, FakeBackend()),
        ReviewService(memory_db, reviewer), GitWorkflow(memory_db), validation,
    )

    result = await pipeline.run(chunks["A"].id, GitWorkflowState.disabled(str(tmp_path)))

    assert result.status == "fail"
    assert result.auto_fail.reason == "build_failed"
    assert reviewer.prompts == []
    assert (await memory_db.get_chunk(chunks["A"].id)).status == ChunkStatus.FAILED
