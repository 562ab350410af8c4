"""Tests for SQLite database layer."""

import pytest
from specrun.dag import SpecrunDAGError
from specrun.models import (
    ChunkStatus,
    ReviewLog,
    ReviewStatus,
    SpecStatus,
    ToolCallStatus,
    WorkerProgress,
    WorkerStatus,
)

from conftest import make_spec


# --- Projects / specs ---

@pytest.mark.asyncio
async def test_create_and_get_project(memory_db):
    project = await memory_db.create_project("demo", "/tmp/demo", {"max_iterations": 3})
    loaded = await memory_db.get_project(project.id)
    assert loaded.name == "demo"
    assert loaded.config == {"max_iterations": 3}
    assert [p.id for p in await memory_db.list_projects()] == [project.id]


@pytest.mark.asyncio
async def test_get_nonexistent_returns_none(memory_db):
    assert await memory_db.get_spec("nope") is None
    assert await memory_db.get_chunk("nope") is None


@pytest.mark.asyncio
async def test_spec_update_bumps_version(memory_db, tmp_path):
    _, spec, _ = await make_spec(memory_db, tmp_path)
    assert spec.version == 1
    updated = await memory_db.update_spec(spec.id, status=SpecStatus.RUNNING)
    assert updated.status == SpecStatus.RUNNING
    assert updated.version == 2
    updated = await memory_db.update_spec(spec.id, pr_url="https://x/pull/4", pr_number=4)
    assert updated.version == 3
    assert updated.pr_number == 4


@pytest.mark.asyncio
async def test_spec_update_rejects_unknown_field(memory_db, tmp_path):
    _, spec, _ = await make_spec(memory_db, tmp_path)
    with pytest.raises(ValueError, match="Unknown spec fields"):
        await memory_db.update_spec(spec.id, version=10)


@pytest.mark.asyncio
async def test_delete_spec_removes_chunks(memory_db, tmp_path):
    _, spec, chunks = await make_spec(memory_db, tmp_path, [("A", [])])
    await memory_db.create_tool_call(chunks["A"].id, "Write", {"path": "a.py"})
    assert await memory_db.delete_spec(spec.id)
    assert await memory_db.get_chunk(chunks["A"].id) is None
    assert await memory_db.list_tool_calls(chunks["A"].id) == []


# --- Chunks ---

@pytest.mark.asyncio
async def test_chunk_order_appends(memory_db, tmp_path):
    _, spec, chunks = await make_spec(memory_db, tmp_path, [("A", []), ("B", ["A"])])
    assert chunks["A"].order == 0
    assert chunks["B"].order == 1
    loaded = await memory_db.get_chunk(chunks["B"].id)
    assert loaded.dependencies == [chunks["A"].id]
    assert loaded.status == ChunkStatus.PENDING


@pytest.mark.asyncio
async def test_create_chunk_rejects_unknown_dependency(memory_db, tmp_path):
    _, spec, _ = await make_spec(memory_db, tmp_path)
    with pytest.raises(SpecrunDAGError):
        await memory_db.create_chunk(spec.id, "X", dependencies=["ghost"])
    assert await memory_db.list_chunks(spec.id) == []


@pytest.mark.asyncio
async def test_dependency_edit_rejects_cycle(memory_db, tmp_path):
    _, spec, chunks = await make_spec(memory_db, tmp_path, [("A", []), ("B", ["A"])])
    with pytest.raises(SpecrunDAGError, match="[Cc]ycle"):
        await memory_db.update_chunk(chunks["A"].id, dependencies=[chunks["B"].id])


@pytest.mark.asyncio
async def test_update_chunk_fields(memory_db, tmp_path):
    _, _, chunks = await make_spec(memory_db, tmp_path, [("A", [])])
    updated = await memory_db.update_chunk(
        chunks["A"].id, status=ChunkStatus.COMPLETED,
        review_status=ReviewStatus.PASS, output="done",
    )
    assert updated.status == ChunkStatus.COMPLETED
    assert updated.review_status == ReviewStatus.PASS
    assert updated.output == "done"
    cleared = await memory_db.update_chunk(chunks["A"].id, review_status=None)
    assert cleared.review_status is None


@pytest.mark.asyncio
async def test_fix_insertion_shifts_orders(memory_db, tmp_path):
    """Chunks at order >= target+1 shift by exactly one; others stay put."""
    _, spec, chunks = await make_spec(
        memory_db, tmp_path, [("A", []), ("B", []), ("X", []), ("D", []), ("E", [])]
    )
    before = {c.id: c.order for c in await memory_db.list_chunks(spec.id)}
    x = chunks["X"]
    assert x.order == 2

    fix = await memory_db.insert_fix_chunk(x.id, "Add tests", "Cover X")
    assert fix.order == 3
    assert fix.dependencies == [x.id]

    after = {c.id: c.order for c in await memory_db.list_chunks(spec.id)}
    for cid, order in before.items():
        expected = order + 1 if order >= 3 else order
        assert after[cid] == expected
    assert after[fix.id] == 3
    titles = [c.title for c in await memory_db.list_chunks(spec.id)]
    assert titles == ["A", "B", "X", "Add tests", "D", "E"]


@pytest.mark.asyncio
async def test_fix_insertion_unknown_chunk(memory_db):
    assert await memory_db.insert_fix_chunk("ghost", "t", "d") is None


# --- Tool calls ---

@pytest.mark.asyncio
async def test_tool_call_lifecycle(memory_db, tmp_path):
    _, _, chunks = await make_spec(memory_db, tmp_path, [("A", [])])
    call = await memory_db.create_tool_call(chunks["A"].id, "Write", {"file_path": "a.py"})
    await memory_db.complete_tool_call(call.id, "ok", ToolCallStatus.COMPLETED)
    [loaded] = await memory_db.list_tool_calls(chunks["A"].id)
    assert loaded.tool == "Write"
    assert loaded.input == {"file_path": "a.py"}
    assert loaded.status == ToolCallStatus.COMPLETED
    assert loaded.output == "ok"


# --- Workers ---

@pytest.mark.asyncio
async def test_worker_progress_roundtrip(memory_db, tmp_path):
    project, spec, _ = await make_spec(memory_db, tmp_path)
    worker = await memory_db.create_worker(spec.id, project.id, total=3)
    await memory_db.update_worker(
        worker.id, progress=WorkerProgress(current=2, total=3, passed=1, failed=1),
        status=WorkerStatus.RUNNING,
    )
    loaded = await memory_db.get_worker(worker.id)
    assert loaded.status == WorkerStatus.RUNNING
    assert loaded.progress == WorkerProgress(current=2, total=3, passed=1, failed=1)
    assert (await memory_db.get_active_worker_for_spec(spec.id)).id == worker.id


@pytest.mark.asyncio
async def test_mark_interrupted_workers(memory_db, tmp_path):
    project, spec, _ = await make_spec(memory_db, tmp_path)
    running = await memory_db.create_worker(spec.id, project.id)
    await memory_db.update_worker(running.id, status=WorkerStatus.RUNNING)
    done = await memory_db.create_worker(spec.id, project.id)
    await memory_db.update_worker(done.id, status=WorkerStatus.COMPLETED)

    assert await memory_db.mark_interrupted_workers() == 1
    loaded = await memory_db.get_worker(running.id)
    assert loaded.status == WorkerStatus.FAILED
    assert "interrupted" in loaded.error
    assert (await memory_db.get_worker(done.id)).status == WorkerStatus.COMPLETED
    assert await memory_db.list_active_workers() == []


# --- Queue ---

@pytest.mark.asyncio
async def test_queue_priority_then_fifo(memory_db, tmp_path):
    project, spec, _ = await make_spec(memory_db, tmp_path)
    low = await memory_db.add_to_queue("s-low", project.id, priority=0)
    high = await memory_db.add_to_queue("s-high", project.id, priority=5)
    low2 = await memory_db.add_to_queue("s-low2", project.id, priority=0)

    assert [i.id for i in await memory_db.list_queue()] == [high.id, low.id, low2.id]
    assert (await memory_db.dequeue_next()).id == high.id
    assert (await memory_db.dequeue_next()).id == low.id
    assert (await memory_db.dequeue_next()).id == low2.id
    assert await memory_db.dequeue_next() is None


@pytest.mark.asyncio
async def test_queue_reorder(memory_db, tmp_path):
    project, _, _ = await make_spec(memory_db, tmp_path)
    a = await memory_db.add_to_queue("a", project.id)
    b = await memory_db.add_to_queue("b", project.id)
    c = await memory_db.add_to_queue("c", project.id)
    await memory_db.reorder_queue([c.id, a.id, b.id])
    queue = await memory_db.list_queue()
    assert [i.id for i in queue] == [c.id, a.id, b.id]
    assert [i.priority for i in queue] == [3, 2, 1]

    assert await memory_db.remove_from_queue_by_spec("a")
    assert await memory_db.get_queue_item_for_spec("a") is None


# --- Review logs ---

@pytest.mark.asyncio
async def test_review_logs_by_spec_and_chunk(memory_db, tmp_path):
    _, spec, chunks = await make_spec(memory_db, tmp_path, [("A", []), ("B", [])])
    for chunk in chunks.values():
        await memory_db.insert_review_log(ReviewLog(
            id="", spec_id=spec.id, chunk_id=chunk.id, review_type="chunk",
            model="haiku", status="pass",
        ))
    await memory_db.insert_review_log(ReviewLog(
        id="", spec_id=spec.id, review_type="final", model="opus",
        status="error", error_type="timeout", attempt_number=2,
    ))

    assert len(await memory_db.list_review_logs(spec.id)) == 3
    [only] = await memory_db.list_review_logs(spec.id, chunks["A"].id)
    assert only.status == "pass"
    final = (await memory_db.list_review_logs(spec.id))[-1]
    assert final.error_type == "timeout"
    assert final.attempt_number == 2


@pytest.mark.asyncio
async def test_file_db_wal_mode(db, tmp_path):
    """File-backed database works the same (WAL journal)."""
    project = await db.create_project("demo", str(tmp_path))
    assert (await db.get_project(project.id)).directory == str(tmp_path)
