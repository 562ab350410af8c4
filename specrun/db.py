"""SQLite state persistence with WAL mode."""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone

import aiosqlite
import anyio

from .dag import build_dag, check_cycle
from .models import (
    ACTIVE_WORKER_STATUSES,
    Chunk,
    ChunkStatus,
    Project,
    QueueItem,
    ReviewLog,
    ReviewStatus,
    Spec,
    SpecStatus,
    ToolCall,
    ToolCallStatus,
    Worker,
    WorkerProgress,
    WorkerStatus,
    WorkerStep,
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    directory TEXT NOT NULL,
    config TEXT DEFAULT '{}',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS specs (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id),
    title TEXT NOT NULL,
    content TEXT DEFAULT '',
    version INTEGER NOT NULL DEFAULT 1,
    status TEXT NOT NULL DEFAULT 'draft',
    branch_name TEXT,
    original_branch TEXT,
    worktree_path TEXT,
    pr_url TEXT,
    pr_number INTEGER,
    pr_merged INTEGER DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS chunks (
    id TEXT PRIMARY KEY,
    spec_id TEXT NOT NULL REFERENCES specs(id),
    title TEXT NOT NULL,
    description TEXT DEFAULT '',
    "order" INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'pending',
    dependencies TEXT DEFAULT '[]',
    review_status TEXT,
    review_feedback TEXT,
    output TEXT,
    output_summary TEXT,
    error TEXT,
    commit_hash TEXT,
    started_at TEXT,
    completed_at TEXT
);

CREATE TABLE IF NOT EXISTS tool_calls (
    id TEXT PRIMARY KEY,
    chunk_id TEXT NOT NULL REFERENCES chunks(id),
    tool TEXT NOT NULL,
    input TEXT DEFAULT '{}',
    output TEXT,
    status TEXT NOT NULL DEFAULT 'running',
    started_at TEXT NOT NULL,
    completed_at TEXT
);

CREATE TABLE IF NOT EXISTS workers (
    id TEXT PRIMARY KEY,
    spec_id TEXT NOT NULL,
    project_id TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'idle',
    current_chunk_id TEXT,
    current_step TEXT,
    progress_current INTEGER DEFAULT 0,
    progress_total INTEGER DEFAULT 0,
    progress_passed INTEGER DEFAULT 0,
    progress_failed INTEGER DEFAULT 0,
    started_at TEXT NOT NULL,
    completed_at TEXT,
    error TEXT
);

CREATE TABLE IF NOT EXISTS worker_queue (
    id TEXT PRIMARY KEY,
    spec_id TEXT NOT NULL,
    project_id TEXT NOT NULL,
    priority INTEGER NOT NULL DEFAULT 0,
    added_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS review_logs (
    id TEXT PRIMARY KEY,
    chunk_id TEXT,
    spec_id TEXT NOT NULL,
    review_type TEXT NOT NULL,
    model TEXT NOT NULL,
    status TEXT NOT NULL,
    feedback TEXT,
    error_message TEXT,
    error_type TEXT,
    attempt_number INTEGER DEFAULT 1,
    duration_ms INTEGER DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_specs_project ON specs(project_id);
CREATE INDEX IF NOT EXISTS idx_chunks_spec ON chunks(spec_id, "order");
CREATE INDEX IF NOT EXISTS idx_tool_calls_chunk ON tool_calls(chunk_id);
CREATE INDEX IF NOT EXISTS idx_workers_status ON workers(status);
CREATE INDEX IF NOT EXISTS idx_queue_priority ON worker_queue(priority DESC, added_at ASC);
CREATE INDEX IF NOT EXISTS idx_review_logs_spec ON review_logs(spec_id);
"""

_SPEC_FIELDS = {
    "title", "content", "status", "branch_name", "original_branch",
    "worktree_path", "pr_url", "pr_number", "pr_merged",
}
_CHUNK_FIELDS = {
    "title", "description", "order", "status", "dependencies", "review_status",
    "review_feedback", "output", "output_summary", "error", "commit_hash",
    "started_at", "completed_at",
}
_WORKER_FIELDS = {
    "status", "current_chunk_id", "current_step", "started_at",
    "completed_at", "error",
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
    return uuid.uuid4().hex


def _db_value(value):
    if isinstance(value, (SpecStatus, ChunkStatus, ReviewStatus, WorkerStatus,
                          WorkerStep, ToolCallStatus)):
        return value.value
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (list, dict)):
        return json.dumps(value)
    return value


class Database:
    def __init__(self, db_path: str):
        self.db_path = db_path
        self._conn: aiosqlite.Connection | None = None
        # Serializes multi-statement writes on the shared connection.
        self._write_lock = anyio.Lock()

    async def init(self) -> None:
        self._conn = await aiosqlite.connect(self.db_path)
        self._conn.row_factory = aiosqlite.Row
        if self.db_path != ":memory:":
            await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.executescript(_SCHEMA)
        await self._conn.commit()

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    async def _write(self, sql: str, params: tuple = ()) -> int:
        async with self._write_lock:
            cursor = await self._conn.execute(sql, params)
            await self._conn.commit()
            return cursor.rowcount

    async def _fetchone(self, sql: str, params: tuple = ()):
        cursor = await self._conn.execute(sql, params)
        return await cursor.fetchone()

    async def _fetchall(self, sql: str, params: tuple = ()):
        cursor = await self._conn.execute(sql, params)
        return await cursor.fetchall()

    # ---------------------------------------------------------------
    # Projects
    # ---------------------------------------------------------------

    async def create_project(
        self, name: str, directory: str, config: dict | None = None
    ) -> Project:
        now = _now()
        project = Project(
            id=_new_id(), name=name, directory=directory,
            config=config or {}, created_at=now, updated_at=now,
        )
        await self._write(
            "INSERT INTO projects (id, name, directory, config, created_at, updated_at) "
            "VALUES (?,?,?,?,?,?)",
            (project.id, name, directory, json.dumps(project.config), now, now),
        )
        return project

    async def get_project(self, project_id: str) -> Project | None:
        row = await self._fetchone("SELECT * FROM projects WHERE id = ?", (project_id,))
        return self._row_to_project(row) if row else None

    async def list_projects(self) -> list[Project]:
        rows = await self._fetchall("SELECT * FROM projects ORDER BY created_at")
        return [self._row_to_project(r) for r in rows]

    async def delete_project(self, project_id: str) -> bool:
        for spec in await self.list_specs(project_id):
            await self.delete_spec(spec.id)
        return await self._write("DELETE FROM projects WHERE id = ?", (project_id,)) > 0

    # ---------------------------------------------------------------
    # Specs
    # ---------------------------------------------------------------

    async def create_spec(self, project_id: str, title: str, content: str = "") -> Spec:
        now = _now()
        spec = Spec(
            id=_new_id(), project_id=project_id, title=title, content=content,
            created_at=now, updated_at=now,
        )
        await self._write(
            "INSERT INTO specs (id, project_id, title, content, version, status, "
            "created_at, updated_at) VALUES (?,?,?,?,?,?,?,?)",
            (spec.id, project_id, title, content, spec.version,
             spec.status.value, now, now),
        )
        return spec

    async def get_spec(self, spec_id: str) -> Spec | None:
        row = await self._fetchone("SELECT * FROM specs WHERE id = ?", (spec_id,))
        return self._row_to_spec(row) if row else None

    async def list_specs(self, project_id: str) -> list[Spec]:
        rows = await self._fetchall(
            "SELECT * FROM specs WHERE project_id = ? ORDER BY created_at",
            (project_id,),
        )
        return [self._row_to_spec(r) for r in rows]

    async def list_specs_with_worktrees(self) -> list[Spec]:
        rows = await self._fetchall(
            "SELECT * FROM specs WHERE worktree_path IS NOT NULL ORDER BY created_at"
        )
        return [self._row_to_spec(r) for r in rows]

    async def update_spec(self, spec_id: str, **fields) -> Spec | None:
        """Update spec fields; every update bumps ``version`` by one."""
        unknown = set(fields) - _SPEC_FIELDS
        if unknown:
            raise ValueError(f"Unknown spec fields: {sorted(unknown)}")
        if fields:
            assignments = ", ".join(f"{k} = ?" for k in fields)
            params = tuple(_db_value(v) for v in fields.values())
            await self._write(
                f"UPDATE specs SET {assignments}, version = version + 1, "
                "updated_at = ? WHERE id = ?",
                params + (_now(), spec_id),
            )
        return await self.get_spec(spec_id)

    async def delete_spec(self, spec_id: str) -> bool:
        async with self._write_lock:
            await self._conn.execute(
                "DELETE FROM tool_calls WHERE chunk_id IN "
                "(SELECT id FROM chunks WHERE spec_id = ?)",
                (spec_id,),
            )
            await self._conn.execute("DELETE FROM chunks WHERE spec_id = ?", (spec_id,))
            cursor = await self._conn.execute("DELETE FROM specs WHERE id = ?", (spec_id,))
            await self._conn.commit()
            return cursor.rowcount > 0

    # ---------------------------------------------------------------
    # Chunks
    # ---------------------------------------------------------------

    async def _check_graph(self, spec_id: str, chunk_id: str, dependencies: list[str]) -> None:
        chunks = await self.list_chunks(spec_id)
        graph = build_dag([c for c in chunks if c.id != chunk_id])
        graph[chunk_id] = set(dependencies)
        check_cycle(graph)

    async def create_chunk(
        self,
        spec_id: str,
        title: str,
        description: str = "",
        order: int | None = None,
        dependencies: list[str] | None = None,
    ) -> Chunk:
        """Append a chunk. Unknown dependencies and cycles raise SpecrunDAGError."""
        dependencies = list(dependencies or [])
        chunk_id = _new_id()
        await self._check_graph(spec_id, chunk_id, dependencies)
        if order is None:
            row = await self._fetchone(
                'SELECT COALESCE(MAX("order"), -1) + 1 AS next FROM chunks WHERE spec_id = ?',
                (spec_id,),
            )
            order = row["next"]
        chunk = Chunk(
            id=chunk_id, spec_id=spec_id, title=title, description=description,
            order=order, dependencies=dependencies,
        )
        await self._write(
            'INSERT INTO chunks (id, spec_id, title, description, "order", status, '
            "dependencies) VALUES (?,?,?,?,?,?,?)",
            (chunk.id, spec_id, title, description, order,
             chunk.status.value, json.dumps(dependencies)),
        )
        return chunk

    async def get_chunk(self, chunk_id: str) -> Chunk | None:
        row = await self._fetchone("SELECT * FROM chunks WHERE id = ?", (chunk_id,))
        return self._row_to_chunk(row) if row else None

    async def list_chunks(self, spec_id: str) -> list[Chunk]:
        rows = await self._fetchall(
            'SELECT * FROM chunks WHERE spec_id = ? ORDER BY "order", rowid',
            (spec_id,),
        )
        return [self._row_to_chunk(r) for r in rows]

    async def update_chunk(self, chunk_id: str, **fields) -> Chunk | None:
        unknown = set(fields) - _CHUNK_FIELDS
        if unknown:
            raise ValueError(f"Unknown chunk fields: {sorted(unknown)}")
        if "dependencies" in fields:
            chunk = await self.get_chunk(chunk_id)
            if chunk is not None:
                await self._check_graph(chunk.spec_id, chunk_id, fields["dependencies"])
        if fields:
            assignments = ", ".join(f'"{k}" = ?' for k in fields)
            params = tuple(_db_value(v) for v in fields.values())
            await self._write(
                f"UPDATE chunks SET {assignments} WHERE id = ?", params + (chunk_id,)
            )
        return await self.get_chunk(chunk_id)

    async def delete_chunk(self, chunk_id: str) -> bool:
        async with self._write_lock:
            await self._conn.execute("DELETE FROM tool_calls WHERE chunk_id = ?", (chunk_id,))
            cursor = await self._conn.execute("DELETE FROM chunks WHERE id = ?", (chunk_id,))
            await self._conn.commit()
            return cursor.rowcount > 0

    async def insert_fix_chunk(
        self, after_chunk_id: str, title: str, description: str
    ) -> Chunk | None:
        """Insert a pending chunk right after ``after_chunk_id``, depending on it.

        Chunks of the same spec with ``order >= original.order + 1`` shift by
        one; renumbering and insert commit together.
        """
        original = await self.get_chunk(after_chunk_id)
        if original is None:
            return None
        new_order = original.order + 1
        chunk = Chunk(
            id=_new_id(), spec_id=original.spec_id, title=title,
            description=description, order=new_order,
            dependencies=[after_chunk_id],
        )
        async with self._write_lock:
            try:
                await self._conn.execute(
                    'UPDATE chunks SET "order" = "order" + 1 '
                    'WHERE spec_id = ? AND "order" >= ?',
                    (original.spec_id, new_order),
                )
                await self._conn.execute(
                    'INSERT INTO chunks (id, spec_id, title, description, "order", '
                    "status, dependencies) VALUES (?,?,?,?,?,?,?)",
                    (chunk.id, chunk.spec_id, title, description, new_order,
                     chunk.status.value, json.dumps(chunk.dependencies)),
                )
                await self._conn.commit()
            except Exception:
                await self._conn.rollback()
                raise
        return chunk

    # ---------------------------------------------------------------
    # Tool calls
    # ---------------------------------------------------------------

    async def create_tool_call(
        self, chunk_id: str, tool: str, input: dict | None = None, call_id: str | None = None
    ) -> ToolCall:
        call = ToolCall(
            id=call_id or _new_id(), chunk_id=chunk_id, tool=tool,
            input=input or {}, started_at=_now(),
        )
        await self._write(
            "INSERT OR IGNORE INTO tool_calls (id, chunk_id, tool, input, status, started_at) "
            "VALUES (?,?,?,?,?,?)",
            (call.id, chunk_id, tool, json.dumps(call.input),
             call.status.value, call.started_at),
        )
        return call

    async def complete_tool_call(
        self, call_id: str, output: str | None, status: ToolCallStatus = ToolCallStatus.COMPLETED
    ) -> None:
        await self._write(
            "UPDATE tool_calls SET output = ?, status = ?, completed_at = ? WHERE id = ?",
            (output, status.value, _now(), call_id),
        )

    async def list_tool_calls(self, chunk_id: str) -> list[ToolCall]:
        rows = await self._fetchall(
            "SELECT * FROM tool_calls WHERE chunk_id = ? ORDER BY started_at, rowid",
            (chunk_id,),
        )
        return [self._row_to_tool_call(r) for r in rows]

    # ---------------------------------------------------------------
    # Workers
    # ---------------------------------------------------------------

    async def create_worker(self, spec_id: str, project_id: str, total: int = 0) -> Worker:
        worker = Worker(
            id=_new_id(), spec_id=spec_id, project_id=project_id,
            progress=WorkerProgress(total=total), started_at=_now(),
        )
        await self._write(
            "INSERT INTO workers (id, spec_id, project_id, status, progress_total, started_at) "
            "VALUES (?,?,?,?,?,?)",
            (worker.id, spec_id, project_id, worker.status.value, total, worker.started_at),
        )
        return worker

    async def get_worker(self, worker_id: str) -> Worker | None:
        row = await self._fetchone("SELECT * FROM workers WHERE id = ?", (worker_id,))
        return self._row_to_worker(row) if row else None

    async def get_active_worker_for_spec(self, spec_id: str) -> Worker | None:
        placeholders = ",".join("?" for _ in ACTIVE_WORKER_STATUSES)
        row = await self._fetchone(
            f"SELECT * FROM workers WHERE spec_id = ? AND status IN ({placeholders}) "
            "ORDER BY started_at DESC",
            (spec_id, *(s.value for s in ACTIVE_WORKER_STATUSES)),
        )
        return self._row_to_worker(row) if row else None

    async def list_active_workers(self) -> list[Worker]:
        placeholders = ",".join("?" for _ in ACTIVE_WORKER_STATUSES)
        rows = await self._fetchall(
            f"SELECT * FROM workers WHERE status IN ({placeholders}) ORDER BY started_at",
            tuple(s.value for s in ACTIVE_WORKER_STATUSES),
        )
        return [self._row_to_worker(r) for r in rows]

    async def list_workers(self) -> list[Worker]:
        rows = await self._fetchall("SELECT * FROM workers ORDER BY started_at DESC")
        return [self._row_to_worker(r) for r in rows]

    async def update_worker(
        self, worker_id: str, progress: WorkerProgress | None = None, **fields
    ) -> Worker | None:
        unknown = set(fields) - _WORKER_FIELDS
        if unknown:
            raise ValueError(f"Unknown worker fields: {sorted(unknown)}")
        columns = dict(fields)
        if progress is not None:
            columns.update(
                progress_current=progress.current,
                progress_total=progress.total,
                progress_passed=progress.passed,
                progress_failed=progress.failed,
            )
        if columns:
            assignments = ", ".join(f"{k} = ?" for k in columns)
            params = tuple(_db_value(v) for v in columns.values())
            await self._write(
                f"UPDATE workers SET {assignments} WHERE id = ?", params + (worker_id,)
            )
        return await self.get_worker(worker_id)

    async def delete_worker(self, worker_id: str) -> bool:
        return await self._write("DELETE FROM workers WHERE id = ?", (worker_id,)) > 0

    async def mark_interrupted_workers(self) -> int:
        """Fail every idle/running worker left over from a previous process."""
        return await self._write(
            "UPDATE workers SET status = ?, error = ?, completed_at = ? "
            "WHERE status IN (?, ?)",
            (WorkerStatus.FAILED.value, "Worker interrupted by restart", _now(),
             WorkerStatus.RUNNING.value, WorkerStatus.IDLE.value),
        )

    async def fail_interrupted_chunks(self, spec_id: str) -> int:
        """Fail chunks of ``spec_id`` left running by a previous process."""
        return await self._write(
            "UPDATE chunks SET status = ?, error = ? WHERE spec_id = ? AND status = ?",
            (ChunkStatus.FAILED.value, "Chunk interrupted by restart", spec_id,
             ChunkStatus.RUNNING.value),
        )

    # ---------------------------------------------------------------
    # Worker queue
    # ---------------------------------------------------------------

    async def add_to_queue(self, spec_id: str, project_id: str, priority: int = 0) -> QueueItem:
        item = QueueItem(
            id=_new_id(), spec_id=spec_id, project_id=project_id,
            priority=priority, added_at=_now(),
        )
        await self._write(
            "INSERT INTO worker_queue (id, spec_id, project_id, priority, added_at) "
            "VALUES (?,?,?,?,?)",
            (item.id, spec_id, project_id, priority, item.added_at),
        )
        return item

    async def list_queue(self) -> list[QueueItem]:
        rows = await self._fetchall(
            "SELECT * FROM worker_queue ORDER BY priority DESC, added_at ASC, rowid ASC"
        )
        return [self._row_to_queue_item(r) for r in rows]

    async def get_queue_item_for_spec(self, spec_id: str) -> QueueItem | None:
        row = await self._fetchone(
            "SELECT * FROM worker_queue WHERE spec_id = ?", (spec_id,)
        )
        return self._row_to_queue_item(row) if row else None

    async def dequeue_next(self) -> QueueItem | None:
        """Remove and return the highest-priority, earliest queue item."""
        async with self._write_lock:
            cursor = await self._conn.execute(
                "SELECT * FROM worker_queue ORDER BY priority DESC, added_at ASC, rowid ASC "
                "LIMIT 1"
            )
            row = await cursor.fetchone()
            if row is None:
                return None
            await self._conn.execute("DELETE FROM worker_queue WHERE id = ?", (row["id"],))
            await self._conn.commit()
        return self._row_to_queue_item(row)

    async def remove_from_queue(self, item_id: str) -> bool:
        return await self._write("DELETE FROM worker_queue WHERE id = ?", (item_id,)) > 0

    async def remove_from_queue_by_spec(self, spec_id: str) -> bool:
        return await self._write(
            "DELETE FROM worker_queue WHERE spec_id = ?", (spec_id,)
        ) > 0

    async def reorder_queue(self, item_ids: list[str]) -> None:
        """Assign priorities so the queue runs in ``item_ids`` order."""
        async with self._write_lock:
            for index, item_id in enumerate(item_ids):
                await self._conn.execute(
                    "UPDATE worker_queue SET priority = ? WHERE id = ?",
                    (len(item_ids) - index, item_id),
                )
            await self._conn.commit()

    # ---------------------------------------------------------------
    # Review logs
    # ---------------------------------------------------------------

    async def insert_review_log(self, log: ReviewLog) -> ReviewLog:
        if not log.id:
            log.id = _new_id()
        if not log.created_at:
            log.created_at = _now()
        await self._write(
            "INSERT INTO review_logs (id, chunk_id, spec_id, review_type, model, status, "
            "feedback, error_message, error_type, attempt_number, duration_ms, created_at) "
            "VALUES (?,?,?,?,?,?,?,?,?,?,?,?)",
            (log.id, log.chunk_id, log.spec_id, log.review_type, log.model, log.status,
             log.feedback, log.error_message, log.error_type, log.attempt_number,
             log.duration_ms, log.created_at),
        )
        return log

    async def list_review_logs(
        self, spec_id: str, chunk_id: str | None = None
    ) -> list[ReviewLog]:
        if chunk_id:
            rows = await self._fetchall(
                "SELECT * FROM review_logs WHERE spec_id = ? AND chunk_id = ? "
                "ORDER BY created_at, rowid",
                (spec_id, chunk_id),
            )
        else:
            rows = await self._fetchall(
                "SELECT * FROM review_logs WHERE spec_id = ? ORDER BY created_at, rowid",
                (spec_id,),
            )
        return [self._row_to_review_log(r) for r in rows]

    # ---------------------------------------------------------------
    # Helpers
    # ---------------------------------------------------------------

    @staticmethod
    def _row_to_project(row) -> Project:
        return Project(
            id=row["id"],
            name=row["name"],
            directory=row["directory"],
            config=json.loads(row["config"]) if row["config"] else {},
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_spec(row) -> Spec:
        return Spec(
            id=row["id"],
            project_id=row["project_id"],
            title=row["title"],
            content=row["content"] or "",
            version=row["version"],
            status=SpecStatus(row["status"]),
            branch_name=row["branch_name"],
            original_branch=row["original_branch"],
            worktree_path=row["worktree_path"],
            pr_url=row["pr_url"],
            pr_number=row["pr_number"],
            pr_merged=bool(row["pr_merged"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_chunk(row) -> Chunk:
        return Chunk(
            id=row["id"],
            spec_id=row["spec_id"],
            title=row["title"],
            description=row["description"] or "",
            order=row["order"],
            status=ChunkStatus(row["status"]),
            dependencies=json.loads(row["dependencies"]) if row["dependencies"] else [],
            review_status=ReviewStatus(row["review_status"]) if row["review_status"] else None,
            review_feedback=row["review_feedback"],
            output=row["output"],
            output_summary=row["output_summary"],
            error=row["error"],
            commit_hash=row["commit_hash"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
        )

    @staticmethod
    def _row_to_tool_call(row) -> ToolCall:
        return ToolCall(
            id=row["id"],
            chunk_id=row["chunk_id"],
            tool=row["tool"],
            input=json.loads(row["input"]) if row["input"] else {},
            output=row["output"],
            status=ToolCallStatus(row["status"]),
            started_at=row["started_at"],
            completed_at=row["completed_at"],
        )

    @staticmethod
    def _row_to_worker(row) -> Worker:
        return Worker(
            id=row["id"],
            spec_id=row["spec_id"],
            project_id=row["project_id"],
            status=WorkerStatus(row["status"]),
            current_chunk_id=row["current_chunk_id"],
            current_step=WorkerStep(row["current_step"]) if row["current_step"] else None,
            progress=WorkerProgress(
                current=row["progress_current"],
                total=row["progress_total"],
                passed=row["progress_passed"],
                failed=row["progress_failed"],
            ),
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            error=row["error"],
        )

    @staticmethod
    def _row_to_queue_item(row) -> QueueItem:
        return QueueItem(
            id=row["id"],
            spec_id=row["spec_id"],
            project_id=row["project_id"],
            priority=row["priority"],
            added_at=row["added_at"],
        )

    @staticmethod
    def _row_to_review_log(row) -> ReviewLog:
        return ReviewLog(
            id=row["id"],
            chunk_id=row["chunk_id"],
            spec_id=row["spec_id"],
            review_type=row["review_type"],
            model=row["model"],
            status=row["status"],
            feedback=row["feedback"],
            error_message=row["error_message"],
            error_type=row["error_type"],
            attempt_number=row["attempt_number"],
            duration_ms=row["duration_ms"],
            created_at=row["created_at"],
        )
