"""Worker pool: bounded concurrent spec runs with a priority queue."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Awaitable, Callable

import anyio

from .config import Config
from .db import Database, _now
from .events import Event, EventChannel
from .executor import ExecutionRegistry
from .models import (
    RUNNABLE_STATUSES,
    QueueItem,
    RunStats,
    SpecStatus,
    Worker,
    WorkerProgress,
    WorkerStatus,
    WorkerStep,
)
from .notifier import Notifier
from .orchestrator import SpecRunner, create_spec_runner

logger = logging.getLogger(__name__)

RUNNER_HISTORY = 1000

RunnerFactory = Callable[
    [Database, Config, str, EventChannel, ExecutionRegistry], Awaitable[SpecRunner]
]


class WorkerError(RuntimeError):
    """A worker request was rejected."""


@dataclass
class _WorkerHandle:
    worker_id: str
    spec_id: str
    runner: SpecRunner
    channel: EventChannel
    progress: WorkerProgress
    seen_chunks: set[str] = field(default_factory=set)
    stopped: bool = False
    done: anyio.Event = field(default_factory=anyio.Event)


class WorkerPool:
    """Runs up to ``max_workers`` specs at once; the rest wait in the queue.

    Use as an async context manager: the pool owns the task group its
    workers run in, and leaving the block waits for them.
    """

    def __init__(
        self,
        db: Database,
        config: Config,
        runner_factory: RunnerFactory | None = None,
        notifier: Notifier | None = None,
    ):
        self.db = db
        self.config = config
        self.max_workers = max(1, config.max_workers)
        self.runner_factory = runner_factory or _default_runner_factory
        self.notifier = notifier or Notifier(config.notify.webhook_url, config.notify.events)
        self.channel = EventChannel(history=config.event_buffer_size)
        self.registry = ExecutionRegistry()
        self._handles: dict[str, _WorkerHandle] = {}
        self._tg: anyio.abc.TaskGroup | None = None
        self._start_lock = anyio.Lock()
        self._draining = False
        self._drain_requested = False
        self._changed = anyio.Event()

    async def __aenter__(self) -> WorkerPool:
        await self.restore()
        self._tg = anyio.create_task_group()
        await self._tg.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if exc_type is not None:
            self._tg.cancel_scope.cancel()
        try:
            return await self._tg.__aexit__(exc_type, exc, tb)
        finally:
            self._tg = None
            self.channel.close()

    # -- state ---------------------------------------------------------

    async def restore(self) -> int:
        """Fail workers left running or idle by a previous process.

        Their chunks still marked running are failed too, so the next run
        picks them up again.
        """
        stale = [
            w for w in await self.db.list_active_workers()
            if w.status in (WorkerStatus.RUNNING, WorkerStatus.IDLE)
        ]
        count = await self.db.mark_interrupted_workers()
        for worker in stale:
            chunks = await self.db.fail_interrupted_chunks(worker.spec_id)
            if chunks:
                logger.warning("Failed %d interrupted chunk(s) of spec %s", chunks, worker.spec_id)
            spec = await self.db.get_spec(worker.spec_id)
            if spec is not None and spec.status == SpecStatus.RUNNING:
                await self.db.update_spec(spec.id, status=SpecStatus.REVIEW)
        if count:
            logger.warning("Marked %d interrupted worker(s) as failed", count)
        return count

    @property
    def active_count(self) -> int:
        return len(self._handles)

    def has_capacity(self) -> bool:
        return len(self._handles) < self.max_workers

    def set_max_workers(self, value: int) -> None:
        self.max_workers = max(1, value)
        if self._tg is not None:
            self._tg.start_soon(self._drain_queue)

    async def workers(self) -> list[Worker]:
        return await self.db.list_workers()

    async def active_workers(self) -> list[Worker]:
        return await self.db.list_active_workers()

    def subscribe(self):
        """Pool event stream; recent history is replayed first."""
        return self.channel.subscribe()

    def _emit(self, type: str, worker_id: str | None = None, spec_id: str | None = None,
              chunk_id: str | None = None, **data) -> Event:
        return self.channel.emit(
            type, worker_id=worker_id, spec_id=spec_id, chunk_id=chunk_id, data=data
        )

    # -- starting ------------------------------------------------------

    async def _is_active(self, spec_id: str) -> bool:
        if any(h.spec_id == spec_id for h in self._handles.values()):
            return True
        return await self.db.get_active_worker_for_spec(spec_id) is not None

    async def start_worker(self, spec_id: str) -> Worker:
        if self._tg is None:
            raise WorkerError("Worker pool is not running")
        async with self._start_lock:
            if await self._is_active(spec_id):
                raise WorkerError("A worker is already active for this spec")
            if not self.has_capacity():
                raise WorkerError(
                    f"All worker slots in use ({len(self._handles)}/{self.max_workers})"
                )

            spec = await self.db.get_spec(spec_id)
            if spec is None:
                raise WorkerError("Spec not found")
            if await self.db.get_project(spec.project_id) is None:
                raise WorkerError("Project not found")
            pending = [c for c in await self.db.list_chunks(spec_id)
                       if c.status in RUNNABLE_STATUSES]
            if not pending:
                raise WorkerError("No pending chunks to execute")

            channel = EventChannel(history=RUNNER_HISTORY)
            runner = await self.runner_factory(
                self.db, self.config, spec_id, channel, self.registry
            )
            worker = await self.db.create_worker(spec_id, spec.project_id, total=len(pending))
            worker = await self.db.update_worker(worker.id, status=WorkerStatus.RUNNING)
            handle = _WorkerHandle(
                worker_id=worker.id,
                spec_id=spec_id,
                runner=runner,
                channel=channel,
                progress=WorkerProgress(total=len(pending)),
            )
            self._handles[worker.id] = handle
            self._tg.start_soon(self._run_worker, handle)

        logger.info("Started worker %s for spec %s", worker.id, spec_id)
        self._emit("worker_started", worker.id, spec_id, title=spec.title)
        return worker

    async def submit(self, spec_id: str, priority: int = 0) -> Worker | QueueItem:
        """Start ``spec_id`` now if a slot is free, otherwise queue it."""
        queued = await self.db.get_queue_item_for_spec(spec_id)
        if queued is not None:
            return queued
        if self.has_capacity():
            return await self.start_worker(spec_id)
        return await self.add_to_queue(spec_id, priority)

    # -- worker task ---------------------------------------------------

    async def _run_worker(self, handle: _WorkerHandle) -> None:
        stats: RunStats | None = None
        error: str | None = None
        receive = handle.channel.subscribe()
        try:
            async with anyio.create_task_group() as tg:
                tg.start_soon(self._relay, handle, receive)
                try:
                    stats = await handle.runner.run()
                except Exception as e:
                    logger.exception("Worker %s crashed", handle.worker_id)
                    error = str(e) or type(e).__name__
                finally:
                    handle.channel.close()
            await self._finish_worker(handle, stats, error)
        finally:
            self._handles.pop(handle.worker_id, None)
            handle.done.set()
            self._changed.set()
            self._changed = anyio.Event()
        await self._drain_queue()

    async def _relay(self, handle: _WorkerHandle, receive) -> None:
        async with receive:
            async for event in receive:
                await self._on_runner_event(handle, event)

    async def _on_runner_event(self, handle: _WorkerHandle, event: Event) -> None:
        progress = handle.progress
        wid, sid = handle.worker_id, handle.spec_id
        if event.type == "chunk_start":
            if event.chunk_id not in handle.seen_chunks:
                handle.seen_chunks.add(event.chunk_id)
                progress.current += 1
                progress.total = max(progress.total, progress.current)
            await self._update_progress(handle, event.chunk_id, WorkerStep.EXECUTING)
            self._emit("worker_chunk_start", wid, sid, event.chunk_id, **event.data)
        elif event.type == "review_start":
            await self._update_progress(handle, event.chunk_id, WorkerStep.REVIEWING)
            self._emit("worker_review_start", wid, sid, event.chunk_id, **event.data)
        elif event.type == "review_complete":
            self._emit("worker_review_complete", wid, sid, event.chunk_id, **event.data)
        elif event.type == "chunk_complete":
            status = event.data.get("status")
            if status == "pass":
                progress.passed += 1
            elif status in ("fail", "error"):
                progress.failed += 1
            await self._update_progress(handle, None, None)
            self._emit("worker_chunk_complete", wid, sid, event.chunk_id, **event.data)
        elif event.type == "chunk_cancelled":
            self._emit("worker_chunk_cancelled", wid, sid, event.chunk_id, **event.data)

    async def _update_progress(
        self, handle: _WorkerHandle, chunk_id: str | None, step: WorkerStep | None
    ) -> None:
        status = WorkerStatus.PAUSED if handle.runner.paused else WorkerStatus.RUNNING
        await self.db.update_worker(
            handle.worker_id, progress=handle.progress,
            status=status, current_chunk_id=chunk_id, current_step=step,
        )
        self._emit(
            "worker_progress", handle.worker_id, handle.spec_id, chunk_id,
            current_step=step.value if step else None, progress=asdict(handle.progress),
        )

    async def _finish_worker(
        self, handle: _WorkerHandle, stats: RunStats | None, error: str | None
    ) -> None:
        if stats is not None and error is None:
            if handle.stopped:
                error = "Stopped by user"
            elif stats.aborted:
                error = "Aborted"
            elif stats.failed or stats.skipped:
                error = f"{stats.failed} failed, {stats.skipped} skipped of {stats.total} chunks"

        data = {"progress": asdict(handle.progress)}
        if stats is not None:
            data["stats"] = asdict(stats)
        if error is None:
            await self.db.update_worker(
                handle.worker_id, progress=handle.progress, status=WorkerStatus.COMPLETED,
                current_chunk_id=None, current_step=None, completed_at=_now(),
            )
            event = self._emit("worker_completed", handle.worker_id, handle.spec_id, **data)
            logger.info("Worker %s completed", handle.worker_id)
        else:
            await self.db.update_worker(
                handle.worker_id, progress=handle.progress, status=WorkerStatus.FAILED,
                current_chunk_id=None, current_step=None, completed_at=_now(), error=error,
            )
            event = self._emit(
                "worker_failed", handle.worker_id, handle.spec_id, error=error, **data
            )
            logger.info("Worker %s failed: %s", handle.worker_id, error)
        await self.notifier.notify(event)

    async def _drain_queue(self) -> None:
        if self._tg is None:
            return
        if self._draining:
            self._drain_requested = True
            return
        self._draining = True
        try:
            self._drain_requested = True
            while self._drain_requested:
                self._drain_requested = False
                while self.has_capacity():
                    item = await self.db.dequeue_next()
                    if item is None:
                        break
                    try:
                        await self.start_worker(item.spec_id)
                    except WorkerError as e:
                        logger.warning("Could not start queued spec %s: %s", item.spec_id, e)
            self._emit("queue_updated", queue=[asdict(i) for i in await self.db.list_queue()])
        finally:
            self._draining = False

    async def wait_until_idle(self) -> None:
        """Return once no worker runs and nothing is queued."""
        while self._handles or (self.has_capacity() and await self.db.list_queue()):
            if not self._handles:
                await self._drain_queue()
                continue
            changed = self._changed
            await changed.wait()

    # -- control -------------------------------------------------------

    def _handle(self, worker_id: str) -> _WorkerHandle:
        handle = self._handles.get(worker_id)
        if handle is None:
            raise WorkerError("Worker not found")
        return handle

    async def stop_worker(self, worker_id: str) -> None:
        handle = self._handles.get(worker_id)
        if handle is None:
            await self.db.delete_worker(worker_id)
            return
        handle.stopped = True
        handle.runner.abort()
        await handle.done.wait()
        self._emit("worker_stopped", worker_id, handle.spec_id, reason="Stopped by user")

    async def pause_worker(self, worker_id: str) -> None:
        handle = self._handle(worker_id)
        handle.runner.pause()
        await self.db.update_worker(worker_id, status=WorkerStatus.PAUSED)
        self._emit("worker_paused", worker_id, handle.spec_id)

    async def resume_worker(self, worker_id: str) -> None:
        handle = self._handle(worker_id)
        handle.runner.resume()
        await self.db.update_worker(worker_id, status=WorkerStatus.RUNNING)
        self._emit("worker_resumed", worker_id, handle.spec_id)

    async def stop_all(self) -> None:
        async with anyio.create_task_group() as tg:
            for worker_id in list(self._handles):
                tg.start_soon(self.stop_worker, worker_id)

    async def pause_all(self) -> None:
        for worker_id in list(self._handles):
            await self.pause_worker(worker_id)

    async def resume_all(self) -> None:
        for worker_id, handle in list(self._handles.items()):
            if handle.runner.paused:
                await self.resume_worker(worker_id)

    # -- queue ---------------------------------------------------------

    async def add_to_queue(self, spec_id: str, priority: int = 0) -> QueueItem:
        if await self.db.get_queue_item_for_spec(spec_id) is not None:
            raise WorkerError("Spec is already queued")
        if await self._is_active(spec_id):
            raise WorkerError("A worker is already active for this spec")
        spec = await self.db.get_spec(spec_id)
        if spec is None:
            raise WorkerError("Spec not found")
        item = await self.db.add_to_queue(spec_id, spec.project_id, priority)
        self._emit("queue_updated", spec_id=spec_id,
                   queue=[asdict(i) for i in await self.db.list_queue()])
        return item

    async def queue(self) -> list[QueueItem]:
        return await self.db.list_queue()

    async def remove_from_queue(self, item_id: str) -> bool:
        return await self.db.remove_from_queue(item_id)

    async def reorder_queue(self, item_ids: list[str]) -> None:
        await self.db.reorder_queue(item_ids)


async def _default_runner_factory(
    db: Database,
    config: Config,
    spec_id: str,
    channel: EventChannel,
    registry: ExecutionRegistry,
) -> SpecRunner:
    return await create_spec_runner(db, config, spec_id, channel=channel, registry=registry)
