"""Chunk execution against a code-generation backend."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import AsyncIterator, Protocol

import anyio

from .db import Database, _now
from .events import Event, EventChannel
from .models import Chunk, ChunkStatus, ExecutionResult, ToolCallStatus
from .prompts import build_chunk_prompt, files_touched, quick_summary

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SEC = 15 * 60
EXECUTION_HISTORY = 1000


@dataclass
class BackendEvent:
    """One item of a backend session's event stream."""

    kind: str  # tool_call | text | error | complete
    text: str = ""
    call_id: str | None = None
    tool: str | None = None
    input: dict = field(default_factory=dict)
    output: str | None = None
    state: str = "running"  # running | completed | error
    error: str | None = None


class ExecutionBackend(Protocol):
    name: str

    async def check_health(self) -> bool: ...

    async def start_session(self, working_dir: str) -> str: ...

    async def send_prompt(self, session_id: str, prompt: str, model: str | None = None) -> None: ...

    def events(self, session_id: str) -> AsyncIterator[BackendEvent]: ...

    async def abort_session(self, session_id: str) -> None: ...


# ---------------------------------------------------------------------------
# Registry of in-flight executions
# ---------------------------------------------------------------------------

@dataclass
class ActiveExecution:
    chunk_id: str
    spec_id: str
    channel: EventChannel
    session_id: str | None = None
    abort_event: anyio.Event = field(default_factory=anyio.Event)
    started: float = field(default_factory=time.monotonic)
    output_parts: list[str] = field(default_factory=list)
    tool_call_ids: dict[str, str] = field(default_factory=dict)
    error: str | None = None
    completed: bool = False
    aborted: bool = False
    timed_out: bool = False


class ExecutionRegistry:
    """In-flight executions keyed by chunk id, at most one per spec."""

    def __init__(self):
        self._by_chunk: dict[str, ActiveExecution] = {}

    def register(self, execution: ActiveExecution) -> None:
        if execution.chunk_id in self._by_chunk:
            raise RuntimeError(f"Chunk {execution.chunk_id} is already executing")
        if self.lookup_spec(execution.spec_id) is not None:
            raise RuntimeError(f"Spec {execution.spec_id} already has a chunk executing")
        self._by_chunk[execution.chunk_id] = execution

    def lookup(self, chunk_id: str) -> ActiveExecution | None:
        return self._by_chunk.get(chunk_id)

    def lookup_spec(self, spec_id: str) -> ActiveExecution | None:
        return next((e for e in self._by_chunk.values() if e.spec_id == spec_id), None)

    def remove(self, chunk_id: str) -> ActiveExecution | None:
        return self._by_chunk.pop(chunk_id, None)

    def __len__(self) -> int:
        return len(self._by_chunk)


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------

class ChunkExecutor:
    """Runs one chunk through a backend session, recording what it does."""

    def __init__(
        self,
        db: Database,
        backend: ExecutionBackend,
        registry: ExecutionRegistry | None = None,
        timeout_sec: float = DEFAULT_TIMEOUT_SEC,
        model: str | None = None,
        channel: EventChannel | None = None,
    ):
        self.db = db
        self.backend = backend
        self.registry = registry or ExecutionRegistry()
        self.timeout_sec = timeout_sec
        self.model = model
        self.channel = channel

    def abort(self, chunk_id: str) -> bool:
        execution = self.registry.lookup(chunk_id)
        if execution is None:
            return False
        execution.abort_event.set()
        return True

    def subscribe(self, chunk_id: str):
        """Live event stream of an executing chunk, with its history replayed."""
        execution = self.registry.lookup(chunk_id)
        return execution.channel.subscribe() if execution else None

    def _publish(self, execution: ActiveExecution, type: str, **data) -> None:
        event = Event(type=type, spec_id=execution.spec_id, chunk_id=execution.chunk_id, data=data)
        execution.channel.publish(event)
        if self.channel is not None:
            self.channel.publish(event)

    async def _fail(self, chunk: Chunk, message: str) -> ExecutionResult:
        logger.error("Chunk %s failed before execution: %s", chunk.id, message)
        await self.db.update_chunk(
            chunk.id, status=ChunkStatus.FAILED, error=message, completed_at=_now()
        )
        return ExecutionResult(status=ChunkStatus.FAILED, error=message)

    async def build_prompt(self, chunk: Chunk) -> str:
        spec = await self.db.get_spec(chunk.spec_id)
        siblings = {c.id: c for c in await self.db.list_chunks(chunk.spec_id)}
        dependencies = [siblings[d] for d in chunk.dependencies if d in siblings]
        dependency_files = {
            dep.id: files_touched(await self.db.list_tool_calls(dep.id))
            for dep in dependencies
        }
        return build_chunk_prompt(chunk, spec, dependencies, dependency_files)

    async def execute(self, chunk_id: str, working_dir: str) -> ExecutionResult:
        chunk = await self.db.get_chunk(chunk_id)
        if chunk is None:
            return ExecutionResult(status=ChunkStatus.FAILED, error="Chunk not found")

        try:
            healthy = await self.backend.check_health()
        except Exception:
            logger.exception("Health check of %s failed", self.backend.name)
            healthy = False
        if not healthy:
            return await self._fail(chunk, f"Execution backend {self.backend.name} is unavailable")

        execution = ActiveExecution(
            chunk_id=chunk.id,
            spec_id=chunk.spec_id,
            channel=EventChannel(history=EXECUTION_HISTORY),
        )
        self.registry.register(execution)
        try:
            return await self._run(chunk, working_dir, execution)
        finally:
            self.registry.remove(chunk.id)
            execution.channel.close()

    async def _run(
        self, chunk: Chunk, working_dir: str, execution: ActiveExecution
    ) -> ExecutionResult:
        await self.db.update_chunk(
            chunk.id,
            status=ChunkStatus.RUNNING,
            started_at=_now(),
            completed_at=None,
            error=None,
            output=None,
            review_status=None,
            review_feedback=None,
            commit_hash=None,
        )
        self._publish(execution, "execution_start", title=chunk.title)

        try:
            prompt = await self.build_prompt(chunk)
            execution.session_id = await self.backend.start_session(working_dir)
            await self.backend.send_prompt(execution.session_id, prompt, self.model)
        except Exception as e:
            logger.exception("Could not start session for chunk %s", chunk.id)
            return await self._finish(chunk, execution, ChunkStatus.FAILED, f"Failed to start session: {e}")

        await self._consume(execution)

        if execution.aborted:
            await self._abort_session(execution)
            return await self._finish(chunk, execution, ChunkStatus.CANCELLED, "Execution aborted")
        if execution.timed_out:
            await self._abort_session(execution)
            minutes = self.timeout_sec / 60
            return await self._finish(
                chunk, execution, ChunkStatus.FAILED,
                f"Execution timed out after {minutes:g} minutes",
            )
        if execution.error is not None:
            return await self._finish(chunk, execution, ChunkStatus.FAILED, execution.error)
        if not execution.completed:
            return await self._finish(
                chunk, execution, ChunkStatus.FAILED, "Session ended without completing"
            )
        return await self._finish(chunk, execution, ChunkStatus.COMPLETED, None)

    async def _consume(self, execution: ActiveExecution) -> None:
        stream = self.backend.events(execution.session_id)
        try:
            async with anyio.create_task_group() as tg:
                tg.start_soon(self._watch_timeout, execution, tg.cancel_scope)
                tg.start_soon(self._watch_abort, execution, tg.cancel_scope)
                async for event in stream:
                    if await self._handle_event(execution, event):
                        break
                tg.cancel_scope.cancel()
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                with anyio.CancelScope(shield=True):
                    await aclose()

    async def _watch_timeout(self, execution: ActiveExecution, scope: anyio.CancelScope) -> None:
        await anyio.sleep(self.timeout_sec * 0.8)
        logger.warning(
            "Chunk %s has used 80%% of its %gs timeout", execution.chunk_id, self.timeout_sec
        )
        self._publish(
            execution, "timeout_warning",
            elapsed_sec=time.monotonic() - execution.started, timeout_sec=self.timeout_sec,
        )
        await anyio.sleep(self.timeout_sec * 0.2)
        execution.timed_out = True
        scope.cancel()

    async def _watch_abort(self, execution: ActiveExecution, scope: anyio.CancelScope) -> None:
        await execution.abort_event.wait()
        execution.aborted = True
        scope.cancel()

    async def _handle_event(self, execution: ActiveExecution, event: BackendEvent) -> bool:
        """Record one backend event. Returns True on a terminal event."""
        if event.kind == "text":
            execution.output_parts.append(event.text)
            self._publish(execution, "text", text=event.text)
        elif event.kind == "tool_call":
            await self._record_tool_call(execution, event)
        elif event.kind == "error":
            execution.error = event.error or "Execution backend reported an error"
            self._publish(execution, "error", error=execution.error)
            return True
        elif event.kind == "complete":
            execution.completed = True
            return True
        return False

    async def _record_tool_call(self, execution: ActiveExecution, event: BackendEvent) -> None:
        key = event.call_id or f"{event.tool}-{len(execution.tool_call_ids)}"
        call_id = execution.tool_call_ids.get(key)
        if call_id is None:
            call = await self.db.create_tool_call(
                execution.chunk_id, event.tool or "unknown", event.input
            )
            call_id = execution.tool_call_ids[key] = call.id
        if event.state in ("completed", "error"):
            status = ToolCallStatus.ERROR if event.state == "error" else ToolCallStatus.COMPLETED
            await self.db.complete_tool_call(call_id, event.output, status)
        self._publish(
            execution, "tool_call",
            tool_call_id=call_id, tool=event.tool, state=event.state, input=event.input,
        )

    async def _abort_session(self, execution: ActiveExecution) -> None:
        try:
            await self.backend.abort_session(execution.session_id)
        except Exception as e:
            logger.warning("Abort of session %s failed: %s", execution.session_id, e)

    async def _finish(
        self,
        chunk: Chunk,
        execution: ActiveExecution,
        status: ChunkStatus,
        error: str | None,
    ) -> ExecutionResult:
        output = "".join(execution.output_parts)
        fields = dict(status=status, output=output, error=error, completed_at=_now())
        if status == ChunkStatus.COMPLETED:
            fields["output_summary"] = quick_summary(chunk, output)
        await self.db.update_chunk(chunk.id, **fields)

        duration = time.monotonic() - execution.started
        result = ExecutionResult(
            status=status,
            output=output,
            error=error,
            duration_sec=duration,
            tool_calls=len(execution.tool_call_ids),
        )
        logger.info("Chunk %s execution %s in %.1fs", chunk.id, status.value, duration)
        self._publish(
            execution, "execution_complete",
            status=status.value, error=error, duration_sec=duration,
        )
        return result
