"""DAG construction, cycle detection, layering and critical path."""

from __future__ import annotations

from dataclasses import dataclass, field
from graphlib import CycleError, TopologicalSorter

from .models import RUNNABLE_STATUSES, Chunk, ChunkStatus


class SpecrunDAGError(Exception):
    """Raised when DAG validation fails."""


def build_dag(chunks: list[Chunk]) -> dict[str, set[str]]:
    """Build dependency graph (chunk id -> dependency ids)."""
    graph: dict[str, set[str]] = {}
    for chunk in chunks:
        graph[chunk.id] = set(chunk.dependencies)
    return graph


def build_dependents(chunks: list[Chunk]) -> dict[str, list[str]]:
    """Reverse edges: chunk id -> ids of chunks that depend on it directly."""
    dependents: dict[str, list[str]] = {c.id: [] for c in chunks}
    for chunk in chunks:
        for dep in chunk.dependencies:
            if dep in dependents and chunk.id not in dependents[dep]:
                dependents[dep].append(chunk.id)
    return dependents


def topological_order(graph: dict[str, set[str]]) -> list[str]:
    """Return topologically sorted node list. Raises on cycle."""
    if not graph:
        return []
    ts = TopologicalSorter(graph)
    try:
        return list(ts.static_order())
    except CycleError as e:
        raise SpecrunDAGError(f"Dependency cycle detected: {e.args[1]}") from e


def check_cycle(graph: dict[str, set[str]]) -> None:
    """Validate DAG: check for self-dependencies, unknown nodes and cycles."""
    known = set(graph.keys())
    for node, deps in graph.items():
        if node in deps:
            raise SpecrunDAGError(f"Chunk '{node}' depends on itself")
        missing = deps - known
        if missing:
            raise SpecrunDAGError(
                f"Chunk '{node}' depends on unknown chunks: {sorted(missing)}"
            )
    topological_order(graph)


# ---------------------------------------------------------------------------
# Layering (visualization and planning, not the live scheduler)
# ---------------------------------------------------------------------------

def assign_layers(chunks: list[Chunk]) -> dict[str, int]:
    """Kahn's-algorithm layering.

    Chunks without dependencies form layer 0. A chunk joins layer L+1 once its
    last dependency is placed in layer L. Chunks never reached (cycles or
    dangling dependencies) all land in the final layer.
    """
    in_degree = {c.id: len(set(c.dependencies)) for c in chunks}
    dependents = build_dependents(chunks)
    layers: dict[str, int] = {}

    current = [c.id for c in chunks if in_degree[c.id] == 0]
    for cid in current:
        layers[cid] = 0

    layer = 0
    while current:
        nxt: list[str] = []
        for cid in current:
            for other in dependents.get(cid, []):
                if other in layers:
                    continue
                in_degree[other] -= 1
                if in_degree[other] == 0:
                    layers[other] = layer + 1
                    nxt.append(other)
        current = nxt
        layer += 1

    for chunk in chunks:
        layers.setdefault(chunk.id, layer)
    return layers


def can_chunk_run(chunk: Chunk, chunks: list[Chunk]) -> bool:
    """True when the chunk is idle and every dependency is completed."""
    if chunk.status in (ChunkStatus.RUNNING, ChunkStatus.COMPLETED):
        return False
    by_id = {c.id: c for c in chunks}
    return all(
        dep in by_id and by_id[dep].status == ChunkStatus.COMPLETED
        for dep in chunk.dependencies
    )


def is_chunk_blocked(chunk: Chunk, chunks: list[Chunk]) -> bool:
    if not chunk.dependencies:
        return False
    if chunk.status in (ChunkStatus.RUNNING, ChunkStatus.COMPLETED):
        return False
    return not can_chunk_run(chunk, chunks)


@dataclass
class LayerInfo:
    layer: int
    label: str
    chunks: list[Chunk] = field(default_factory=list)
    is_complete: bool = False


def group_by_layers(chunks: list[Chunk]) -> list[LayerInfo]:
    """Group chunks by layer with a human-readable label per layer."""
    layers = assign_layers(chunks)
    grouped: dict[int, list[Chunk]] = {}
    for chunk in chunks:
        grouped.setdefault(layers[chunk.id], []).append(chunk)

    result: list[LayerInfo] = []
    for num in sorted(grouped):
        members = grouped[num]
        is_complete = all(c.status == ChunkStatus.COMPLETED for c in members)
        has_running = any(c.status == ChunkStatus.RUNNING for c in members)
        all_blocked = all(
            not can_chunk_run(c, chunks)
            and c.status not in (ChunkStatus.COMPLETED, ChunkStatus.RUNNING)
            for c in members
        )
        if num == 0:
            label = "Layer 0 (no dependencies)"
        elif all_blocked:
            label = f"Layer {num} (blocked)"
        elif has_running:
            label = f"Layer {num} (running)"
        elif is_complete:
            label = f"Layer {num} (complete)"
        else:
            label = f"Layer {num}"
        result.append(LayerInfo(num, label, members, is_complete))
    return result


def critical_path(chunks: list[Chunk]) -> list[str]:
    """Longest dependency chain, root first, by memoized recursive search."""
    by_id = {c.id: c for c in chunks}
    memo: dict[str, list[str]] = {}
    visiting: set[str] = set()

    def longest(cid: str) -> list[str]:
        if cid in memo:
            return memo[cid]
        chunk = by_id.get(cid)
        if chunk is None or cid in visiting:
            return []
        visiting.add(cid)
        best: list[str] = []
        for dep in chunk.dependencies:
            path = longest(dep)
            if len(path) > len(best):
                best = path
        visiting.discard(cid)
        memo[cid] = best + [cid]
        return memo[cid]

    path: list[str] = []
    for chunk in chunks:
        candidate = longest(chunk.id)
        if len(candidate) > len(path):
            path = candidate
    return path


@dataclass
class PlanStep:
    step: int
    parallel: bool
    chunks: list[Chunk] = field(default_factory=list)


def build_execution_plan(chunks: list[Chunk]) -> list[PlanStep]:
    """Per-layer steps over chunks that still need to run."""
    steps: list[PlanStep] = []
    for info in group_by_layers(chunks):
        todo = [c for c in info.chunks if c.status in RUNNABLE_STATUSES]
        if not todo:
            continue
        steps.append(PlanStep(len(steps) + 1, len(todo) > 1, todo))
    return steps
