"""Import a spec and its chunks from a markdown file."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .dag import SpecrunDAGError, check_cycle, topological_order
from .db import Database
from .git_ops import validate_branch_name
from .models import Spec


@dataclass
class ChunkDraft:
    key: str
    title: str
    description: str = ""
    depends_on: list[str] = field(default_factory=list)


@dataclass
class SpecDraft:
    title: str
    content: str = ""
    branch: str | None = None
    chunks: list[ChunkDraft] = field(default_factory=list)


# -------------------------------------------------------------------
# Frontmatter parsing
# -------------------------------------------------------------------

_FM_RE = re.compile(r"^---\s*\n(.*?)\n---\s*\n(.*)", re.DOTALL)


def parse_frontmatter(content: str) -> tuple[dict, str]:
    """Parse YAML frontmatter from markdown content.

    Returns (metadata_dict, body_text).
    """
    match = _FM_RE.match(content)
    if match:
        meta = yaml.safe_load(match.group(1))
        if not isinstance(meta, dict):
            meta = {}
        return meta, match.group(2)
    return {}, content


# -------------------------------------------------------------------
# Chunk parsing
# -------------------------------------------------------------------

_CHUNK_HEADING_RE = re.compile(r"^##\s+chunk-(\S+?):\s*(.+)$", re.IGNORECASE)
_DEPENDS_RE = re.compile(r"^\s*depends_on:\s*(.*)$", re.IGNORECASE)


def _split_keys(raw: str) -> list[str]:
    raw = raw.strip().strip("[]")
    keys = []
    for part in raw.split(","):
        key = part.strip().strip("'\"")
        if key.lower().startswith("chunk-"):
            key = key[len("chunk-"):]
        if key:
            keys.append(key)
    return keys


def parse_chunks(content: str) -> tuple[str, list[ChunkDraft]]:
    """Split a body into the spec text before the first chunk and the chunks."""
    preamble: list[str] = []
    chunks: list[ChunkDraft] = []
    current: ChunkDraft | None = None
    lines: list[str] = []

    def _flush():
        if current is not None:
            current.description = "\n".join(lines).strip()
            chunks.append(current)

    for line in content.splitlines():
        m = _CHUNK_HEADING_RE.match(line)
        if m:
            _flush()
            current = ChunkDraft(key=m.group(1), title=m.group(2).strip())
            lines = []
        elif current is None:
            preamble.append(line)
        elif (not current.depends_on and not any(s.strip() for s in lines)
              and _DEPENDS_RE.match(line)):
            current.depends_on = _split_keys(_DEPENDS_RE.match(line).group(1))
        else:
            lines.append(line)

    _flush()
    return "\n".join(preamble).strip(), chunks


def parse_spec(content: str, fallback_title: str = "Untitled spec") -> SpecDraft:
    meta, body = parse_frontmatter(content)
    text, chunks = parse_chunks(body)

    title = meta.get("title")
    if not title:
        title = fallback_title
        for line in text.splitlines():
            if line.strip().startswith("# "):
                title = line.strip()[2:].strip()
                break

    return SpecDraft(
        title=str(title),
        content=text,
        branch=meta.get("branch") or None,
        chunks=chunks,
    )


def validate_draft(draft: SpecDraft) -> list[str]:
    """Check keys, dependencies and branch; return chunk keys in creation order."""
    keys = [c.key for c in draft.chunks]
    duplicates = sorted({k for k in keys if keys.count(k) > 1})
    if duplicates:
        raise SpecrunDAGError(f"Duplicate chunk keys: {duplicates}")
    if draft.branch:
        problem = validate_branch_name(draft.branch)
        if problem:
            raise ValueError(f"Invalid branch {draft.branch!r}: {problem}")

    graph = {c.key: set(c.depends_on) for c in draft.chunks}
    check_cycle(graph)
    return topological_order(graph)


async def import_spec(db: Database, project_id: str, path: str | Path) -> Spec:
    """Create a spec and its chunks from ``path``. Nothing is written on error."""
    path = Path(path)
    draft = parse_spec(path.read_text(encoding="utf-8"), fallback_title=path.stem)
    creation_order = validate_draft(draft)

    spec = await db.create_spec(project_id, draft.title, draft.content)
    if draft.branch:
        spec = await db.update_spec(spec.id, branch_name=draft.branch)

    by_key = {c.key: c for c in draft.chunks}
    position = {c.key: index for index, c in enumerate(draft.chunks)}
    ids: dict[str, str] = {}
    for key in creation_order:
        chunk = by_key[key]
        created = await db.create_chunk(
            spec.id,
            chunk.title,
            chunk.description,
            order=position[key],
            dependencies=[ids[d] for d in chunk.depends_on],
        )
        ids[key] = created.id
    return spec
