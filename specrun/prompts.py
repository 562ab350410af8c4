"""Prompt material for execution and review, plus verdict parsing."""

from __future__ import annotations

import json
import re

from .models import (
    Chunk,
    ChunkVerdict,
    FinalVerdict,
    FixSpec,
    ReviewStatus,
    Spec,
    ToolCall,
    ValidationResult,
)

_MAX_SPEC_CHARS = 3000
_MAX_OUTPUT_CHARS = 4000
_MAX_CONTEXT_FILES = 20
_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")
_FILE_KEYS = ("file_path", "path", "filePath", "notebook_path")


class ReviewParseError(ValueError):
    """Review backend output is not a valid verdict."""


# -------------------------------------------------------------------
# Execution prompts
# -------------------------------------------------------------------

def files_touched(tool_calls: list[ToolCall]) -> list[str]:
    """File paths mentioned in tool-call inputs, first-seen order."""
    seen: dict[str, None] = {}
    for call in tool_calls:
        for key in _FILE_KEYS:
            value = call.input.get(key)
            if isinstance(value, str) and value:
                seen.setdefault(value, None)
    return list(seen)


def build_chunk_prompt(
    chunk: Chunk,
    spec: Spec,
    dependencies: list[Chunk],
    dependency_files: dict[str, list[str]] | None = None,
) -> str:
    """Task prompt for a chunk, with context from its completed dependencies."""
    dependency_files = dependency_files or {}
    parts = []

    content = spec.content
    if len(content) > _MAX_SPEC_CHARS:
        content = content[:_MAX_SPEC_CHARS] + "\n\n... [spec truncated] ..."
    if content:
        parts.append(f"## Spec Overview\n{content}\n\n")

    done = [d for d in dependencies if d.status.value == "completed"]
    if done:
        parts.append("## Previously Completed Work\n")
        all_files: dict[str, None] = {}
        for dep in done:
            summary = dep.output_summary or (dep.output or "")[:_MAX_OUTPUT_CHARS // 4]
            parts.append(f"### {dep.title}\n{summary.strip() or 'Completed.'}\n\n")
            for f in dependency_files.get(dep.id, []):
                all_files.setdefault(f, None)
        if all_files:
            files = list(all_files)
            parts.append("## Files Created/Modified by Previous Chunks\n")
            for f in files[:_MAX_CONTEXT_FILES]:
                parts.append(f"- {f}\n")
            if len(files) > _MAX_CONTEXT_FILES:
                parts.append(f"- ... and {len(files) - _MAX_CONTEXT_FILES} more files\n")
            parts.append("\n")

    parts.append(f"## Your Current Task\nTitle: {chunk.title}\n")
    parts.append(f"Description: {chunk.description}\n\n")
    parts.append(
        "## Instructions\n"
        "- Build on the work already done; modify existing files instead of recreating them\n"
        "- Focus only on this task\n"
        "- Write your changes to disk; do not commit them\n"
    )
    return "".join(parts)


# -------------------------------------------------------------------
# Review prompts
# -------------------------------------------------------------------

_CHUNK_REVIEW_FORMAT = """Respond with JSON only:
{"status": "pass" | "needs_fix" | "fail",
 "feedback": "short explanation",
 "fixChunk": {"title": "...", "description": "..."}}
Include fixChunk only when status is needs_fix."""

_FINAL_REVIEW_FORMAT = """Respond with JSON only:
{"status": "pass" | "needs_fix" | "fail",
 "feedback": "overall assessment",
 "integrationIssues": ["..."],
 "missingRequirements": ["..."],
 "fixChunks": [{"title": "...", "description": "...", "targetChunkIndex": 0}]}"""


def _format_validation(validation: ValidationResult) -> str:
    lines = []
    if validation.changes_checked:
        lines += ["## Code Changes", f"Files changed: {validation.files_changed}"]
    if validation.changed_files:
        lines.append("")
        lines.extend(f"- {f}" for f in validation.changed_files[:_MAX_CONTEXT_FILES])
        extra = len(validation.changed_files) - _MAX_CONTEXT_FILES
        if extra > 0:
            lines.append(f"- ... and {extra} more files")
    if validation.diff_stat:
        lines += ["", "Diff summary:", "```", validation.diff_stat, "```"]
    if validation.build is not None:
        status = "PASSED" if validation.build.success else "FAILED"
        if lines:
            lines.append("")
        lines += ["## Build Validation", f"Build status: {status}"]
    return "\n".join(lines)


def build_review_prompt(chunk: Chunk, validation: ValidationResult | None = None) -> str:
    output = (chunk.output or "No output captured")[-_MAX_OUTPUT_CHARS:]
    parts = [
        "Review whether this task was completed correctly.\n\n",
        f"## Task\nTitle: {chunk.title}\nDescription: {chunk.description}\n\n",
        f"## Agent Output\n{output}\n\n",
    ]
    if validation is not None:
        parts.append(_format_validation(validation) + "\n\n")
    parts.append(_CHUNK_REVIEW_FORMAT)
    return "".join(parts)


def build_final_review_prompt(spec: Spec, chunks: list[Chunk]) -> str:
    parts = [
        "Review whether the whole specification has been implemented.\n\n",
        f"## Specification: {spec.title}\n{spec.content}\n\n",
        "## Completed Chunks\n",
    ]
    for index, chunk in enumerate(chunks):
        summary = chunk.output_summary or (chunk.output or "")[:500]
        parts.append(f"{index}. {chunk.title} [{chunk.status.value}]\n{summary.strip()}\n\n")
    parts.append(_FINAL_REVIEW_FORMAT)
    return "".join(parts)


# -------------------------------------------------------------------
# Verdict parsing
# -------------------------------------------------------------------

def _load_json(text: str) -> dict:
    raw = text.strip()
    match = _FENCE_RE.search(raw)
    if match:
        raw = match.group(1).strip()
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ReviewParseError(f"Failed to parse review result as JSON: {e}") from e
    if not isinstance(data, dict):
        raise ReviewParseError("Failed to parse review result: expected a JSON object")
    return data


def _status(data: dict) -> ReviewStatus:
    try:
        return ReviewStatus(data.get("status"))
    except ValueError:
        raise ReviewParseError(
            f"Failed to parse review result: invalid status {data.get('status')!r}"
        ) from None


def _str_list(value) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value]


def _fix_spec(data: dict) -> FixSpec:
    index = data.get("targetChunkIndex")
    return FixSpec(
        title=data.get("title") or "Fix required issue",
        description=data.get("description") or "Fix the issue identified in the previous task",
        target_chunk_index=index if isinstance(index, int) else None,
        parent_chunk_id=data.get("parentChunkId") or None,
    )


def parse_chunk_verdict(text: str) -> ChunkVerdict:
    """Parse a chunk review. Raises ReviewParseError, never defaults to pass."""
    data = _load_json(text)
    status = _status(data)
    fix = None
    if status == ReviewStatus.NEEDS_FIX and isinstance(data.get("fixChunk"), dict):
        fix = _fix_spec(data["fixChunk"])
    return ChunkVerdict(status=status, feedback=str(data.get("feedback") or ""), fix=fix)


def parse_final_verdict(text: str) -> FinalVerdict:
    data = _load_json(text)
    fixes = data.get("fixChunks")
    return FinalVerdict(
        status=_status(data),
        feedback=str(data.get("feedback") or ""),
        integration_issues=_str_list(data.get("integrationIssues")),
        missing_requirements=_str_list(data.get("missingRequirements")),
        fix_chunks=[_fix_spec(f) for f in fixes if isinstance(f, dict)]
        if isinstance(fixes, list) else [],
    )


# -------------------------------------------------------------------
# Output summaries
# -------------------------------------------------------------------

_SUMMARY_FILE_RE = re.compile(
    r"(?:created|modified|updated|wrote)\s+[`\"']?([^\s`\"']+\.[A-Za-z]{1,5})", re.IGNORECASE
)
_BACKTICK_FILE_RE = re.compile(r"`([^`\s]+\.[A-Za-z]{1,5})`")


def quick_summary(chunk: Chunk, output: str | None = None, max_chars: int = 800) -> str:
    """Condensed summary of a chunk's output for dependents' context."""
    output = output if output is not None else chunk.output
    if not output or not output.strip():
        return f"Completed: {chunk.title}"

    files: dict[str, None] = {}
    for pattern in (_SUMMARY_FILE_RE, _BACKTICK_FILE_RE):
        for match in pattern.finditer(output):
            name = match.group(1)
            if not name.startswith("http"):
                files.setdefault(name, None)

    paragraphs = [p.strip() for p in output.strip().split("\n\n") if p.strip()]
    last = paragraphs[-1] if paragraphs else ""
    if len(last) > max_chars:
        last = last[:max_chars].rstrip() + "..."

    summary = f"## {chunk.title}\n\n{last}"
    if files:
        summary += "\n\nFiles: " + ", ".join(list(files)[:10])
    return summary
