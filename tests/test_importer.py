"""Tests for importing specs from markdown."""

import pytest
from specrun.dag import SpecrunDAGError
from specrun.importer import (
    SpecDraft,
    ChunkDraft,
    import_spec,
    parse_chunks,
    parse_frontmatter,
    parse_spec,
    validate_draft,
)

SPEC_MD = """\
---
title: Todo API
branch: feature/todo-api
---
# Todo API

A small REST service for todos.

## chunk-models: Data models
Create the Todo model.

## chunk-api: HTTP routes
depends_on: models

Expose CRUD routes.

## chunk-tests: Tests
depends_on: [chunk-models, api]
Cover the routes.
"""


# --- Frontmatter ---

def test_parse_frontmatter():
    meta, body = parse_frontmatter(SPEC_MD)
    assert meta == {"title": "Todo API", "branch": "feature/todo-api"}
    assert body.startswith("# Todo API")


def test_no_frontmatter():
    meta, body = parse_frontmatter("# Just text\n")
    assert meta == {}
    assert body == "# Just text\n"


def test_non_mapping_frontmatter():
    meta, body = parse_frontmatter("---\n- a\n- b\n---\nbody\n")
    assert meta == {}
    assert body == "body\n"


# --- Chunks ---

def test_parse_chunks():
    _, body = parse_frontmatter(SPEC_MD)
    preamble, chunks = parse_chunks(body)

    assert preamble == "# Todo API\n\nA small REST service for todos."
    assert [c.key for c in chunks] == ["models", "api", "tests"]
    assert chunks[0].depends_on == []
    assert chunks[0].description == "Create the Todo model."
    assert chunks[1].depends_on == ["models"]
    assert chunks[1].description == "Expose CRUD routes."
    assert chunks[2].depends_on == ["models", "api"]
    assert chunks[2].title == "Tests"


def test_depends_on_only_at_top_of_chunk():
    _, chunks = parse_chunks(
        "## chunk-a: A\nDo things.\ndepends_on: b\n"
    )
    assert chunks[0].depends_on == []
    assert "depends_on: b" in chunks[0].description


def test_spec_title_fallbacks():
    assert parse_spec("# Heading title\n\ntext").title == "Heading title"
    assert parse_spec("no heading", fallback_title="file-stem").title == "file-stem"


# --- Validation ---

def test_validate_draft_orders_dependencies_first():
    draft = parse_spec(SPEC_MD)
    order = validate_draft(draft)
    assert order.index("models") < order.index("api") < order.index("tests")


def test_duplicate_keys_rejected():
    draft = SpecDraft("t", chunks=[ChunkDraft("a", "A"), ChunkDraft("a", "A again")])
    with pytest.raises(SpecrunDAGError, match="Duplicate"):
        validate_draft(draft)


def test_unknown_dependency_rejected():
    draft = SpecDraft("t", chunks=[ChunkDraft("a", "A", depends_on=["ghost"])])
    with pytest.raises(SpecrunDAGError, match="unknown"):
        validate_draft(draft)


def test_cycle_rejected():
    draft = SpecDraft("t", chunks=[
        ChunkDraft("a", "A", depends_on=["b"]),
        ChunkDraft("b", "B", depends_on=["a"]),
    ])
    with pytest.raises(SpecrunDAGError, match="cycle"):
        validate_draft(draft)


def test_bad_branch_rejected():
    with pytest.raises(ValueError, match="Invalid branch"):
        validate_draft(SpecDraft("t", branch="bad..branch"))


# --- Import into the database ---

@pytest.mark.asyncio
async def test_import_spec(memory_db, tmp_path):
    project = await memory_db.create_project("demo", str(tmp_path))
    path = tmp_path / "todo.md"
    path.write_text(SPEC_MD)

    spec = await import_spec(memory_db, project.id, path)

    assert spec.title == "Todo API"
    assert spec.branch_name == "feature/todo-api"
    assert spec.content.startswith("# Todo API")
    chunks = await memory_db.list_chunks(spec.id)
    assert [c.title for c in chunks] == ["Data models", "HTTP routes", "Tests"]
    by_title = {c.title: c for c in chunks}
    assert by_title["HTTP routes"].dependencies == [by_title["Data models"].id]
    assert set(by_title["Tests"].dependencies) == {
        by_title["Data models"].id, by_title["HTTP routes"].id,
    }


@pytest.mark.asyncio
async def test_import_invalid_writes_nothing(memory_db, tmp_path):
    project = await memory_db.create_project("demo", str(tmp_path))
    path = tmp_path / "broken.md"
    path.write_text("## chunk-a: A\ndepends_on: a\n")

    with pytest.raises(SpecrunDAGError):
        await import_spec(memory_db, project.id, path)
    assert await memory_db.list_specs(project.id) == []
