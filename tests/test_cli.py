"""Tests for CLI commands."""

import re

import pytest
from typer.testing import CliRunner
from specrun.cli import app

runner = CliRunner()

SPEC_MD = """\
# Todo API

## chunk-models: Data models
Create the model.

## chunk-api: HTTP routes
depends_on: models
Expose routes.
"""


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    """Initialized specrun root whose allowed roots include tmp_path."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    assert runner.invoke(app, ["init"]).exit_code == 0
    config = tmp_path / ".specrun" / "config.yaml"
    config.write_text(config.read_text() + f"allowed_roots: [{tmp_path}]\n")
    (tmp_path / "app").mkdir()
    return tmp_path


def _add_project(workspace):
    result = runner.invoke(app, ["project", "add", "demo", str(workspace / "app")])
    assert result.exit_code == 0, result.output
    return re.search(r"Added project demo \((\w+)\)", result.output).group(1)


def _import_spec(workspace, project_id):
    path = workspace / "todo.md"
    path.write_text(SPEC_MD)
    result = runner.invoke(app, ["spec", "import", project_id, str(path)])
    assert result.exit_code == 0, result.output
    return re.search(r"Imported Todo API \((\w+)\)", result.output).group(1)


# --- init / config ---

def test_init_creates_structure(tmp_path, monkeypatch):
    """specrun init creates .specrun/ + config files + .gitignore entries."""
    monkeypatch.chdir(tmp_path)
    result = runner.invoke(app, ["init"])
    assert result.exit_code == 0
    assert (tmp_path / ".specrun" / "config.yaml").exists()
    assert (tmp_path / ".specrun" / "local.config.yaml").exists()
    gitignore = (tmp_path / ".gitignore").read_text()
    assert ".specrun/local.config.yaml" in gitignore
    assert ".specrun/state.db" in gitignore


def test_init_idempotent(tmp_path, monkeypatch):
    """specrun init repeated does not overwrite existing config."""
    monkeypatch.chdir(tmp_path)
    runner.invoke(app, ["init"])
    (tmp_path / ".specrun" / "config.yaml").write_text("max_workers: 2\n")
    result = runner.invoke(app, ["init"])
    assert "Exists" in result.output
    assert (tmp_path / ".specrun" / "config.yaml").read_text() == "max_workers: 2\n"
    assert (tmp_path / ".gitignore").read_text().count("# specrun") == 1


def test_config_show_masks_keys(workspace, monkeypatch):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-secret-value")
    result = runner.invoke(app, ["config"])
    assert result.exit_code == 0
    assert "max_workers: 5" in result.output
    assert "sk-ant-s..." in result.output
    assert "secret-value" not in result.output


# --- projects and specs ---

def test_project_add_and_list(workspace):
    project_id = _add_project(workspace)
    result = runner.invoke(app, ["project", "list"])
    assert result.exit_code == 0
    assert project_id in result.output
    assert str((workspace / "app").resolve()) in result.output


def test_project_add_rejects_outside_roots(workspace):
    result = runner.invoke(app, ["project", "add", "root", "/"])
    assert result.exit_code == 1
    assert "Invalid directory" in result.output


def test_project_add_rejects_file(workspace):
    (workspace / "notes.txt").write_text("x")
    result = runner.invoke(app, ["project", "add", "notes", str(workspace / "notes.txt")])
    assert result.exit_code == 1
    assert "must be a directory" in result.output


def test_project_list_empty(workspace):
    result = runner.invoke(app, ["project", "list"])
    assert "No projects." in result.output


def test_spec_import_show_and_plan(workspace):
    project_id = _add_project(workspace)
    spec_id = _import_spec(workspace, project_id)

    listing = runner.invoke(app, ["spec", "list", project_id])
    assert spec_id in listing.output

    show = runner.invoke(app, ["spec", "show", spec_id])
    assert show.exit_code == 0
    assert "Chunks (2)" in show.output
    assert "HTTP routes" in show.output
    assert "← Data models" in show.output

    plan = runner.invoke(app, ["plan", spec_id])
    assert plan.exit_code == 0
    assert "DAG: valid" in plan.output
    assert "Critical path (2): Data models → HTTP routes" in plan.output


def test_spec_import_unknown_project(workspace):
    path = workspace / "todo.md"
    path.write_text(SPEC_MD)
    result = runner.invoke(app, ["spec", "import", "nope", str(path)])
    assert result.exit_code == 1
    assert "not found" in result.output


def test_spec_import_cycle_fails(workspace):
    project_id = _add_project(workspace)
    path = workspace / "bad.md"
    path.write_text("## chunk-a: A\ndepends_on: b\n\n## chunk-b: B\ndepends_on: a\n")
    result = runner.invoke(app, ["spec", "import", project_id, str(path)])
    assert result.exit_code == 1
    assert "Import failed" in result.output


def test_spec_show_unknown(workspace):
    result = runner.invoke(app, ["spec", "show", "missing"])
    assert result.exit_code == 1


# --- read-only views ---

def test_empty_views(workspace):
    assert "No chunks found." in runner.invoke(app, ["plan", "missing"]).output
    assert "Queue is empty." in runner.invoke(app, ["queue"]).output
    assert "No workers." in runner.invoke(app, ["workers"]).output
    assert "No reviews" in runner.invoke(app, ["reviews", "missing"]).output


def test_worktrees_cleanup_nothing_to_do(workspace):
    result = runner.invoke(app, ["worktrees", "cleanup"])
    assert result.exit_code == 0
    assert "Removed 0 worktree(s)." in result.output
