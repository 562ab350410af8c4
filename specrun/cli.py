"""specrun CLI: typer-based command interface."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

import typer

app = typer.Typer(
    name="specrun",
    help="specrun: dependency-aware spec execution engine",
    no_args_is_help=True,
)
project_app = typer.Typer(help="Manage projects.", no_args_is_help=True)
spec_app = typer.Typer(help="Manage specs.", no_args_is_help=True)
worktrees_app = typer.Typer(help="Manage spec worktrees.", no_args_is_help=True)
app.add_typer(project_app, name="project")
app.add_typer(spec_app, name="spec")
app.add_typer(worktrees_app, name="worktrees")

# -------------------------------------------------------------------
# Templates
# -------------------------------------------------------------------

DEFAULT_CONFIG_TEMPLATE = """\
# .specrun/config.yaml: team-shared configuration
db_path: .specrun/state.db
max_workers: 5
event_buffer_size: 100
# allowed_roots: [~/code]   # project directories must live under one of these

defaults:
  executor:
    type: claude_code
    model: claude-sonnet-4-5
    timeout_sec: 900
  reviewer:
    provider: claude_code   # claude_code | anthropic | openai
    chunk_model: haiku
    final_model: opus
    max_retries: 3
    retry_backoff_ms: 2000
  validation:
    build_command: ""       # e.g. "npm run build"; empty skips the build
    build_timeout_sec: 180
  max_iterations: 5

notify:
  webhook_url: ""
  events:
    - worker_completed
    - worker_failed
"""

DEFAULT_LOCAL_CONFIG_TEMPLATE = """\
# .specrun/local.config.yaml: personal overrides (DO NOT commit)
# providers:
#   anthropic:
#     api_key: sk-ant-xxx
#   openai:
#     api_key: sk-xxx
"""

GITIGNORE_ENTRIES = [
    ".specrun/local.config.yaml",
    ".specrun/state.db",
    ".specrun/state.db-wal",
    ".specrun/state.db-shm",
]

STATUS_ICONS = {
    "completed": "✅", "running": "🔄", "pending": "⏳", "failed": "❌",
    "cancelled": "⏭️", "review": "⚠️", "draft": "📝", "paused": "⏸️",
    "idle": "⏳",
}


# -------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------

def _get_project_root() -> Path:
    return Path.cwd()


def _run_async(coro):
    """Run an async coroutine from sync context."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None
    if loop and loop.is_running():
        import concurrent.futures
        with concurrent.futures.ThreadPoolExecutor() as pool:
            return pool.submit(asyncio.run, coro).result()
    return asyncio.run(coro)


def _load_config():
    from .config import load_config
    return load_config(_get_project_root())


async def _get_db(config):
    from .db import Database
    db_path = config.resolve_db_path()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    db = Database(str(db_path))
    await db.init()
    return db


def _icon(status: str) -> str:
    return STATUS_ICONS.get(status, "  ")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# -------------------------------------------------------------------
# Setup
# -------------------------------------------------------------------

@app.command()
def init():
    """Initialize specrun in the current directory."""
    root = _get_project_root()

    config_dir = root / ".specrun"
    config_dir.mkdir(exist_ok=True)

    config_path = config_dir / "config.yaml"
    if not config_path.exists():
        config_path.write_text(DEFAULT_CONFIG_TEMPLATE)
        typer.echo(f"  Created {config_path.relative_to(root)}")
    else:
        typer.echo(f"  Exists  {config_path.relative_to(root)}")

    local_path = config_dir / "local.config.yaml"
    if not local_path.exists():
        local_path.write_text(DEFAULT_LOCAL_CONFIG_TEMPLATE)
        typer.echo(f"  Created {local_path.relative_to(root)}")

    gitignore_path = root / ".gitignore"
    existing = gitignore_path.read_text() if gitignore_path.exists() else ""
    additions = [e for e in GITIGNORE_ENTRIES if e not in existing]
    if additions:
        with open(gitignore_path, "a") as f:
            if existing and not existing.endswith("\n"):
                f.write("\n")
            f.write("# specrun\n")
            for entry in additions:
                f.write(f"{entry}\n")
        typer.echo("  Updated .gitignore")

    typer.echo("\n  specrun initialized. Add a project with `specrun project add`.")


@app.command("config")
def config_show():
    """Show merged configuration."""
    from dataclasses import asdict

    import yaml

    data = asdict(_load_config())
    for creds in data.get("providers", {}).values():
        if isinstance(creds, dict) and creds.get("api_key"):
            creds["api_key"] = creds["api_key"][:8] + "..."

    typer.echo("\n  specrun: Merged Configuration")
    typer.echo("  " + "─" * 40)
    typer.echo(yaml.dump(data, default_flow_style=False, allow_unicode=True))


# -------------------------------------------------------------------
# Projects
# -------------------------------------------------------------------

@project_app.command("add")
def project_add(
    name: str = typer.Argument(..., help="Project name"),
    directory: Path = typer.Argument(..., help="Project root directory"),
    config_json: str = typer.Option("", "--config", help="Config overrides as JSON"),
):
    """Register a project directory."""
    from .paths import PathValidationError, validate_project_path

    config = _load_config()
    try:
        resolved = validate_project_path(directory, config.allowed_roots or None)
    except PathValidationError as e:
        typer.echo(f"  Invalid directory: {e}", err=True)
        raise typer.Exit(1)
    try:
        overrides = json.loads(config_json) if config_json else {}
    except json.JSONDecodeError as e:
        typer.echo(f"  Invalid --config JSON: {e}", err=True)
        raise typer.Exit(1)

    async def _add():
        db = await _get_db(config)
        try:
            project = await db.create_project(name, str(resolved), overrides)
            typer.echo(f"  Added project {project.name} ({project.id})")
        finally:
            await db.close()

    _run_async(_add())


@project_app.command("list")
def project_list():
    """List registered projects."""
    config = _load_config()

    async def _list():
        db = await _get_db(config)
        try:
            projects = await db.list_projects()
            if not projects:
                typer.echo("  No projects.")
                return
            for p in projects:
                typer.echo(f"  {p.id}  {p.name:<20} {p.directory}")
        finally:
            await db.close()

    _run_async(_list())


# -------------------------------------------------------------------
# Specs
# -------------------------------------------------------------------

@spec_app.command("import")
def spec_import(
    project_id: str = typer.Argument(..., help="Project ID"),
    path: Path = typer.Argument(..., help="Markdown spec file"),
):
    """Import a spec and its chunks from markdown."""
    from .dag import SpecrunDAGError
    from .importer import import_spec

    config = _load_config()

    async def _import():
        db = await _get_db(config)
        try:
            if await db.get_project(project_id) is None:
                typer.echo(f"  Project '{project_id}' not found.", err=True)
                raise typer.Exit(1)
            try:
                spec = await import_spec(db, project_id, path)
            except (SpecrunDAGError, ValueError, OSError) as e:
                typer.echo(f"  Import failed: {e}", err=True)
                raise typer.Exit(1)
            chunks = await db.list_chunks(spec.id)
            typer.echo(f"  Imported {spec.title} ({spec.id}) with {len(chunks)} chunk(s)")
        finally:
            await db.close()

    _run_async(_import())


@spec_app.command("list")
def spec_list(project_id: str = typer.Argument(..., help="Project ID")):
    """List the specs of a project."""
    config = _load_config()

    async def _list():
        db = await _get_db(config)
        try:
            specs = await db.list_specs(project_id)
            if not specs:
                typer.echo("  No specs.")
                return
            for s in specs:
                typer.echo(f"  {_icon(s.status.value)} {s.id}  {s.title:<30} {s.status.value}")
        finally:
            await db.close()

    _run_async(_list())


@spec_app.command("show")
def spec_show(spec_id: str = typer.Argument(..., help="Spec ID")):
    """Show a spec with its chunks."""
    config = _load_config()

    async def _show():
        db = await _get_db(config)
        try:
            spec = await db.get_spec(spec_id)
            if spec is None:
                typer.echo(f"  Spec '{spec_id}' not found.")
                raise typer.Exit(1)
            typer.echo(f"\n  {spec.title}")
            typer.echo(f"  Status: {spec.status.value} · version {spec.version}")
            if spec.branch_name:
                typer.echo(f"  Branch: {spec.branch_name}")
            if spec.worktree_path:
                typer.echo(f"  Worktree: {spec.worktree_path}")
            if spec.pr_url:
                typer.echo(f"  PR: {spec.pr_url}")

            chunks = await db.list_chunks(spec_id)
            titles = {c.id: c.title for c in chunks}
            typer.echo(f"\n  Chunks ({len(chunks)}):")
            for c in chunks:
                deps = ", ".join(titles.get(d, d) for d in c.dependencies) or "—"
                review = f" [{c.review_status.value}]" if c.review_status else ""
                typer.echo(f"  {_icon(c.status.value)} {c.order:>3}. {c.title}{review}  ← {deps}")
                if c.error:
                    typer.echo(f"        {c.error}")
        finally:
            await db.close()

    _run_async(_show())


@app.command()
def plan(spec_id: str = typer.Argument(..., help="Spec ID")):
    """Show dependency layers and the critical path (dry-run)."""
    from .dag import SpecrunDAGError, build_dag, check_cycle, critical_path, group_by_layers

    config = _load_config()

    async def _plan():
        db = await _get_db(config)
        try:
            chunks = await db.list_chunks(spec_id)
        finally:
            await db.close()
        if not chunks:
            typer.echo("  No chunks found.")
            return

        try:
            check_cycle(build_dag(chunks))
            dag_status = "valid"
        except SpecrunDAGError as e:
            dag_status = f"invalid ({e})"

        typer.echo(f"\n  Chunks: {len(chunks)} · DAG: {dag_status}\n")
        for info in group_by_layers(chunks):
            typer.echo(f"  {info.label}")
            for c in info.chunks:
                typer.echo(f"    {_icon(c.status.value)} {c.title}")

        titles = {c.id: c.title for c in chunks}
        path = critical_path(chunks)
        typer.echo(f"\n  Critical path ({len(path)}): " + " → ".join(titles[i] for i in path))
        typer.echo("")

    _run_async(_plan())


# -------------------------------------------------------------------
# Execution
# -------------------------------------------------------------------

def _format_event(event) -> str | None:
    data = event.data
    if event.type == "worker_started":
        return f"  ▶ {data.get('title', event.spec_id)} (worker {event.worker_id[:8]})"
    if event.type == "worker_chunk_start":
        return f"    🔄 {data.get('title', event.chunk_id)}"
    if event.type == "worker_chunk_complete":
        status = data.get("status")
        line = f"    {'✅' if status == 'pass' else '❌'} {status}"
        if data.get("error"):
            line += f": {data['error']}"
        return line
    if event.type == "worker_chunk_cancelled":
        return f"    ⏭️  {data.get('reason')}"
    if event.type == "worker_completed":
        return f"  ✅ worker {event.worker_id[:8]} completed"
    if event.type == "worker_failed":
        return f"  ❌ worker {event.worker_id[:8]} failed: {data.get('error')}"
    return None


@app.command()
def run(
    spec_ids: list[str] = typer.Argument(..., help="Spec IDs to run"),
    max_workers: int = typer.Option(0, "--max-workers", help="Override max concurrent specs"),
    priority: int = typer.Option(0, "--priority", help="Queue priority for specs that wait"),
):
    """Run specs through the worker pool until all are done."""
    import anyio

    from .models import QueueItem
    from .workers import WorkerError, WorkerPool

    config = _load_config()
    if max_workers > 0:
        config.max_workers = max_workers

    async def _print_events(receive):
        async with receive:
            async for event in receive:
                line = _format_event(event)
                if line:
                    typer.echo(line)

    async def _run():
        db = await _get_db(config)
        try:
            async with WorkerPool(db, config) as pool:
                async with anyio.create_task_group() as tg:
                    tg.start_soon(_print_events, pool.subscribe())
                    for spec_id in spec_ids:
                        try:
                            result = await pool.submit(spec_id, priority)
                        except WorkerError as e:
                            typer.echo(f"  ❌ {spec_id}: {e}", err=True)
                            continue
                        if isinstance(result, QueueItem):
                            typer.echo(f"  ⏳ {spec_id} queued (priority {result.priority})")
                    await pool.wait_until_idle()
                    tg.cancel_scope.cancel()
        finally:
            await db.close()

    _run_async(_run())


@app.command()
def workers():
    """Show workers and their progress."""
    config = _load_config()

    async def _workers():
        db = await _get_db(config)
        try:
            rows = await db.list_workers()
            if not rows:
                typer.echo("  No workers.")
                return
            for w in rows:
                p = w.progress
                line = (f"  {_icon(w.status.value)} {w.id[:8]}  spec {w.spec_id[:8]}  "
                        f"{w.status.value:<10} {p.current}/{p.total} "
                        f"(✅ {p.passed} ❌ {p.failed})")
                if w.error:
                    line += f"  {w.error}"
                typer.echo(line)
        finally:
            await db.close()

    _run_async(_workers())


@app.command()
def queue():
    """Show queued specs in run order."""
    config = _load_config()

    async def _queue():
        db = await _get_db(config)
        try:
            items = await db.list_queue()
            if not items:
                typer.echo("  Queue is empty.")
                return
            for i, item in enumerate(items, 1):
                typer.echo(f"  {i:<3} {item.spec_id}  priority {item.priority}  {item.added_at}")
        finally:
            await db.close()

    _run_async(_queue())


@app.command()
def reviews(
    spec_id: str = typer.Argument(..., help="Spec ID"),
    chunk_id: str = typer.Option(None, "--chunk", help="Only reviews of this chunk"),
):
    """Show the review log of a spec."""
    config = _load_config()

    async def _reviews():
        db = await _get_db(config)
        try:
            logs = await db.list_review_logs(spec_id, chunk_id)
            if not logs:
                typer.echo(f"  No reviews for '{spec_id}'.")
                return
            typer.echo(f"  {'Type':<6} {'Model':<10} {'Status':<10} {'Try':<4} {'ms':<7} Detail")
            for log in logs:
                detail = log.error_message or log.feedback or ""
                if log.error_type:
                    detail = f"[{log.error_type}] {detail}"
                typer.echo(
                    f"  {log.review_type:<6} {log.model:<10} {log.status:<10} "
                    f"{log.attempt_number:<4} {log.duration_ms:<7} {detail[:80]}"
                )
        finally:
            await db.close()

    _run_async(_reviews())


@worktrees_app.command("cleanup")
def worktrees_cleanup():
    """Remove worktrees of merged PRs and orphaned spec worktrees."""
    from .git_workflow import cleanup_merged_worktrees

    config = _load_config()

    async def _cleanup():
        db = await _get_db(config)
        try:
            report = await cleanup_merged_worktrees(db)
        finally:
            await db.close()
        typer.echo(f"  Removed {report.cleaned} worktree(s).")
        for error in report.errors:
            typer.echo(f"  ❌ {error}", err=True)

    _run_async(_cleanup())


if __name__ == "__main__":
    app()
