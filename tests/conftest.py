"""Shared fixtures for specrun tests."""

import json
import subprocess
from pathlib import Path

import anyio
import pytest
import pytest_asyncio

from specrun.executor import BackendEvent
from specrun.review import ReviewCall


@pytest_asyncio.fixture
async def db(tmp_path):
    """Real SQLite file database (WAL mode)."""
    from specrun.db import Database
    db = Database(str(tmp_path / "test.db"))
    await db.init()
    yield db
    await db.close()


@pytest_asyncio.fixture
async def memory_db():
    """In-memory database for fast unit tests."""
    from specrun.db import Database
    db = Database(":memory:")
    await db.init()
    yield db
    await db.close()


def _git(args, cwd):
    subprocess.run(["git"] + args, cwd=cwd, check=True, capture_output=True)


@pytest.fixture
def git_repo(tmp_path):
    """Real git repo on 'main' at tmp_path/repo, one initial commit."""
    repo = tmp_path / "repo"
    repo.mkdir()
    _git(["init", "-b", "main"], repo)
    _git(["config", "user.email", "test@test.com"], repo)
    _git(["config", "user.name", "test"], repo)
    # Disable commit signing for tests
    _git(["config", "commit.gpgsign", "false"], repo)
    (repo / "README.md").write_text("# Test")
    _git(["add", "."], repo)
    _git(["commit", "--no-gpg-sign", "-m", "init"], repo)
    return repo


# -------------------------------------------------------------------
# Fake backends
# -------------------------------------------------------------------

class FakeBackend:
    """Scripted execution backend.

    Each session writes a file into its working directory (unless
    ``write_files`` is off), then yields the next script from ``scripts``,
    or a text event plus ``complete`` once the scripts run out.
    """

    name = "fake"

    def __init__(self, scripts=None, healthy=True, write_files=True, block=False):
        self.scripts = list(scripts or [])
        self.healthy = healthy
        self.write_files = write_files
        self.block = block
        self.sessions = {}
        self.prompts = []
        self.aborted = []
        self.started = anyio.Event()

    async def check_health(self):
        return self.healthy

    async def start_session(self, working_dir):
        session_id = f"session-{len(self.sessions) + 1}"
        self.sessions[session_id] = working_dir
        return session_id

    async def send_prompt(self, session_id, prompt, model=None):
        self.prompts.append(prompt)

    async def events(self, session_id):
        if self.write_files:
            (Path(self.sessions[session_id]) / f"{session_id}.txt").write_text("work\n")
        self.started.set()
        if self.block:
            await anyio.sleep_forever()
        if self.scripts:
            for event in self.scripts.pop(0):
                yield event
            return
        yield BackendEvent("text", text=f"Created `{session_id}.txt`.")
        yield BackendEvent("complete")

    async def abort_session(self, session_id):
        self.aborted.append(session_id)


class FakeReviewer:
    """Review backend answering from a list of responses.

    A response is a ReviewCall, a verdict string, or an exception to raise.
    Once the list runs out every call passes.
    """

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.prompts = []

    async def execute(self, prompt, timeout):
        self.prompts.append(prompt)
        response = self.responses.pop(0) if self.responses else verdict("pass", "Looks good")
        if isinstance(response, Exception):
            raise response
        if isinstance(response, ReviewCall):
            return response
        return ReviewCall(True, response)


def verdict(status, feedback="", fix=None, **extra):
    data = {"status": status, "feedback": feedback, **extra}
    if fix is not None:
        data["fixChunk"] = fix
    return json.dumps(data)


class RateLimitError(Exception):
    status_code = 429


# -------------------------------------------------------------------
# Factories
# -------------------------------------------------------------------

async def make_spec(db, directory, chunks=(), title="Demo spec", content="Build the demo."):
    """Create a project, a spec and chunks given as (title, [dependency titles]).

    Returns (project, spec, {title: chunk}).
    """
    project = await db.create_project("demo", str(directory))
    spec = await db.create_spec(project.id, title, content)
    by_title = {}
    for chunk_title, deps in chunks:
        chunk = await db.create_chunk(
            spec.id, chunk_title, f"Implement {chunk_title}",
            dependencies=[by_title[d].id for d in deps],
        )
        by_title[chunk_title] = chunk
    return project, spec, by_title


@pytest.fixture
def make_chunk():
    """Build an in-memory Chunk without a database."""
    from specrun.models import Chunk

    def _make(id, deps=(), order=0, **fields):
        return Chunk(id=id, spec_id="spec", title=id.upper(), order=order,
                     dependencies=list(deps), **fields)
    return _make
