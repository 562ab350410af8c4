"""Execution backend: multi-turn coding sessions via Claude Code SDK."""

from __future__ import annotations

import importlib.util
import logging
from dataclasses import dataclass
from typing import AsyncIterator
from uuid import uuid4

from ..executor import BackendEvent

logger = logging.getLogger(__name__)

DEFAULT_TOOLS = ["Read", "Write", "Edit", "Glob", "Grep", "Bash"]


@dataclass
class _Session:
    cwd: str
    prompt: str = ""
    model: str | None = None
    aborted: bool = False


def _tool_output(content) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            item.get("text", "") if isinstance(item, dict) else str(item) for item in content
        )
    return str(content)


def translate_message(message) -> list[BackendEvent]:
    """Map one SDK message onto backend events.

    Works on attribute shape so the SDK stays an optional import.
    """
    events: list[BackendEvent] = []
    if hasattr(message, "is_error") and hasattr(message, "subtype"):
        if message.is_error:
            detail = getattr(message, "result", None) or message.subtype
            events.append(BackendEvent("error", error=f"Agent error: {detail}"))
        return events

    content = getattr(message, "content", None)
    if not isinstance(content, list):
        return events
    for block in content:
        if hasattr(block, "tool_use_id"):
            events.append(BackendEvent(
                "tool_call",
                call_id=block.tool_use_id,
                output=_tool_output(getattr(block, "content", None)),
                state="error" if getattr(block, "is_error", False) else "completed",
            ))
        elif hasattr(block, "name") and hasattr(block, "input"):
            events.append(BackendEvent(
                "tool_call",
                call_id=getattr(block, "id", None),
                tool=block.name,
                input=dict(block.input or {}),
            ))
        elif hasattr(block, "text"):
            events.append(BackendEvent("text", text=block.text))
    return events


class ClaudeCodeBackend:
    """Coding agent sessions via Claude Code SDK."""

    name = "claude_code"

    def __init__(
        self,
        model: str,
        max_turns: int = 50,
        allowed_tools: list[str] | None = None,
        system_prompt: str = "",
    ):
        self.model = model
        self.max_turns = max_turns
        self.allowed_tools = allowed_tools if allowed_tools is not None else list(DEFAULT_TOOLS)
        self.system_prompt = system_prompt
        self._sessions: dict[str, _Session] = {}

    async def check_health(self) -> bool:
        return importlib.util.find_spec("claude_code_sdk") is not None

    async def start_session(self, working_dir: str) -> str:
        session_id = uuid4().hex
        self._sessions[session_id] = _Session(cwd=str(working_dir))
        return session_id

    async def send_prompt(self, session_id: str, prompt: str, model: str | None = None) -> None:
        session = self._sessions[session_id]
        session.prompt = prompt
        session.model = model or self.model

    async def events(self, session_id: str) -> AsyncIterator[BackendEvent]:
        session = self._sessions.get(session_id)
        if session is None:
            yield BackendEvent("error", error=f"Unknown session: {session_id}")
            return
        try:
            from claude_code_sdk import ClaudeCodeOptions, query
        except ImportError:
            yield BackendEvent("error", error="claude-code-sdk not installed")
            return

        options = ClaudeCodeOptions(
            model=session.model or self.model,
            max_turns=self.max_turns,
            cwd=session.cwd,
            system_prompt=self.system_prompt,
            allowed_tools=self.allowed_tools,
        )
        try:
            async for message in query(prompt=session.prompt, options=options):
                if session.aborted:
                    return
                for event in translate_message(message):
                    yield event
                    if event.kind == "error":
                        return
        except Exception as exc:
            logger.warning("Session %s failed: %s", session_id, exc)
            yield BackendEvent("error", error=f"Agent error: {exc}")
            return
        finally:
            self._sessions.pop(session_id, None)
        yield BackendEvent("complete")

    async def abort_session(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is not None:
            session.aborted = True
