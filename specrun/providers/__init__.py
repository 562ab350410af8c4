"""Backend construction from configuration."""

from __future__ import annotations

from ..config import Config, ProjectConfig, get_api_key
from .code_agent import ClaudeCodeBackend
from .text_gen import ClaudeCodeReviewer, HttpReviewer

__all__ = [
    "ClaudeCodeBackend",
    "ClaudeCodeReviewer",
    "HttpReviewer",
    "create_execution_backend",
    "create_reviewer",
]


def create_execution_backend(project: ProjectConfig) -> ClaudeCodeBackend:
    executor = project.executor
    if executor.type == "claude_code":
        return ClaudeCodeBackend(model=executor.model, max_turns=project.max_iterations)
    raise ValueError(f"Unknown executor type: {executor.type}")


def create_reviewer(config: Config, project: ProjectConfig, model: str):
    """Review backend for ``model`` using the project's reviewer provider."""
    provider = project.reviewer.provider
    if provider == "claude_code":
        return ClaudeCodeReviewer(model)
    if provider in ("anthropic", "openai"):
        return HttpReviewer(provider, model, get_api_key(config, provider))
    raise ValueError(f"Unknown review provider: {provider}")
