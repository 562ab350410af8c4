"""Project path safety checks."""

from __future__ import annotations

from pathlib import Path

_SENSITIVE = (
    ".ssh", ".gnupg", ".aws", ".config", ".local/share/keyrings",
    ".password-store", ".netrc", ".docker", ".kube", ".npmrc", ".pypirc",
)


class PathValidationError(ValueError):
    """Raised when a project path is unsafe or unusable."""


def _within(path: Path, root: Path) -> bool:
    return path == root or root in path.parents


def validate_project_path(
    project_path: str | Path, allowed_roots: list[str | Path] | None = None
) -> Path:
    """Resolve ``project_path`` and check it is safe to run git in.

    The path must sit inside one of ``allowed_roots`` (default: the home
    directory), outside credential directories, and be a directory when it
    exists. Returns the resolved path.
    """
    if not project_path:
        raise PathValidationError("Project path is required")
    resolved = Path(project_path).expanduser().resolve()

    roots = [Path(r).expanduser().resolve() for r in (allowed_roots or [Path.home()])]
    if not any(_within(resolved, root) for root in roots):
        allowed = ", ".join(str(r) for r in roots)
        raise PathValidationError(f"Project path must be within {allowed}")

    home = Path.home().resolve()
    for name in _SENSITIVE:
        if _within(resolved, home / name):
            raise PathValidationError("Access to sensitive directories is not allowed")

    if resolved.exists() and not resolved.is_dir():
        raise PathValidationError("Project path must be a directory")
    return resolved
