"""Post-execution validation: file changes and build check."""

from __future__ import annotations

import logging
import shlex
import subprocess
import time
from pathlib import Path

import anyio

from . import git_ops
from .config import ValidationConfig
from .models import AutoFail, BuildResult, ValidationResult

logger = logging.getLogger(__name__)

NO_CHANGES = "no_changes"
BUILD_FAILED = "build_failed"
VALIDATION_ERROR = "validation_error"

NO_CHANGES_FEEDBACK = (
    "No code changes were made. The task requires creating or modifying files "
    "in the project. Make the required changes and make sure they are written to disk."
)


async def run_build(
    cwd: Path | str, command: str, timeout_sec: float, max_output_chars: int = 5000
) -> BuildResult:
    """Run ``command`` in ``cwd`` and keep the tail of its combined output."""
    start = time.monotonic()
    try:
        proc = await anyio.to_thread.run_sync(
            lambda: subprocess.run(
                shlex.split(command),
                cwd=str(cwd),
                capture_output=True,
                text=True,
                timeout=timeout_sec,
            )
        )
    except subprocess.TimeoutExpired as e:
        output = (e.stdout or "") if isinstance(e.stdout, str) else ""
        return BuildResult(
            success=False,
            exit_code=-1,
            output=f"{output}\nBuild timed out after {timeout_sec:g}s"[-max_output_chars:],
            duration_sec=time.monotonic() - start,
        )
    except OSError as e:
        return BuildResult(False, -1, f"Failed to run build: {e}", time.monotonic() - start)

    output = f"{proc.stdout}{proc.stderr}"
    return BuildResult(
        success=proc.returncode == 0,
        exit_code=proc.returncode,
        output=output[-max_output_chars:],
        duration_sec=time.monotonic() - start,
    )


async def validate_chunk(
    chunk_id: str,
    working_dir: Path | str,
    config: ValidationConfig,
    check_changes: bool = True,
) -> ValidationResult:
    """Check that a chunk changed files and that the project still builds.

    With ``check_changes`` off (no git checkpointing) only the build runs.
    """
    logger.info("Validating chunk %s in %s", chunk_id, working_dir)
    if not check_changes:
        result = ValidationResult(changes_checked=False)
        return await _check_build(chunk_id, working_dir, config, result)

    try:
        lines = await git_ops.get_status_lines(working_dir)
    except (subprocess.CalledProcessError, OSError) as e:
        message = (getattr(e, "stderr", None) or str(e)).strip()
        return ValidationResult(
            auto_fail=AutoFail(VALIDATION_ERROR, f"Could not inspect changes: {message}")
        )

    result = ValidationResult(
        files_changed=len(lines),
        changed_files=await git_ops.get_changed_files(working_dir),
    )
    if not lines:
        result.auto_fail = AutoFail(NO_CHANGES, NO_CHANGES_FEEDBACK)
        logger.info("Auto-fail for chunk %s: %s", chunk_id, NO_CHANGES)
        return result

    result.diff_stat = await git_ops.get_diff_stat(working_dir)
    return await _check_build(chunk_id, working_dir, config, result)


async def _check_build(
    chunk_id: str, working_dir: Path | str, config: ValidationConfig, result: ValidationResult
) -> ValidationResult:
    if config.skip_build or not config.build_command:
        return result

    build = await run_build(
        working_dir, config.build_command, config.build_timeout_sec, config.max_output_chars
    )
    result.build = build
    if not build.success:
        result.auto_fail = AutoFail(
            BUILD_FAILED,
            f"Build failed with exit code {build.exit_code}. Errors:\n{build.output}",
        )
        logger.info("Auto-fail for chunk %s: %s", chunk_id, BUILD_FAILED)
    return result
