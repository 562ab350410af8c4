"""Tests for post-execution validation."""

import sys

import pytest
from specrun.config import ValidationConfig
from specrun.validation import run_build, validate_chunk


@pytest.mark.asyncio
async def test_no_changes_auto_fails(git_repo):
    result = await validate_chunk("c1", git_repo, ValidationConfig())
    assert result.files_changed == 0
    assert result.auto_fail.reason == "no_changes"
    assert "No code changes" in result.auto_fail.feedback


@pytest.mark.asyncio
async def test_changes_without_build(git_repo):
    (git_repo / "README.md").write_text("# Changed\n")
    (git_repo / "new.py").write_text("x = 1\n")
    result = await validate_chunk("c1", git_repo, ValidationConfig())
    assert result.auto_fail is None
    assert result.files_changed == 2
    assert result.changed_files == ["README.md", "new.py"]
    assert "README.md" in result.diff_stat
    assert result.build is None


@pytest.mark.asyncio
async def test_build_failure_auto_fails(git_repo):
    (git_repo / "new.py").write_text("x = 1\n")
    config = ValidationConfig(
        build_command=f"{sys.executable} -c \"import sys; print('boom'); sys.exit(3)\""
    )
    result = await validate_chunk("c1", git_repo, config)
    assert result.build.exit_code == 3
    assert result.auto_fail.reason == "build_failed"
    assert "exit code 3" in result.auto_fail.feedback
    assert "boom" in result.auto_fail.feedback


@pytest.mark.asyncio
async def test_build_success(git_repo):
    (git_repo / "new.py").write_text("x = 1\n")
    config = ValidationConfig(build_command=f"{sys.executable} -c \"print('ok')\"")
    result = await validate_chunk("c1", git_repo, config)
    assert result.build.success
    assert result.auto_fail is None


@pytest.mark.asyncio
async def test_skip_build(git_repo):
    (git_repo / "new.py").write_text("x = 1\n")
    config = ValidationConfig(build_command="false", skip_build=True)
    result = await validate_chunk("c1", git_repo, config)
    assert result.build is None
    assert result.auto_fail is None


@pytest.mark.asyncio
async def test_build_only_without_change_check(tmp_path):
    config = ValidationConfig(build_command=f"{sys.executable} -c \"print('ok')\"")
    result = await validate_chunk("c1", tmp_path, config, check_changes=False)
    assert not result.changes_checked
    assert result.build.success
    assert result.auto_fail is None


@pytest.mark.asyncio
async def test_status_failure_is_validation_error(tmp_path):
    plain = tmp_path / "plain"
    plain.mkdir()
    result = await validate_chunk("c1", plain, ValidationConfig())
    assert result.auto_fail.reason == "validation_error"


@pytest.mark.asyncio
async def test_build_timeout(tmp_path):
    build = await run_build(tmp_path, f"{sys.executable} -c \"import time; time.sleep(5)\"", 0.2)
    assert not build.success
    assert "timed out" in build.output


@pytest.mark.asyncio
async def test_build_output_keeps_tail(tmp_path):
    build = await run_build(
        tmp_path, f"{sys.executable} -c \"print('a' * 100 + 'END')\"", 10, max_output_chars=20
    )
    assert len(build.output) == 20
    assert build.output.rstrip().endswith("END")


@pytest.mark.asyncio
async def test_missing_build_command(tmp_path):
    build = await run_build(tmp_path, "definitely-not-a-command-xyz", 5)
    assert not build.success
    assert "Failed to run build" in build.output
