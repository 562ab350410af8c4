"""Tests for three-layer config loading and merging."""

import pytest
from specrun.config import (
    Config,
    deep_merge,
    get_api_key,
    load_config,
    project_config,
)
from specrun.models import Project


@pytest.fixture
def tmp_project(tmp_path, monkeypatch):
    """Project root with a .specrun/config.yaml and a clean environment."""
    for var in ("ANTHROPIC_API_KEY", "OPENAI_API_KEY",
                "SPECRUN_MAX_WORKERS", "SPECRUN_CHUNK_TIMEOUT_SEC"):
        monkeypatch.delenv(var, raising=False)
    (tmp_path / ".specrun").mkdir()
    (tmp_path / ".specrun" / "config.yaml").write_text("""\
max_workers: 3
defaults:
  executor:
    model: claude-sonnet-4-5
    timeout_sec: 600
  reviewer:
    chunk_model: haiku
    max_retries: 2
""")
    return tmp_path


# --- Three-layer merge ---

def test_load_default_config(tmp_project):
    """Load config.yaml correctly."""
    config = load_config(tmp_project)
    assert config.max_workers == 3
    assert config.defaults.executor.model == "claude-sonnet-4-5"
    assert config.defaults.executor.timeout_sec == 600
    assert config.defaults.reviewer.max_retries == 2
    # Untouched fields keep their defaults
    assert config.defaults.reviewer.final_model == "opus"
    assert config.defaults.reviewer.retry_backoff_ms == 2000
    assert config.root == str(tmp_project)


def test_local_overrides_base(tmp_project):
    """local.config.yaml overrides config.yaml field-by-field."""
    (tmp_project / ".specrun" / "local.config.yaml").write_text("""\
defaults:
  executor:
    timeout_sec: 300
  reviewer:
    provider: anthropic
""")
    config = load_config(tmp_project)
    assert config.defaults.executor.timeout_sec == 300
    assert config.defaults.reviewer.provider == "anthropic"
    assert config.defaults.executor.model == "claude-sonnet-4-5"
    assert config.defaults.reviewer.max_retries == 2


def test_env_var_overrides_all(tmp_project, monkeypatch):
    """Environment variables have highest priority."""
    monkeypatch.setenv("ANTHROPIC_API_KEY", "env-key-123")
    monkeypatch.setenv("SPECRUN_MAX_WORKERS", "8")
    monkeypatch.setenv("SPECRUN_CHUNK_TIMEOUT_SEC", "45")
    config = load_config(tmp_project)
    assert config.providers.anthropic.api_key == "env-key-123"
    assert config.max_workers == 8
    assert config.defaults.executor.timeout_sec == 45


def test_env_var_beats_local_config(tmp_project, monkeypatch):
    """Env var overrides local.config.yaml API key."""
    (tmp_project / ".specrun" / "local.config.yaml").write_text("""\
providers:
  anthropic:
    api_key: local-key-456
  openai:
    api_key: local-openai
""")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "env-key-789")
    config = load_config(tmp_project)
    assert get_api_key(config, "anthropic") == "env-key-789"
    assert get_api_key(config, "openai") == "local-openai"
    assert get_api_key(config, "claude_code") == ""


def test_non_numeric_env_ignored(tmp_project, monkeypatch):
    monkeypatch.setenv("SPECRUN_MAX_WORKERS", "lots")
    assert load_config(tmp_project).max_workers == 3


# --- deep merge edge cases ---

def test_deep_merge_nested_dicts():
    """deep merge: nested dicts are merged field-by-field."""
    base = {"a": {"x": 1, "y": 2}, "b": 10}
    override = {"a": {"y": 99, "z": 3}}
    result = deep_merge(base, override)
    assert result == {"a": {"x": 1, "y": 99, "z": 3}, "b": 10}


def test_deep_merge_list_replaces():
    """deep merge: lists are replaced entirely (not appended)."""
    base = {"allowed_roots": ["/a"]}
    result = deep_merge(base, {"allowed_roots": ["/b", "/c"]})
    assert result["allowed_roots"] == ["/b", "/c"]


def test_deep_merge_none_ignored():
    """deep merge: None values do not override."""
    result = deep_merge({"model": "haiku"}, {"model": None})
    assert result["model"] == "haiku"


# --- Config validation ---

def test_missing_config_yaml_uses_defaults(tmp_path, monkeypatch):
    """No config.yaml → all defaults."""
    monkeypatch.delenv("SPECRUN_MAX_WORKERS", raising=False)
    config = load_config(tmp_path)
    assert config.max_workers == 5
    assert config.defaults.executor.type == "claude_code"
    assert config.defaults.reviewer.chunk_timeout_sec == 180
    assert config.resolve_db_path() == tmp_path / ".specrun" / "state.db"


def test_invalid_yaml_raises(tmp_project):
    """Invalid YAML syntax → clear error."""
    (tmp_project / ".specrun" / "config.yaml").write_text("{{invalid yaml")
    with pytest.raises(Exception):
        load_config(tmp_project)


def test_non_mapping_config_raises(tmp_project):
    (tmp_project / ".specrun" / "config.yaml").write_text("- just\n- a list\n")
    with pytest.raises(ValueError, match="expected mapping"):
        load_config(tmp_project)


def test_non_mapping_local_config_ignored(tmp_project):
    (tmp_project / ".specrun" / "local.config.yaml").write_text("just a string\n")
    assert load_config(tmp_project).max_workers == 3


def test_unknown_fields_ignored(tmp_project):
    """Unknown fields in config don't raise errors."""
    (tmp_project / ".specrun" / "config.yaml").write_text("""\
max_workers: 2
some_future_field: true
defaults:
  executor:
    flux_capacitor: on
""")
    config = load_config(tmp_project)
    assert config.max_workers == 2


# --- Per-project overrides ---

def test_project_config_overlays_defaults():
    config = Config()
    project = Project(id="p", name="demo", directory="/tmp/demo", config={
        "executor": {"model": "claude-opus-4"},
        "reviewer": {"skip_final_review": True},
        "base_branch": "develop",
    })
    effective = project_config(config, project)
    assert effective.executor.model == "claude-opus-4"
    assert effective.executor.timeout_sec == 900
    assert effective.reviewer.skip_final_review
    assert effective.reviewer.chunk_model == "haiku"
    assert effective.base_branch == "develop"
    # Global defaults untouched
    assert config.defaults.executor.model == "claude-sonnet-4-5"
