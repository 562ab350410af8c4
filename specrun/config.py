"""Three-layer config loading and merging."""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field
from pathlib import Path

import yaml

from .models import Project

CONFIG_DIR = ".specrun"


# ---------------------------------------------------------------------------
# Config dataclasses
# ---------------------------------------------------------------------------

@dataclass
class ProviderCreds:
    api_key: str = ""


@dataclass
class ProvidersConfig:
    anthropic: ProviderCreds = field(default_factory=ProviderCreds)
    openai: ProviderCreds = field(default_factory=ProviderCreds)


@dataclass
class ExecutorConfig:
    type: str = "claude_code"
    model: str = "claude-sonnet-4-5"
    timeout_sec: int = 900


@dataclass
class ReviewerConfig:
    provider: str = "claude_code"  # claude_code | anthropic | openai
    chunk_model: str = "haiku"
    final_model: str = "opus"
    chunk_timeout_sec: int = 180
    final_timeout_sec: int = 600
    max_retries: int = 3
    retry_backoff_ms: int = 2000
    skip_final_review: bool = False


@dataclass
class ValidationConfig:
    build_command: str = ""  # empty = no build step
    skip_build: bool = False
    build_timeout_sec: int = 180
    max_output_chars: int = 5000


@dataclass
class ProjectConfig:
    """Execution configuration of one project."""

    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    reviewer: ReviewerConfig = field(default_factory=ReviewerConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    max_iterations: int = 5
    base_branch: str = ""  # empty = the branch checked out when the run starts


@dataclass
class NotifyConfig:
    webhook_url: str = ""
    events: list[str] = field(default_factory=lambda: [
        "worker_completed", "worker_failed",
    ])


@dataclass
class Config:
    db_path: str = f"{CONFIG_DIR}/state.db"
    max_workers: int = 5
    event_buffer_size: int = 100
    allowed_roots: list[str] = field(default_factory=list)  # empty = home directory
    defaults: ProjectConfig = field(default_factory=ProjectConfig)
    notify: NotifyConfig = field(default_factory=NotifyConfig)
    providers: ProvidersConfig = field(default_factory=ProvidersConfig)
    root: str = ""

    def resolve_db_path(self) -> Path:
        path = Path(self.db_path)
        return path if path.is_absolute() else Path(self.root) / path


# ---------------------------------------------------------------------------
# Deep merge
# ---------------------------------------------------------------------------

def deep_merge(base: dict, override: dict) -> dict:
    """Field-level deep merge. Lists are replaced, None values ignored."""
    result = dict(base)
    for key, value in override.items():
        if value is None:
            continue
        if (
            key in result
            and isinstance(result[key], dict)
            and isinstance(value, dict)
        ):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


# ---------------------------------------------------------------------------
# Dict -> dataclass mapping
# ---------------------------------------------------------------------------

def _section(cls, data: dict | None, default):
    """Build ``cls`` from ``data`` over ``default``, ignoring unknown keys."""
    values = asdict(default)
    if isinstance(data, dict):
        values.update({k: v for k, v in data.items() if k in values and v is not None})
    return cls(**values)


def project_config_from_dict(data: dict, base: ProjectConfig | None = None) -> ProjectConfig:
    base = base or ProjectConfig()
    return ProjectConfig(
        executor=_section(ExecutorConfig, data.get("executor"), base.executor),
        reviewer=_section(ReviewerConfig, data.get("reviewer"), base.reviewer),
        validation=_section(ValidationConfig, data.get("validation"), base.validation),
        max_iterations=data.get("max_iterations", base.max_iterations),
        base_branch=data.get("base_branch", base.base_branch),
    )


def _dict_to_config(data: dict, root: str) -> Config:
    cfg = Config(root=root)

    if "db_path" in data:
        cfg.db_path = data["db_path"]
    if "max_workers" in data:
        cfg.max_workers = max(1, int(data["max_workers"]))
    if "event_buffer_size" in data:
        cfg.event_buffer_size = int(data["event_buffer_size"])
    if isinstance(data.get("allowed_roots"), list):
        cfg.allowed_roots = [str(p) for p in data["allowed_roots"]]

    if isinstance(data.get("defaults"), dict):
        cfg.defaults = project_config_from_dict(data["defaults"])

    if isinstance(data.get("notify"), dict):
        n = data["notify"]
        cfg.notify = NotifyConfig(
            webhook_url=n.get("webhook_url", ""),
            events=n.get("events", cfg.notify.events),
        )

    if isinstance(data.get("providers"), dict):
        p = data["providers"]
        cfg.providers = ProvidersConfig(
            anthropic=ProviderCreds(api_key=(p.get("anthropic") or {}).get("api_key", "")),
            openai=ProviderCreds(api_key=(p.get("openai") or {}).get("api_key", "")),
        )

    return cfg


def project_config(config: Config, project: Project) -> ProjectConfig:
    """Effective configuration: global defaults overlaid with project overrides."""
    merged = deep_merge(asdict(config.defaults), project.config or {})
    return project_config_from_dict(merged)


# ---------------------------------------------------------------------------
# Load config (3-layer)
# ---------------------------------------------------------------------------

def _read_yaml(path: Path, strict: bool) -> dict:
    if not path.exists():
        return {}
    parsed = yaml.safe_load(path.read_text())
    if parsed is None:
        return {}
    if not isinstance(parsed, dict):
        if strict:
            raise ValueError(
                f"Invalid {path.name}: expected mapping, got {type(parsed).__name__}"
            )
        return {}
    return parsed


def load_config(root: str | Path) -> Config:
    """Load and merge config from up to 3 layers.

    Priority (highest first):
      1. Environment variables (API keys, SPECRUN_MAX_WORKERS, SPECRUN_CHUNK_TIMEOUT_SEC)
      2. .specrun/local.config.yaml
      3. .specrun/config.yaml
    """
    root = Path(root)
    config_dir = root / CONFIG_DIR

    base_data = _read_yaml(config_dir / "config.yaml", strict=True)
    local_data = _read_yaml(config_dir / "local.config.yaml", strict=False)

    merged = deep_merge(base_data, local_data)
    cfg = _dict_to_config(merged, str(root))

    env_anthropic = os.environ.get("ANTHROPIC_API_KEY")
    if env_anthropic:
        cfg.providers.anthropic.api_key = env_anthropic

    env_openai = os.environ.get("OPENAI_API_KEY")
    if env_openai:
        cfg.providers.openai.api_key = env_openai

    env_workers = os.environ.get("SPECRUN_MAX_WORKERS")
    if env_workers and env_workers.isdigit():
        cfg.max_workers = max(1, int(env_workers))

    env_timeout = os.environ.get("SPECRUN_CHUNK_TIMEOUT_SEC")
    if env_timeout and env_timeout.isdigit():
        cfg.defaults.executor.timeout_sec = int(env_timeout)

    return cfg


def get_api_key(config: Config, provider: str) -> str:
    if provider == "anthropic":
        return config.providers.anthropic.api_key
    elif provider == "openai":
        return config.providers.openai.api_key
    return ""
