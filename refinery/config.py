"""Configuration loading from YAML and environment.

Secrets (notification token) are taken from environment variables or from
files (Docker secrets). Never put real tokens in config files committed to
the repo.
"""

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _read_secret(env_key: str, file_env_key: str) -> str | None:
    """Read secret from env var or from file path in env (e.g. Docker
    secrets)."""
    value = _current_env.get(env_key)
    if value:
        return value.strip()
    file_path = _current_env.get(file_env_key)
    if file_path:
        return Path(file_path).read_text().strip()
    return None


# Injected by load_config so validators can read env/file
_current_env: dict[str, str] = {}


class RefineryConfig(BaseSettings):
    """Merge queue behaviour for this rig."""

    model_config = SettingsConfigDict(env_prefix="REFINERY_", extra="ignore")

    rig: str = Field(default="", description="Rig (workspace) name recorded on submitted merge requests")
    mr_prefix: str = Field(default="gt-mr-", description="Id prefix routed to the merge request store")
    trunk_branches: list[str] = Field(default_factory=lambda: ["main", "master"], description="Never submittable")
    worker_branch_prefixes: list[str] = Field(
        default_factory=lambda: ["worker/", "polecat/"],
        description="Branch prefixes of the form <prefix><worker>/<issue>",
    )
    default_priority: int = Field(default=2, ge=0, le=4, description="Priority when the source issue is unavailable")
    interval_seconds: int = Field(default=60, ge=5, description="Refinery cycle interval")
    max_parallel_targets: int = Field(default=4, ge=1, description="Targets merged concurrently per cycle")
    lock_timeout_seconds: float = Field(default=30, gt=0, description="Wait for a busy target (retry --now)")
    lock_dir: str | None = Field(
        default=None,
        description="Directory for per-target lock files shared between processes; unset uses locks/ in the merge request store",
    )


class StoreConfig(BaseSettings):
    """Issue store backend and routing."""

    model_config = SettingsConfigDict(env_prefix="STORE_", extra="ignore")

    backend: str = Field(default="yaml", description="yaml or bd")
    routes_file: str | None = Field(default=None, description="routes.jsonl or YAML routes table")
    routes: list[dict[str, str]] = Field(default_factory=list, description="Inline routes: [{prefix, path}]")
    timeout_seconds: float = Field(default=30, gt=0, description="Timeout for each store call")
    required_types: list[str] = Field(default_factory=lambda: ["merge-request"], description="Custom types to ensure")
    bd_command: str = Field(default="bd", description="bd executable for the bd backend")


class GitConfig(BaseSettings):
    """Clone used for merging."""

    model_config = SettingsConfigDict(env_prefix="GIT_", extra="ignore")

    repo_dir: str = Field(default=".", description="Local clone the refinery merges in")
    remote: str | None = Field(default="origin", description="Remote to fetch from / push to; empty for local only")
    push: bool = Field(default=False, description="Push the target after a successful merge")
    check_command: str | None = Field(default=None, description="Pre-merge check, e.g. 'pytest -q'")
    check_timeout: float = Field(default=600, gt=0, description="Check timeout in seconds")
    timeout: float = Field(default=60, gt=0, description="Timeout for each git command")


class NotifyConfig(BaseSettings):
    """Worker notifications."""

    model_config = SettingsConfigDict(env_prefix="NOTIFY_", extra="ignore")

    webhook_url: str | None = Field(default=None, description="POST target; unset logs notifications instead")
    token: str | None = Field(default=None, description="Bearer token; use env or secret file")
    timeout: float = Field(default=10, gt=0, description="HTTP timeout in seconds")


class LoggingConfig(BaseSettings):
    """Logging settings."""

    model_config = SettingsConfigDict(env_prefix="LOGGING_", extra="ignore")

    level: str = Field(default="INFO", description="Log level")
    format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format",
    )


class AppConfig(BaseSettings):
    """Root application config from YAML + env."""

    model_config = SettingsConfigDict(extra="ignore")

    refinery: RefineryConfig = Field(default_factory=RefineryConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    git: GitConfig = Field(default_factory=GitConfig)
    notify: NotifyConfig = Field(default_factory=NotifyConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    base_dir: str = Field(default=".", description="Directory relative paths in the config are resolved against")

    @property
    def notify_token_resolved(self) -> str | None:
        """Resolve notification token from config, env or Docker secret file."""
        t = self.notify.token
        if t and not t.startswith("${"):
            return t
        return _read_secret("NOTIFY_TOKEN", "NOTIFY_TOKEN_FILE")

    def resolve_path(self, value: str) -> Path:
        """Resolve a config path against base_dir."""
        path = Path(value)
        if path.is_absolute():
            return path
        return Path(self.base_dir) / path


def _substitute_env(value: Any) -> Any:
    """Replace ${VAR} and $VAR in strings with os.environ."""
    if isinstance(value, str):
        if value.startswith("${") and value.endswith("}"):
            key = value[2:-1].strip()
            return _current_env.get(key, value)
        # Simple $VAR
        if value.startswith("$") and not value.startswith("${"):
            key = value[1:].strip()
            return _current_env.get(key, value)
        return value
    if isinstance(value, dict):
        return {k: _substitute_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_substitute_env(v) for v in value]
    return value


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load config from YAML file and environment.

    Secrets: NOTIFY_TOKEN or NOTIFY_TOKEN_FILE.
    """
    global _current_env

    _current_env = dict(os.environ)

    path = config_path or Path("config.yaml")
    if not path.is_file():
        return AppConfig(base_dir=str(Path.cwd()))

    raw = yaml.safe_load(path.read_text()) or {}
    raw = _substitute_env(raw)

    # Env overrides for nested values (e.g. REFINERY_RIG)
    refinery_raw = raw.get("refinery") or {}
    if _current_env.get("REFINERY_RIG"):
        refinery_raw = {**refinery_raw, "rig": _current_env.get("REFINERY_RIG")}

    return AppConfig(
        refinery=RefineryConfig(**refinery_raw),
        store=StoreConfig(**(raw.get("store") or {})),
        git=GitConfig(**(raw.get("git") or {})),
        notify=NotifyConfig(**(raw.get("notify") or {})),
        logging=LoggingConfig(**(raw.get("logging") or {})),
        base_dir=str(path.resolve().parent),
    )
