"""Configuration loader for Overseer.

Loads config from a YAML cascade: config/default.yaml is always loaded,
then environment-specific overrides, then environment variables.
"""

from __future__ import annotations

import os
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from overseer.core.exceptions import ConfigError


# ---------------------------------------------------------------------------
# Config schema
# ---------------------------------------------------------------------------

class StorageConfig(BaseModel):
    state_dir: str = "hooks"

    @property
    def root(self) -> Path:
        return Path(self.state_dir).expanduser()


class OrchestrationConfig(BaseModel):
    default_max_iterations: int = Field(default=50, ge=1)
    default_priority: int = 1


class SafetyConfig(BaseModel):
    max_iterations_per_task: int = Field(default=50, ge=1)
    hourly_budget_usd: Decimal = Decimal("10.00")
    max_parallel_agents: int = Field(default=5, ge=1)
    approval_ttl_hours: float = Field(default=24.0, gt=0)
    cost_history_hours: float = Field(default=24.0, gt=0)
    rollback_log_limit: int = Field(default=100, ge=1)


class RollbackConfig(BaseModel):
    repo_path: str = "."
    commits_to_revert: int = Field(default=1, ge=1)
    raise_on_failure: bool = False


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class AppConfig(BaseModel):
    storage: StorageConfig = Field(default_factory=StorageConfig)
    orchestration: OrchestrationConfig = Field(default_factory=OrchestrationConfig)
    safety: SafetyConfig = Field(default_factory=SafetyConfig)
    rollback: RollbackConfig = Field(default_factory=RollbackConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base, returning a new dict."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    return data if isinstance(data, dict) else {}


def _apply_env_overrides(merged: dict[str, Any]) -> dict[str, Any]:
    state_dir = os.getenv("OVERSEER_STATE_DIR")
    if state_dir:
        merged.setdefault("storage", {})["state_dir"] = state_dir

    budget = os.getenv("OVERSEER_HOURLY_BUDGET_USD")
    if budget:
        try:
            merged.setdefault("safety", {})["hourly_budget_usd"] = str(Decimal(budget))
        except InvalidOperation as e:
            raise ConfigError(f"OVERSEER_HOURLY_BUDGET_USD is not a number: {budget!r}") from e

    agents = os.getenv("OVERSEER_MAX_PARALLEL_AGENTS")
    if agents:
        if not agents.isdigit():
            raise ConfigError(f"OVERSEER_MAX_PARALLEL_AGENTS is not an integer: {agents!r}")
        merged.setdefault("safety", {})["max_parallel_agents"] = int(agents)

    return merged


def load_config(
    config_dir: Optional[Path] = None,
    env: Optional[str] = None,
) -> AppConfig:
    """Load application config from YAML cascade.

    Order: default.yaml -> {env}.yaml -> env vars (OVERSEER_STATE_DIR, etc.)
    """
    if config_dir is None:
        config_dir = Path(__file__).parent.parent.parent / "config"

    # Base config
    merged = _load_yaml(config_dir / "default.yaml")

    # Environment overlay
    if env:
        overlay = _load_yaml(config_dir / f"{env}.yaml")
        merged = _deep_merge(merged, overlay)

    merged = _apply_env_overrides(merged)

    try:
        return AppConfig(**merged)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
