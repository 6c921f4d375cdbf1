"""Configuration loading and validation."""

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

VALID_MERGE_STRATEGIES = frozenset({"squash", "merge", "rebase"})


class GitHubConfig(BaseModel):
    """Issue tracker credentials and API etiquette."""
    token: Optional[str] = None
    username: str = ""
    base_branch: str = "main"
    merge_strategy: str = "squash"

    # Rate limiting
    api_min_spacing: float = 5.0  # Seconds between consecutive API calls
    low_budget_threshold: int = 100  # Below this remaining budget, calls are refused
    max_retry_after: int = 30  # Longest Retry-After we are willing to sleep through
    request_timeout: int = 30

    @field_validator("merge_strategy")
    @classmethod
    def validate_merge_strategy(cls, v: str) -> str:
        if v not in VALID_MERGE_STRATEGIES:
            raise ValueError(
                f"merge_strategy must be one of {sorted(VALID_MERGE_STRATEGIES)}, got '{v}'"
            )
        return v


class CoordinationConfig(BaseModel):
    """Timeouts and cooldowns for the coordination engine (seconds unless noted)."""
    claim_consensus_delay: float = 5.0
    claim_propagation_extension: float = 5.0

    rejected_pr_timeout: int = 3600  # 1 hour
    unreviewed_pr_timeout: int = 7200  # 2 hours
    stuck_task_timeout: int = 1800  # 30 min

    plan_synthesis_cooldown: int = 3600
    health_check_cooldown: int = 86400

    stale_issue_days: int = 7
    stale_memo_days: int = 3
    handled_issue_hours: int = 24

    test_timeout: int = 120
    peers: List[str] = Field(default_factory=list)  # Other agent logins in the fleet


class QueueConfig(BaseModel):
    """Durable queue limits."""
    action_max_attempts: int = 5
    action_base_backoff: int = 30
    action_max_backoff: int = 1800
    action_jitter: float = 0.3

    commitment_max_attempts: int = 3
    commitment_stale_after: int = 86400
    commitment_in_progress_timeout: int = 600

    retention_days: int = 7

    @field_validator("action_jitter")
    @classmethod
    def validate_jitter(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"action_jitter must be between 0 and 1, got {v}")
        return v


class ExecutorConfig(BaseModel):
    """External command that turns a task into commits on the current branch."""
    command: List[str] = Field(default_factory=list)
    timeout: int = 3600


class FleetConfig(BaseSettings):
    """Main coordinator configuration."""

    model_config = SettingsConfigDict(
        env_prefix="FLEET_",
        env_file=".env",
        env_nested_delimiter="__",
        extra="allow",
    )

    state_dir: Path = Field(default=Path(".fleet"))
    checkout_dir: Path = Field(default=Path(".fleet/checkouts"))
    poll_interval: int = 300
    log_level: str = "INFO"

    github: GitHubConfig = Field(default_factory=GitHubConfig)
    coordination: CoordinationConfig = Field(default_factory=CoordinationConfig)
    queues: QueueConfig = Field(default_factory=QueueConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)


# Module-level mtime-based config cache: path -> (parsed_config, file_mtime)
_config_cache: Dict[str, tuple] = {}


def _get_cached_or_load(resolved_path: Path, loader):
    """Return the cached object if the file mtime is unchanged, else reload."""
    key = str(resolved_path)
    try:
        current_mtime = resolved_path.stat().st_mtime
    except FileNotFoundError:
        _config_cache.pop(key, None)
        return None

    cached = _config_cache.get(key)
    if cached is not None:
        cached_result, cached_mtime = cached
        if cached_mtime == current_mtime:
            return cached_result

    result = loader(resolved_path)
    _config_cache[key] = (result, current_mtime)
    return result


def _load_config_from_file(config_path: Path) -> FleetConfig:
    with open(config_path) as f:
        data = yaml.safe_load(f) or {}
    return FleetConfig(**_expand_env_vars(data))


def load_config(config_path: Path = Path("fleet-coordinator.yaml")) -> FleetConfig:
    """Load coordinator configuration from YAML.

    Uses mtime-based caching: returns the cached config if the file hasn't changed.
    """
    if not config_path.exists():
        logger.warning(
            f"Config file not found: {config_path}. Using default configuration."
        )
        return FleetConfig()

    result = _get_cached_or_load(config_path.resolve(), _load_config_from_file)
    return result if result is not None else FleetConfig()


def clear_config_cache() -> None:
    """Clear the module-level config cache. Useful for tests."""
    _config_cache.clear()


def _expand_env_vars(data: Any, _path: str = "") -> Any:
    """Recursively replace `${VAR}` strings with environment values."""
    if isinstance(data, dict):
        return {k: _expand_env_vars(v, f"{_path}.{k}" if _path else k) for k, v in data.items()}
    if isinstance(data, list):
        return [_expand_env_vars(item, f"{_path}[{i}]") for i, item in enumerate(data)]
    if isinstance(data, str) and data.startswith("${") and data.endswith("}"):
        env_var = data[2:-1]
        value = os.environ.get(env_var)
        if value is None:
            logger.warning(
                f"Environment variable '{env_var}' not set (referenced at config path: {_path or 'root'}). "
                f"The literal string '{data}' will be used."
            )
            return data
        return value
    return data
