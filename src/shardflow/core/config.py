# src/shardflow/core/config.py
"""
Configuration schema and loading for shardflow runs.

Uses Pydantic for validation and Dynaconf for multi-source loading.
Settings are frozen (immutable) after construction.

Only settings that influence planning and scheduling are interpreted here.
Tool parameters are forwarded to executors untouched.
"""

import re
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

from shardflow.contracts.enums import TaskKind


class PartitionSettings(BaseModel):
    """Outer partitioning of the interval list.

    The shard count is round(scale_factor * sample_count), raised to
    min_count. An explicit override_count is used verbatim (no floor).

    Example YAML:
        partition:
          scale_factor: 0.15
          min_count: 2
          splitter: intervals
    """

    model_config = {"frozen": True}

    scale_factor: float = Field(default=0.15, gt=0, description="Shards per unit of sizing input")
    min_count: int = Field(
        default=2,
        ge=1,
        description="Floor for the computed shard count (a count of 1 turns interval splitting into a no-op)",
    )
    override_count: int | None = Field(default=None, ge=1, description="Explicit shard count, trusted verbatim")
    splitter: Literal["intervals", "units"] = Field(
        default="intervals",
        description="Partitioning primitive: length-balanced interval split or plain unit chunks",
    )


class BranchSettings(BaseModel):
    """Build-time selection of the genotyping sub-pipeline.

    scatter_genotyping=True selects the nested-scatter branch for every
    shard; False selects the single flat genotyping task. sub_shard_count is
    the fixed granularity of the nested scatter, independent of the outer
    shard count.
    """

    model_config = {"frozen": True}

    scatter_genotyping: bool = Field(default=False, description="Use the nested-scatter genotyping branch")
    sub_shard_count: int = Field(default=10, ge=1, description="Sub-shards per shard in the nested-scatter branch")


class ConcurrencySettings(BaseModel):
    """Run-wide and per-kind concurrency budget."""

    model_config = {"frozen": True}

    max_concurrency: int = Field(default=4, gt=0, description="Maximum tasks in flight across the whole run")
    kind_limits: dict[TaskKind, int] = Field(
        default_factory=dict,
        description="Maximum tasks in flight per task kind",
    )

    @model_validator(mode="after")
    def validate_kind_limits(self) -> "ConcurrencySettings":
        for kind, limit in self.kind_limits.items():
            if limit < 1:
                raise ValueError(f"kind_limits[{kind.value}] must be >= 1, got {limit}")
            if limit > self.max_concurrency:
                raise ValueError(f"kind_limits[{kind.value}]={limit} exceeds max_concurrency={self.max_concurrency}")
        return self


class RetrySettings(BaseModel):
    """Retry behavior for transient task failures.

    budget is the number of re-attempts after the first try, so budget=2
    means at most 3 invocations.
    """

    model_config = {"frozen": True}

    budget: int = Field(default=2, ge=0, description="Re-attempts allowed after the first try")
    kind_budgets: dict[TaskKind, int] = Field(default_factory=dict, description="Per-kind budget overrides")
    initial_delay_seconds: float = Field(default=1.0, ge=0, description="Initial backoff delay")
    max_delay_seconds: float = Field(default=60.0, ge=0, description="Maximum backoff delay")
    exponential_base: float = Field(default=2.0, gt=1.0, description="Exponential backoff base")
    jitter_seconds: float = Field(default=1.0, ge=0, description="Maximum random jitter added to each delay")

    @model_validator(mode="after")
    def validate_kind_budgets(self) -> "RetrySettings":
        negative = {kind.value: budget for kind, budget in self.kind_budgets.items() if budget < 0}
        if negative:
            raise ValueError(f"kind_budgets must be >= 0, got {negative}")
        return self

    def budget_for(self, kind: TaskKind) -> int:
        return self.kind_budgets.get(kind, self.budget)


class TimeoutSettings(BaseModel):
    """Per-task wall-clock budgets. None means unlimited."""

    model_config = {"frozen": True}

    task_seconds: float | None = Field(default=None, gt=0, description="Default wall-clock budget per task")
    kind_seconds: dict[TaskKind, float] = Field(default_factory=dict, description="Per-kind overrides")

    @model_validator(mode="after")
    def validate_kind_seconds(self) -> "TimeoutSettings":
        bad = {kind.value: seconds for kind, seconds in self.kind_seconds.items() if seconds <= 0}
        if bad:
            raise ValueError(f"kind_seconds must be > 0, got {bad}")
        return self

    def timeout_for(self, kind: TaskKind) -> float | None:
        return self.kind_seconds.get(kind, self.task_seconds)


class DiskSettings(BaseModel):
    """Disk-size tiers forwarded to executors. Opaque to the scheduler."""

    model_config = {"frozen": True}

    small_gb: int = Field(default=100, gt=0)
    medium_gb: int = Field(default=200, gt=0)
    large_gb: int = Field(default=300, gt=0)


class LoggingSettings(BaseModel):
    """Log output configuration."""

    model_config = {"frozen": True}

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    json_output: bool = False


class RunSettings(BaseModel):
    """Top-level run configuration.

    This is the single source of truth for planning and scheduling.
    All settings are validated and frozen after construction.
    """

    model_config = {"frozen": True}

    partition: PartitionSettings = Field(default_factory=PartitionSettings)
    branch: BranchSettings = Field(default_factory=BranchSettings)
    concurrency: ConcurrencySettings = Field(default_factory=ConcurrencySettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    timeouts: TimeoutSettings = Field(default_factory=TimeoutSettings)
    disk: DiskSettings = Field(default_factory=DiskSettings)
    import_batch_size: int = Field(
        default=50,
        gt=0,
        description="Fixed batch size forwarded to import tasks; executors size import workers from it",
    )
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


# Regex pattern for ${VAR} or ${VAR:-default} syntax
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")


def _expand_env_vars(config: dict[str, Any]) -> dict[str, Any]:
    """Recursively expand ${VAR} and ${VAR:-default} patterns in config values.

    Unset variables without a default are left as-is so Pydantic reports
    them against the offending field.
    """
    import os

    def _expand(value: Any) -> Any:
        if isinstance(value, str):

            def _replace(match: re.Match[str]) -> str:
                name, default = match.group(1), match.group(2)
                if name in os.environ:
                    return os.environ[name]
                if default is not None:
                    return default
                return match.group(0)

            return _ENV_VAR_PATTERN.sub(_replace, value)
        if isinstance(value, dict):
            return {k: _expand(v) for k, v in value.items()}
        if isinstance(value, list):
            return [_expand(v) for v in value]
        return value

    return {k: _expand(v) for k, v in config.items()}


def _lower_keys(value: Any) -> Any:
    """Lowercase mapping keys recursively (Dynaconf uppercases top-level keys)."""
    if isinstance(value, dict):
        return {str(k).lower(): _lower_keys(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_lower_keys(v) for v in value]
    return value


def load_settings(config_path: Path) -> RunSettings:
    """Load settings from YAML file with environment variable overrides.

    Uses Dynaconf for multi-source loading with precedence:
    1. Environment variables (SHARDFLOW_*) - highest priority
    2. Config file (settings.yaml)
    3. Defaults from Pydantic schema - lowest priority

    Environment variable format: SHARDFLOW_CONCURRENCY__MAX_CONCURRENCY for nested keys.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Validated RunSettings instance

    Raises:
        ValidationError: If configuration fails Pydantic validation
        FileNotFoundError: If config file doesn't exist
    """
    from dynaconf import Dynaconf

    # Dynaconf silently accepts missing files
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    dynaconf_settings = Dynaconf(
        envvar_prefix="SHARDFLOW",
        settings_files=[str(config_path)],
        environments=False,
        load_dotenv=False,
        merge_enabled=True,
    )

    internal_keys = {"LOAD_DOTENV", "ENVIRONMENTS", "SETTINGS_FILES"}
    raw_config = {k: v for k, v in dynaconf_settings.as_dict().items() if k not in internal_keys}
    raw_config = _lower_keys(raw_config)
    raw_config = _expand_env_vars(raw_config)

    return RunSettings(**raw_config)


def resolve_config(settings: RunSettings) -> dict[str, Any]:
    """Convert validated settings to a JSON-able dict, defaults included."""
    return settings.model_dump(mode="json")
