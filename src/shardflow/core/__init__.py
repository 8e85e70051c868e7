# src/shardflow/core/__init__.py
"""Core infrastructure: Configuration, Partitioning, DAG, Logging."""

from shardflow.core.config import (
    BranchSettings,
    ConcurrencySettings,
    DiskSettings,
    LoggingSettings,
    PartitionSettings,
    RetrySettings,
    RunSettings,
    TimeoutSettings,
    load_settings,
    resolve_config,
)
from shardflow.core.dag import BranchSelector, TaskGraph, TaskGraphBuilder, TaskNode
from shardflow.core.logging import configure_from_settings, configure_logging
from shardflow.core.partition import (
    GenomicInterval,
    PartitionPlanner,
    balanced_split,
    interval_split,
    load_intervals,
    partition_count,
)

__all__ = [
    "BranchSelector",
    "BranchSettings",
    "ConcurrencySettings",
    "DiskSettings",
    "GenomicInterval",
    "LoggingSettings",
    "PartitionPlanner",
    "PartitionSettings",
    "RetrySettings",
    "RunSettings",
    "TaskGraph",
    "TaskGraphBuilder",
    "TaskNode",
    "TimeoutSettings",
    "balanced_split",
    "configure_from_settings",
    "configure_logging",
    "interval_split",
    "load_intervals",
    "load_settings",
    "partition_count",
    "resolve_config",
]
