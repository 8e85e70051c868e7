"""Shared contracts for cross-boundary data types.

This package is a LEAF MODULE with no outbound dependencies to core/engine.
Settings classes are NOT re-exported here - import them from
shardflow.core.config.

Import patterns:
    # Contracts (lightweight, no heavy dependencies)
    from shardflow.contracts import ArtifactRef, TaskStatus, PartitionDescriptor

    # Settings classes
    from shardflow.core.config import RunSettings
"""

from shardflow.contracts.artifacts import ArtifactRef, GatheredArtifact
from shardflow.contracts.enums import (
    GATHER_KINDS,
    BranchTag,
    RunStatus,
    TaskKind,
    TaskStatus,
)
from shardflow.contracts.errors import (
    AmbiguousBranchError,
    EmptyInputError,
    ExecutorError,
    GraphConstructionError,
    IncompleteGatherError,
    TaskTimeoutError,
)
from shardflow.contracts.partition import PartitionDescriptor, Unit
from shardflow.contracts.results import (
    DispatchRecord,
    RunResult,
    ScheduleResult,
    ShardResult,
    TaskRecord,
)
from shardflow.contracts.types import NodeID, OutputName

__all__ = [
    "GATHER_KINDS",
    "AmbiguousBranchError",
    "ArtifactRef",
    "BranchTag",
    "DispatchRecord",
    "EmptyInputError",
    "ExecutorError",
    "GatheredArtifact",
    "GraphConstructionError",
    "IncompleteGatherError",
    "NodeID",
    "OutputName",
    "PartitionDescriptor",
    "RunResult",
    "RunStatus",
    "ScheduleResult",
    "ShardResult",
    "TaskKind",
    "TaskRecord",
    "TaskStatus",
    "TaskTimeoutError",
    "Unit",
]
