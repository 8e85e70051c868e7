"""Result types returned by the scheduler and the pipeline runner."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from shardflow.contracts.artifacts import ArtifactRef, GatheredArtifact
from shardflow.contracts.enums import RunStatus, TaskKind, TaskStatus
from shardflow.contracts.partition import PartitionDescriptor
from shardflow.contracts.types import NodeID


@dataclass
class TaskRecord:
    """Result slot of one task node, owned by the scheduler.

    Attributes:
        node_id: Task the record belongs to
        kind: Task kind (copied from the node for reporting)
        shard_index: Shard of the task, None for top-level gathers
        status: Current lifecycle state
        outputs: Declared outputs on success
        error: Final error on failure (MaxRetriesExceeded wraps transient ones)
        attempts: Number of executor invocations made
        duration_seconds: Wall time from first dispatch to completion
    """

    node_id: NodeID
    kind: TaskKind
    shard_index: int | None
    status: TaskStatus = TaskStatus.PENDING
    outputs: Mapping[str, ArtifactRef] = field(default_factory=dict)
    error: BaseException | None = None
    attempts: int = 0
    duration_seconds: float | None = None


@dataclass(frozen=True, slots=True)
class DispatchRecord:
    """One dispatch decision, kept for auditing scheduling invariants.

    Attributes:
        sequence: 0-based dispatch order
        node_id: Dispatched task
        kind: Kind of the dispatched task
        unmet_dependencies: Dependencies not SUCCEEDED at dispatch time
            (always empty for a correct scheduler)
        in_flight: Tasks running, this one included, right after dispatch
        in_flight_of_kind: Tasks of the same kind running, this one included
    """

    sequence: int
    node_id: NodeID
    kind: TaskKind
    unmet_dependencies: tuple[NodeID, ...]
    in_flight: int
    in_flight_of_kind: int


@dataclass(frozen=True)
class ScheduleResult:
    """Outcome of Scheduler.run().

    Attributes:
        status: SUCCEEDED only when every node succeeded
        records: Result slot per node, in graph insertion order
        dispatch_log: Every dispatch, in order
    """

    status: RunStatus
    records: Mapping[NodeID, TaskRecord]
    dispatch_log: tuple[DispatchRecord, ...]

    def with_status(self, status: TaskStatus) -> list[NodeID]:
        """Node ids whose record is in the given status."""
        return [node_id for node_id, record in self.records.items() if record.status == status]

    @property
    def failed(self) -> list[NodeID]:
        return self.with_status(TaskStatus.FAILED)

    @property
    def skipped(self) -> list[NodeID]:
        return self.with_status(TaskStatus.SKIPPED)


@dataclass(frozen=True, slots=True)
class ShardResult:
    """Resolved outputs of one shard.

    For each declared output name, the artifact of the one active branch
    (or of the shard's plain task) that produced it.
    """

    shard_index: int
    outputs: Mapping[str, ArtifactRef]

    def __post_init__(self) -> None:
        object.__setattr__(self, "outputs", MappingProxyType(dict(self.outputs)))

    def artifact(self, output_name: str) -> ArtifactRef:
        """Return the named artifact.

        Raises:
            KeyError: If the shard did not produce that output
        """
        try:
            return self.outputs[output_name]
        except KeyError:
            raise KeyError(f"Shard {self.shard_index} has no output '{output_name}'. Available: {sorted(self.outputs)}") from None


@dataclass(frozen=True)
class RunResult:
    """Outcome of a full plan -> build -> schedule -> gather run.

    Attributes:
        status: FAILED if any requested gathered artifact was not produced
        partitions: Descriptors actually used, for auditing or reuse
        gathered: Merged artifacts keyed by gather task kind
        shard_results: Resolved outputs of every shard whose tasks all succeeded
        failed_shards: Shards with at least one failed or skipped task
        schedule: Full scheduler outcome
    """

    status: RunStatus
    partitions: tuple[PartitionDescriptor, ...]
    gathered: Mapping[TaskKind, GatheredArtifact]
    shard_results: tuple[ShardResult, ...]
    failed_shards: tuple[int, ...]
    schedule: ScheduleResult
