# src/shardflow/engine/pipeline.py
"""ShardedCallsetPipeline: plan -> build -> schedule -> assemble -> gather.

Ties the pieces together for one run:
- PartitionPlanner splits the intervals into shards
- TaskGraphBuilder builds the graph with the configured genotyping branch
- Scheduler executes it; tool tasks go to the caller's executor, gather
  tasks to the GatherReducer
- OutputAssembler resolves each shard's canonical outputs for the result
"""

from __future__ import annotations

import threading
from collections.abc import Mapping, Sequence

import structlog

from shardflow.contracts.artifacts import ArtifactRef, GatheredArtifact
from shardflow.contracts.enums import RunStatus, TaskKind, TaskStatus
from shardflow.contracts.errors import ExecutorError
from shardflow.contracts.partition import PartitionDescriptor, Unit
from shardflow.contracts.results import RunResult, ScheduleResult, ShardResult
from shardflow.contracts.types import NodeID
from shardflow.core.config import RunSettings
from shardflow.core.dag.builder import (
    FILTERED_OUTPUT,
    GENOTYPE_GROUP,
    RAW_OUTPUT,
    SITES_ONLY_OUTPUT,
    TOP_LEVEL_GATHERS,
    VCF_OUTPUT,
    TaskGraphBuilder,
    node_id_for,
)
from shardflow.core.dag.graph import TaskGraph
from shardflow.core.dag.models import TaskNode, UpstreamRef
from shardflow.core.partition import PartitionPlanner, Splitter, splitter_for
from shardflow.engine.assembler import OutputAssembler
from shardflow.engine.clock import Clock
from shardflow.engine.gather import GatherReducer, MergePrimitive
from shardflow.engine.scheduler import Scheduler, TaskContext, TaskExecutor

slog = structlog.get_logger(__name__)


def plan_partitions(
    settings: RunSettings,
    sample_count: int,
    units: Sequence[Unit],
    *,
    splitter: Splitter | None = None,
) -> tuple[PartitionDescriptor, ...]:
    """Partition units into shards as configured by settings.partition."""
    partition = settings.partition
    return PartitionPlanner(splitter or splitter_for(partition.splitter)).plan(
        sample_count,
        units,
        override_count=partition.override_count,
        scale_factor=partition.scale_factor,
        min_count=partition.min_count,
    )


def build_graph(
    settings: RunSettings,
    descriptors: Sequence[PartitionDescriptor],
    *,
    splitter: Splitter | None = None,
) -> TaskGraph:
    """Build the task graph with the branch selected by settings.branch."""
    builder = TaskGraphBuilder(settings, splitter=splitter or splitter_for(settings.partition.splitter))
    return builder.build(descriptors, use_branch_a=settings.branch.scatter_genotyping)


class GatherRoutingExecutor:
    """Sends gather tasks to the GatherReducer and everything else to the tool executor.

    Gathered artifacts are kept by node id for the run result.
    """

    def __init__(self, tool_executor: TaskExecutor, reducer: GatherReducer) -> None:
        self._tool_executor = tool_executor
        self._reducer = reducer
        self._lock = threading.Lock()
        self._gathered: dict[NodeID, GatheredArtifact] = {}

    @property
    def gathered(self) -> dict[NodeID, GatheredArtifact]:
        with self._lock:
            return dict(self._gathered)

    def invoke(self, node: TaskNode, context: TaskContext) -> Mapping[str, ArtifactRef]:
        if not node.kind.is_gather:
            return self._tool_executor.invoke(node, context)

        output_name = node.params["output_name"]
        shard_results = [ShardResult(ref.shard_index, {output_name: ref}) for ref in context.inputs["inputs"]]
        try:
            gathered = self._reducer.reduce(
                shard_results,
                output_name,
                node.params["expected_shards"],
                label=node.node_id,
            )
        except OSError as e:
            raise ExecutorError(f"Merge for '{node.node_id}' failed: {e}", retryable=True, node_id=node.node_id) from e
        with self._lock:
            self._gathered[node.node_id] = gathered
        return {output_name: gathered.artifact}


class ShardedCallsetPipeline:
    """Runs the sharded joint-calling template end to end.

    Example:
        pipeline = ShardedCallsetPipeline(settings, tool_executor=executor, merger=FileConcatMerger(out))
        result = pipeline.run(sample_count=2000, units=load_intervals(path))
        gathered = result.gathered[TaskKind.GATHER_SITES_ONLY]
    """

    def __init__(
        self,
        settings: RunSettings,
        *,
        tool_executor: TaskExecutor,
        merger: MergePrimitive,
        splitter: Splitter | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._settings = settings
        self._tool_executor = tool_executor
        self._merger = merger
        self._splitter = splitter or splitter_for(settings.partition.splitter)
        self._clock = clock
        self._assembler = OutputAssembler()
        self._scheduler: Scheduler | None = None

    def plan(self, sample_count: int, units: Sequence[Unit]) -> tuple[PartitionDescriptor, ...]:
        return plan_partitions(self._settings, sample_count, units, splitter=self._splitter)

    def build(self, descriptors: Sequence[PartitionDescriptor]) -> TaskGraph:
        return build_graph(self._settings, descriptors, splitter=self._splitter)

    def cancel(self) -> None:
        """Abort the run in progress, if any."""
        if self._scheduler is not None:
            self._scheduler.cancel()

    def run(self, sample_count: int, units: Sequence[Unit]) -> RunResult:
        """Plan, build and execute one run.

        Raises:
            EmptyInputError: If units is empty (nothing is scheduled)
            GraphConstructionError: If the graph cannot be built
            AmbiguousBranchError: If branch exclusivity is violated at run time
        """
        descriptors = self.plan(sample_count, units)
        graph = self.build(descriptors)

        router = GatherRoutingExecutor(self._tool_executor, GatherReducer(self._merger))
        self._scheduler = Scheduler.from_settings(router, self._settings, clock=self._clock)
        schedule = self._scheduler.run(graph)

        by_node = router.gathered
        gathered = {
            kind: by_node[node_id_for(kind)]
            for kind in TOP_LEVEL_GATHERS
            if schedule.records[node_id_for(kind)].status == TaskStatus.SUCCEEDED
        }
        shard_results, failed_shards = self._shard_outcomes(graph, descriptors, schedule)

        if schedule.status == RunStatus.CANCELLED:
            status = RunStatus.CANCELLED
        elif len(gathered) != len(TOP_LEVEL_GATHERS):
            status = RunStatus.FAILED
        else:
            status = RunStatus.SUCCEEDED

        slog.info(
            "pipeline_finished",
            status=status.value,
            shard_count=len(descriptors),
            failed_shards=list(failed_shards),
            gathered=sorted(kind.value for kind in gathered),
        )
        return RunResult(
            status=status,
            partitions=descriptors,
            gathered=gathered,
            shard_results=shard_results,
            failed_shards=failed_shards,
            schedule=schedule,
        )

    def _shard_outcomes(
        self,
        graph: TaskGraph,
        descriptors: Sequence[PartitionDescriptor],
        schedule: ScheduleResult,
    ) -> tuple[tuple[ShardResult, ...], tuple[int, ...]]:
        def outputs_of(node_id: NodeID) -> Mapping[str, ArtifactRef] | None:
            record = schedule.records[node_id]
            return record.outputs if record.status == TaskStatus.SUCCEEDED else None

        results: list[ShardResult] = []
        failed: list[int] = []
        for descriptor in descriptors:
            index = descriptor.shard_index
            shard_records = [record for record in schedule.records.values() if record.shard_index == index]
            if any(record.status != TaskStatus.SUCCEEDED for record in shard_records):
                failed.append(index)
                continue
            branch = graph.active_branch(index, GENOTYPE_GROUP)
            filter_id = node_id_for(TaskKind.FILTER, index)
            raw_id = node_id_for(TaskKind.RAW_CONVERT, index)
            outputs = {
                VCF_OUTPUT: self._assembler.resolve_reference(branch.output_ref(VCF_OUTPUT), outputs_of),
                SITES_ONLY_OUTPUT: self._assembler.resolve_reference(UpstreamRef(filter_id, SITES_ONLY_OUTPUT), outputs_of),
                FILTERED_OUTPUT: self._assembler.resolve_reference(UpstreamRef(filter_id, FILTERED_OUTPUT), outputs_of),
                RAW_OUTPUT: self._assembler.resolve_reference(UpstreamRef(raw_id, RAW_OUTPUT), outputs_of),
            }
            results.append(ShardResult(index, outputs))
        return tuple(results), tuple(failed)
