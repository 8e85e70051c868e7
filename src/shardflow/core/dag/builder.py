# src/shardflow/core/dag/builder.py
"""Task graph construction for the joint-calling template.

Per shard: import -> genotype branch group -> filter, plus raw_convert fed
by the branch output. The genotype branch group has two alternatives:

- SCATTERED: nested scatter over sub-shards (secondary partition plan at a
  fixed granularity), one subshard_genotype task each, then a
  subshard_gather merging them in sub-index order
- FLAT: one genotype task for the whole shard

Only the selected alternative is built; the other contributes no nodes.
After all shards, three top-level gathers consume every shard's terminal
outputs in ascending shard order.

Dependency: models.py and graph.py; no engine imports.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

import structlog

from shardflow.contracts.enums import BranchTag, TaskKind
from shardflow.contracts.errors import GraphConstructionError
from shardflow.contracts.partition import PartitionDescriptor
from shardflow.contracts.types import NodeID
from shardflow.core.config import RunSettings
from shardflow.core.dag.graph import TaskGraph
from shardflow.core.dag.models import (
    ActiveBranch,
    BranchBuildContext,
    BranchGroup,
    BranchOutputRef,
    BranchSpec,
    TaskNode,
    UpstreamRef,
)
from shardflow.core.partition import PartitionPlanner, Splitter, balanced_split

slog = structlog.get_logger(__name__)

GENOTYPE_GROUP = "genotype"

WORKSPACE_OUTPUT = "workspace"
VCF_OUTPUT = "vcf"
SITES_ONLY_OUTPUT = "sites_only_vcf"
FILTERED_OUTPUT = "filtered_vcf"
RAW_OUTPUT = "raw_vcf"

TOP_LEVEL_GATHERS: tuple[TaskKind, ...] = (
    TaskKind.GATHER_SITES_ONLY,
    TaskKind.GATHER_UNFILTERED,
    TaskKind.GATHER_RAW,
)

# Disk tier per kind; gathers hold the whole callset
_DISK_TIERS: dict[TaskKind, str] = {
    TaskKind.IMPORT: "medium",
    TaskKind.GENOTYPE: "medium",
    TaskKind.SUBSHARD_GENOTYPE: "small",
    TaskKind.SUBSHARD_GATHER: "small",
    TaskKind.FILTER: "small",
    TaskKind.RAW_CONVERT: "small",
    TaskKind.GATHER_SITES_ONLY: "large",
    TaskKind.GATHER_UNFILTERED: "large",
    TaskKind.GATHER_RAW: "large",
}


def node_id_for(kind: TaskKind, shard_index: int | None = None, sub_index: int | None = None) -> NodeID:
    """Render a task's identity into its node id, e.g. 'filter_00003'."""
    parts = [kind.value]
    if shard_index is not None:
        parts.append(f"{shard_index:05d}")
    if sub_index is not None:
        parts.append(f"{sub_index:03d}")
    return NodeID("_".join(parts))


class BranchSelector:
    """Maps the global branch flag to the branch to build.

    Called once per build, before any shard is built. True selects the
    nested-scatter branch (A), False the flat branch (B).
    """

    def select(self, flag: bool) -> BranchTag:
        tag = BranchTag.SCATTERED if flag else BranchTag.FLAT
        slog.debug("branch_selected", flag=flag, branch=tag.value)
        return tag


class TaskGraphBuilder:
    """Builds the task graph for a partition plan.

    Example:
        builder = TaskGraphBuilder(settings, splitter=interval_split)
        graph = builder.build(descriptors, use_branch_a=settings.branch.scatter_genotyping)
    """

    def __init__(
        self,
        settings: RunSettings | None = None,
        *,
        splitter: Splitter = balanced_split,
        branches: Mapping[BranchTag, BranchSpec] | None = None,
        selector: BranchSelector | None = None,
    ) -> None:
        self._settings = settings or RunSettings()
        self._sub_planner = PartitionPlanner(splitter)
        self._branches = dict(branches) if branches is not None else self.genotype_branches()
        self._selector = selector or BranchSelector()

    def genotype_branches(self) -> dict[BranchTag, BranchSpec]:
        """The two genotyping alternatives, both declaring a single 'vcf' output."""
        outputs = frozenset({VCF_OUTPUT})
        return {
            BranchTag.SCATTERED: BranchSpec(BranchTag.SCATTERED, outputs, self._build_scattered),
            BranchTag.FLAT: BranchSpec(BranchTag.FLAT, outputs, self._build_flat),
        }

    def build(self, descriptors: Sequence[PartitionDescriptor], use_branch_a: bool) -> TaskGraph:
        """Build and validate the graph.

        Args:
            descriptors: Partition plan, in shard order
            use_branch_a: Global branch flag (True selects the nested scatter)

        Raises:
            GraphConstructionError: Incompatible branch outputs, an empty or
                out-of-order plan, or a structurally invalid graph
        """
        if not descriptors:
            raise GraphConstructionError("Cannot build a task graph from an empty partition plan")
        indices = [d.shard_index for d in descriptors]
        if indices != sorted(set(indices)):
            raise GraphConstructionError(f"Partition descriptors must have unique ascending shard indices, got {indices}")

        tag = self._selector.select(use_branch_a)
        graph = TaskGraph()
        branches: list[ActiveBranch] = []
        filters: list[NodeID] = []
        raw_converts: list[NodeID] = []

        for descriptor in descriptors:
            import_id = self._add_import(graph, descriptor)
            branch = self._add_branch(graph, descriptor, import_id, tag)
            branches.append(branch)
            filters.append(self._add_consumer(graph, TaskKind.FILTER, branch, (SITES_ONLY_OUTPUT, FILTERED_OUTPUT)))
            raw_converts.append(self._add_consumer(graph, TaskKind.RAW_CONVERT, branch, (RAW_OUTPUT,)))

        self._add_gather(
            graph,
            TaskKind.GATHER_SITES_ONLY,
            SITES_ONLY_OUTPUT,
            tuple(UpstreamRef(node_id, SITES_ONLY_OUTPUT) for node_id in filters),
            tuple(indices),
        )
        self._add_gather(
            graph,
            TaskKind.GATHER_UNFILTERED,
            VCF_OUTPUT,
            tuple(branch.output_ref(VCF_OUTPUT) for branch in branches),
            tuple(indices),
        )
        self._add_gather(
            graph,
            TaskKind.GATHER_RAW,
            RAW_OUTPUT,
            tuple(UpstreamRef(node_id, RAW_OUTPUT) for node_id in raw_converts),
            tuple(indices),
        )

        graph.validate()
        slog.info(
            "task_graph_built",
            shard_count=len(descriptors),
            branch=tag.value,
            node_count=graph.node_count,
            counts={kind.value: count for kind, count in graph.count_by_kind().items()},
        )
        return graph

    def _node(
        self,
        kind: TaskKind,
        *,
        shard_index: int | None = None,
        branch_tag: BranchTag | None = None,
        sub_index: int | None = None,
        params: Mapping[str, Any] | None = None,
        dependencies: tuple[NodeID, ...] = (),
        outputs: tuple[str, ...],
    ) -> TaskNode:
        tier = _DISK_TIERS[kind]
        return TaskNode(
            node_id=node_id_for(kind, shard_index, sub_index),
            kind=kind,
            shard_index=shard_index,
            branch_tag=branch_tag,
            sub_index=sub_index,
            params=params or {},
            dependencies=dependencies,
            outputs=outputs,
            retry_budget=self._settings.retry.budget_for(kind),
            timeout_seconds=self._settings.timeouts.timeout_for(kind),
            resources={"disk_gb": getattr(self._settings.disk, f"{tier}_gb")},
        )

    def _add_import(self, graph: TaskGraph, descriptor: PartitionDescriptor) -> NodeID:
        node = self._node(
            TaskKind.IMPORT,
            shard_index=descriptor.shard_index,
            params={"units": descriptor.units, "batch_size": self._settings.import_batch_size},
            outputs=(WORKSPACE_OUTPUT,),
        )
        graph.add_node(node)
        return node.node_id

    def _add_branch(self, graph: TaskGraph, descriptor: PartitionDescriptor, upstream: NodeID, tag: BranchTag) -> ActiveBranch:
        group = BranchGroup(GENOTYPE_GROUP, descriptor.shard_index, self._branches)
        outputs = group.validate_contract()
        if tag not in group.specs:
            raise GraphConstructionError(f"Branch group '{group.name}' has no '{tag}' alternative")

        added: list[NodeID] = []

        def add_node(node: TaskNode) -> None:
            graph.add_node(node)
            added.append(node.node_id)

        context = BranchBuildContext(
            shard_index=descriptor.shard_index,
            units=descriptor.units,
            upstream=upstream,
            add_node=add_node,
        )
        terminal = group.specs[tag].build(context)
        if terminal not in added:
            raise GraphConstructionError(f"Branch '{tag}' of shard {descriptor.shard_index} returned a task it did not add: '{terminal}'")
        undeclared = outputs - set(graph.get_node(terminal).outputs)
        if undeclared:
            raise GraphConstructionError(f"Branch '{tag}' terminal '{terminal}' does not produce {sorted(undeclared)}")

        branch = ActiveBranch(
            group=group.name,
            shard_index=descriptor.shard_index,
            tag=tag,
            terminal=terminal,
            node_ids=tuple(added),
            alternatives=tuple(group.specs),
        )
        graph.record_branch(branch)
        return branch

    def _build_flat(self, context: BranchBuildContext) -> NodeID:
        node = self._node(
            TaskKind.GENOTYPE,
            shard_index=context.shard_index,
            branch_tag=BranchTag.FLAT,
            params={"units": context.units, WORKSPACE_OUTPUT: UpstreamRef(context.upstream, WORKSPACE_OUTPUT)},
            dependencies=(context.upstream,),
            outputs=(VCF_OUTPUT,),
        )
        context.add_node(node)
        return node.node_id

    def _build_scattered(self, context: BranchBuildContext) -> NodeID:
        sub_shards = self._sub_planner.plan(
            len(context.units),
            context.units,
            override_count=self._settings.branch.sub_shard_count,
        )
        sub_ids: list[NodeID] = []
        for sub in sub_shards:
            node = self._node(
                TaskKind.SUBSHARD_GENOTYPE,
                shard_index=context.shard_index,
                branch_tag=BranchTag.SCATTERED,
                sub_index=sub.shard_index,
                params={"units": sub.units, WORKSPACE_OUTPUT: UpstreamRef(context.upstream, WORKSPACE_OUTPUT)},
                dependencies=(context.upstream,),
                outputs=(VCF_OUTPUT,),
            )
            context.add_node(node)
            sub_ids.append(node.node_id)

        gather = self._node(
            TaskKind.SUBSHARD_GATHER,
            shard_index=context.shard_index,
            branch_tag=BranchTag.SCATTERED,
            params={
                "output_name": VCF_OUTPUT,
                "inputs": tuple(UpstreamRef(node_id, VCF_OUTPUT) for node_id in sub_ids),
                "expected_shards": tuple(sub.shard_index for sub in sub_shards),
            },
            dependencies=tuple(sub_ids),
            outputs=(VCF_OUTPUT,),
        )
        context.add_node(gather)
        return gather.node_id

    def _add_consumer(self, graph: TaskGraph, kind: TaskKind, branch: ActiveBranch, outputs: tuple[str, ...]) -> NodeID:
        node = self._node(
            kind,
            shard_index=branch.shard_index,
            params={VCF_OUTPUT: branch.output_ref(VCF_OUTPUT)},
            dependencies=(branch.terminal,),
            outputs=outputs,
        )
        graph.add_node(node)
        return node.node_id

    def _add_gather(
        self,
        graph: TaskGraph,
        kind: TaskKind,
        output_name: str,
        inputs: tuple[UpstreamRef | BranchOutputRef, ...],
        expected: tuple[int, ...],
    ) -> NodeID:
        dependencies: list[NodeID] = []
        for ref in inputs:
            producers = (ref.node_id,) if isinstance(ref, UpstreamRef) else ref.present_producers
            for producer in producers:
                if producer not in dependencies:
                    dependencies.append(producer)
        node = self._node(
            kind,
            params={"output_name": output_name, "inputs": inputs, "expected_shards": expected},
            dependencies=tuple(dependencies),
            outputs=(output_name,),
        )
        graph.add_node(node)
        return node.node_id
