# src/shardflow/core/dag/graph.py
"""TaskGraph: query, validation and traversal of a built task DAG.

Construction logic lives in builder.py; this module holds the graph class
the scheduler consumes.
"""

from __future__ import annotations

from collections import Counter
from typing import Any, cast

import networkx as nx
from networkx import DiGraph

from shardflow.contracts.enums import BranchTag, TaskKind
from shardflow.contracts.errors import GraphConstructionError
from shardflow.contracts.types import NodeID
from shardflow.core.dag.models import ActiveBranch, BranchOutputRef, TaskNode, UpstreamRef, iter_references


class TaskGraph:
    """Directed acyclic graph of TaskNodes.

    Wraps a NetworkX DiGraph with an edge from every dependency to its
    dependent. Nodes must be added after their dependencies, so insertion
    order is itself a valid topological order; the scheduler uses it to
    break ties between ready tasks.
    """

    def __init__(self) -> None:
        self._graph: DiGraph[str] = nx.DiGraph()
        self._order: list[NodeID] = []
        self._branches: list[ActiveBranch] = []

    @property
    def node_count(self) -> int:
        return self._graph.number_of_nodes()

    @property
    def edge_count(self) -> int:
        return self._graph.number_of_edges()

    def has_node(self, node_id: str) -> bool:
        return self._graph.has_node(node_id)

    def add_node(self, node: TaskNode) -> None:
        """Add a task whose dependencies are already in the graph.

        Raises:
            GraphConstructionError: Duplicate node id or unknown dependency
        """
        if self._graph.has_node(node.node_id):
            raise GraphConstructionError(f"Duplicate task id '{node.node_id}'")
        missing = [dep for dep in node.dependencies if not self._graph.has_node(dep)]
        if missing:
            raise GraphConstructionError(f"Task '{node.node_id}' depends on unknown tasks: {missing}")
        self._graph.add_node(node.node_id, info=node, position=len(self._order))
        for dep in node.dependencies:
            self._graph.add_edge(dep, node.node_id)
        self._order.append(node.node_id)

    def add_dependency(self, upstream: str, downstream: str) -> None:
        """Add an ordering edge between two existing tasks.

        Unlike add_node this can close a cycle; validate() reports it.
        """
        for node_id in (upstream, downstream):
            if not self._graph.has_node(node_id):
                raise GraphConstructionError(f"Unknown task '{node_id}'")
        self._graph.add_edge(upstream, downstream)

    def record_branch(self, branch: ActiveBranch) -> None:
        self._branches.append(branch)

    @property
    def branches(self) -> tuple[ActiveBranch, ...]:
        return tuple(self._branches)

    def active_branch(self, shard_index: int, group: str) -> ActiveBranch:
        """Return the branch built for a shard's branch group.

        Raises:
            KeyError: If no branch was recorded for that shard and group
        """
        for branch in self._branches:
            if branch.shard_index == shard_index and branch.group == group:
                return branch
        raise KeyError(f"No branch recorded for group '{group}' of shard {shard_index}")

    def is_acyclic(self) -> bool:
        return nx.is_directed_acyclic_graph(self._graph)

    def validate(self) -> None:
        """Validate the graph structure.

        Validates:
        1. Graph is acyclic
        2. Every reference names a declared output of a dependency
        3. Each shard's branch group has exactly one active branch, and no
           task of an inactive branch is present
        4. Gather inputs are listed in ascending shard order

        Raises:
            GraphConstructionError: If validation fails
        """
        if not self.is_acyclic():
            try:
                cycle = nx.find_cycle(self._graph)
                cycle_str = " -> ".join(f"{edge[0]}" for edge in cycle)
                raise GraphConstructionError(f"Graph contains a cycle: {cycle_str}")
            except nx.NetworkXNoCycle:
                raise GraphConstructionError("Graph contains a cycle") from None

        for node in self.nodes():
            for ref in node.references():
                self._validate_reference(node, ref)

        self._validate_branch_exclusivity()

        for node in self.nodes():
            if node.kind.is_gather:
                self._validate_gather_order(node)

    def _validate_reference(self, node: TaskNode, ref: UpstreamRef | BranchOutputRef) -> None:
        producers = (ref.node_id,) if isinstance(ref, UpstreamRef) else ref.present_producers
        for producer_id in producers:
            if not self._graph.has_node(producer_id):
                raise GraphConstructionError(f"Task '{node.node_id}' references unknown task '{producer_id}'")
            producer = self.get_node(producer_id)
            if ref.output not in producer.outputs:
                raise GraphConstructionError(
                    f"Task '{node.node_id}' references output '{ref.output}' which '{producer_id}' does not declare. "
                    f"Declared: {list(producer.outputs)}"
                )

    def _validate_branch_exclusivity(self) -> None:
        seen: dict[tuple[str, int], ActiveBranch] = {}
        for branch in self._branches:
            key = (branch.group, branch.shard_index)
            if key in seen:
                raise GraphConstructionError(
                    f"Branch group '{branch.group}' of shard {branch.shard_index} has two active branches: "
                    f"'{seen[key].tag}' and '{branch.tag}'"
                )
            seen[key] = branch

        active_tags: dict[int, set[BranchTag]] = {branch.shard_index: set() for branch in self._branches}
        for branch in self._branches:
            active_tags[branch.shard_index].add(branch.tag)
        for node in self.nodes():
            if node.branch_tag is None:
                continue
            if node.shard_index not in active_tags or node.branch_tag not in active_tags[node.shard_index]:
                raise GraphConstructionError(
                    f"Task '{node.node_id}' belongs to branch '{node.branch_tag}' which is not active for shard {node.shard_index}"
                )

    def _validate_gather_order(self, node: TaskNode) -> None:
        indices = [self._reference_index(ref) for ref in iter_references(node.params.get("inputs", ()))]
        if any(index is None for index in indices):
            raise GraphConstructionError(f"Gather '{node.node_id}' has an input without a shard index")
        ordered = cast(list[int], indices)
        if ordered != sorted(ordered) or len(set(ordered)) != len(ordered):
            raise GraphConstructionError(f"Gather '{node.node_id}' inputs are not in ascending shard order: {ordered}")

    def _reference_index(self, ref: UpstreamRef | BranchOutputRef) -> int | None:
        if isinstance(ref, BranchOutputRef):
            return ref.shard_index
        return self.get_node(ref.node_id).artifact_index

    def topological_order(self) -> list[NodeID]:
        """Return node ids in topological order, ties broken by insertion order.

        Raises:
            GraphConstructionError: If graph has cycles
        """
        try:
            return [
                NodeID(node_id)
                for node_id in nx.lexicographical_topological_sort(
                    self._graph,
                    key=lambda node_id: self._graph.nodes[node_id]["position"],
                )
            ]
        except nx.NetworkXUnfeasible as e:
            raise GraphConstructionError(f"Cannot sort graph: {e}") from e

    def get_node(self, node_id: str) -> TaskNode:
        """Get the TaskNode for an id.

        Raises:
            KeyError: If node doesn't exist
        """
        if not self._graph.has_node(node_id):
            raise KeyError(f"Node not found: {node_id}")
        return cast(TaskNode, self._graph.nodes[node_id]["info"])

    def nodes(self) -> list[TaskNode]:
        """All nodes in insertion order."""
        return [self.get_node(node_id) for node_id in self._order]

    def dependencies(self, node_id: str) -> list[NodeID]:
        return [NodeID(n) for n in self._graph.predecessors(node_id)]

    def dependents(self, node_id: str) -> list[NodeID]:
        return [NodeID(n) for n in self._graph.successors(node_id)]

    def descendants(self, node_id: str) -> set[NodeID]:
        return {NodeID(n) for n in nx.descendants(self._graph, node_id)}

    def nodes_of_kind(self, kind: TaskKind) -> list[TaskNode]:
        return [node for node in self.nodes() if node.kind == kind]

    def count_by_kind(self) -> dict[TaskKind, int]:
        counts = Counter(node.kind for node in self.nodes())
        return {kind: counts[kind] for kind in TaskKind if counts[kind]}

    def to_dict(self) -> dict[str, Any]:
        """JSON-able summary of the graph for inspection."""
        return {
            "nodes": [
                {
                    "node_id": node.node_id,
                    "kind": node.kind.value,
                    "shard_index": node.shard_index,
                    "branch": node.branch_tag.value if node.branch_tag else None,
                    "sub_index": node.sub_index,
                    "dependencies": list(node.dependencies),
                    "outputs": list(node.outputs),
                }
                for node in self.nodes()
            ],
            "branches": [
                {"group": b.group, "shard_index": b.shard_index, "tag": b.tag.value, "terminal": b.terminal} for b in self._branches
            ],
            "counts": {kind.value: count for kind, count in self.count_by_kind().items()},
        }
