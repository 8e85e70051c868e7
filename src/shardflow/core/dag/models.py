# src/shardflow/core/dag/models.py
"""Types for task graph construction.

Leaf module: no imports from graph.py or builder.py.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from shardflow.contracts.enums import BranchTag, TaskKind
from shardflow.contracts.errors import GraphConstructionError
from shardflow.contracts.types import NodeID


@dataclass(frozen=True, slots=True)
class UpstreamRef:
    """Reference to a declared output of another task."""

    node_id: NodeID
    output: str


@dataclass(frozen=True, slots=True)
class BranchOutputRef:
    """Reference to a shard's branch-group output, whichever branch is active.

    producers maps every alternative branch to its terminal task, or None
    for branches that contributed no nodes. Resolution goes through the
    OutputAssembler, which insists on exactly one present producer.
    """

    shard_index: int
    output: str
    producers: tuple[tuple[BranchTag, NodeID | None], ...]

    @property
    def present_producers(self) -> tuple[NodeID, ...]:
        return tuple(node_id for _, node_id in self.producers if node_id is not None)


type Reference = UpstreamRef | BranchOutputRef


def iter_references(value: Any) -> Iterator[Reference]:
    """Yield every reference inside a parameter value (scalars, tuples, lists)."""
    if isinstance(value, (UpstreamRef, BranchOutputRef)):
        yield value
    elif isinstance(value, (tuple, list)):
        for item in value:
            yield from iter_references(item)


@dataclass(frozen=True, slots=True)
class TaskNode:
    """One concrete task instance in the graph.

    Identity is (kind, shard_index, branch_tag, sub_index), rendered into
    node_id. params map parameter names to literal values or references to
    upstream outputs; every referenced task must be listed in dependencies.

    Built by TaskGraphBuilder; the scheduler owns the result slot.
    """

    node_id: NodeID
    kind: TaskKind
    shard_index: int | None = None
    branch_tag: BranchTag | None = None
    sub_index: int | None = None
    params: Mapping[str, Any] = field(default_factory=dict)
    dependencies: tuple[NodeID, ...] = ()
    outputs: tuple[str, ...] = ()
    retry_budget: int = 0
    timeout_seconds: float | None = None
    resources: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "params", MappingProxyType(dict(self.params)))
        object.__setattr__(self, "resources", MappingProxyType(dict(self.resources)))
        if self.retry_budget < 0:
            raise GraphConstructionError(f"Task '{self.node_id}' has negative retry budget {self.retry_budget}")
        if len(set(self.dependencies)) != len(self.dependencies):
            raise GraphConstructionError(f"Task '{self.node_id}' lists a dependency twice: {self.dependencies}")
        declared = set(self.dependencies)
        for ref in self.references():
            needed = (ref.node_id,) if isinstance(ref, UpstreamRef) else ref.present_producers
            undeclared = [node_id for node_id in needed if node_id not in declared]
            if undeclared:
                raise GraphConstructionError(f"Task '{self.node_id}' references {undeclared} without depending on them")

    def references(self) -> Iterator[Reference]:
        for value in self.params.values():
            yield from iter_references(value)

    @property
    def artifact_index(self) -> int | None:
        """Index stamped on this task's outputs: sub-shard index inside a
        nested scatter, otherwise the shard index."""
        return self.sub_index if self.sub_index is not None else self.shard_index


@dataclass(frozen=True)
class BranchBuildContext:
    """What a branch build function receives.

    Attributes:
        shard_index: Shard being built
        units: The shard's units
        upstream: Task whose output feeds the branch
        add_node: Callback adding a node to the graph under construction
    """

    shard_index: int
    units: tuple[Any, ...]
    upstream: NodeID
    add_node: Callable[[TaskNode], None]


@dataclass(frozen=True)
class BranchSpec:
    """One alternative sub-pipeline of a branch group.

    build adds the branch's tasks and returns its terminal task, which must
    declare every name in outputs.
    """

    tag: BranchTag
    outputs: frozenset[str]
    build: Callable[[BranchBuildContext], NodeID]


@dataclass(frozen=True)
class BranchGroup:
    """Mutually exclusive alternatives for one stage of one shard."""

    name: str
    shard_index: int
    specs: Mapping[BranchTag, BranchSpec]

    def validate_contract(self) -> frozenset[str]:
        """Check the alternatives are interchangeable.

        Returns:
            The shared output names

        Raises:
            GraphConstructionError: Fewer than two alternatives, a spec
                filed under the wrong tag, or differing declared outputs
        """
        if len(self.specs) < 2:
            raise GraphConstructionError(f"Branch group '{self.name}' needs at least 2 alternatives, got {len(self.specs)}")
        for tag, spec in self.specs.items():
            if spec.tag != tag:
                raise GraphConstructionError(f"Branch group '{self.name}': spec tagged '{spec.tag}' filed under '{tag}'")
        contracts = {tag: spec.outputs for tag, spec in self.specs.items()}
        reference = next(iter(contracts.values()))
        if any(outputs != reference for outputs in contracts.values()):
            detail = ", ".join(f"{tag.value}={sorted(outputs)}" for tag, outputs in contracts.items())
            raise GraphConstructionError(f"Branch group '{self.name}' declares incompatible outputs: {detail}")
        return reference


@dataclass(frozen=True, slots=True)
class ActiveBranch:
    """Record of the branch built for one shard's branch group."""

    group: str
    shard_index: int
    tag: BranchTag
    terminal: NodeID
    node_ids: tuple[NodeID, ...]
    alternatives: tuple[BranchTag, ...]

    def output_ref(self, output: str) -> BranchOutputRef:
        producers = tuple((tag, self.terminal if tag == self.tag else None) for tag in self.alternatives)
        return BranchOutputRef(shard_index=self.shard_index, output=output, producers=producers)
