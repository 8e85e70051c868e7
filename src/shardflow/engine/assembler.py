# src/shardflow/engine/assembler.py
"""OutputAssembler: canonical per-shard outputs from alternative branches.

A shard's branch group is built with exactly one active alternative, so
exactly one producer of each branch output may have a result. Anything else
means the graph was built or executed incorrectly and is never recovered.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any

from shardflow.contracts.artifacts import ArtifactRef
from shardflow.contracts.enums import BranchTag
from shardflow.contracts.errors import AmbiguousBranchError
from shardflow.contracts.types import NodeID
from shardflow.core.dag.models import BranchOutputRef, UpstreamRef

type OutputsLookup = Callable[[NodeID], Mapping[str, ArtifactRef] | None]
"""Returns a task's outputs, or None if it has not produced any."""


class OutputAssembler:
    """Selects the single result among alternative branch producers."""

    def resolve(self, shard_index: int, branch_outputs: Mapping[BranchTag, ArtifactRef | None]) -> ArtifactRef:
        """Return the one present branch output for a shard.

        Raises:
            AmbiguousBranchError: Zero or several branches produced output
        """
        present = [(tag, ref) for tag, ref in branch_outputs.items() if ref is not None]
        if len(present) != 1:
            raise AmbiguousBranchError(shard_index, [tag.value for tag, _ in present])
        return present[0][1]

    def resolve_reference(self, ref: UpstreamRef | BranchOutputRef, outputs_lookup: OutputsLookup) -> ArtifactRef:
        """Resolve one reference to the artifact it names.

        Raises:
            KeyError: The producing task has no such output
            AmbiguousBranchError: Branch exclusivity violated
        """
        if isinstance(ref, UpstreamRef):
            outputs = outputs_lookup(ref.node_id)
            if outputs is None or ref.output not in outputs:
                raise KeyError(f"Task '{ref.node_id}' has not produced output '{ref.output}'")
            return outputs[ref.output]

        branch_outputs: dict[BranchTag, ArtifactRef | None] = {}
        for tag, producer in ref.producers:
            outputs = outputs_lookup(producer) if producer is not None else None
            branch_outputs[tag] = outputs.get(ref.output) if outputs is not None else None
        return self.resolve(ref.shard_index, branch_outputs)

    def resolve_inputs(self, params: Mapping[str, Any], outputs_lookup: OutputsLookup) -> dict[str, Any]:
        """Replace every reference in a task's params with the artifact it names.

        Literal values pass through; tuples and lists of references are
        resolved element-wise, keeping their order.
        """
        return {name: self._resolve_value(value, outputs_lookup) for name, value in params.items()}

    def _resolve_value(self, value: Any, outputs_lookup: OutputsLookup) -> Any:
        if isinstance(value, (UpstreamRef, BranchOutputRef)):
            return self.resolve_reference(value, outputs_lookup)
        if isinstance(value, tuple):
            return tuple(self._resolve_value(item, outputs_lookup) for item in value)
        if isinstance(value, list):
            return [self._resolve_value(item, outputs_lookup) for item in value]
        return value
