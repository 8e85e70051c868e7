"""Artifact references passed between tasks.

Every reference carries an explicit shard index so gathers can sort and
validate their inputs instead of relying on file naming.
"""

from __future__ import annotations

from dataclasses import dataclass, replace


@dataclass(frozen=True, slots=True)
class ArtifactRef:
    """Opaque reference to a produced output (file path, object URI, ...).

    Attributes:
        name: Declared output name that produced this artifact
        uri: Location of the artifact, opaque to the scheduler
        shard_index: Index of the shard (or sub-shard) that produced it;
            None for whole-callset artifacts
    """

    name: str
    uri: str
    shard_index: int | None = None

    def with_shard(self, shard_index: int | None) -> ArtifactRef:
        """Return a copy stamped with shard_index (no-op if already set)."""
        if self.shard_index is not None or shard_index is None:
            return self
        return replace(self, shard_index=shard_index)


@dataclass(frozen=True, slots=True)
class GatheredArtifact:
    """Whole-callset artifact merged from every shard of one output name.

    Attributes:
        output_name: The per-shard output that was gathered
        artifact: Reference to the merged artifact
        shard_indices: Shard indices merged, in merge (ascending) order
    """

    output_name: str
    artifact: ArtifactRef
    shard_indices: tuple[int, ...]
