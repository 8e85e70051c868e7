# src/shardflow/engine/gather.py
"""GatherReducer: order-preserving merge of per-shard outputs.

Shards complete in any order; their artifacts are merged in ascending
shard-index order. The merge primitive is order sensitive (reversing shards
corrupts the merged coordinate ordering), so the reducer sorts and validates
explicitly instead of trusting input order or file naming.
"""

from __future__ import annotations

import shutil
from collections import Counter
from collections.abc import Sequence
from pathlib import Path
from typing import Protocol

import structlog

from shardflow.contracts.artifacts import ArtifactRef, GatheredArtifact
from shardflow.contracts.errors import IncompleteGatherError
from shardflow.contracts.results import ShardResult

slog = structlog.get_logger(__name__)


class MergePrimitive(Protocol):
    """Concatenates artifacts in the order given.

    label is a stem unique among the run's merges (several shards gather
    outputs with the same name).
    """

    def merge(self, artifacts: Sequence[ArtifactRef], *, output_name: str, label: str) -> ArtifactRef: ...


class FileConcatMerger:
    """Local merge primitive: byte concatenation of artifact files.

    Artifact uris are file paths. The merged file is written to
    output_dir/<label>.
    """

    def __init__(self, output_dir: Path) -> None:
        self._output_dir = output_dir

    def merge(self, artifacts: Sequence[ArtifactRef], *, output_name: str, label: str) -> ArtifactRef:
        self._output_dir.mkdir(parents=True, exist_ok=True)
        destination = self._output_dir / label
        with destination.open("wb") as out:
            for artifact in artifacts:
                with Path(artifact.uri).open("rb") as src:
                    shutil.copyfileobj(src, out)
        return ArtifactRef(name=output_name, uri=str(destination))


class GatherReducer:
    """Merges one named output across shards into a whole-callset artifact.

    Example:
        reducer = GatherReducer(FileConcatMerger(Path("out")))
        gathered = reducer.reduce(shard_results, "sites_only_vcf", expected_shards=8)
    """

    def __init__(self, merger: MergePrimitive) -> None:
        self._merger = merger

    def reduce(
        self,
        shard_results: Sequence[ShardResult],
        output_name: str,
        expected_shards: int | Sequence[int] | None = None,
        *,
        label: str | None = None,
    ) -> GatheredArtifact:
        """Merge output_name from every shard, in ascending shard order.

        Args:
            shard_results: Per-shard results, in any order
            output_name: Declared output to gather
            expected_shards: Shard count (indices 0..n-1) or the explicit
                indices; the inputs must be exactly this set. None skips the check
            label: Unique stem for the merged artifact (defaults to output_name)

        Raises:
            IncompleteGatherError: No inputs, a duplicated shard index, an
                expected shard missing, a shard outside the expected set, or a
                shard without the named output
        """
        ordered = sorted(shard_results, key=lambda result: result.shard_index)
        indices = [result.shard_index for result in ordered]
        duplicated = sorted(index for index, count in Counter(indices).items() if count > 1)

        missing: list[int] = []
        unexpected: list[int] = []
        if expected_shards is not None:
            expected = set(range(expected_shards) if isinstance(expected_shards, int) else expected_shards)
            missing = sorted(expected - set(indices))
            unexpected = sorted(set(indices) - expected)
        missing.extend(result.shard_index for result in ordered if output_name not in result.outputs)

        if not ordered or duplicated or missing or unexpected:
            raise IncompleteGatherError(
                output_name,
                missing=sorted(set(missing)),
                duplicated=duplicated,
                unexpected=unexpected,
            )

        artifacts = [result.artifact(output_name).with_shard(result.shard_index) for result in ordered]
        merged = self._merger.merge(artifacts, output_name=output_name, label=label or output_name)

        slog.info("gather_merged", output_name=output_name, label=label or output_name, shard_count=len(indices), uri=merged.uri)
        return GatheredArtifact(output_name=output_name, artifact=merged, shard_indices=tuple(indices))
