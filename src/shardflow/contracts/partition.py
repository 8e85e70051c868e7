"""Partition descriptors produced by the planner."""

from __future__ import annotations

from collections.abc import Hashable
from dataclasses import dataclass

type Unit = Hashable
"""One partitionable unit of input (an interval, an interval file path, ...)."""


@dataclass(frozen=True, slots=True)
class PartitionDescriptor:
    """One shard of partitioned input.

    Immutable once created; consumed by every task of the shard.

    Attributes:
        shard_index: 0-based position of the shard in the plan
        units: The units assigned to this shard, in input order
    """

    shard_index: int
    units: tuple[Unit, ...]

    def __post_init__(self) -> None:
        if self.shard_index < 0:
            raise ValueError(f"shard_index must be >= 0, got {self.shard_index}")
        if not self.units:
            raise ValueError(f"Shard {self.shard_index} has no units")
