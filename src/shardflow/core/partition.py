# src/shardflow/core/partition.py
"""Partition planning: how many shards, and which units go to each.

The shard count comes from a scalar sizing input (the sample count) scaled
by a factor and raised to a floor. The units are then handed to a
partitioning primitive that returns balanced, order-preserving groups.

Two primitives are provided:
- balanced_split: contiguous chunks of opaque units, sizes differing by at most one
- interval_split: length-balanced split of genomic intervals, cutting
  intervals at group boundaries
"""

from __future__ import annotations

import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import Literal

import structlog

from shardflow.contracts.errors import EmptyInputError
from shardflow.contracts.partition import PartitionDescriptor, Unit

slog = structlog.get_logger(__name__)

type Splitter = Callable[[Sequence[Unit], int], list[list[Unit]]]

DEFAULT_SCALE_FACTOR = 0.15
DEFAULT_MIN_COUNT = 2

_INTERVAL_PATTERN = re.compile(r"^(?P<contig>[^:\s]+):(?P<start>\d+)-(?P<end>\d+)$")


@dataclass(frozen=True, slots=True, order=True)
class GenomicInterval:
    """1-based, inclusive genomic interval."""

    contig: str
    start: int
    end: int

    def __post_init__(self) -> None:
        if self.start < 1:
            raise ValueError(f"Interval start must be >= 1, got {self.start}")
        if self.end < self.start:
            raise ValueError(f"Interval end {self.end} is before start {self.start}")

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    @classmethod
    def parse(cls, text: str) -> GenomicInterval:
        """Parse 'contig:start-end'."""
        match = _INTERVAL_PATTERN.match(text.strip())
        if match is None:
            raise ValueError(f"Not an interval (expected contig:start-end): {text!r}")
        return cls(match["contig"], int(match["start"]), int(match["end"]))

    def __str__(self) -> str:
        return f"{self.contig}:{self.start}-{self.end}"


def load_intervals(path: Path) -> list[GenomicInterval]:
    """Read one interval per line; blank, '#' and '@' lines are skipped."""
    intervals: list[GenomicInterval] = []
    for line_number, line in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
        stripped = line.strip()
        if not stripped or stripped.startswith(("#", "@")):
            continue
        try:
            intervals.append(GenomicInterval.parse(stripped))
        except ValueError as e:
            raise ValueError(f"{path}:{line_number}: {e}") from e
    return intervals


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero.

    Python's round() rounds halves to even; shard counts round 0.5 up.
    """
    return int(Decimal(str(value)).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def partition_count(
    sizing_input: int,
    *,
    override_count: int | None = None,
    scale_factor: float = DEFAULT_SCALE_FACTOR,
    min_count: int = DEFAULT_MIN_COUNT,
) -> int:
    """Number of shards to create.

    An override is trusted verbatim; the floor only applies to the computed
    count: max(min_count, round(scale_factor * sizing_input)).
    """
    if override_count is not None:
        if override_count < 1:
            raise ValueError(f"override_count must be >= 1, got {override_count}")
        return override_count
    if sizing_input < 0:
        raise ValueError(f"sizing_input must be >= 0, got {sizing_input}")
    return max(min_count, round_half_up(scale_factor * sizing_input))


def balanced_split(units: Sequence[Unit], count: int) -> list[list[Unit]]:
    """Split units into contiguous groups whose sizes differ by at most one.

    Never produces an empty group: with fewer units than count, each unit
    becomes its own group.
    """
    if count < 1:
        raise ValueError(f"count must be >= 1, got {count}")
    items = list(units)
    if not items:
        return []
    groups = min(count, len(items))
    base, extra = divmod(len(items), groups)
    result: list[list[Unit]] = []
    start = 0
    for index in range(groups):
        size = base + (1 if index < extra else 0)
        result.append(items[start : start + size])
        start += size
    return result


def interval_split(units: Sequence[Unit], count: int) -> list[list[Unit]]:
    """Split genomic intervals into groups of near-equal total length.

    Intervals are cut at group boundaries, so a single long interval can be
    spread over several groups. Group order and the order of intervals
    within and across groups follow the input. Never produces more groups
    than there are bases.
    """
    if count < 1:
        raise ValueError(f"count must be >= 1, got {count}")
    intervals: list[GenomicInterval] = []
    for unit in units:
        if not isinstance(unit, GenomicInterval):
            raise TypeError(f"interval_split requires GenomicInterval units, got {type(unit).__name__}")
        intervals.append(unit)
    total = sum(interval.length for interval in intervals)
    if total == 0:
        return []

    groups = min(count, total)
    # Exclusive cumulative base offset at which each group ends
    bounds = [total * k // groups for k in range(1, groups + 1)]
    result: list[list[Unit]] = [[] for _ in range(groups)]
    consumed = 0
    group = 0
    for interval in intervals:
        start = interval.start
        while start <= interval.end:
            take = min(bounds[group] - consumed, interval.end - start + 1)
            result[group].append(GenomicInterval(interval.contig, start, start + take - 1))
            start += take
            consumed += take
            if consumed == bounds[group] and group < groups - 1:
                group += 1
    return result


def splitter_for(name: Literal["intervals", "units"]) -> Splitter:
    """Look up a partitioning primitive by its configuration name."""
    if name == "intervals":
        return interval_split
    if name == "units":
        return balanced_split
    raise ValueError(f"Unknown splitter '{name}'")


class PartitionPlanner:
    """Computes the shard plan for a run.

    Example:
        planner = PartitionPlanner(interval_split)
        shards = planner.plan(sample_count, intervals, scale_factor=0.15, min_count=2)
    """

    def __init__(self, splitter: Splitter = balanced_split) -> None:
        self._splitter = splitter

    def plan(
        self,
        sizing_input: int,
        raw_units: Sequence[Unit],
        *,
        override_count: int | None = None,
        scale_factor: float = DEFAULT_SCALE_FACTOR,
        min_count: int = DEFAULT_MIN_COUNT,
    ) -> tuple[PartitionDescriptor, ...]:
        """Partition raw_units into shard descriptors.

        Raises:
            EmptyInputError: If raw_units is empty
        """
        if not raw_units:
            raise EmptyInputError("No partitionable units supplied; nothing to schedule")

        count = partition_count(
            sizing_input,
            override_count=override_count,
            scale_factor=scale_factor,
            min_count=min_count,
        )
        groups = self._splitter(raw_units, count)
        descriptors = tuple(PartitionDescriptor(shard_index=index, units=tuple(group)) for index, group in enumerate(groups))

        slog.info(
            "partition_plan_computed",
            sizing_input=sizing_input,
            requested_count=count,
            shard_count=len(descriptors),
            unit_count=len(raw_units),
            override=override_count is not None,
        )
        return descriptors
