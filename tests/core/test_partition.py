# tests/core/test_partition.py
"""Tests for partition planning and the partitioning primitives."""

from pathlib import Path

import pytest

from shardflow.contracts import EmptyInputError, PartitionDescriptor
from shardflow.core.partition import (
    GenomicInterval,
    PartitionPlanner,
    balanced_split,
    interval_split,
    load_intervals,
    partition_count,
    round_half_up,
    splitter_for,
)


def iv(text: str) -> GenomicInterval:
    return GenomicInterval.parse(text)


class TestPartitionCount:
    """Shard count from the sizing input."""

    def test_floor_applies_to_small_inputs(self) -> None:
        # round(0.15 * 4) = 1, raised to the floor of 2
        assert partition_count(4) == 2

    def test_scales_with_sizing_input(self) -> None:
        assert partition_count(4000) == 600

    def test_zero_sizing_input_gives_floor(self) -> None:
        assert partition_count(0) == 2
        assert partition_count(0, min_count=5) == 5

    def test_override_is_used_verbatim(self) -> None:
        assert partition_count(4000, override_count=1) == 1
        assert partition_count(4, override_count=37) == 37

    def test_override_ignores_floor(self) -> None:
        assert partition_count(4000, override_count=1, min_count=10) == 1

    def test_halves_round_up(self) -> None:
        # 2.5 would round to 2 with banker's rounding
        assert partition_count(10, scale_factor=0.25, min_count=1) == 3
        assert partition_count(2, scale_factor=0.25, min_count=1) == 1

    def test_invalid_override_rejected(self) -> None:
        with pytest.raises(ValueError, match="override_count"):
            partition_count(10, override_count=0)

    def test_negative_sizing_input_rejected(self) -> None:
        with pytest.raises(ValueError, match="sizing_input"):
            partition_count(-1)


class TestRoundHalfUp:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [(0.5, 1), (1.5, 2), (2.5, 3), (2.49, 2), (0.0, 0), (599.9999, 600)],
    )
    def test_rounding(self, value: float, expected: int) -> None:
        assert round_half_up(value) == expected


class TestBalancedSplit:
    def test_sizes_differ_by_at_most_one(self) -> None:
        groups = balanced_split(list(range(10)), 3)

        assert [len(g) for g in groups] == [4, 3, 3]

    def test_preserves_order(self) -> None:
        units = [f"u{i}" for i in range(7)]
        groups = balanced_split(units, 3)

        assert [u for g in groups for u in g] == units

    def test_fewer_units_than_count(self) -> None:
        groups = balanced_split(["a", "b"], 5)

        assert groups == [["a"], ["b"]]

    def test_single_group(self) -> None:
        assert balanced_split(["a", "b", "c"], 1) == [["a", "b", "c"]]

    def test_empty_units(self) -> None:
        assert balanced_split([], 4) == []

    def test_invalid_count(self) -> None:
        with pytest.raises(ValueError, match="count"):
            balanced_split(["a"], 0)


class TestIntervalSplit:
    def test_single_interval_cut_evenly(self) -> None:
        groups = interval_split([iv("chr1:1-100")], 4)

        assert groups == [
            [iv("chr1:1-25")],
            [iv("chr1:26-50")],
            [iv("chr1:51-75")],
            [iv("chr1:76-100")],
        ]

    def test_interval_cut_across_contigs(self) -> None:
        groups = interval_split([iv("chr1:1-10"), iv("chr2:1-30")], 2)

        assert groups == [
            [iv("chr1:1-10"), iv("chr2:1-10")],
            [iv("chr2:11-30")],
        ]

    def test_boundary_on_interval_edge_does_not_split(self) -> None:
        groups = interval_split([iv("chr1:1-50"), iv("chr2:1-50")], 2)

        assert groups == [[iv("chr1:1-50")], [iv("chr2:1-50")]]

    def test_more_groups_than_bases(self) -> None:
        groups = interval_split([iv("chr1:5-7")], 5)

        assert groups == [[iv("chr1:5-5")], [iv("chr1:6-6")], [iv("chr1:7-7")]]

    def test_count_one_is_a_noop(self) -> None:
        intervals = [iv("chr1:1-10"), iv("chr2:1-30")]

        assert interval_split(intervals, 1) == [intervals]

    def test_rejects_non_interval_units(self) -> None:
        with pytest.raises(TypeError, match="GenomicInterval"):
            interval_split(["chr1:1-10"], 2)


class TestGenomicInterval:
    def test_parse_and_render(self) -> None:
        interval = GenomicInterval.parse("chr1:100-200")

        assert interval == GenomicInterval("chr1", 100, 200)
        assert interval.length == 101
        assert str(interval) == "chr1:100-200"

    def test_parse_strips_whitespace(self) -> None:
        assert GenomicInterval.parse("  chrX:1-1\n") == GenomicInterval("chrX", 1, 1)

    @pytest.mark.parametrize("text", ["chr1:100", "chr1-100-200", "chr1:a-b", ""])
    def test_parse_rejects_malformed(self, text: str) -> None:
        with pytest.raises(ValueError, match="Not an interval"):
            GenomicInterval.parse(text)

    def test_start_must_be_positive(self) -> None:
        with pytest.raises(ValueError, match="start"):
            GenomicInterval("chr1", 0, 10)

    def test_end_before_start_rejected(self) -> None:
        with pytest.raises(ValueError, match="before start"):
            GenomicInterval("chr1", 10, 9)


class TestLoadIntervals:
    def test_skips_headers_comments_and_blank_lines(self, tmp_path: Path) -> None:
        path = tmp_path / "calling.interval_list"
        path.write_text("@HD\tVN:1.6\n# comment\n\nchr1:1-100\nchr2:5-10\n", encoding="utf-8")

        assert load_intervals(path) == [iv("chr1:1-100"), iv("chr2:5-10")]

    def test_reports_line_number_of_bad_line(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.interval_list"
        path.write_text("chr1:1-100\n\nchr2:oops\n", encoding="utf-8")

        with pytest.raises(ValueError, match=r"bad\.interval_list:3:"):
            load_intervals(path)

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_intervals(tmp_path / "absent.interval_list")


class TestSplitterFor:
    def test_known_names(self) -> None:
        assert splitter_for("intervals") is interval_split
        assert splitter_for("units") is balanced_split

    def test_unknown_name(self) -> None:
        with pytest.raises(ValueError, match="Unknown splitter"):
            splitter_for("bogus")  # type: ignore[arg-type]


class TestPartitionPlanner:
    def test_empty_units_rejected(self) -> None:
        with pytest.raises(EmptyInputError):
            PartitionPlanner().plan(2000, [])

    def test_descriptors_are_indexed_in_order(self) -> None:
        units = [f"u{i}" for i in range(9)]
        plan = PartitionPlanner(balanced_split).plan(20, units)

        # round(0.15 * 20) = 3
        assert [d.shard_index for d in plan] == [0, 1, 2]
        assert plan[0] == PartitionDescriptor(0, ("u0", "u1", "u2"))
        assert [u for d in plan for u in d.units] == units

    def test_override_count(self) -> None:
        plan = PartitionPlanner(balanced_split).plan(4000, ["a", "b", "c", "d"], override_count=2)

        assert [d.units for d in plan] == [("a", "b"), ("c", "d")]

    def test_fewer_units_than_shards(self) -> None:
        plan = PartitionPlanner(balanced_split).plan(4000, ["a", "b"])

        assert len(plan) == 2

    def test_plan_is_deterministic(self) -> None:
        intervals = [iv("chr1:1-1000"), iv("chr2:1-333"), iv("chr3:1-77")]
        planner = PartitionPlanner(interval_split)

        first = planner.plan(40, intervals)
        second = planner.plan(40, intervals)

        assert first == second
        assert len(first) == 6

    def test_interval_plan_preserves_total_length(self) -> None:
        intervals = [iv("chr1:1-1000"), iv("chr2:1-333")]
        plan = PartitionPlanner(interval_split).plan(100, intervals)

        total = sum(unit.length for d in plan for unit in d.units if isinstance(unit, GenomicInterval))
        assert total == 1333
