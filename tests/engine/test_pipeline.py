# tests/engine/test_pipeline.py
"""End-to-end tests: plan -> build -> schedule -> gather with file artifacts."""

from collections.abc import Sequence
from pathlib import Path

import pytest

from shardflow.contracts import (
    ArtifactRef,
    EmptyInputError,
    ExecutorError,
    IncompleteGatherError,
    NodeID,
    RunStatus,
    TaskKind,
    TaskStatus,
)
from shardflow.core.dag import TaskNode
from shardflow.engine.gather import FileConcatMerger, GatherReducer
from shardflow.engine.pipeline import GatherRoutingExecutor, ShardedCallsetPipeline, build_graph, plan_partitions
from shardflow.engine.scheduler import Scheduler, TaskContext
from tests.helpers import FakeExecutor, FileWritingExecutor, RecordingMerger, fast_settings

UNITS = [f"u{i:02d}" for i in range(12)]


def read(path: str) -> str:
    return Path(path).read_text(encoding="utf-8")


def expected_lines(prefix: str | None = None) -> str:
    if prefix is None:
        return "".join(f"{unit}\n" for unit in UNITS)
    return "".join(f"{prefix} {unit}\n" for unit in UNITS)


class TestPlanAndBuild:
    def test_plan_partitions_uses_settings(self) -> None:
        plan = plan_partitions(fast_settings(shards=3), 2000, UNITS)

        assert [len(d.units) for d in plan] == [4, 4, 4]

    def test_build_graph_selects_configured_branch(self) -> None:
        plan = plan_partitions(fast_settings(shards=2), 2000, UNITS)

        flat = build_graph(fast_settings(shards=2), plan)
        scattered = build_graph(fast_settings(shards=2, scatter=True, sub_shard_count=3), plan)

        assert TaskKind.GENOTYPE in flat.count_by_kind()
        assert scattered.count_by_kind()[TaskKind.SUBSHARD_GENOTYPE] == 6


class TestFlatRun:
    def test_run_gathers_every_shard_in_order(self, tmp_path: Path) -> None:
        executor = FileWritingExecutor(tmp_path / "work")
        pipeline = ShardedCallsetPipeline(fast_settings(shards=4), tool_executor=executor, merger=FileConcatMerger(tmp_path / "out"))

        result = pipeline.run(2000, UNITS)

        assert result.status == RunStatus.SUCCEEDED
        assert set(result.gathered) == {TaskKind.GATHER_SITES_ONLY, TaskKind.GATHER_UNFILTERED, TaskKind.GATHER_RAW}
        assert read(result.gathered[TaskKind.GATHER_UNFILTERED].artifact.uri) == expected_lines()
        assert read(result.gathered[TaskKind.GATHER_SITES_ONLY].artifact.uri) == expected_lines("sites")
        assert read(result.gathered[TaskKind.GATHER_RAW].artifact.uri) == expected_lines("raw")
        assert result.gathered[TaskKind.GATHER_RAW].shard_indices == (0, 1, 2, 3)

    def test_shard_results_resolved(self, tmp_path: Path) -> None:
        executor = FileWritingExecutor(tmp_path / "work")
        pipeline = ShardedCallsetPipeline(fast_settings(shards=3), tool_executor=executor, merger=FileConcatMerger(tmp_path / "out"))

        result = pipeline.run(2000, UNITS)

        assert [shard.shard_index for shard in result.shard_results] == [0, 1, 2]
        assert result.failed_shards == ()
        shard = result.shard_results[1]
        assert set(shard.outputs) == {"vcf", "sites_only_vcf", "filtered_vcf", "raw_vcf"}
        assert shard.artifact("vcf").shard_index == 1
        assert read(shard.artifact("filtered_vcf").uri) == "filtered u04\nfiltered u05\nfiltered u06\nfiltered u07\n"

    def test_partitions_reported(self) -> None:
        pipeline = ShardedCallsetPipeline(fast_settings(shards=2), tool_executor=FakeExecutor(), merger=RecordingMerger())

        result = pipeline.run(2000, UNITS)

        assert [d.shard_index for d in result.partitions] == [0, 1]
        assert result.partitions[0].units == tuple(UNITS[:6])


class TestScatteredRun:
    def test_nested_scatter_gathers_sub_shards_in_order(self, tmp_path: Path) -> None:
        executor = FileWritingExecutor(tmp_path / "work")
        settings = fast_settings(shards=3, scatter=True, sub_shard_count=10)
        pipeline = ShardedCallsetPipeline(settings, tool_executor=executor, merger=FileConcatMerger(tmp_path / "out"))

        result = pipeline.run(2000, UNITS)

        assert result.status == RunStatus.SUCCEEDED
        # Four units per shard, so four sub-shards each
        assert len(result.schedule.with_status(TaskStatus.SUCCEEDED)) == 3 * (1 + 4 + 1 + 2) + 3
        assert read(result.gathered[TaskKind.GATHER_UNFILTERED].artifact.uri) == expected_lines()
        assert read(result.gathered[TaskKind.GATHER_SITES_ONLY].artifact.uri) == expected_lines("sites")
        assert (tmp_path / "out" / "subshard_gather_00001").read_text(encoding="utf-8") == "u04\nu05\nu06\nu07\n"

    def test_flat_and_scattered_runs_agree(self, tmp_path: Path) -> None:
        outputs = {}
        for scatter in (False, True):
            label = "scattered" if scatter else "flat"
            executor = FileWritingExecutor(tmp_path / label / "work")
            settings = fast_settings(shards=4, scatter=scatter, sub_shard_count=2)
            pipeline = ShardedCallsetPipeline(settings, tool_executor=executor, merger=FileConcatMerger(tmp_path / label / "out"))
            result = pipeline.run(2000, UNITS)
            outputs[label] = {kind: read(g.artifact.uri) for kind, g in result.gathered.items()}

        assert outputs["flat"] == outputs["scattered"]


class TestCompletionOrder:
    def test_reversed_completion_order_gives_identical_output(self, tmp_path: Path) -> None:
        merged = []
        for label, slow_first in (("forward", False), ("reverse", True)):
            delays = {f"genotype_{i:05d}": (0.04 * (3 - i) if slow_first else 0.01 * i) for i in range(4)}
            executor = FileWritingExecutor(tmp_path / label / "work", delays=delays)
            pipeline = ShardedCallsetPipeline(fast_settings(shards=4), tool_executor=executor, merger=FileConcatMerger(tmp_path / label / "out"))
            result = pipeline.run(2000, UNITS)
            merged.append({kind: Path(g.artifact.uri).read_bytes() for kind, g in result.gathered.items()})

        assert merged[0] == merged[1]
        assert len(merged[0]) == 3


class TestFailedRun:
    def test_failed_shard_blocks_gathers(self, tmp_path: Path) -> None:
        executor = FileWritingExecutor(
            tmp_path / "work",
            always_fail={"genotype_00001": ExecutorError("preempted", retryable=True)},
        )
        merger = RecordingMerger()
        pipeline = ShardedCallsetPipeline(fast_settings(shards=3, budget=2), tool_executor=executor, merger=merger)

        result = pipeline.run(2000, UNITS)

        assert result.status == RunStatus.FAILED
        assert result.gathered == {}
        assert merger.calls == []
        assert result.failed_shards == (1,)
        assert [shard.shard_index for shard in result.shard_results] == [0, 2]
        assert executor.attempts("genotype_00001") == 3
        assert result.schedule.failed == ["genotype_00001"]
        assert set(result.schedule.skipped) == {
            "filter_00001",
            "raw_convert_00001",
            "gather_sites_only",
            "gather_unfiltered",
            "gather_raw",
        }

    def test_empty_input_schedules_nothing(self) -> None:
        executor = FakeExecutor()
        pipeline = ShardedCallsetPipeline(fast_settings(), tool_executor=executor, merger=RecordingMerger())

        with pytest.raises(EmptyInputError):
            pipeline.run(2000, [])

        assert executor.invocations == []

    def test_merge_io_error_is_retried(self) -> None:
        class FlakyMerger(RecordingMerger):
            def __init__(self) -> None:
                super().__init__()
                self.failures = 1

            def merge(self, artifacts: Sequence[ArtifactRef], *, output_name: str, label: str) -> ArtifactRef:
                if label == "gather_raw" and self.failures:
                    self.failures -= 1
                    raise OSError("disk full")
                return super().merge(artifacts, output_name=output_name, label=label)

        pipeline = ShardedCallsetPipeline(fast_settings(shards=2), tool_executor=FakeExecutor(), merger=FlakyMerger())

        result = pipeline.run(2000, UNITS)

        assert result.status == RunStatus.SUCCEEDED
        assert result.schedule.records[NodeID("gather_raw")].attempts == 2


class TestCancelledRun:
    def test_cancel_stops_run_without_gathering(self) -> None:
        executor = FakeExecutor()
        merger = RecordingMerger()
        pipeline = ShardedCallsetPipeline(fast_settings(shards=2), tool_executor=executor, merger=merger)

        def cancel_on_filter(node: TaskNode, context: TaskContext) -> None:
            if node.kind == TaskKind.FILTER:
                pipeline.cancel()

        executor.on_invoke = cancel_on_filter

        result = pipeline.run(2000, UNITS)

        assert result.status == RunStatus.CANCELLED
        assert result.gathered == {}
        assert merger.calls == []
        assert result.schedule.records[NodeID("gather_raw")].status == TaskStatus.CANCELLED

    def test_cancel_before_run_is_a_no_op(self) -> None:
        pipeline = ShardedCallsetPipeline(fast_settings(shards=2), tool_executor=FakeExecutor(), merger=RecordingMerger())

        pipeline.cancel()
        result = pipeline.run(2000, UNITS)

        assert result.status == RunStatus.SUCCEEDED


class TestGatherRoutingExecutor:
    def test_tool_tasks_go_to_tool_executor(self) -> None:
        tool = FakeExecutor()
        router = GatherRoutingExecutor(tool, GatherReducer(RecordingMerger()))
        pipeline_settings = fast_settings(shards=2)
        graph = build_graph(pipeline_settings, plan_partitions(pipeline_settings, 2000, UNITS))

        result = Scheduler.from_settings(router, pipeline_settings).run(graph)

        assert result.status == RunStatus.SUCCEEDED
        invoked = {node_id for node_id, _ in tool.invocations}
        assert "gather_raw" not in invoked
        assert "filter_00000" in invoked
        assert set(router.gathered) == {"gather_sites_only", "gather_unfiltered", "gather_raw"}

    def test_incomplete_gather_propagates(self) -> None:
        router = GatherRoutingExecutor(FakeExecutor(), GatherReducer(RecordingMerger()))
        gather = TaskNode(
            NodeID("gather_raw"),
            TaskKind.GATHER_RAW,
            params={"output_name": "raw_vcf", "expected_shards": (0, 1)},
            outputs=("raw_vcf",),
        )
        context = TaskContext(node=gather, inputs={"inputs": (ArtifactRef("raw_vcf", "mem://raw_convert_00000/raw_vcf", 0),)}, attempt=1)

        with pytest.raises(IncompleteGatherError) as exc_info:
            router.invoke(gather, context)

        assert exc_info.value.missing == (1,)
        assert router.gathered == {}
