# tests/helpers.py
"""Fake collaborators shared by scheduler, pipeline and CLI tests.

- FakeExecutor: in-memory TaskExecutor with scripted failures, delays and
  concurrency tracking
- FileWritingExecutor: FakeExecutor that writes real files, so gathers
  can concatenate them
- RecordingMerger: MergePrimitive that records what it was asked to merge
- node(), fast_retry(): small builders for hand-made graphs and settings
"""

from __future__ import annotations

import tempfile
import threading
from collections import Counter
from collections.abc import Iterable, Mapping, Sequence
from pathlib import Path
from typing import Any

from shardflow.contracts import ArtifactRef, ExecutorError, NodeID, TaskKind
from shardflow.core.config import (
    ConcurrencySettings,
    PartitionSettings,
    RetrySettings,
    RunSettings,
)
from shardflow.core.dag import TaskGraph, TaskNode
from shardflow.engine.scheduler import TaskContext


def fast_retry(budget: int = 2, kind_budgets: Mapping[TaskKind, int] | None = None) -> RetrySettings:
    """Retry settings with no backoff delay."""
    return RetrySettings(
        budget=budget,
        kind_budgets=dict(kind_budgets or {}),
        initial_delay_seconds=0.0,
        max_delay_seconds=0.0,
        jitter_seconds=0.0,
    )


def fast_settings(
    *,
    shards: int = 4,
    scatter: bool = False,
    sub_shard_count: int = 10,
    max_concurrency: int = 4,
    budget: int = 2,
) -> RunSettings:
    """RunSettings for end-to-end runs: fixed shard count, opaque units, no backoff."""
    return RunSettings(
        partition=PartitionSettings(override_count=shards, splitter="units"),
        branch={"scatter_genotyping": scatter, "sub_shard_count": sub_shard_count},
        concurrency=ConcurrencySettings(max_concurrency=max_concurrency),
        retry=fast_retry(budget),
    )


def node(
    node_id: str,
    *,
    kind: TaskKind = TaskKind.FILTER,
    deps: Sequence[str] = (),
    shard_index: int | None = None,
    outputs: Sequence[str] = ("out",),
    params: Mapping[str, Any] | None = None,
    retry_budget: int = 0,
    timeout_seconds: float | None = None,
) -> TaskNode:
    return TaskNode(
        node_id=NodeID(node_id),
        kind=kind,
        shard_index=shard_index,
        params=params or {},
        dependencies=tuple(NodeID(d) for d in deps),
        outputs=tuple(outputs),
        retry_budget=retry_budget,
        timeout_seconds=timeout_seconds,
    )


def graph_of(nodes: Iterable[TaskNode]) -> TaskGraph:
    graph = TaskGraph()
    for task in nodes:
        graph.add_node(task)
    return graph


class FakeExecutor:
    """Scripted TaskExecutor.

    Args:
        failures: Errors to raise on successive attempts of a node; once the
            list is used up the node succeeds
        always_fail: Error raised on every attempt of a node
        delays: Seconds a node runs before returning (interruptible through
            the context's cancel event)
        hang: Nodes that block until their cancel event is set, then raise
            a retryable ExecutorError
        hang_attempts: Restrict hanging to these attempt numbers (all if empty)
        missing_outputs: Nodes that return no outputs at all

    Attributes:
        on_invoke: Optional callback run at the start of every invocation
        max_concurrent: Highest number of simultaneous invocations observed
    """

    def __init__(
        self,
        *,
        failures: Mapping[str, Sequence[BaseException]] | None = None,
        always_fail: Mapping[str, BaseException] | None = None,
        delays: Mapping[str, float] | None = None,
        hang: Iterable[str] = (),
        hang_attempts: Iterable[int] = (),
        missing_outputs: Iterable[str] = (),
        default_delay: float = 0.0,
    ) -> None:
        self._failures = {k: list(v) for k, v in (failures or {}).items()}
        self._always_fail = dict(always_fail or {})
        self._delays = dict(delays or {})
        self._hang = set(hang)
        self._hang_attempts = set(hang_attempts)
        self._missing_outputs = set(missing_outputs)
        self._default_delay = default_delay
        self.on_invoke: Any = None

        self._lock = threading.Lock()
        self.invocations: list[tuple[str, int]] = []
        self.contexts: dict[str, TaskContext] = {}
        self._current = 0
        self._current_by_kind: Counter[TaskKind] = Counter()
        self.max_concurrent = 0
        self.max_concurrent_by_kind: Counter[TaskKind] = Counter()

    def attempts(self, node_id: str) -> int:
        with self._lock:
            return sum(1 for nid, _ in self.invocations if nid == node_id)

    def invoke(self, node: TaskNode, context: TaskContext) -> Mapping[str, ArtifactRef]:
        with self._lock:
            self.invocations.append((node.node_id, context.attempt))
            self.contexts[node.node_id] = context
            self._current += 1
            self._current_by_kind[node.kind] += 1
            self.max_concurrent = max(self.max_concurrent, self._current)
            self.max_concurrent_by_kind[node.kind] = max(self.max_concurrent_by_kind[node.kind], self._current_by_kind[node.kind])
        try:
            if self.on_invoke is not None:
                self.on_invoke(node, context)
            if node.node_id in self._hang and (not self._hang_attempts or context.attempt in self._hang_attempts):
                context.cancel_event.wait(10.0)
                raise ExecutorError(f"{node.node_id} interrupted", retryable=True, node_id=node.node_id)
            delay = self._delays.get(node.node_id, self._default_delay)
            if delay:
                context.cancel_event.wait(delay)
            if node.node_id in self._always_fail:
                raise self._always_fail[node.node_id]
            with self._lock:
                scripted = self._failures.get(node.node_id)
                error = scripted.pop(0) if scripted else None
            if error is not None:
                raise error
            if node.node_id in self._missing_outputs:
                return {}
            return self.produce(node, context)
        finally:
            with self._lock:
                self._current -= 1
                self._current_by_kind[node.kind] -= 1

    def produce(self, node: TaskNode, context: TaskContext) -> dict[str, ArtifactRef]:
        return {name: ArtifactRef(name=name, uri=f"mem://{node.node_id}/{name}") for name in node.outputs}


class FileWritingExecutor(FakeExecutor):
    """FakeExecutor whose artifacts are real files under workdir.

    Genotyping writes one line per unit; filter and raw conversion prefix
    every line of their input, so gathered files show the merge order.
    """

    def __init__(self, workdir: Path, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._workdir = workdir
        self._workdir.mkdir(parents=True, exist_ok=True)

    def produce(self, node: TaskNode, context: TaskContext) -> dict[str, ArtifactRef]:
        outputs: dict[str, ArtifactRef] = {}
        for name in node.outputs:
            if node.kind in (TaskKind.IMPORT, TaskKind.GENOTYPE, TaskKind.SUBSHARD_GENOTYPE):
                content = "".join(f"{unit}\n" for unit in context.inputs["units"])
            else:
                source = Path(context.inputs["vcf"].uri).read_text(encoding="utf-8")
                prefix = {"sites_only_vcf": "sites", "filtered_vcf": "filtered", "raw_vcf": "raw"}[name]
                content = "".join(f"{prefix} {line}\n" for line in source.splitlines())
            path = self._workdir / f"{node.node_id}.{name}"
            path.write_text(content, encoding="utf-8")
            outputs[name] = ArtifactRef(name=name, uri=str(path))
        return outputs


def demo_executor() -> FileWritingExecutor:
    """Executor factory for CLI runs ('tests.helpers:demo_executor')."""
    return FileWritingExecutor(Path(tempfile.mkdtemp(prefix="shardflow-test-")))


class RecordingMerger:
    """MergePrimitive that records calls instead of touching files."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str, list[int | None]]] = []

    def merge(self, artifacts: Sequence[ArtifactRef], *, output_name: str, label: str) -> ArtifactRef:
        self.calls.append((output_name, label, [artifact.shard_index for artifact in artifacts]))
        return ArtifactRef(name=output_name, uri=f"merged://{label}")
