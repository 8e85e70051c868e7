# src/shardflow/engine/scheduler.py
"""Scheduler: dependency-driven execution of a TaskGraph.

A single coordinator (the thread calling run()) owns every task state
transition. Tasks execute on a ThreadPoolExecutor and report back through a
completion queue, so a completion never races a reachability recomputation.

Concurrency is gated at dispatch by a run-wide bounded semaphore plus one
bounded semaphore per limited task kind. A slot is held from dispatch until
the worker finishes (retries and backoff included), so the declared budget
is never over-committed.

Per task:
- Retry: transient ExecutorErrors (timeouts included) are re-attempted
  through RetryManager until the node's retry budget is spent
- Timeout: a timer sets the attempt's cancel event when the wall-clock
  budget expires; the attempt then counts as a TaskTimeoutError. The
  budget only bounds executors that watch TaskContext.cancel_event
- Failure: dependents of a FAILED node become SKIPPED; independent nodes
  keep running
"""

from __future__ import annotations

import heapq
import queue
import threading
from collections import Counter
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Protocol

import structlog

from shardflow.contracts.artifacts import ArtifactRef
from shardflow.contracts.enums import RunStatus, TaskKind, TaskStatus
from shardflow.contracts.errors import AmbiguousBranchError, ExecutorError, TaskTimeoutError
from shardflow.contracts.results import DispatchRecord, ScheduleResult, TaskRecord
from shardflow.contracts.types import NodeID
from shardflow.core.config import RetrySettings, RunSettings
from shardflow.core.dag.graph import TaskGraph
from shardflow.core.dag.models import TaskNode
from shardflow.engine.assembler import OutputAssembler
from shardflow.engine.clock import DEFAULT_CLOCK, Clock
from shardflow.engine.retry import MaxRetriesExceeded, RetryConfig, RetryManager

slog = structlog.get_logger(__name__)


@dataclass
class TaskContext:
    """Per-attempt context handed to the executor.

    Attributes:
        node: Task being executed
        inputs: node.params with every reference resolved to an ArtifactRef
        attempt: 1-based attempt number
        cancel_event: Set when the attempt should stop (run cancelled or
            wall-clock budget expired)
        timeout_seconds: Wall-clock budget of this attempt, None if unlimited
    """

    node: TaskNode
    inputs: Mapping[str, Any]
    attempt: int
    cancel_event: threading.Event = field(default_factory=threading.Event)
    timeout_seconds: float | None = None
    timed_out: bool = False

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def expire(self) -> None:
        """Mark the attempt as over its budget and ask it to stop."""
        self.timed_out = True
        self.cancel_event.set()


class TaskExecutor(Protocol):
    """Performs the actual tool invocation for a task.

    Returns one ArtifactRef per declared output. Failures are reported as
    ExecutorError with retryable=True for transient conditions; any other
    exception aborts the run.

    Timeouts and cancellation are cooperative. The scheduler only sets
    context.cancel_event; it cannot interrupt a running invocation. An
    executor that never checks the event keeps its concurrency slot until it
    returns, however far past timeout_seconds, so the wall-clock budget is
    enforced only for executors that watch the event and then return or
    raise ExecutorError.
    """

    def invoke(self, node: TaskNode, context: TaskContext) -> Mapping[str, ArtifactRef]: ...


class RunCancelledError(Exception):
    """A task stopped because the run was cancelled."""


@dataclass(frozen=True)
class _Completion:
    node_id: NodeID
    attempts: int
    outputs: Mapping[str, ArtifactRef] | None = None
    error: BaseException | None = None


@dataclass
class _RunState:
    graph: TaskGraph
    records: dict[NodeID, TaskRecord]
    remaining: dict[NodeID, int]
    positions: dict[NodeID, int]
    ready: list[tuple[int, NodeID]] = field(default_factory=list)
    started: dict[NodeID, float] = field(default_factory=dict)
    dispatch_log: list[DispatchRecord] = field(default_factory=list)
    outstanding: int = 0
    fatal: BaseException | None = None

    def push_ready(self, node_id: NodeID) -> None:
        self.records[node_id].status = TaskStatus.READY
        heapq.heappush(self.ready, (self.positions[node_id], node_id))

    def outputs_of(self, node_id: NodeID) -> Mapping[str, ArtifactRef] | None:
        record = self.records[node_id]
        return record.outputs if record.status == TaskStatus.SUCCEEDED else None


class Scheduler:
    """Executes a TaskGraph with bounded concurrency, retries and timeouts.

    Example:
        scheduler = Scheduler(executor, max_concurrency=4, kind_limits={TaskKind.IMPORT: 2})
        result = scheduler.run(graph)
        if result.status != RunStatus.SUCCEEDED:
            print(result.failed, result.skipped)
    """

    def __init__(
        self,
        executor: TaskExecutor,
        *,
        max_concurrency: int,
        kind_limits: Mapping[TaskKind, int] | None = None,
        retry: RetrySettings | None = None,
        clock: Clock | None = None,
        assembler: OutputAssembler | None = None,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {max_concurrency}")
        limits = dict(kind_limits or {})
        for kind, limit in limits.items():
            if not 1 <= limit <= max_concurrency:
                raise ValueError(f"Limit for '{kind}' must be between 1 and {max_concurrency}, got {limit}")

        self._executor = executor
        self._max_concurrency = max_concurrency
        self._kind_limits = limits
        self._retry = retry or RetrySettings()
        self._clock = clock or DEFAULT_CLOCK
        self._assembler = assembler or OutputAssembler()

        self._slots = threading.BoundedSemaphore(max_concurrency)
        self._kind_slots = {kind: threading.BoundedSemaphore(limit) for kind, limit in limits.items()}

        # Guards the in-flight counters and attempt events, which workers touch
        self._lock = threading.Lock()
        self._in_flight = 0
        self._in_flight_by_kind: Counter[TaskKind] = Counter()
        self._attempt_events: dict[NodeID, threading.Event] = {}

        self._cancel_event = threading.Event()
        self._completions: queue.SimpleQueue[_Completion] = queue.SimpleQueue()
        self._run_lock = threading.Lock()

    @classmethod
    def from_settings(cls, executor: TaskExecutor, settings: RunSettings, *, clock: Clock | None = None) -> Scheduler:
        return cls(
            executor,
            max_concurrency=settings.concurrency.max_concurrency,
            kind_limits=settings.concurrency.kind_limits,
            retry=settings.retry,
            clock=clock,
        )

    @property
    def max_concurrency(self) -> int:
        return self._max_concurrency

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        """Abort the current run.

        Stops dispatching and signals every in-flight attempt. Nodes that
        never ran end CANCELLED; succeeded outputs are kept. Safe to call
        from any thread, including from inside an executor.
        """
        self._cancel_event.set()
        with self._lock:
            events = list(self._attempt_events.values())
        for event in events:
            event.set()
        slog.warning("run_cancel_requested", in_flight=len(events))

    def run(self, graph: TaskGraph) -> ScheduleResult:
        """Execute every node of graph, respecting dependencies.

        Returns:
            ScheduleResult with one TaskRecord per node

        Raises:
            GraphConstructionError: If the graph is invalid
            AmbiguousBranchError: If a branch output cannot be resolved to
                exactly one producer
            Exception: Any unexpected executor exception, after in-flight
                work has been cancelled and drained
        """
        with self._run_lock:
            graph.validate()
            self._cancel_event = threading.Event()
            nodes = graph.nodes()
            state = _RunState(
                graph=graph,
                records={node.node_id: TaskRecord(node.node_id, node.kind, node.shard_index) for node in nodes},
                remaining={node.node_id: len(node.dependencies) for node in nodes},
                positions={node_id: position for position, node_id in enumerate(graph.topological_order())},
            )
            for node in nodes:
                if not node.dependencies:
                    state.push_ready(node.node_id)

            with ThreadPoolExecutor(max_workers=self._max_concurrency, thread_name_prefix="shardflow-task") as pool:
                try:
                    while True:
                        if not self.cancelled:
                            self._dispatch_ready(state, pool)
                        if state.outstanding == 0:
                            break
                        self._apply(state, self._completions.get())
                except BaseException:
                    # KeyboardInterrupt or a coordinator bug: stop workers before the pool joins them
                    self.cancel()
                    raise

            return self._finish(state)

    def _dispatch_ready(self, state: _RunState, pool: ThreadPoolExecutor) -> None:
        deferred: list[tuple[int, NodeID]] = []
        while state.ready and not self.cancelled:
            position, node_id = heapq.heappop(state.ready)
            if state.records[node_id].status != TaskStatus.READY:
                continue
            node = state.graph.get_node(node_id)
            if not self._slots.acquire(blocking=False):
                deferred.append((position, node_id))
                break
            kind_slot = self._kind_slots.get(node.kind)
            if kind_slot is not None and not kind_slot.acquire(blocking=False):
                self._slots.release()
                deferred.append((position, node_id))
                continue

            with self._lock:
                self._in_flight += 1
                self._in_flight_by_kind[node.kind] += 1
                in_flight, in_flight_of_kind = self._in_flight, self._in_flight_by_kind[node.kind]

            try:
                inputs = self._assembler.resolve_inputs(node.params, state.outputs_of)
            except (AmbiguousBranchError, KeyError) as e:
                self._release(node.kind)
                self._fail_fatally(state, node_id, e)
                break

            unmet = tuple(dep for dep in node.dependencies if state.records[dep].status != TaskStatus.SUCCEEDED)
            state.dispatch_log.append(
                DispatchRecord(
                    sequence=len(state.dispatch_log),
                    node_id=node_id,
                    kind=node.kind,
                    unmet_dependencies=unmet,
                    in_flight=in_flight,
                    in_flight_of_kind=in_flight_of_kind,
                )
            )
            state.records[node_id].status = TaskStatus.RUNNING
            state.started[node_id] = self._clock.monotonic()
            state.outstanding += 1
            slog.debug("task_dispatched", node_id=node_id, kind=node.kind.value, in_flight=in_flight)
            pool.submit(self._run_task, node, inputs)

        for entry in deferred:
            heapq.heappush(state.ready, entry)

    def _release(self, kind: TaskKind) -> None:
        with self._lock:
            self._in_flight -= 1
            self._in_flight_by_kind[kind] -= 1
        kind_slot = self._kind_slots.get(kind)
        if kind_slot is not None:
            kind_slot.release()
        self._slots.release()

    def _run_task(self, node: TaskNode, inputs: Mapping[str, Any]) -> None:
        """Worker body: all attempts of one task, then one completion."""
        attempts = 0

        def attempt_once() -> Mapping[str, ArtifactRef]:
            nonlocal attempts
            if self.cancelled:
                raise RunCancelledError(f"Run cancelled before '{node.node_id}' attempt {attempts + 1}")
            attempts += 1
            return self._attempt(node, inputs, attempts)

        def on_retry(attempt: int, error: BaseException) -> None:
            slog.warning(
                "retry_scheduled",
                node_id=node.node_id,
                kind=node.kind.value,
                attempt=attempt,
                budget=node.retry_budget,
                error=str(error),
            )

        manager = RetryManager(
            RetryConfig.from_settings(self._retry, node.retry_budget),
            sleep=self._cancel_event.wait,
        )
        try:
            outputs = manager.execute_with_retry(attempt_once, is_retryable=self._is_retryable, on_retry=on_retry)
        except BaseException as e:
            # The coordinator blocks until this node reports, so SystemExit from a
            # tool wrapper is reported too; _apply treats it as fatal
            completion = _Completion(node.node_id, attempts, error=e)
        else:
            completion = _Completion(node.node_id, attempts, outputs=outputs)
        finally:
            self._release(node.kind)
        self._completions.put(completion)

    def _attempt(self, node: TaskNode, inputs: Mapping[str, Any], attempt: int) -> dict[str, ArtifactRef]:
        context = TaskContext(node=node, inputs=inputs, attempt=attempt, timeout_seconds=node.timeout_seconds)
        with self._lock:
            self._attempt_events[node.node_id] = context.cancel_event
        if self.cancelled:
            context.cancel_event.set()

        timer: threading.Timer | None = None
        if node.timeout_seconds is not None:
            timer = threading.Timer(node.timeout_seconds, context.expire)
            timer.daemon = True
            timer.start()
        try:
            outputs = self._executor.invoke(node, context)
        except ExecutorError as e:
            if context.timed_out and node.timeout_seconds is not None:
                raise TaskTimeoutError(node.node_id, node.timeout_seconds) from e
            raise
        finally:
            if timer is not None:
                timer.cancel()
            with self._lock:
                self._attempt_events.pop(node.node_id, None)

        if context.timed_out and node.timeout_seconds is not None:
            raise TaskTimeoutError(node.node_id, node.timeout_seconds)
        if self.cancelled:
            raise RunCancelledError(f"Run cancelled while '{node.node_id}' was running")

        missing = [name for name in node.outputs if name not in outputs]
        if missing:
            raise ExecutorError(f"Task '{node.node_id}' did not produce declared outputs {missing}", node_id=node.node_id)
        return {name: outputs[name].with_shard(node.artifact_index) for name in node.outputs}

    def _is_retryable(self, error: BaseException) -> bool:
        return isinstance(error, ExecutorError) and error.retryable and not self.cancelled

    def _apply(self, state: _RunState, completion: _Completion) -> None:
        """Apply one completion to the record table (coordinator thread only)."""
        state.outstanding -= 1
        node_id = completion.node_id
        record = state.records[node_id]
        record.attempts = completion.attempts
        record.duration_seconds = self._clock.monotonic() - state.started[node_id]

        if completion.error is None:
            record.status = TaskStatus.SUCCEEDED
            record.outputs = completion.outputs or {}
            for dependent in state.graph.dependents(node_id):
                state.remaining[dependent] -= 1
                if state.remaining[dependent] == 0 and state.records[dependent].status == TaskStatus.PENDING:
                    state.push_ready(dependent)
            return

        error = completion.error
        record.error = error
        # A transient failure that was not re-attempted only because of the abort
        if isinstance(error, RunCancelledError) or (isinstance(error, ExecutorError) and error.retryable and self.cancelled):
            record.status = TaskStatus.CANCELLED
            return

        record.status = TaskStatus.FAILED
        if isinstance(error, (ExecutorError, MaxRetriesExceeded)):
            slog.error(
                "task_failed",
                node_id=node_id,
                kind=record.kind.value,
                shard_index=record.shard_index,
                attempts=completion.attempts,
                error=str(error),
            )
            self._skip_descendants(state, node_id)
        else:
            self._fail_fatally(state, node_id, error)

    def _skip_descendants(self, state: _RunState, node_id: NodeID) -> None:
        skipped = []
        for descendant in state.graph.descendants(node_id):
            record = state.records[descendant]
            if record.status in (TaskStatus.PENDING, TaskStatus.READY):
                record.status = TaskStatus.SKIPPED
                skipped.append(descendant)
        if skipped:
            slog.warning("dependents_skipped", failed_node=node_id, skipped=sorted(skipped))

    def _fail_fatally(self, state: _RunState, node_id: NodeID, error: BaseException) -> None:
        record = state.records[node_id]
        record.status = TaskStatus.FAILED
        record.error = error
        if state.fatal is None:
            state.fatal = error
        slog.error("run_aborted", node_id=node_id, error_type=type(error).__name__, error=str(error))
        self.cancel()

    def _finish(self, state: _RunState) -> ScheduleResult:
        for record in state.records.values():
            if not record.status.is_terminal:
                record.status = TaskStatus.CANCELLED

        if state.fatal is not None:
            raise state.fatal

        statuses = Counter(record.status for record in state.records.values())
        if self.cancelled:
            status = RunStatus.CANCELLED
        elif statuses[TaskStatus.SUCCEEDED] == len(state.records):
            status = RunStatus.SUCCEEDED
        else:
            status = RunStatus.FAILED

        slog.info(
            "run_finished",
            status=status.value,
            counts={s.value: n for s, n in statuses.items()},
            dispatched=len(state.dispatch_log),
        )
        return ScheduleResult(status=status, records=dict(state.records), dispatch_log=tuple(state.dispatch_log))
