"""Error taxonomy for planning, graph construction, execution and gather.

Fatal errors (EmptyInputError, GraphConstructionError, AmbiguousBranchError)
abort a run before or during scheduling. ExecutorError is per-task and is
retried while the task's budget lasts.
"""

from __future__ import annotations

from collections.abc import Sequence


class EmptyInputError(ValueError):
    """Raised when there are no partitionable units to plan over.

    Fatal: nothing is scheduled.
    """


class GraphConstructionError(ValueError):
    """Raised when the task graph cannot be built or fails validation.

    Covers incompatible branch output contracts, dependency cycles,
    dependencies on unknown nodes and gather inputs that are not in
    ascending shard order. Always a configuration or programming defect.
    """


class ExecutorError(Exception):
    """Failure of a single task invocation reported by a TaskExecutor.

    Attributes:
        retryable: True for transient failures (preemption, node loss,
            timeouts). The scheduler re-attempts retryable failures until
            the task's retry budget is spent.
        node_id: Task that failed, when known.
    """

    def __init__(self, message: str, *, retryable: bool = False, node_id: str | None = None) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.node_id = node_id


class TaskTimeoutError(ExecutorError):
    """A task exceeded its wall-clock budget.

    Treated exactly like a transient executor failure.
    """

    def __init__(self, node_id: str, timeout_seconds: float) -> None:
        super().__init__(
            f"Task '{node_id}' exceeded its {timeout_seconds:g}s wall-clock budget",
            retryable=True,
            node_id=node_id,
        )
        self.timeout_seconds = timeout_seconds


class AmbiguousBranchError(RuntimeError):
    """Zero or several alternative branches produced an output for one shard.

    Internal invariant violation: a correctly built graph holds exactly one
    active branch per shard. Never recovered.
    """

    def __init__(self, shard_index: int, present: Sequence[str]) -> None:
        self.shard_index = shard_index
        self.present = tuple(present)
        if present:
            detail = f"{len(present)} branches produced output: {sorted(present)}"
        else:
            detail = "no branch produced output"
        super().__init__(f"Shard {shard_index}: {detail}")


class IncompleteGatherError(ValueError):
    """Gather inputs do not cover the expected shards exactly once.

    A gather never silently omits or adds a shard; the merged artifact is
    not produced instead.
    """

    def __init__(
        self,
        output_name: str,
        *,
        missing: Sequence[int] = (),
        duplicated: Sequence[int] = (),
        unexpected: Sequence[int] = (),
    ) -> None:
        self.output_name = output_name
        self.missing = tuple(missing)
        self.duplicated = tuple(duplicated)
        self.unexpected = tuple(unexpected)
        parts = []
        if self.missing:
            parts.append(f"missing shards {list(self.missing)}")
        if self.duplicated:
            parts.append(f"duplicated shards {list(self.duplicated)}")
        if self.unexpected:
            parts.append(f"unexpected shards {list(self.unexpected)}")
        super().__init__(f"Cannot gather '{output_name}': {', '.join(parts) or 'no inputs'}")
