"""Status codes, branch tags and task kinds used across subsystem boundaries."""

from enum import StrEnum


class RunStatus(StrEnum):
    """Overall status of a scheduled run."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TaskStatus(StrEnum):
    """Lifecycle of a single task node inside the scheduler.

    PENDING -> READY -> RUNNING -> SUCCEEDED | FAILED.
    Dependents of a FAILED node move straight to SKIPPED. Nodes that never
    ran because the run was aborted end as CANCELLED.
    """

    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_TASK_STATUSES


_TERMINAL_TASK_STATUSES = frozenset(
    {
        TaskStatus.SUCCEEDED,
        TaskStatus.FAILED,
        TaskStatus.SKIPPED,
        TaskStatus.CANCELLED,
    }
)


class BranchTag(StrEnum):
    """Alternative genotyping sub-pipelines of a shard.

    SCATTERED: nested scatter over sub-shards followed by a sub-shard gather.
    FLAT: one genotyping task for the whole shard.
    """

    SCATTERED = "scattered"
    FLAT = "flat"


class TaskKind(StrEnum):
    """Kind of task in the joint-calling template.

    Per-kind concurrency limits, retry budgets and timeouts are keyed by
    these values in configuration.
    """

    IMPORT = "import"
    GENOTYPE = "genotype"
    SUBSHARD_GENOTYPE = "subshard_genotype"
    SUBSHARD_GATHER = "subshard_gather"
    FILTER = "filter"
    RAW_CONVERT = "raw_convert"
    GATHER_SITES_ONLY = "gather_sites_only"
    GATHER_UNFILTERED = "gather_unfiltered"
    GATHER_RAW = "gather_raw"

    @property
    def is_gather(self) -> bool:
        """Whether tasks of this kind are executed by the gather reducer."""
        return self in GATHER_KINDS


GATHER_KINDS: frozenset[TaskKind] = frozenset(
    {
        TaskKind.SUBSHARD_GATHER,
        TaskKind.GATHER_SITES_ONLY,
        TaskKind.GATHER_UNFILTERED,
        TaskKind.GATHER_RAW,
    }
)
