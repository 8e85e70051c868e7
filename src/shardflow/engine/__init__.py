# src/shardflow/engine/__init__.py
"""Execution engine: scheduling, retries, branch resolution and gathers.

Exports:
- Scheduler, TaskExecutor, TaskContext: dependency-driven task execution
- OutputAssembler: canonical per-shard outputs across alternative branches
- GatherReducer, MergePrimitive, FileConcatMerger: order-preserving merges
- ShardedCallsetPipeline: plan -> build -> schedule -> gather
- RetryManager, RetryConfig, MaxRetriesExceeded: retry logic
"""

from shardflow.engine.assembler import OutputAssembler
from shardflow.engine.clock import DEFAULT_CLOCK, Clock, MockClock, SystemClock
from shardflow.engine.gather import FileConcatMerger, GatherReducer, MergePrimitive
from shardflow.engine.pipeline import GatherRoutingExecutor, ShardedCallsetPipeline
from shardflow.engine.retry import MaxRetriesExceeded, RetryConfig, RetryManager
from shardflow.engine.scheduler import RunCancelledError, Scheduler, TaskContext, TaskExecutor

__all__ = [
    "DEFAULT_CLOCK",
    "Clock",
    "FileConcatMerger",
    "GatherReducer",
    "GatherRoutingExecutor",
    "MaxRetriesExceeded",
    "MergePrimitive",
    "MockClock",
    "OutputAssembler",
    "RetryConfig",
    "RetryManager",
    "RunCancelledError",
    "Scheduler",
    "ShardedCallsetPipeline",
    "SystemClock",
    "TaskContext",
    "TaskExecutor",
]
