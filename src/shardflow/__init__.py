"""
shardflow: scatter-gather orchestration for sharded joint-calling pipelines.

Plans interval shards, expands a per-shard pipeline template into a task DAG
with build-time branch selection, schedules it under a bounded concurrency
budget, and gathers per-shard outputs in shard-index order.
"""

__version__ = "0.1.0"
