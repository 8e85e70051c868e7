# src/shardflow/core/dag/__init__.py
"""Task DAG construction and validation."""

from shardflow.core.dag.builder import BranchSelector, TaskGraphBuilder
from shardflow.core.dag.graph import TaskGraph
from shardflow.core.dag.models import (
    ActiveBranch,
    BranchGroup,
    BranchOutputRef,
    BranchSpec,
    TaskNode,
    UpstreamRef,
)

__all__ = [
    "ActiveBranch",
    "BranchGroup",
    "BranchOutputRef",
    "BranchSelector",
    "BranchSpec",
    "TaskGraph",
    "TaskGraphBuilder",
    "TaskNode",
    "UpstreamRef",
]
