"""Semantic type aliases for compile-time type safety.

NewType creates distinct types that mypy treats as incompatible,
preventing accidental misuse of semantically different string values.
"""

from typing import NewType

NodeID = NewType("NodeID", str)
"""Unique task identifier in the task graph (e.g., 'filter_00003')"""

OutputName = NewType("OutputName", str)
"""Declared output name of a task (e.g., 'sites_only_vcf')"""
