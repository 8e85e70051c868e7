# tests/cli/conftest.py
"""Shared fixtures for CLI tests."""

from pathlib import Path

import pytest
import yaml


@pytest.fixture
def settings_file(tmp_path: Path) -> Path:
    """Two shards over intervals, flat genotyping, no backoff delay."""
    config = {
        "partition": {"override_count": 2, "splitter": "intervals"},
        "concurrency": {"max_concurrency": 2},
        "retry": {"budget": 1, "initial_delay_seconds": 0, "max_delay_seconds": 0, "jitter_seconds": 0},
    }
    path = tmp_path / "settings.yaml"
    path.write_text(yaml.safe_dump(config), encoding="utf-8")
    return path


@pytest.fixture
def intervals_file(tmp_path: Path) -> Path:
    path = tmp_path / "calling.interval_list"
    path.write_text("@HD\tVN:1.6\nchr1:1-100\nchr2:1-50\n", encoding="utf-8")
    return path
