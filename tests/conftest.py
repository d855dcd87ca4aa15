"""Shared pytest configuration: markers, ordering and plan fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "unit: pure in-memory tests")
    config.addinivalue_line("markers", "integration: tests touching the filesystem or subprocesses")
    config.addinivalue_line("markers", "slow: tests that spawn real child processes")


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    """Order unit tests first, integration second, slow last."""

    def sort_key(item: pytest.Item) -> tuple[int, str]:
        if item.get_closest_marker("slow"):
            return (2, item.nodeid)
        if item.get_closest_marker("integration"):
            return (1, item.nodeid)
        return (0, item.nodeid)

    items.sort(key=sort_key)


@pytest.fixture
def write_plan(tmp_path: Path):
    """Write ``IMPLEMENTATION_PLAN.md`` with the given checkbox states."""

    def _write(*tasks: tuple[str, bool], root: Path | None = None) -> Path:
        lines = ["# Plan", ""]
        lines += [f"- [{'x' if done else ' '}] {name}" for name, done in tasks]
        path = (root or tmp_path) / "IMPLEMENTATION_PLAN.md"
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return path

    return _write
