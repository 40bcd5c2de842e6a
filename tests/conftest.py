"""Shared fixtures for below-sync tests."""

import time

import pytest


def wait_for(predicate, timeout=5.0, interval=0.02):
    """Poll predicate until it returns truthy or timeout elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


@pytest.fixture
def membership_file(tmp_path):
    path = tmp_path / "nodes.yaml"
    path.write_text("nodes:\n  - nodeA\n")
    return path


@pytest.fixture
def source_tree(tmp_path):
    root = tmp_path / "store"
    (root / "a" / "deep").mkdir(parents=True)
    (root / "b").mkdir()
    (root / "top.log").write_bytes(b"top level\n")
    (root / "a" / "one.bin").write_bytes(bytes(range(256)) * 64)
    (root / "a" / "deep" / "two.txt").write_text("two\n")
    (root / "a" / "empty.txt").write_bytes(b"")
    return root
