"""Shared test fixtures for the workbench agent test suite."""

import os
import stat

import pytest

from workbench_agent.audit import AuditSink
from workbench_agent.config import WorkbenchConfig
from workbench_agent.events import StageBroadcaster
from workbench_agent.executor import BatchExecutor
from workbench_agent.store import WorkbenchStore


@pytest.fixture
def store(tmp_path):
    """Provide a WorkbenchStore backed by a temporary database."""
    s = WorkbenchStore(db_path=tmp_path / "test_workbench.db")
    yield s
    s.close()


@pytest.fixture
def sink(store):
    """AuditSink without a worker: writes land inline."""
    return AuditSink(store, maxsize=100)


@pytest.fixture
def broadcaster(sink):
    return StageBroadcaster(sink)


@pytest.fixture
def executor(store, sink, broadcaster):
    return BatchExecutor(store, sink, broadcaster)


@pytest.fixture
def config(tmp_path):
    cfg = WorkbenchConfig()
    cfg.db_path = tmp_path / "test_workbench.db"
    return cfg


@pytest.fixture
def make_codex(tmp_path):
    """Write an executable shell script standing in for the codex binary."""

    def _make(body: str, name: str = "codex") -> str:
        path = tmp_path / name
        path.write_text("#!/bin/sh\n" + body)
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return os.fspath(path)

    return _make
