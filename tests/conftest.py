"""Shared fixtures: a quiet console, a scratch workdir and a memory cache."""
from __future__ import annotations

import os
from pathlib import Path

import pytest

from ciflow.cache import MemoryCacheStore
from ciflow.model import ExecutionContext, Job, Step
from ciflow.ui.console import Console, set_console


@pytest.fixture(autouse=True)
def quiet_console():
    console = Console(quiet=True)
    set_console(console)
    yield console
    set_console(Console())


@pytest.fixture
def workdir(tmp_path: Path) -> Path:
    wd = tmp_path / "work"
    wd.mkdir()
    return wd


@pytest.fixture
def store() -> MemoryCacheStore:
    return MemoryCacheStore()


@pytest.fixture
def base_env() -> dict:
    return {"PATH": os.environ.get("PATH", "/usr/bin:/bin")}


@pytest.fixture
def make_ctx(workdir, base_env):
    def _make(job: str = "build", platform: str = "linux", env=None, timeout=None) -> ExecutionContext:
        j = Job(name=job, steps=(Step("noop", "true"),), platform=platform, env=env or {}, timeout=timeout)
        return ExecutionContext.create(j, base_env, workdir)
    return _make
