"""Shared pytest fixtures for matrixci tests."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from matrixci.context import CancelToken, RunContext
from matrixci.executor import StepState
from matrixci.matrix import instantiate_job_runs
from matrixci.model import Job, TriggerEvent
from matrixci.reporting import MemoryReporter


@pytest.fixture
def reporter() -> MemoryReporter:
    """Collects every run event in memory."""
    return MemoryReporter()


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    """A tiny source tree standing in for the repository under test."""
    root = tmp_path / "repo"
    (root / "src").mkdir(parents=True)
    (root / "README.md").write_text("hello\n")
    (root / "src" / "app.py").write_text("print('app')\n")
    return root


@pytest.fixture
def ctx(repo: Path, tmp_path: Path, reporter: MemoryReporter) -> RunContext:
    """A run context with isolated workspaces and short timings."""
    return RunContext(
        repo_root=repo,
        work_root=tmp_path / "work",
        max_concurrency=4,
        reporter=reporter,
        runner_labels=None,
        step_timeout=None,
        grace_period=1.0,
        keep_workspaces=False,
        poll_interval=0.02,
    )


@pytest.fixture
def push_event() -> TriggerEvent:
    return TriggerEvent(name="push", ref="refs/heads/main", sha="0123abcd")


@pytest.fixture
def make_state(ctx: RunContext, tmp_path: Path):
    """Factory for a StepState over the first run of `job`."""

    def factory(job: Job, *, cancel: CancelToken | None = None) -> StepState:
        run = instantiate_job_runs(job, pipeline_run_id="t")[0]
        workspace = tmp_path / "ws"
        workspace.mkdir(exist_ok=True)
        return StepState(
            job_run=run,
            workspace=workspace,
            env=dict(os.environ),
            ctx=ctx,
            cancel=cancel or CancelToken(),
        )

    return factory
