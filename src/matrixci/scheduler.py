# scheduler.py
#
# Job Scheduler: runs the steps of one job run strictly in order inside a
# workspace owned by that job run alone.

from __future__ import annotations

import os
import shutil
import time
from pathlib import Path
from typing import Dict, List

from .context import CancelToken, RunContext
from .executor import StepState, execute_step
from .expressions import to_text
from .model import FailureKind, JobRun, JobRunResult, Status, StepResult, TriggerEvent, job_status_from_steps
from .reporting import RunEvent


# ----------------------------------------------------------------------
# Workspace + environment
# ----------------------------------------------------------------------

def prepare_workspace(job_run: JobRun, ctx: RunContext) -> Path:
    """<work_root>/<run_id>/workspace, created fresh."""
    run_dir = ctx.work_root / job_run.run_id
    if run_dir.exists():
        shutil.rmtree(run_dir)
    workspace = run_dir / "workspace"
    workspace.mkdir(parents=True)
    return workspace


def job_run_env(
    job_run: JobRun,
    ctx: RunContext,
    *,
    workspace: Path,
    env_file: Path,
    pipeline_run_id: str,
    event: TriggerEvent | None,
) -> Dict[str, str]:
    """os.environ + process-wide defaults + pipeline/job env + CI variables."""
    env = dict(os.environ)
    env.update(ctx.env)
    env.update(job_run.env)
    env.update(
        CI="true",
        MATRIXCI="true",
        MATRIXCI_JOB=job_run.job.name,
        MATRIXCI_RUN_ID=job_run.run_id,
        MATRIXCI_PIPELINE_RUN_ID=pipeline_run_id,
        MATRIXCI_WORKSPACE=str(workspace),
        MATRIXCI_ENV=str(env_file),
    )
    if event is not None:
        env["MATRIXCI_EVENT_NAME"] = event.name
        if event.ref:
            env["MATRIXCI_REF"] = event.ref
        if event.sha:
            env["MATRIXCI_SHA"] = event.sha
    for key, value in job_run.matrix.items():
        env[f"MATRIX_{key.upper().replace('-', '_')}"] = to_text(value)
    return env


def read_env_file(path: Path) -> Dict[str, str]:
    """
    Parse `KEY=VALUE` lines a step appended to $MATRIXCI_ENV.

    Multi-line values use the heredoc form:
        KEY<<EOF
        line 1
        line 2
        EOF
    """
    if not path.exists():
        return {}
    updates: Dict[str, str] = {}
    lines = path.read_text(encoding="utf-8").splitlines()
    i = 0
    while i < len(lines):
        line = lines[i]
        i += 1
        if not line.strip() or line.lstrip().startswith("#"):
            continue
        if "<<" in line and ("=" not in line or line.index("<<") < line.index("=")):
            key, delim = line.split("<<", 1)
            body: List[str] = []
            while i < len(lines) and lines[i] != delim:
                body.append(lines[i])
                i += 1
            i += 1  # delimiter
            updates[key.strip()] = "\n".join(body)
        elif "=" in line:
            key, value = line.split("=", 1)
            updates[key.strip()] = value
    return updates


# ----------------------------------------------------------------------
# Execution
# ----------------------------------------------------------------------

def _first_failure(steps: List[StepResult]) -> StepResult | None:
    for s in steps:
        if s.blocking_failure:
            return s
    return None


def run_job(
    job_run: JobRun,
    ctx: RunContext,
    *,
    pipeline_run_id: str,
    event: TriggerEvent | None = None,
    cancel: CancelToken | None = None,
) -> JobRunResult:
    """
    Execute the steps of `job_run` in declaration order.

    After a blocking failure later steps are skipped (unless their condition
    asks to run); on cancellation every step not yet started is cancelled.
    """
    cancel = cancel or ctx.cancel
    start = time.monotonic()
    name = job_run.display_name
    results: List[StepResult] = []

    def finish(status: Status, kind: FailureKind | None = None, message: str = "") -> JobRunResult:
        result = JobRunResult(
            run_id=job_run.run_id,
            job_name=job_run.job.name,
            matrix=dict(job_run.matrix),
            status=status,
            steps=results,
            failure_kind=kind,
            message=message,
            duration_ms=int((time.monotonic() - start) * 1000),
            display_name=name,
        )
        ctx.reporter.emit(RunEvent.for_job_run(result, pipeline_run_id=pipeline_run_id))
        return result

    if ctx.runner_labels is not None and job_run.runs_on and job_run.runs_on not in ctx.runner_labels:
        results.extend(StepResult(name=s.name, status=Status.SKIPPED, message="no runner") for s in job_run.steps)
        return finish(
            Status.FAILED,
            FailureKind.INFRASTRUCTURE,
            f"no runner with label {job_run.runs_on!r} (available: {', '.join(sorted(ctx.runner_labels))})",
        )

    ctx.logger.info("Starting job run %s", name)
    workspace = prepare_workspace(job_run, ctx)
    env_file = workspace.parent / "env"
    env_file.touch()
    state = StepState(
        job_run=job_run,
        workspace=workspace,
        env=job_run_env(
            job_run,
            ctx,
            workspace=workspace,
            env_file=env_file,
            pipeline_run_id=pipeline_run_id,
            event=event,
        ),
        ctx=ctx,
        cancel=cancel,
        event=event,
    )

    try:
        for index, step in enumerate(job_run.steps):
            if cancel.cancelled:
                results.extend(
                    StepResult(
                        name=s.name,
                        status=Status.CANCELLED,
                        failure_kind=FailureKind.CANCELLED,
                        message="cancelled before start",
                    )
                    for s in job_run.steps[index:]
                )
                break

            step_result = execute_step(step, state)
            results.append(step_result)
            ctx.reporter.emit(RunEvent.for_step(job_run, step_result, pipeline_run_id=pipeline_run_id))

            if step_result.blocking_failure:
                state.failed = True
            if step_result.status is Status.SUCCEEDED:
                state.env.update(read_env_file(env_file))
            env_file.write_text("", encoding="utf-8")
    finally:
        if not ctx.keep_workspaces:
            shutil.rmtree(workspace.parent, ignore_errors=True)

    status = job_status_from_steps(results)
    if status is Status.FAILED:
        failed = _first_failure(results)
        return finish(status, failed.failure_kind, f"step '{failed.name}' failed")
    if status is Status.CANCELLED:
        return finish(status, FailureKind.CANCELLED, "cancelled")
    return finish(status)
