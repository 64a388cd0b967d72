# executor.py
#
# Step Executor: one step in, one StepResult out. Errors never escape;
# they are classified into a FailureKind at this boundary.

from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Tuple

from .actions import ActionCall, ActionOutcome, ActionProvider
from .actions.tools import hint_for
from .context import CancelToken, RunContext
from .errors import ActionFailure, InfrastructureFailure, StepCancelled, StepTimeout
from .expressions import ExpressionError, evaluate_condition, status_functions
from .matrix import event_context
from .model import ActionStep, CommandStep, FailureKind, JobRun, Status, Step, StepResult, TriggerEvent
from .process import run_process

COMMAND_NOT_FOUND = 127

SHELLS = {
    None: ["sh", "-e", "-c"],
    "sh": ["sh", "-e", "-c"],
    "bash": ["bash", "--noprofile", "--norc", "-e", "-o", "pipefail", "-c"],
}


@dataclass
class StepState:
    """Mutable per-job-run state the scheduler threads through its steps."""
    job_run: JobRun
    workspace: Path
    env: Dict[str, str]
    ctx: RunContext
    cancel: CancelToken
    event: TriggerEvent | None = None
    failed: bool = False


# (exit_code, output, env updates)
_Completed = Tuple[int, str, Dict[str, str]]


def _timeout_for(step: Step, state: StepState) -> float | None:
    return step.timeout if step.timeout is not None else state.ctx.step_timeout


def _step_env(step: Step, state: StepState) -> Dict[str, str]:
    env = dict(state.env)
    env.update(step.env)
    return env


def _run_command(step: CommandStep, state: StepState) -> _Completed:
    cwd = (state.workspace / (step.cwd or ".")).resolve()
    if not cwd.is_dir():
        raise InfrastructureFailure(f"[{state.job_run.job.name}] step '{step.name}' cwd not found: {cwd}")

    shell = SHELLS.get(step.shell)
    if shell is None:
        raise InfrastructureFailure(f"unsupported shell {step.shell!r} (supported: sh, bash)")

    proc = run_process(
        [*shell, step.run],
        cwd=cwd,
        env=_step_env(step, state),
        timeout=_timeout_for(step, state),
        cancel=state.cancel,
        grace=state.ctx.grace_period,
        poll_interval=state.ctx.poll_interval,
    )

    if proc.exit_code == COMMAND_NOT_FOUND:
        words = step.run.split()
        tool = words[0] if words else step.run
        raise InfrastructureFailure(
            "command not found",
            exit_code=proc.exit_code,
            output=proc.output,
            hint=hint_for(tool),
        )
    if proc.exit_code != 0:
        raise ActionFailure(
            f"command exited with {proc.exit_code}",
            exit_code=proc.exit_code,
            output=proc.output,
        )
    return proc.exit_code, proc.output, {}


def _call_provider(provider: ActionProvider, call: ActionCall, state: StepState) -> ActionOutcome:
    """
    Run an in-process provider under the step's time bound.

    On timeout or cancellation the provider's token is cancelled and the
    step returns without waiting for the provider thread.
    """
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="matrixci-action")
    try:
        fut = pool.submit(provider, call)
        deadline = time.monotonic() + call.timeout if call.timeout is not None else None
        while True:
            wait = state.ctx.poll_interval
            if deadline is not None:
                wait = max(0.0, min(wait, deadline - time.monotonic()))
            try:
                return fut.result(timeout=wait)
            except FutureTimeout:
                pass

            if state.cancel.cancelled:
                call.cancel.cancel()
                raise StepCancelled()
            if deadline is not None and time.monotonic() >= deadline:
                call.cancel.cancel()
                raise StepTimeout(call.timeout)
    finally:
        pool.shutdown(wait=False)


def _run_action(step: ActionStep, state: StepState) -> _Completed:
    provider = state.ctx.actions.resolve(step.uses)
    call = ActionCall(
        name=step.action_name,
        version=step.action_version,
        params=dict(step.params),
        workspace=state.workspace,
        env=_step_env(step, state),
        repo_root=state.ctx.repo_root,
        work_root=state.ctx.work_root,
        job=state.job_run.job.name,
        step=step.name,
        timeout=_timeout_for(step, state),
        cancel=state.cancel.child(),
        grace=state.ctx.grace_period,
    )
    outcome = _call_provider(provider, call, state)
    if outcome.exit_status != 0:
        raise ActionFailure(
            f"action {step.uses} exited with {outcome.exit_status}",
            exit_code=outcome.exit_status,
            output=outcome.output,
        )
    env_updates = {str(k): str(v) for k, v in (outcome.side_effects.get("env") or {}).items()}
    return 0, outcome.output, env_updates


# step.kind -> runner
RUNNERS: Dict[str, Callable[..., _Completed]] = {
    CommandStep.kind: _run_command,
    ActionStep.kind: _run_action,
}


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def execute_step(step: Step, state: StepState) -> StepResult:
    """
    Run one step against the job run's workspace and environment.

    A false condition skips the step without spawning anything. Environment
    updates reported by the step are applied to `state.env`.
    """
    start = time.monotonic()
    logger = state.ctx.logger

    def result(status: Status, kind: FailureKind | None = None, **kw) -> StepResult:
        return StepResult(
            name=step.name,
            status=status,
            failure_kind=kind,
            duration_ms=_elapsed_ms(start),
            continue_on_error=step.continue_on_error,
            **kw,
        )

    contexts = {
        "matrix": state.job_run.matrix,
        "env": state.env,
        "event": event_context(state.event),
    }
    try:
        should_run = evaluate_condition(
            step.condition,
            contexts,
            status_functions(failed=state.failed, cancelled=state.cancel.cancelled),
        )
    except ExpressionError as e:
        return result(Status.FAILED, FailureKind.INFRASTRUCTURE, message=f"invalid condition: {e.message}")

    if not should_run:
        return result(Status.SKIPPED, message="condition not met" if step.condition else "previous step failed")

    runner = RUNNERS.get(step.kind)
    if runner is None:
        return result(Status.FAILED, FailureKind.INFRASTRUCTURE, message=f"no runner for step kind {step.kind!r}")

    logger.debug("Running step %s of %s", step.name, state.job_run.display_name)
    try:
        exit_code, output, env_updates = runner(step, state)
    except StepTimeout as e:
        return result(Status.FAILED, FailureKind.TIMEOUT, output=e.output, message=e.message)
    except StepCancelled as e:
        return result(Status.CANCELLED, FailureKind.CANCELLED, output=e.output, message=e.message)
    except ActionFailure as e:
        return result(Status.FAILED, FailureKind.ACTION, exit_code=e.exit_code, output=e.output, message=e.message)
    except InfrastructureFailure as e:
        message = e.message
        if "hint" in e.details:
            message = f"{message}\nHint: {e.details['hint']}"
        return result(Status.FAILED, FailureKind.INFRASTRUCTURE, exit_code=e.exit_code, output=e.output, message=message)
    except Exception as e:
        logger.exception("Step %s of %s raised", step.name, state.job_run.display_name)
        return result(Status.FAILED, FailureKind.INFRASTRUCTURE, message=f"{type(e).__name__}: {e}")

    state.env.update(env_updates)
    return result(Status.SUCCEEDED, exit_code=exit_code, output=output)

