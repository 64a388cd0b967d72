# coordinator.py
#
# Pipeline Coordinator: trigger matching, planning (matrix expansion for
# every job before anything runs), dependency-ordered concurrent dispatch
# behind the admission gate, and aggregation.

from __future__ import annotations

import time
import uuid
from collections import Counter, deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Deque, Dict, List, Optional, Set, Tuple

from .context import CancelToken, RunContext
from .dag import build_dag, topo_levels
from .errors import ConfigurationError
from .expressions import ExpressionError, evaluate_condition, status_functions
from .matrix import event_context, instantiate_job_runs
from .model import (
    FailureKind,
    Job,
    JobRun,
    JobRunResult,
    Pipeline,
    PipelineRunResult,
    Status,
    StepResult,
    TriggerEvent,
    pipeline_status_from_runs,
)
from .reporting import RunEvent
from .scheduler import run_job


def new_run_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass
class Plan:
    """Everything decided before the first step runs."""
    run_id: str
    levels: List[List[str]]
    runs: Dict[str, List[JobRun]]
    # job name -> (selected, reason)
    selected: Dict[str, Tuple[bool, str]]
    adj: Dict[str, Set[str]]
    indeg: Dict[str, int]

    @property
    def job_run_count(self) -> int:
        return sum(len(r) for r in self.runs.values())


def _select(job: Job, event: TriggerEvent, env: Dict[str, str]) -> Tuple[bool, str]:
    """Job-level filters, mirroring the pipeline trigger filters."""
    if job.on is not None and event.name not in job.on:
        return False, f"not enabled for '{event.name}'"
    if not event.touches(job.paths):
        return False, f"no changed file matches {job.paths}"
    if job.condition:
        contexts = {"env": {**env, **job.env}, "event": event_context(event), "matrix": {}}
        try:
            ok = evaluate_condition(job.condition, contexts, status_functions(failed=False, cancelled=False))
        except ExpressionError as e:
            raise ConfigurationError(e.message, field_path=f"jobs.{job.name}.if") from e
        if not ok:
            return False, "condition not met"
    if job.paths:
        return True, f"matched {job.paths}"
    return True, "selected"


def plan_pipeline(
    pipeline: Pipeline,
    event: TriggerEvent,
    *,
    env: Dict[str, str] | None = None,
    run_id: str | None = None,
) -> Plan:
    """
    Validate the job graph, evaluate job filters and expand every matrix.

    Raises ConfigurationError; nothing has been executed when it does.
    """
    run_id = run_id or new_run_id()
    merged_env = {**(env or {}), **pipeline.env}
    adj, indeg = build_dag(pipeline.jobs)
    levels = topo_levels(pipeline.jobs, adj, indeg)

    runs: Dict[str, List[JobRun]] = {}
    selected: Dict[str, Tuple[bool, str]] = {}
    for job in pipeline.jobs:
        if not job.steps:
            raise ConfigurationError(f"job '{job.name}' has no steps", field_path=f"jobs.{job.name}.steps")
        selected[job.name] = _select(job, event, merged_env)
        runs[job.name] = instantiate_job_runs(
            job,
            pipeline_run_id=run_id,
            pipeline_env=merged_env,
            event=event,
        )

    return Plan(run_id=run_id, levels=levels, runs=runs, selected=selected, adj=adj, indeg=indeg)


class _Coordinator:
    def __init__(self, pipeline: Pipeline, event: TriggerEvent, ctx: RunContext, plan: Plan):
        self.pipeline = pipeline
        self.event = event
        self.ctx = ctx
        self.plan = plan
        self.by_name = {j.name: j for j in pipeline.jobs}
        self.order = {j.name: i for i, j in enumerate(pipeline.jobs)}

        self.indeg = dict(plan.indeg)
        self.remaining = {name: len(runs) for name, runs in plan.runs.items()}
        self.results: Dict[str, JobRunResult] = {}

        self.queue: Deque[JobRun] = deque()
        self.in_flight: Dict[Future, JobRun] = {}
        self.running_per_job: Counter = Counter()
        self.job_tokens: Dict[str, CancelToken] = {name: ctx.cancel.child() for name in self.by_name}
        self.halted = False  # pipeline-level fail-fast tripped
        # jobs skipped or cancelled because a prerequisite failed or was
        # cancelled; their dependents inherit that verdict
        self.blocked: Dict[str, Status] = {}

    # ------------------------------------------------------------------

    def run(self) -> PipelineRunResult:
        start = time.monotonic()
        ready = deque(sorted((n for n, d in self.indeg.items() if d == 0), key=self.order.__getitem__))
        self._release(ready)

        with ThreadPoolExecutor(max_workers=self.ctx.max_concurrency, thread_name_prefix="matrixci") as pool:
            while self.queue or self.in_flight:
                self._dispatch(pool)
                if not self.in_flight:
                    continue
                done, _ = wait(list(self.in_flight), return_when=FIRST_COMPLETED)
                for fut in done:
                    self._complete(fut)

        ordered: List[JobRunResult] = []
        for job in self.pipeline.jobs:
            ordered.extend(self.results[r.run_id] for r in self.plan.runs[job.name])

        result = PipelineRunResult(
            run_id=self.plan.run_id,
            pipeline=self.pipeline.name,
            event=self.event,
            status=pipeline_status_from_runs(ordered),
            job_runs=ordered,
            duration_ms=int((time.monotonic() - start) * 1000),
        )
        self.ctx.reporter.emit(RunEvent.for_pipeline_run(result))
        return result

    # ------------------------------------------------------------------

    def _prerequisite_statuses(self, job: Job) -> Set[Status]:
        statuses = set()
        for need in job.needs:
            if need in self.blocked:
                statuses.add(self.blocked[need])
            else:
                statuses.update(self.results[r.run_id].status for r in self.plan.runs[need])
        return statuses

    def _release(self, ready: Deque[str]) -> None:
        """Decide, for every job whose prerequisites are all terminal, what happens to its runs."""
        while ready:
            name = ready.popleft()
            job = self.by_name[name]
            runs = self.plan.runs[name]
            prereqs = self._prerequisite_statuses(job)
            selected, reason = self.plan.selected[name]

            stop = self._stop_reason(self.job_tokens[name])
            if stop is not None:
                verdict: Optional[Tuple[Status, str]] = (Status.CANCELLED, stop)
            elif Status.FAILED in prereqs:
                verdict = (Status.SKIPPED, "prerequisite failed")
                self.blocked[name] = Status.FAILED
            elif Status.CANCELLED in prereqs:
                verdict = (Status.CANCELLED, "prerequisite cancelled")
                self.blocked[name] = Status.CANCELLED
            elif not selected:
                verdict = (Status.SKIPPED, reason)
            else:
                verdict = None

            if verdict is None:
                self.ctx.logger.info("Job %s ready: %d run(s)", name, len(runs))
                self.queue.extend(runs)
                continue

            status, why = verdict
            self.ctx.logger.info("Job %s %s: %s", name, status.value, why)
            for run in runs:
                ready.extend(self._finish_unstarted(run, status, why))

    def _finish_unstarted(self, run: JobRun, status: Status, why: str) -> List[str]:
        kind = FailureKind.CANCELLED if status is Status.CANCELLED else None
        result = JobRunResult(
            run_id=run.run_id,
            job_name=run.job.name,
            matrix=dict(run.matrix),
            status=status,
            steps=[StepResult(name=s.name, status=status, failure_kind=kind, message=why) for s in run.steps],
            failure_kind=kind,
            message=why,
            display_name=run.display_name,
        )
        self.ctx.reporter.emit(RunEvent.for_job_run(result, pipeline_run_id=self.plan.run_id))
        return self._record(run, result)

    def _record(self, run: JobRun, result: JobRunResult) -> List[str]:
        """Store a terminal result; return the jobs this unlocks."""
        self.results[run.run_id] = result
        name = run.job.name
        self.remaining[name] -= 1
        if self.remaining[name] > 0:
            return []

        unlocked = []
        for child in sorted(self.plan.adj[name], key=self.order.__getitem__):
            self.indeg[child] -= 1
            if self.indeg[child] == 0:
                unlocked.append(child)
        return unlocked

    def _stop_reason(self, job_token: CancelToken) -> str | None:
        if self.ctx.cancel.cancelled:
            return "pipeline cancelled"
        if self.halted:
            return "fail-fast: another job run failed"
        if job_token.cancelled:
            return "fail-fast: a sibling run failed"
        return None

    def _dispatch(self, pool: ThreadPoolExecutor) -> None:
        deferred: Deque[JobRun] = deque()
        while self.queue:
            run = self.queue.popleft()
            name = run.job.name
            job_token = self.job_tokens[name]

            why = self._stop_reason(job_token)
            if why is not None:
                self._release(deque(self._finish_unstarted(run, Status.CANCELLED, why)))
                continue

            limit = run.job.max_parallel
            if limit and self.running_per_job[name] >= limit:
                deferred.append(run)
                continue

            # wait for a slot only when no completion of ours could free one;
            # otherwise go back to collecting results first
            if not self.ctx.admit(job_token, block=not self.in_flight):
                self.queue.appendleft(run)
                break

            run_token = job_token.child()
            fut = pool.submit(self._execute, run, run_token)
            self.in_flight[fut] = run
            self.running_per_job[name] += 1

        deferred.extend(self.queue)
        self.queue = deferred

    def _execute(self, run: JobRun, token: CancelToken) -> JobRunResult:
        try:
            return run_job(run, self.ctx, pipeline_run_id=self.plan.run_id, event=self.event, cancel=token)
        finally:
            self.ctx.release()

    def _complete(self, fut: Future) -> None:
        run = self.in_flight.pop(fut)
        name = run.job.name
        self.running_per_job[name] -= 1
        try:
            result = fut.result()
        except Exception as e:
            self.ctx.logger.exception("Job run %s crashed", run.display_name)
            result = JobRunResult(
                run_id=run.run_id,
                job_name=name,
                matrix=dict(run.matrix),
                status=Status.FAILED,
                failure_kind=FailureKind.INFRASTRUCTURE,
                message=f"{type(e).__name__}: {e}",
                display_name=run.display_name,
            )
            self.ctx.reporter.emit(RunEvent.for_job_run(result, pipeline_run_id=self.plan.run_id))

        if result.status is Status.FAILED:
            if run.job.fail_fast:
                self.job_tokens[name].cancel()
            if self.ctx.fail_fast:
                self.halted = True

        self._release(deque(self._record(run, result)))


def run_pipeline(
    pipeline: Pipeline,
    event: TriggerEvent,
    ctx: RunContext | None = None,
    *,
    plan: Plan | None = None,
) -> PipelineRunResult | None:
    """
    Run `pipeline` for `event`.

    Returns None when no trigger matches (no pipeline run is created).
    Raises ConfigurationError before any job starts if the definition is
    invalid; every other failure is reported in the returned result.
    """
    ctx = ctx or RunContext()
    if not pipeline.triggered_by(event):
        ctx.logger.info("Pipeline %s not triggered by %s", pipeline.name, event.name)
        return None

    plan = plan or plan_pipeline(pipeline, event, env=ctx.env)
    ctx.logger.info(
        "Pipeline %s run %s: %d job run(s) in %d stage(s)",
        pipeline.name,
        plan.run_id,
        plan.job_run_count,
        len(plan.levels),
    )
    return _Coordinator(pipeline, event, ctx, plan).run()
