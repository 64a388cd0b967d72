# dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .errors import ConfigurationError
from .model import ActionStep, CommandStep, Job, MatrixSpec, Pipeline, Step, Trigger

DEFAULT_TRIGGERS = ("push", "pull_request")


def _check_timeout(step: str, timeout: float | None) -> float | None:
    if timeout is not None and timeout <= 0:
        raise ConfigurationError(f"step {step!r}: timeout must be positive, got {timeout!r}")
    return timeout


def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    if_: str | None = None,
    continue_on_error: bool = False,
    timeout: float | None = None,
    shell: str | None = None,
) -> CommandStep:
    return CommandStep(
        name=name,
        run=cmd,
        cwd=cwd,
        env={k: str(v) for k, v in (env or {}).items()},
        condition=if_,
        continue_on_error=continue_on_error,
        timeout=_check_timeout(name, timeout),
        shell=shell,
    )


def uses(
    name: str,
    action: str,
    *,
    with_: Optional[Mapping[str, Any]] = None,
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    if_: str | None = None,
    continue_on_error: bool = False,
    timeout: float | None = None,
    **params: Any,
) -> ActionStep:
    """Named action step. Parameters come from `with_` and/or keyword arguments."""
    merged = dict(with_ or {})
    merged.update(params)
    return ActionStep(
        name=name,
        uses=action,
        params=merged,
        cwd=cwd,
        env={k: str(v) for k, v in (env or {}).items()},
        condition=if_,
        continue_on_error=continue_on_error,
        timeout=_check_timeout(name, timeout),
    )


def checkout(name: str = "Checkout", *, path: str | None = None) -> ActionStep:
    return uses(name, "checkout", **({"path": path} if path else {}))


def require_tools(*tools: str) -> ActionStep:
    """A setup-tool step verifying that `tools` are on PATH."""
    return uses(f"Require {', '.join(tools)}", "setup-tool", tools=list(tools))


def matrix(
    axes: Optional[Mapping[str, Iterable[Any]]] = None,
    *,
    include: Optional[List[Dict[str, Any]]] = None,
    exclude: Optional[List[Dict[str, Any]]] = None,
    **more_axes: Iterable[Any],
) -> MatrixSpec:
    """
    Example:
        matrix(os=["ubuntu", "macos"], channel=["stable", "beta"],
               include=[{"os": "ubuntu", "channel": "1.62.0"}])
    """
    all_axes: Dict[str, List[Any]] = {k: list(v) for k, v in (axes or {}).items()}
    all_axes.update({k: list(v) for k, v in more_axes.items()})
    return MatrixSpec(axes=all_axes, include=list(include or []), exclude=list(exclude or []))


def job(
    name: str,
    *steps: Step,  # allow job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # still allow job(..., steps_list=[...])
    needs: Optional[List[str]] = None,
    env: Optional[Dict[str, str]] = None,
    matrix: Optional[MatrixSpec] = None,
    runs_on: str | None = None,
    display_name: str | None = None,
    if_: str | None = None,
    on: Optional[List[str]] = None,
    paths: Optional[List[str]] = None,
    requires: Optional[List[str]] = None,
    max_parallel: int | None = None,
    fail_fast: bool = False,
    # convenience
    cwd: str | None = None,  # default cwd for steps
) -> Job:
    steps_final = list(steps_list or []) + list(steps)

    if not steps_final:
        raise ConfigurationError(f"job({name!r}) must have at least one step", field_path=f"jobs.{name}.steps")

    if requires:
        steps_final.insert(0, require_tools(*requires))

    if cwd is not None:
        steps_final = [
            s if s.cwd is not None else replace(s, cwd=cwd)
            for s in steps_final
        ]

    return Job(
        name=name,
        steps=steps_final,
        needs=list(needs or []),
        env={k: str(v) for k, v in (env or {}).items()},
        matrix=matrix,
        runs_on=runs_on,
        display_name=display_name,
        condition=if_,
        on=list(on) if on is not None else None,
        paths=list(paths) if paths is not None else None,
        max_parallel=max_parallel,
        fail_fast=fail_fast,
    )


class JobBuilder:
    """
    Fluent alternative to job():

        JobBuilder("test").depends_on("lint").requires("pytest")
            .step("run tests", "pytest").build()
    """

    def __init__(self, name: str):
        self.name = name
        self._steps: List[Step] = []
        self._needs: List[str] = []
        self._requires: List[str] = []
        self._env: Dict[str, str] = {}
        self._matrix: Optional[MatrixSpec] = None
        self._runs_on: str | None = None
        self._condition: str | None = None
        self._paths: Optional[List[str]] = None
        self._on: Optional[List[str]] = None
        self._max_parallel: int | None = None
        self._fail_fast: bool = False

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def requires(self, *tools: str):
        self._requires.extend(tools)
        return self

    def step(self, name: str, run: str, cwd: str | None = None, **options: Any):
        self._steps.append(sh(name, run, cwd=cwd, **options))
        return self

    def uses(self, name: str, action: str, **params: Any):
        self._steps.append(uses(name, action, **params))
        return self

    def with_env(self, **env):
        # force values to str, they end up in os environments
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_matrix(self, spec: MatrixSpec | None = None, **axes: Iterable[Any]):
        self._matrix = spec if spec is not None else matrix(**axes)
        return self

    def runs_on(self, label: str):
        self._runs_on = label
        return self

    def when(self, condition: str):
        self._condition = condition
        return self

    def with_paths(self, *patterns: str):
        self._paths = list(patterns)
        return self

    def on(self, *events: str):
        self._on = list(events)
        return self

    def strategy(self, *, max_parallel: int | None = None, fail_fast: bool = False):
        self._max_parallel = max_parallel
        self._fail_fast = fail_fast
        return self

    def build(self) -> Job:
        return job(
            self.name,
            steps_list=self._steps,
            needs=self._needs,
            env=self._env,
            matrix=self._matrix,
            runs_on=self._runs_on,
            if_=self._condition,
            on=self._on,
            paths=self._paths,
            requires=self._requires or None,
            max_parallel=self._max_parallel,
            fail_fast=self._fail_fast,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Pipeline helpers
# ---------------------------------------------------------------------

def trigger(event: str, *, branches: Sequence[str] | None = None, paths: Sequence[str] | None = None) -> Trigger:
    return Trigger(
        event=event,
        branches=tuple(branches) if branches else None,
        paths=tuple(paths) if paths else None,
    )


def pipeline(
    *jobs: Job,
    name: str = "pipeline",
    on: Sequence[Union[str, Trigger]] = DEFAULT_TRIGGERS,
    env: Optional[Dict[str, str]] = None,
) -> Pipeline:
    """
    Users can write:
        from matrixci import pipeline, job, sh

        def workflow():
            return pipeline(job(...), job(...), on=["push"])
    """
    triggers = [t if isinstance(t, Trigger) else trigger(t) for t in on]
    return Pipeline(
        name=name,
        triggers=triggers,
        jobs=list(jobs),
        env={k: str(v) for k, v in (env or {}).items()},
    )


def wf(*jobs: Job) -> List[Job]:
    """
    Workflow definition helper returning a bare job list. The loader wraps it
    in a pipeline triggered by push and pull_request.
    """
    return list(jobs)
