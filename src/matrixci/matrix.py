# matrix.py
#
# Matrix expansion: axes -> cartesian product -> excludes -> includes.
#
# Include rule:
#   keys naming declared axes are "match keys", the rest are "extra keys".
#   An include is merged into every product entry equal to it on all match
#   keys (original axis values are never overwritten). If it merged
#   nowhere, it is appended as a new entry.
#
# Example (os x channel, include {os: ubuntu, channel: "1.62.0"}):
#   channel conflicts with every ubuntu entry -> appended -> 5 assignments.

from __future__ import annotations

import itertools
import re
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

from .errors import ConfigurationError
from .expressions import ExpressionError, substitute, substitute_value
from .model import ActionStep, CommandStep, Job, JobRun, MatrixSpec, Scalar, Step, TriggerEvent, scalar_key

_ATTR_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_\-]*$")
_RESERVED = ("include", "exclude")

Assignment = Dict[str, Scalar]


def _is_scalar(value: Any) -> bool:
    return isinstance(value, (str, int, float, bool))


def _check_entry(entry: Any, where: str) -> Dict[str, Scalar]:
    if not isinstance(entry, Mapping) or not entry:
        raise ConfigurationError("entry must be a non-empty mapping", field_path=where)
    for key, value in entry.items():
        if not isinstance(key, str) or not _ATTR_NAME.match(key):
            raise ConfigurationError(f"{key!r} is not a valid matrix attribute name", field_path=where)
        if not _is_scalar(value):
            raise ConfigurationError(
                f"value of {key!r} must be a scalar, got {type(value).__name__}",
                field_path=f"{where}.{key}",
            )
    return dict(entry)


def validate_matrix(spec: MatrixSpec, path: str = "matrix") -> None:
    """Raise ConfigurationError for anything expand_matrix would reject."""
    for axis, values in spec.axes.items():
        if axis in _RESERVED or not _ATTR_NAME.match(axis):
            raise ConfigurationError(f"{axis!r} is not a valid axis name", field_path=path)
        if not isinstance(values, list):
            raise ConfigurationError("axis values must be a list", field_path=f"{path}.{axis}")
        if len(values) == 0:
            raise ConfigurationError(f"axis {axis!r} has no values", field_path=f"{path}.{axis}")
        for i, v in enumerate(values):
            if not _is_scalar(v):
                raise ConfigurationError(
                    f"axis values must be scalars, got {type(v).__name__}",
                    field_path=f"{path}.{axis}[{i}]",
                )
    if not isinstance(spec.include, list):
        raise ConfigurationError("include must be a list", field_path=f"{path}.include")
    if not isinstance(spec.exclude, list):
        raise ConfigurationError("exclude must be a list", field_path=f"{path}.exclude")
    for i, entry in enumerate(spec.include):
        _check_entry(entry, f"{path}.include[{i}]")
    for i, entry in enumerate(spec.exclude):
        checked = _check_entry(entry, f"{path}.exclude[{i}]")
        unknown = [k for k in checked if k not in spec.axes]
        if unknown:
            raise ConfigurationError(
                f"exclude keys {unknown} name no declared axis (axes: {list(spec.axes)})",
                field_path=f"{path}.exclude[{i}]",
            )


def _matches(entry: Assignment, pattern: Mapping[str, Scalar]) -> bool:
    return all(k in entry and scalar_key(entry[k]) == scalar_key(v) for k, v in pattern.items())


def _identity(entry: Assignment) -> FrozenSet[Tuple[str, Tuple[bool, Scalar]]]:
    return frozenset((k, scalar_key(v)) for k, v in entry.items())


def expand_matrix(spec: Optional[MatrixSpec], path: str = "matrix") -> List[Assignment]:
    """
    Expand a matrix into its ordered list of axis assignments.

    Pure and deterministic: the same spec always yields the same list.
    No matrix yields a single empty assignment.
    """
    if spec is None or spec.is_empty:
        return [{}]

    validate_matrix(spec, path)

    names = list(spec.axes)
    # include-only matrices have no combinations to merge into
    product: List[Assignment] = [
        dict(zip(names, combo)) for combo in itertools.product(*(spec.axes[n] for n in names))
    ] if names else []
    product = [e for e in product if not any(_matches(e, ex) for ex in spec.exclude)]

    originals = [dict(e) for e in product]
    added: List[Assignment] = []

    for inc in spec.include:
        match_keys = {k: v for k, v in inc.items() if k in spec.axes}
        extra_keys = {k: v for k, v in inc.items() if k not in spec.axes}

        merged = False
        for original, entry in zip(originals, product):
            if not _matches(original, match_keys):
                continue
            entry.update(extra_keys)
            merged = True

        if not merged:
            new_entry = dict(inc)
            known = {_identity(e) for e in added + product}
            if _identity(new_entry) not in known:
                added.append(new_entry)

    expanded = product + added
    if not expanded:
        raise ConfigurationError("exclude removes every combination", field_path=f"{path}.exclude")
    return expanded


# ----------------------------------------------------------------------
# Job run instantiation
# ----------------------------------------------------------------------

def _slug(text: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]+", "-", text).strip("-") or "run"


def event_context(event: TriggerEvent | None) -> Dict[str, Any]:
    if event is None:
        return {}
    ctx: Dict[str, Any] = dict(event.payload)
    ctx.update(name=event.name, ref=event.ref, sha=event.sha, branch=event.branch)
    return ctx


def _materialize_step(step: Step, contexts: Mapping[str, Mapping[str, Any]]) -> Step:
    fields: Dict[str, Any] = dict(
        name=substitute(step.name, contexts),
        cwd=substitute(step.cwd, contexts) if step.cwd else step.cwd,
        env={k: substitute(str(v), contexts) for k, v in step.env.items()},
        condition=step.condition,
        continue_on_error=step.continue_on_error,
        timeout=step.timeout,
    )
    if isinstance(step, CommandStep):
        return CommandStep(run=substitute(step.run, contexts), shell=step.shell, **fields)
    if isinstance(step, ActionStep):
        return ActionStep(
            uses=substitute(step.uses, contexts),
            params=substitute_value(dict(step.params), contexts),
            **fields,
        )
    raise ConfigurationError(f"unsupported step type {type(step).__name__}")


def instantiate_job_runs(
    job: Job,
    *,
    pipeline_run_id: str,
    pipeline_env: Mapping[str, str] | None = None,
    event: TriggerEvent | None = None,
) -> List[JobRun]:
    """
    Expand `job.matrix` and build one JobRun per assignment, with every
    `${{ matrix.* / env.* / event.* }}` reference resolved.
    """
    where = f"jobs.{job.name}"
    assignments = expand_matrix(job.matrix, path=f"{where}.strategy.matrix")
    runs: List[JobRun] = []
    seen = set()

    for index, assignment in enumerate(assignments):
        env = dict(pipeline_env or {})
        contexts: Dict[str, Mapping[str, Any]] = {
            "matrix": assignment,
            "env": env,
            "event": event_context(event),
        }
        try:
            job_env = {k: substitute(str(v), contexts) for k, v in job.env.items()}
            env.update(job_env)
            steps = [_materialize_step(s, contexts) for s in job.steps]
            runs_on = substitute(job.runs_on, contexts) if job.runs_on else None
            title = substitute(job.title, contexts)
        except ExpressionError as e:
            raise ConfigurationError(e.message, field_path=where) from e

        run = JobRun(
            job=job,
            matrix=dict(assignment),
            run_id=f"{pipeline_run_id}-{_slug(job.name)}-{index + 1}",
            steps=steps,
            env=dict(env),
            runs_on=runs_on,
            title=title,
        )
        if run.key in seen:
            raise ConfigurationError(f"duplicate job run {run.display_name!r}", field_path=where)
        seen.add(run.key)
        runs.append(run)

    return runs
