# loader.py
from __future__ import annotations

import runpy
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import ValidationError

from .dag import validate_graph
from .dsl import DEFAULT_TRIGGERS, pipeline as make_pipeline
from .errors import ConfigurationError
from .expressions import to_text
from .matrix import validate_matrix
from .model import ActionStep, CommandStep, Job, MatrixSpec, Pipeline, Step, Trigger
from .schema import JobDocument, PipelineDocument, StepDocument

PYTHON_SUFFIXES = (".py",)
YAML_SUFFIXES = (".yml", ".yaml")


def _format_loc(loc) -> str:
    out = ""
    for part in loc:
        if isinstance(part, int):
            out += f"[{part}]"
        else:
            out += f".{part}" if out else str(part)
    return out


def _from_validation_error(e: ValidationError) -> ConfigurationError:
    errors = [f"{_format_loc(err['loc']) or '<root>'}: {err['msg']}" for err in e.errors()]
    first = e.errors()[0]
    return ConfigurationError(first["msg"], field_path=_format_loc(first["loc"]) or None, errors=errors)


# ----------------------------------------------------------------------
# YAML documents
# ----------------------------------------------------------------------

def _step_name(doc: StepDocument, index: int) -> str:
    if doc.name:
        return doc.name
    if doc.run:
        return "Run " + doc.run.strip().splitlines()[0]
    if doc.uses:
        return doc.uses
    return f"step {index + 1}"


def _condition(value: Optional[bool | str]) -> Optional[str]:
    if value is None:
        return None
    return to_text(value)


def _step_from_document(doc: StepDocument, index: int) -> Step:
    common: Dict[str, Any] = dict(
        name=_step_name(doc, index),
        cwd=doc.working_directory,
        env={k: to_text(v) for k, v in doc.env.items()},
        condition=_condition(doc.if_),
        continue_on_error=doc.continue_on_error,
        timeout=doc.timeout_minutes * 60 if doc.timeout_minutes else None,
    )
    if doc.run is not None:
        return CommandStep(run=doc.run, shell=doc.shell, **common)
    return ActionStep(uses=doc.uses or "", params=dict(doc.with_), **common)


def _matrix_from_document(raw: Optional[Dict[str, Any]], where: str) -> Optional[MatrixSpec]:
    if raw is None:
        return None
    raw = dict(raw)
    include = raw.pop("include", [])
    exclude = raw.pop("exclude", [])
    for axis, values in raw.items():
        if not isinstance(values, list):
            raise ConfigurationError("axis values must be a list", field_path=f"{where}.{axis}")
    spec = MatrixSpec(axes=raw, include=include, exclude=exclude)
    validate_matrix(spec, where)
    return spec


def _job_from_document(job_id: str, doc: JobDocument) -> Job:
    where = f"jobs.{job_id}"
    strategy = doc.strategy
    return Job(
        name=job_id,
        steps=[_step_from_document(s, i) for i, s in enumerate(doc.steps)],
        needs=[doc.needs] if isinstance(doc.needs, str) else list(doc.needs),
        matrix=_matrix_from_document(strategy.matrix if strategy else None, f"{where}.strategy.matrix"),
        env={k: to_text(v) for k, v in doc.env.items()},
        runs_on=doc.runs_on,
        display_name=doc.name,
        condition=_condition(doc.if_),
        paths=doc.paths,
        max_parallel=strategy.max_parallel if strategy else None,
        fail_fast=strategy.fail_fast if strategy else False,
    )


def _triggers_from_document(on) -> List[Trigger]:
    if isinstance(on, str):
        return [Trigger(event=on)]
    if isinstance(on, list):
        return [Trigger(event=e) for e in on]
    triggers = []
    for event, filters in on.items():
        triggers.append(
            Trigger(
                event=event,
                branches=tuple(filters.branches) if filters and filters.branches else None,
                paths=tuple(filters.paths) if filters and filters.paths else None,
            )
        )
    return triggers


def parse_pipeline(payload: Any, *, source: Path | None = None) -> Pipeline:
    """Build a Pipeline from a YAML-shaped mapping."""
    if not isinstance(payload, Mapping):
        raise ConfigurationError("pipeline definition must be a mapping")
    payload = dict(payload)
    # YAML 1.1 reads a bare `on:` key as boolean True
    if True in payload and "on" not in payload:
        payload["on"] = payload.pop(True)

    try:
        doc = PipelineDocument.model_validate(payload)
    except ValidationError as e:
        raise _from_validation_error(e) from e

    name = doc.name or (source.stem if source else "pipeline")
    return Pipeline(
        name=name,
        triggers=_triggers_from_document(doc.on),
        jobs=[_job_from_document(job_id, job_doc) for job_id, job_doc in doc.jobs.items()],
        env={k: to_text(v) for k, v in doc.env.items()},
        source=source,
    )


def load_yaml(path: Path) -> Pipeline:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            payload = yaml.safe_load(handle)
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in {path}: {exc}") from exc
    if payload is None:
        raise ConfigurationError(f"Pipeline file is empty: {path}")
    return parse_pipeline(payload, source=path)


# ----------------------------------------------------------------------
# Python workflows (local file/module)
# ----------------------------------------------------------------------

def load_python(path: Path) -> Pipeline:
    """
    Load a workflow from a python file.

    The file must define one of:
      - workflow() -> Pipeline | List[Job]
      - PIPELINE = Pipeline(...)
      - JOBS = [Job, ...]
    A bare job list runs on push and pull_request.
    """
    module_name = f"matrixci_workflow_{path.stem}"
    globals_dict = runpy.run_path(str(path), run_name=module_name)

    result: Any = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        try:
            result = globals_dict["workflow"]()
        except TypeError as e:
            if "positional arguments but" in str(e) and "was given" in str(e):
                raise TypeError(
                    "Your workflow() is being called with arguments (name collision with a helper). "
                    "Use the 'pipeline' or 'wf' helper instead: `from matrixci import pipeline, job, sh` then "
                    "`def workflow(): return pipeline(job(...), job(...))`"
                ) from e
            raise
    elif "PIPELINE" in globals_dict:
        result = globals_dict["PIPELINE"]
    elif "JOBS" in globals_dict:
        result = globals_dict["JOBS"]

    if isinstance(result, Pipeline):
        result.source = path
        if result.name == "pipeline":
            result.name = path.stem
        return result

    if isinstance(result, list) and all(isinstance(j, Job) for j in result):
        p = make_pipeline(*result, name=path.stem, on=DEFAULT_TRIGGERS)
        p.source = path
        return p

    raise ConfigurationError(
        "Workflow must return/define a Pipeline or a List[Job]. "
        "Define workflow() -> Pipeline, PIPELINE = pipeline(...) or JOBS = [Job, ...].",
        field_path=str(path),
    )


# ----------------------------------------------------------------------
# Entry point
# ----------------------------------------------------------------------

def validate_pipeline(pipeline: Pipeline) -> List[List[str]]:
    """
    Structural checks shared by every definition format. Returns the
    dependency levels.
    """
    if not pipeline.triggers:
        raise ConfigurationError("pipeline declares no triggers", field_path="on")
    if not pipeline.jobs:
        raise ConfigurationError("pipeline declares no jobs", field_path="jobs")
    for job in pipeline.jobs:
        where = f"jobs.{job.name}"
        if not job.steps:
            raise ConfigurationError("job has no steps", field_path=f"{where}.steps")
        for i, step in enumerate(job.steps):
            if not step.name:
                raise ConfigurationError("step has no name", field_path=f"{where}.steps[{i}]")
        if job.matrix is not None:
            validate_matrix(job.matrix, f"{where}.strategy.matrix")
        if job.max_parallel is not None and job.max_parallel < 1:
            raise ConfigurationError("max_parallel must be >= 1", field_path=f"{where}.strategy.max-parallel")
    return validate_graph(pipeline.jobs)


def load_pipeline(path: str | Path) -> Pipeline:
    """
    Load and validate a pipeline definition (.yml/.yaml or .py).

    Raises:
      FileNotFoundError: the file does not exist
      ConfigurationError: anything wrong with its content
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")

    if wf_path.suffix in YAML_SUFFIXES:
        pipeline = load_yaml(wf_path)
    elif wf_path.suffix in PYTHON_SUFFIXES:
        pipeline = load_python(wf_path)
    else:
        raise ConfigurationError(
            f"Workflow must be a .py, .yml or .yaml file, got: {wf_path.name}",
            field_path=str(wf_path),
        )

    validate_pipeline(pipeline)
    return pipeline
