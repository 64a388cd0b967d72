# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from fnmatch import fnmatch
from pathlib import Path
from typing import Any, ClassVar, Dict, List, Optional, Tuple

Scalar = str | int | float | bool


def scalar_key(value: Scalar) -> Tuple[bool, Scalar]:
    """Comparison key for matrix values; `True` and `1` are different values."""
    return isinstance(value, bool), value


class Status(str, Enum):
    """Terminal status of a step, job run or pipeline run."""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class FailureKind(str, Enum):
    ACTION = "ActionFailure"
    INFRASTRUCTURE = "InfrastructureFailure"
    TIMEOUT = "Timeout"
    CANCELLED = "Cancelled"


# worst wins
_SEVERITY = {
    Status.SUCCEEDED: 0,
    Status.SKIPPED: 1,
    Status.CANCELLED: 2,
    Status.FAILED: 3,
}


def worst_status(statuses: List[Status]) -> Status:
    if not statuses:
        return Status.SUCCEEDED
    return max(statuses, key=lambda s: _SEVERITY[s])


def _branch_of(ref: str | None) -> str | None:
    if ref is None:
        return None
    for prefix in ("refs/heads/", "refs/tags/"):
        if ref.startswith(prefix):
            return ref[len(prefix):]
    return ref


def _matches_any(path: str, patterns: List[str]) -> bool:
    return any(fnmatch(path, p) for p in patterns)


# ----------------------------------------------------------------------
# Triggers
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class TriggerEvent:
    """An incoming event (push, pull_request, ...) that may start a pipeline run."""
    name: str
    ref: str | None = None
    sha: str | None = None
    # None means "unknown", which never filters anything out
    changed_files: Optional[Tuple[str, ...]] = None
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def branch(self) -> str | None:
        return _branch_of(self.ref)

    def touches(self, patterns: List[str] | None) -> bool:
        if not patterns or self.changed_files is None:
            return True
        return any(_matches_any(f, list(patterns)) for f in self.changed_files)


@dataclass(frozen=True)
class Trigger:
    event: str
    branches: Optional[Tuple[str, ...]] = None
    paths: Optional[Tuple[str, ...]] = None

    def matches(self, event: TriggerEvent) -> bool:
        if event.name != self.event:
            return False
        if self.branches:
            branch = event.branch
            if branch is None or not _matches_any(branch, list(self.branches)):
                return False
        return event.touches(list(self.paths) if self.paths else None)


# ----------------------------------------------------------------------
# Definition
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class MatrixSpec:
    """Named axes (declaration order kept) plus explicit include/exclude entries."""
    axes: Dict[str, List[Scalar]] = field(default_factory=dict)
    include: List[Dict[str, Scalar]] = field(default_factory=list)
    exclude: List[Dict[str, Scalar]] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.axes and not self.include


@dataclass(frozen=True)
class Step:
    """
    One ordered unit of work inside a job.

    `kind` is the variant tag; the executor resolves it through a lookup table.
    """
    kind: ClassVar[str] = ""

    name: str = ""
    cwd: str | None = None
    env: Dict[str, str] = field(default_factory=dict)
    condition: str | None = None        # None == success()
    continue_on_error: bool = False
    timeout: float | None = None        # seconds


@dataclass(frozen=True)
class CommandStep(Step):
    """An inline shell command."""
    kind: ClassVar[str] = "command"

    run: str = ""
    shell: str | None = None


@dataclass(frozen=True)
class ActionStep(Step):
    """A reusable named action (`uses: owner/name@version`) with parameters."""
    kind: ClassVar[str] = "action"

    uses: str = ""
    params: Dict[str, Any] = field(default_factory=dict)

    @property
    def action_name(self) -> str:
        return self.uses.split("@", 1)[0]

    @property
    def action_version(self) -> str | None:
        if "@" not in self.uses:
            return None
        return self.uses.split("@", 1)[1]


@dataclass
class Job:
    """
    A CI job: steps + dependencies + matrix + metadata for selection.

    `needs` names jobs that must reach a terminal, non-failed status first.
    """
    name: str
    steps: List[Step]
    needs: List[str] = field(default_factory=list)
    matrix: Optional[MatrixSpec] = None
    env: Dict[str, str] = field(default_factory=dict)
    runs_on: str | None = None
    display_name: str | None = None
    condition: str | None = None

    # selection
    on: Optional[List[str]] = None              # subset of pipeline trigger events
    paths: Optional[List[str]] = None           # e.g. ["backend/**", "shared/**"]

    # matrix strategy
    max_parallel: int | None = None
    fail_fast: bool = False

    @property
    def title(self) -> str:
        return self.display_name or self.name


@dataclass
class Pipeline:
    name: str
    triggers: List[Trigger]
    jobs: List[Job]
    env: Dict[str, str] = field(default_factory=dict)
    source: Path | None = None

    def triggered_by(self, event: TriggerEvent) -> bool:
        return any(t.matches(event) for t in self.triggers)

    def job(self, name: str) -> Job:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(name)


# ----------------------------------------------------------------------
# Runs
# ----------------------------------------------------------------------

@dataclass
class JobRun:
    """One concrete, fully-resolved execution instance of a Job."""
    job: Job
    matrix: Dict[str, Scalar]
    run_id: str
    steps: List[Step]
    env: Dict[str, str] = field(default_factory=dict)
    runs_on: str | None = None
    title: str = ""

    @property
    def key(self) -> Tuple[str, Tuple[Tuple[str, Tuple[bool, Scalar]], ...]]:
        return self.job.name, tuple((k, scalar_key(v)) for k, v in self.matrix.items())

    @property
    def display_name(self) -> str:
        base = self.title or self.job.title
        if not self.matrix:
            return base
        values = ", ".join(str(v) for v in self.matrix.values())
        return f"{base} ({values})"


@dataclass
class StepResult:
    name: str
    status: Status
    failure_kind: FailureKind | None = None
    exit_code: int | None = None
    output: str = ""
    message: str = ""
    duration_ms: int = 0
    continue_on_error: bool = False

    @property
    def blocking_failure(self) -> bool:
        return self.status is Status.FAILED and not self.continue_on_error


def job_status_from_steps(steps: List[StepResult]) -> Status:
    """failed > cancelled > succeeded; tolerated failures and skips count as success."""
    if any(s.blocking_failure for s in steps):
        return Status.FAILED
    if any(s.status is Status.CANCELLED for s in steps):
        return Status.CANCELLED
    return Status.SUCCEEDED


@dataclass
class JobRunResult:
    run_id: str
    job_name: str
    matrix: Dict[str, Scalar]
    status: Status
    steps: List[StepResult] = field(default_factory=list)
    failure_kind: FailureKind | None = None
    message: str = ""
    duration_ms: int = 0
    display_name: str = ""


def pipeline_status_from_runs(runs: List[JobRunResult]) -> Status:
    statuses = [r.status for r in runs]
    if Status.FAILED in statuses:
        return Status.FAILED
    if all(s in (Status.SUCCEEDED, Status.SKIPPED) for s in statuses):
        return Status.SUCCEEDED
    return worst_status(statuses)


@dataclass
class PipelineRunResult:
    run_id: str
    pipeline: str
    event: TriggerEvent
    status: Status
    job_runs: List[JobRunResult] = field(default_factory=list)
    duration_ms: int = 0

    def runs_of(self, job_name: str) -> List[JobRunResult]:
        return [r for r in self.job_runs if r.job_name == job_name]

    @property
    def succeeded(self) -> bool:
        return self.status is Status.SUCCEEDED
