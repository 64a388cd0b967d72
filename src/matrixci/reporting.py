# reporting.py
#
# Structured run events: one per step, one per job run, one per pipeline run.
# Reporters may be called from several worker threads at once.

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Protocol

from pydantic import BaseModel, Field

from .model import FailureKind, JobRun, JobRunResult, PipelineRunResult, Status, StepResult

logger = logging.getLogger("matrixci.reporting")

EventKind = Literal["step", "job_run", "pipeline_run"]


class RunEvent(BaseModel):
    event: EventKind
    run_id: str
    pipeline_run_id: str
    job_name: Optional[str] = None
    display_name: Optional[str] = None
    matrix: Dict[str, Any] = Field(default_factory=dict)
    step_name: Optional[str] = None
    status: Status
    duration_ms: int = 0
    failure_kind: Optional[FailureKind] = None
    exit_code: Optional[int] = None
    message: str = ""
    output: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def for_step(cls, job_run: JobRun, result: StepResult, *, pipeline_run_id: str) -> "RunEvent":
        return cls(
            event="step",
            run_id=job_run.run_id,
            pipeline_run_id=pipeline_run_id,
            job_name=job_run.job.name,
            display_name=job_run.display_name,
            matrix=dict(job_run.matrix),
            step_name=result.name,
            status=result.status,
            duration_ms=result.duration_ms,
            failure_kind=result.failure_kind,
            exit_code=result.exit_code,
            message=result.message,
            # keep the tail only, like the CLI does on failure
            output=result.output[-4000:] if result.status is Status.FAILED and result.output else None,
        )

    @classmethod
    def for_job_run(cls, result: JobRunResult, *, pipeline_run_id: str) -> "RunEvent":
        return cls(
            event="job_run",
            run_id=result.run_id,
            pipeline_run_id=pipeline_run_id,
            job_name=result.job_name,
            display_name=result.display_name,
            matrix=dict(result.matrix),
            status=result.status,
            duration_ms=result.duration_ms,
            failure_kind=result.failure_kind,
            message=result.message,
        )

    @classmethod
    def for_pipeline_run(cls, result: PipelineRunResult) -> "RunEvent":
        return cls(
            event="pipeline_run",
            run_id=result.run_id,
            pipeline_run_id=result.run_id,
            job_name=None,
            display_name=result.pipeline,
            status=result.status,
            duration_ms=result.duration_ms,
        )


class Reporter(Protocol):
    def emit(self, event: RunEvent) -> None:
        ...


class MemoryReporter:
    """Keeps every event in memory (embedding and tests)."""

    def __init__(self) -> None:
        self.events: List[RunEvent] = []
        self._lock = threading.Lock()

    def emit(self, event: RunEvent) -> None:
        with self._lock:
            self.events.append(event)

    def of_kind(self, kind: EventKind) -> List[RunEvent]:
        with self._lock:
            return [e for e in self.events if e.event == kind]


class JsonLinesReporter:
    """Appends one JSON object per event to a file."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def emit(self, event: RunEvent) -> None:
        line = event.model_dump_json()
        with self._lock:
            with self.path.open("a", encoding="utf-8") as fh:
                fh.write(line + "\n")


class ConsoleReporter:
    """Renders events for humans through the shared Console."""

    def __init__(self, console=None):
        from .ui.console import get_console

        self.console = console or get_console()

    def emit(self, event: RunEvent) -> None:
        if event.event == "step":
            self.console.print_step_result(event)
        elif event.event == "job_run":
            self.console.print_job_result(event)
        else:
            self.console.print_pipeline_result(event)


class CompositeReporter:
    """Fans events out. A failing reporter is logged and does not stop the run."""

    def __init__(self, *reporters: Reporter):
        self.reporters = list(reporters)

    def add(self, reporter: Reporter) -> None:
        self.reporters.append(reporter)

    def emit(self, event: RunEvent) -> None:
        for reporter in self.reporters:
            try:
                reporter.emit(event)
            except Exception:
                logger.exception("Reporter %s failed on %s event", type(reporter).__name__, event.event)
