"""Console output formatting utilities for matrixci."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, Dict, List, Optional

if TYPE_CHECKING:
    from ..model import JobRun, PipelineRunResult
    from ..reporting import RunEvent


_STATUS_LABELS = {
    "succeeded": "SUCCESS",
    "failed": "FAILED",
    "skipped": "SKIPPED",
    "cancelled": "CANCELLED",
}


def _label(status) -> str:
    value = getattr(status, "value", status)
    return _STATUS_LABELS.get(value, str(value).upper())


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug
        # job runs print from worker threads
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        pipeline: str,
        workflow: str,
        event: str,
        job_count: int,
    ) -> None:
        """Print run start information."""
        self._out(
            "\nRUN STARTED",
            f"Pipeline: {pipeline}",
            f"Workflow: {workflow}",
            f"Event: {event}",
            f"Jobs: {job_count}",
            "",
        )

    def print_not_triggered(self, pipeline: str, event: str) -> None:
        self._out(f"Pipeline '{pipeline}' is not triggered by '{event}'; nothing to run.")

    def print_step_result(self, event: "RunEvent") -> None:
        """Print one finished step, prefixed with its job run."""
        line = f"[{event.display_name}] STEP {event.step_name}: {_label(event.status)}"
        if event.failure_kind is not None:
            line += f" ({event.failure_kind.value})"
        lines = [line]
        if event.exit_code not in (None, 0):
            lines.append(f"[{event.display_name}]   Exit code: {event.exit_code}")
        if event.message and event.status.value in ("failed", "cancelled"):
            if self.debug:
                lines.append(f"[{event.display_name}]   Error details: {event.message}")
            else:
                lines.append(f"[{event.display_name}]   Error: {event.message.splitlines()[0]}")
        if self.debug and event.output:
            lines.extend(f"[{event.display_name}]   | {o}" for o in event.output.splitlines())
        self._out(*lines)

    def print_job_result(self, event: "RunEvent") -> None:
        """Print a job run's terminal status."""
        line = f"JOB {event.display_name}: {_label(event.status)}"
        if event.message:
            line += f" ({event.message})"
        self._out(line)

    def print_pipeline_result(self, event: "RunEvent") -> None:
        self._out(f"\nPIPELINE {event.display_name}: {_label(event.status)} in {event.duration_ms / 1000:.1f}s")

    def print_plan(self, levels: List[List[str]], runs: Dict[str, List["JobRun"]], selected: Dict[str, tuple]) -> None:
        """Print job runs per dependency level."""
        for index, level in enumerate(levels):
            self._out(f"=== Stage {index + 1}: {level} ===")
            for name in level:
                ok, reason = selected[name]
                if not ok:
                    self._out(f"  {name} (skipped: {reason})")
                    continue
                for run in runs[name]:
                    suffix = f" on {run.runs_on}" if run.runs_on else ""
                    self._out(f"  {run.display_name}{suffix} [{len(run.steps)} steps]")

    def print_results(self, result: "PipelineRunResult") -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for run in result.job_runs:
            lines.append(f"  {run.display_name or run.job_name}: {_label(run.status)}")
        lines.append(f"Overall: {_label(result.status)}")
        self._out(*lines)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        if details:
            lines.extend(f"  {detail}" for detail in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out(*lines, err=True)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
