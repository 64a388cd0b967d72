# cli.py
from __future__ import annotations

import logging
import signal
import subprocess
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import NoReturn

import click

from . import settings
from .context import CancelToken, RunContext
from .coordinator import plan_pipeline, run_pipeline
from .errors import ConfigurationError
from .git_facts.git import event_from_repo, get_remote_url
from .loader import load_pipeline
from .matrix import instantiate_job_runs
from .model import Pipeline, Status, TriggerEvent
from .reporting import CompositeReporter, ConsoleReporter, JsonLinesReporter
from .ui.console import Console, get_console, set_console

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_CANCELLED = 130

DEFAULT_WORKFLOW = "matrixci_workflow.py"
YAML_WORKFLOWS = ("matrixci.yml", "matrixci.yaml")


def find_workflow_files(directory: Path = Path(".")) -> list[Path]:
    """Workflow files in `directory`: matrixci_workflow.py, *_workflow.py, matrixci.yml/.yaml."""
    found = set(directory.glob("*_workflow.py"))
    for name in YAML_WORKFLOWS:
        candidate = directory / name
        if candidate.exists():
            found.add(candidate)
    return sorted(found)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Resolve the workflow file from --workflow or the current directory.

    Exits with the configuration error code when none or several are found.
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and not workflow_path.suffix:
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  matrixci run --workflow ci.yml",
            )
            sys.exit(EXIT_CONFIG)
        return workflow_path

    workflow_files = find_workflow_files()
    default = Path(DEFAULT_WORKFLOW)
    if default in workflow_files:
        return default

    if not workflow_files:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", f"  {DEFAULT_WORKFLOW}", "  *_workflow.py", *(f"  {n}" for n in YAML_WORKFLOWS)],
            suggestion="Create a workflow file, or specify one explicitly:\n  matrixci run --workflow my_workflow.py",
        )
        sys.exit(EXIT_CONFIG)

    if len(workflow_files) > 1:
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[str(f) for f in workflow_files],
            suggestion=f"Specify a workflow explicitly:\n  matrixci run --workflow {workflow_files[0]}",
        )
        sys.exit(EXIT_CONFIG)

    return workflow_files[0]


def _load(workflow: str | None) -> tuple[Path, Pipeline]:
    workflow_path = discover_workflow(workflow)
    try:
        return workflow_path, load_pipeline(workflow_path)
    except ConfigurationError as e:
        _config_error(e, workflow_path)


def _config_error(e: ConfigurationError, workflow_path: Path) -> NoReturn:
    details = e.details.get("errors") or ([e.field_path] if e.field_path else None)
    get_console().print_error(
        "Invalid pipeline definition",
        f"{workflow_path}: {e.message}",
        details=details,
    )
    sys.exit(EXIT_CONFIG)


def _build_event(name: str, ref: str | None, sha: str | None, compare_ref: str | None) -> TriggerEvent:
    console = get_console()
    try:
        return event_from_repo(name, ref=ref, sha=sha, compare_ref=compare_ref)
    except (subprocess.CalledProcessError, FileNotFoundError) as e:
        console.print_debug(f"git facts unavailable ({e}); changed files unknown")
        return TriggerEvent(name=name, ref=ref, sha=sha)


def _repo_name() -> str:
    try:
        return get_remote_url("origin").rstrip("/").split("/")[-1].replace(".git", "")
    except (subprocess.CalledProcessError, FileNotFoundError):
        return Path(".").resolve().name


@contextmanager
def _cancel_on_signals(token: CancelToken):
    """SIGINT/SIGTERM request cooperative cancellation instead of killing us."""

    def handler(signum, frame):
        get_console().print_info(f"\nReceived {signal.Signals(signum).name}, cancelling...")
        token.cancel()

    previous = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            previous[sig] = signal.signal(sig, handler)
        except ValueError:
            # not the main thread
            pass
    try:
        yield
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """matrixci: local, matrix-aware CI pipeline runner."""
    console = Console(debug=debug)
    set_console(console)
    logging.basicConfig(
        level=logging.DEBUG if debug else settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


_workflow_option = click.option(
    "--workflow",
    default=None,
    help=f"Workflow file (.py/.yml); defaults to {DEFAULT_WORKFLOW} or the single one found",
)
_event_options = [
    click.option("--event", "event_name", default="push", show_default=True, help="Trigger event name"),
    click.option("--ref", default=None, help="Git ref of the event (defaults to the current branch)"),
    click.option("--sha", default=None, help="Commit sha of the event (defaults to HEAD)"),
    click.option("--git-diff/--no-git-diff", default=False, help="Compute changed files for path filters"),
    click.option("--compare-ref", default="origin/main", show_default=True, help="Git ref to diff against"),
]


def _with_event_options(f):
    for option in reversed(_event_options):
        f = option(f)
    return f


@cli.command()
@_workflow_option
@_with_event_options
@click.option("--workers", default=settings.WORKERS, type=click.IntRange(min=1), show_default=True,
              help="Maximum concurrently running job runs")
@click.option("--fail-fast/--no-fail-fast", default=False, show_default=True,
              help="Stop dispatching new job runs after the first failure")
@click.option("--work-dir", default=settings.WORK_DIR, show_default=True, help="Root of per-run workspaces")
@click.option("--keep-workspaces/--no-keep-workspaces", default=settings.KEEP_WORKSPACES,
              help="Keep job run workspaces after they finish")
@click.option("--runner-label", "runner_labels", multiple=True,
              help="Label this runner serves (repeatable); jobs with other runs-on fail")
@click.option("--events-file", default=None, type=click.Path(dir_okay=False),
              help="Append run events as JSON lines to this file")
@click.option("--step-timeout", default=settings.STEP_TIMEOUT, type=click.FloatRange(min=0, min_open=True),
              help="Default per-step timeout in seconds")
def run(workflow, event_name, ref, sha, git_diff, compare_ref, workers, fail_fast,
        work_dir, keep_workspaces, runner_labels, events_file, step_timeout):
    """Run a pipeline for a trigger event."""
    console = get_console()
    workflow_path, pipeline = _load(workflow)
    event = _build_event(event_name, ref, sha, compare_ref if git_diff else None)

    if not pipeline.triggered_by(event):
        console.print_not_triggered(pipeline.name, event.name)
        sys.exit(EXIT_OK)

    reporter = CompositeReporter(ConsoleReporter(console))
    if events_file:
        reporter.add(JsonLinesReporter(events_file))

    run_ctx = RunContext(
        repo_root=Path("."),
        work_root=Path(work_dir),
        max_concurrency=workers,
        reporter=reporter,
        fail_fast=fail_fast,
        runner_labels=frozenset(runner_labels) if runner_labels else settings.RUNNER_LABELS,
        step_timeout=step_timeout,
        keep_workspaces=keep_workspaces,
    )

    try:
        plan = plan_pipeline(pipeline, event, env=run_ctx.env)
        console.print_run_started(
            pipeline=f"{_repo_name()}/{pipeline.name}",
            workflow=workflow_path.name,
            event=event.name,
            job_count=plan.job_run_count,
        )
        with _cancel_on_signals(run_ctx.cancel):
            result = run_pipeline(pipeline, event, run_ctx, plan=plan)
    except ConfigurationError as e:
        _config_error(e, workflow_path)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILED)

    console.print_results(result)
    if result.status is Status.CANCELLED:
        sys.exit(EXIT_CANCELLED)
    if result.status is Status.FAILED:
        sys.exit(EXIT_FAILED)


@cli.command()
@_workflow_option
@_with_event_options
def plan(workflow, event_name, ref, sha, git_diff, compare_ref):
    """Show the job runs a trigger event would start, per dependency stage."""
    console = get_console()
    workflow_path, pipeline = _load(workflow)
    event = _build_event(event_name, ref, sha, compare_ref if git_diff else None)

    if not pipeline.triggered_by(event):
        console.print_not_triggered(pipeline.name, event.name)
        return

    try:
        planned = plan_pipeline(pipeline, event)
    except ConfigurationError as e:
        _config_error(e, workflow_path)
    console.print_header(f"{pipeline.name}: {planned.job_run_count} job run(s) for '{event.name}'")
    console.print_plan(planned.levels, planned.runs, planned.selected)


@cli.command()
@_workflow_option
def validate(workflow):
    """Check a pipeline definition without running anything."""
    console = get_console()
    workflow_path, pipeline = _load(workflow)
    try:
        count = sum(
            len(instantiate_job_runs(job, pipeline_run_id="validate", pipeline_env=pipeline.env))
            for job in pipeline.jobs
        )
    except ConfigurationError as e:
        _config_error(e, workflow_path)
    console.print_info(f"{workflow_path}: OK ({len(pipeline.jobs)} job(s), {count} job run(s))")


if __name__ == "__main__":
    cli()
