"""Tests for run events and reporters."""

from __future__ import annotations

import json

from matrixci.coordinator import run_pipeline
from matrixci.dsl import job, matrix, pipeline, sh
from matrixci.model import Status
from matrixci.reporting import CompositeReporter, ConsoleReporter, JsonLinesReporter, MemoryReporter, RunEvent
from matrixci.ui.console import Console


class _Broken:
    def emit(self, event: RunEvent) -> None:
        raise RuntimeError("reporter down")


class TestRunEvents:
    def test_event_stream_of_a_matrix_run(self, ctx, push_event, reporter) -> None:
        p = pipeline(job("test", sh("t", "true"), matrix=matrix(os=["a", "b"])))

        result = run_pipeline(p, push_event, ctx)

        assert len(reporter.of_kind("step")) == 2
        job_events = reporter.of_kind("job_run")
        assert sorted(e.display_name for e in job_events) == ["test (a)", "test (b)"]
        assert all(e.pipeline_run_id == result.run_id for e in reporter.events)
        (final,) = reporter.of_kind("pipeline_run")
        assert final.status is Status.SUCCEEDED

    def test_failed_step_event_keeps_output_tail(self, ctx, push_event, reporter) -> None:
        p = pipeline(job("build", sh("noisy", "seq 1 5000; exit 1")))

        run_pipeline(p, push_event, ctx)

        (step,) = reporter.of_kind("step")
        assert step.status is Status.FAILED
        assert len(step.output) == 4000
        assert step.output.rstrip().endswith("5000")


class TestReporters:
    def test_json_lines(self, ctx, push_event, tmp_path) -> None:
        path = tmp_path / "events" / "run.jsonl"
        ctx.reporter = JsonLinesReporter(path)

        run_pipeline(pipeline(job("build", sh("one", "true"))), push_event, ctx)

        records = [json.loads(line) for line in path.read_text().splitlines()]
        assert [r["event"] for r in records] == ["step", "job_run", "pipeline_run"]
        assert records[0]["status"] == "succeeded"

    def test_composite_survives_a_broken_reporter(self, ctx, push_event) -> None:
        memory = MemoryReporter()
        ctx.reporter = CompositeReporter(_Broken(), memory)

        result = run_pipeline(pipeline(job("build", sh("one", "true"))), push_event, ctx)

        assert result.status is Status.SUCCEEDED
        assert len(memory.events) == 3

    def test_console_rendering(self, ctx, push_event, capsys) -> None:
        ctx.reporter = ConsoleReporter(Console())

        run_pipeline(pipeline(job("build", sh("bad", "exit 2"))), push_event, ctx)

        out = capsys.readouterr().out
        assert "[build] STEP bad: FAILED (ActionFailure)" in out
        assert "Exit code: 2" in out
        assert "JOB build: FAILED" in out
        assert "PIPELINE pipeline: FAILED" in out
