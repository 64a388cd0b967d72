"""Tests for the matrixci command line."""

from __future__ import annotations

import json
import textwrap
from pathlib import Path

import pytest
from click.testing import CliRunner

from matrixci.cli import cli

PASSING = """
    name: demo
    on: [push]
    jobs:
      build:
        strategy:
          matrix:
            n: [1, 2]
        steps:
          - name: Say
            run: echo "run ${{ matrix.n }}"
      after:
        needs: build
        steps:
          - run: "true"
"""

FAILING = """
    on: push
    jobs:
      build:
        steps:
          - name: Broken
            run: exit 3
"""


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def workdir(runner: CliRunner, tmp_path: Path):
    with runner.isolated_filesystem(temp_dir=tmp_path) as path:
        yield Path(path)


def _write(path: Path, text: str) -> Path:
    path.write_text(textwrap.dedent(text))
    return path


class TestRun:
    def test_passing_pipeline_exits_zero(self, runner, workdir) -> None:
        _write(workdir / "matrixci.yml", PASSING)

        result = runner.invoke(cli, ["run", "--workers", "2"])

        assert result.exit_code == 0, result.output
        assert "[build (1)] STEP Say: SUCCESS" in result.output
        assert "Overall: SUCCESS" in result.output

    def test_failing_pipeline_exits_one(self, runner, workdir) -> None:
        _write(workdir / "ci.yml", FAILING)

        result = runner.invoke(cli, ["run", "--workflow", "ci.yml"])

        assert result.exit_code == 1
        assert "STEP Broken: FAILED" in result.output

    def test_untriggered_event_exits_zero(self, runner, workdir) -> None:
        _write(workdir / "ci.yml", FAILING)

        result = runner.invoke(cli, ["run", "--workflow", "ci.yml", "--event", "schedule"])

        assert result.exit_code == 0
        assert "not triggered" in result.output

    def test_invalid_definition_exits_two(self, runner, workdir) -> None:
        _write(workdir / "ci.yml", """
            on: push
            jobs:
              build:
                needs: ghost
                steps:
                  - run: "true"
        """)

        result = runner.invoke(cli, ["run", "--workflow", "ci.yml"])

        assert result.exit_code == 2
        assert "Invalid pipeline definition" in result.output

    def test_events_file(self, runner, workdir) -> None:
        _write(workdir / "ci.yml", PASSING)

        result = runner.invoke(cli, ["run", "--workflow", "ci.yml", "--events-file", "events.jsonl"])

        assert result.exit_code == 0, result.output
        kinds = [json.loads(line)["event"] for line in (workdir / "events.jsonl").read_text().splitlines()]
        assert kinds.count("job_run") == 3
        assert kinds[-1] == "pipeline_run"

    def test_unserved_runner_label_fails(self, runner, workdir) -> None:
        _write(workdir / "ci.yml", """
            on: push
            jobs:
              mac:
                runs-on: macos-latest
                steps:
                  - run: "true"
        """)

        result = runner.invoke(cli, ["run", "--workflow", "ci.yml", "--runner-label", "ubuntu-latest"])

        assert result.exit_code == 1
        assert "no runner with label" in result.output


class TestPlanAndValidate:
    def test_plan_lists_runs_per_stage(self, runner, workdir) -> None:
        _write(workdir / "ci.yml", PASSING)

        result = runner.invoke(cli, ["plan", "--workflow", "ci.yml"])

        assert result.exit_code == 0, result.output
        assert "=== Stage 1: ['build'] ===" in result.output
        assert "build (2)" in result.output
        assert "=== Stage 2: ['after'] ===" in result.output

    def test_validate(self, runner, workdir) -> None:
        _write(workdir / "ci.yml", PASSING)

        result = runner.invoke(cli, ["validate", "--workflow", "ci.yml"])

        assert result.exit_code == 0
        assert "OK (2 job(s), 3 job run(s))" in result.output

    def test_validate_reports_field_path(self, runner, workdir) -> None:
        _write(workdir / "ci.yml", """
            on: push
            jobs:
              build:
                steps:
                  - run: "true"
                    uses: checkout
        """)

        result = runner.invoke(cli, ["validate", "--workflow", "ci.yml"])

        assert result.exit_code == 2
        assert "jobs.build.steps[0]" in result.output


class TestDiscovery:
    def test_no_workflow(self, runner, workdir) -> None:
        result = runner.invoke(cli, ["validate"])

        assert result.exit_code == 2
        assert "No workflow file found" in result.output

    def test_several_workflows(self, runner, workdir) -> None:
        _write(workdir / "a_workflow.py", "JOBS = []\n")
        _write(workdir / "matrixci.yml", PASSING)

        result = runner.invoke(cli, ["validate"])

        assert result.exit_code == 2
        assert "Multiple workflow files found" in result.output

    def test_default_python_workflow_wins(self, runner, workdir) -> None:
        _write(workdir / "matrixci_workflow.py", """
            from matrixci import job, pipeline, sh

            def workflow():
                return pipeline(job("a", sh("one", "true")))
        """)
        _write(workdir / "matrixci.yml", PASSING)

        result = runner.invoke(cli, ["validate"])

        assert result.exit_code == 0, result.output
        assert "matrixci_workflow.py: OK" in result.output
