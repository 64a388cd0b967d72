"""Tests for running the steps of one job run."""

from __future__ import annotations

from matrixci.actions import ActionOutcome
from matrixci.context import CancelToken
from matrixci.dsl import job, matrix, sh, uses
from matrixci.matrix import instantiate_job_runs
from matrixci.model import FailureKind, Status
from matrixci.scheduler import read_env_file, run_job


def _run(j, ctx, **kwargs):
    job_run = instantiate_job_runs(j, pipeline_run_id="p")[0]
    return job_run, run_job(job_run, ctx, pipeline_run_id="p", **kwargs)


def _statuses(result):
    return [s.status for s in result.steps]


class TestStepOrdering:
    def test_steps_run_in_declared_order(self, ctx) -> None:
        """A single job without a matrix runs its steps one after another."""
        j = job(
            "build",
            sh("one", "echo 1 >> order.txt"),
            sh("two", "echo 2 >> order.txt"),
            sh("check", 'test "$(cat order.txt | tr -d "\\n")" = 12'),
        )
        _, result = _run(j, ctx)

        assert result.status is Status.SUCCEEDED
        assert _statuses(result) == [Status.SUCCEEDED] * 3

    def test_failure_skips_later_steps(self, ctx) -> None:
        j = job("build", sh("ok", "true"), sh("bad", "exit 1"), sh("later", "true"))
        _, result = _run(j, ctx)

        assert result.status is Status.FAILED
        assert result.failure_kind is FailureKind.ACTION
        assert "bad" in result.message
        assert _statuses(result) == [Status.SUCCEEDED, Status.FAILED, Status.SKIPPED]

    def test_continue_on_error_does_not_fail_the_job(self, ctx) -> None:
        j = job("build", sh("flaky", "exit 1", continue_on_error=True), sh("later", "true"))
        _, result = _run(j, ctx)

        assert result.status is Status.SUCCEEDED
        assert _statuses(result) == [Status.FAILED, Status.SUCCEEDED]

    def test_cleanup_step_runs_after_failure(self, ctx) -> None:
        j = job("build", sh("bad", "exit 1"), sh("cleanup", "true", if_="always()"))
        _, result = _run(j, ctx)

        assert _statuses(result) == [Status.FAILED, Status.SUCCEEDED]
        assert result.status is Status.FAILED

    def test_timeout_fails_the_job_and_skips_the_rest(self, ctx) -> None:
        j = job(
            "build",
            sh("setup", "true"),
            sh("hang", "sleep 10", timeout=0.3),
            sh("after", "true"),
        )
        _, result = _run(j, ctx)

        assert result.status is Status.FAILED
        assert result.failure_kind is FailureKind.TIMEOUT
        assert result.steps[1].failure_kind is FailureKind.TIMEOUT
        assert _statuses(result) == [Status.SUCCEEDED, Status.FAILED, Status.SKIPPED]


class TestCancellation:
    def test_cancel_between_steps(self, ctx) -> None:
        """Cancelled after step 2 of 4: steps 3 and 4 never start."""

        def cancel_run(call):
            call.cancel.cancel()
            return ActionOutcome(0)

        ctx.actions.register("cancel-run", cancel_run)
        j = job(
            "build",
            sh("one", "true"),
            uses("two", "cancel-run"),
            sh("three", "touch three"),
            sh("four", "true"),
        )
        _, result = _run(j, ctx, cancel=CancelToken())

        assert result.status is Status.CANCELLED
        assert _statuses(result) == [Status.SUCCEEDED, Status.SUCCEEDED, Status.CANCELLED, Status.CANCELLED]
        assert result.steps[2].message == "cancelled before start"

    def test_cancelled_before_start(self, ctx) -> None:
        token = CancelToken()
        token.cancel()
        _, result = _run(job("build", sh("one", "true")), ctx, cancel=token)

        assert result.status is Status.CANCELLED


class TestEnvironment:
    def test_env_file_exports_to_later_steps(self, ctx) -> None:
        j = job(
            "build",
            sh("export", 'echo "GREETING=hi" >> "$MATRIXCI_ENV"'),
            sh("use", 'test "$GREETING" = hi'),
        )
        _, result = _run(j, ctx)

        assert result.status is Status.SUCCEEDED

    def test_matrix_values_are_exported(self, ctx) -> None:
        j = job("test", sh("check", 'test "$MATRIX_OS" = ubuntu && test "$CI" = true'), matrix=matrix(os=["ubuntu"]))
        _, result = _run(j, ctx)

        assert result.status is Status.SUCCEEDED

    def test_steps_run_inside_the_workspace(self, ctx) -> None:
        j = job("build", sh("where", '[ "$(pwd -P)" = "$(cd "$MATRIXCI_WORKSPACE" && pwd -P)" ]'))
        _, result = _run(j, ctx)

        assert result.status is Status.SUCCEEDED

    def test_workspace_is_removed_afterwards(self, ctx) -> None:
        job_run, _ = _run(job("build", sh("write", "touch out.txt")), ctx)

        assert not (ctx.work_root / job_run.run_id).exists()

    def test_workspace_is_kept_on_request(self, ctx) -> None:
        ctx.keep_workspaces = True
        job_run, _ = _run(job("build", sh("write", "touch out.txt")), ctx)

        assert (ctx.work_root / job_run.run_id / "workspace" / "out.txt").exists()

    def test_checkout_copies_the_repository(self, ctx) -> None:
        j = job("build", uses("Checkout", "actions/checkout@v3"), sh("check", "test -f README.md && test -f src/app.py"))
        _, result = _run(j, ctx)

        assert result.status is Status.SUCCEEDED


class TestRunnerLabels:
    def test_unserved_label_is_infrastructure_failure(self, ctx) -> None:
        ctx.runner_labels = frozenset({"ubuntu-latest"})
        _, result = _run(job("mac", sh("one", "true"), runs_on="macos-latest"), ctx)

        assert result.status is Status.FAILED
        assert result.failure_kind is FailureKind.INFRASTRUCTURE
        assert _statuses(result) == [Status.SKIPPED]

    def test_served_label_runs(self, ctx) -> None:
        ctx.runner_labels = frozenset({"ubuntu-latest"})
        _, result = _run(job("linux", sh("one", "true"), runs_on="ubuntu-latest"), ctx)

        assert result.status is Status.SUCCEEDED


class TestEvents:
    def test_one_event_per_step_and_per_job_run(self, ctx, reporter) -> None:
        _run(job("build", sh("one", "true"), sh("two", "exit 4")), ctx)

        steps = reporter.of_kind("step")
        assert [e.step_name for e in steps] == ["one", "two"]
        assert steps[1].exit_code == 4
        assert [e.status for e in reporter.of_kind("job_run")] == [Status.FAILED]


class TestReadEnvFile:
    def test_simple_and_heredoc_values(self, tmp_path) -> None:
        path = tmp_path / "env"
        path.write_text("A=1\n# comment\nB=x=y\nNOTES<<EOF\nline 1\nline 2\nEOF\n")

        assert read_env_file(path) == {"A": "1", "B": "x=y", "NOTES": "line 1\nline 2"}

    def test_missing_file(self, tmp_path) -> None:
        assert read_env_file(tmp_path / "missing") == {}
