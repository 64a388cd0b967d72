"""Tests for single step execution and failure classification."""

from __future__ import annotations

import threading

from matrixci.actions import ActionOutcome
from matrixci.context import CancelToken
from matrixci.dsl import job, sh, uses
from matrixci.executor import execute_step
from matrixci.model import FailureKind, Status


def _single(step):
    return job("j", step)


class TestCommandSteps:
    def test_success_captures_output(self, make_state) -> None:
        step = sh("Greet", "echo hello")
        result = execute_step(step, make_state(_single(step)))

        assert result.status is Status.SUCCEEDED
        assert result.exit_code == 0
        assert "hello" in result.output

    def test_non_zero_exit_is_action_failure(self, make_state) -> None:
        step = sh("Fail", "echo broken; exit 3")
        result = execute_step(step, make_state(_single(step)))

        assert result.status is Status.FAILED
        assert result.failure_kind is FailureKind.ACTION
        assert result.exit_code == 3
        assert "broken" in result.output

    def test_missing_command_is_infrastructure_failure(self, make_state) -> None:
        step = sh("Missing tool", "matrixci-no-such-tool --version")
        result = execute_step(step, make_state(_single(step)))

        assert result.status is Status.FAILED
        assert result.failure_kind is FailureKind.INFRASTRUCTURE
        assert result.exit_code == 127
        assert "Hint:" in result.message

    def test_missing_working_directory_is_infrastructure_failure(self, make_state) -> None:
        step = sh("Elsewhere", "true", cwd="does/not/exist")
        result = execute_step(step, make_state(_single(step)))

        assert result.failure_kind is FailureKind.INFRASTRUCTURE

    def test_step_env_is_applied(self, make_state) -> None:
        step = sh("Env", 'test "$FOO" = bar', env={"FOO": "bar"})
        assert execute_step(step, make_state(_single(step))).status is Status.SUCCEEDED

    def test_bash_shell_uses_pipefail(self, make_state) -> None:
        step = sh("Pipe", "false | cat", shell="bash")
        assert execute_step(step, make_state(_single(step))).status is Status.FAILED

    def test_timeout_kills_the_process(self, make_state) -> None:
        step = sh("Slow", "sleep 10", timeout=0.3)
        result = execute_step(step, make_state(_single(step)))

        assert result.status is Status.FAILED
        assert result.failure_kind is FailureKind.TIMEOUT
        assert result.duration_ms < 5000

    def test_cancellation_stops_a_running_step(self, make_state) -> None:
        step = sh("Slow", "sleep 10")
        token = CancelToken()
        state = make_state(_single(step), cancel=token)
        timer = threading.Timer(0.2, token.cancel)
        timer.start()
        try:
            result = execute_step(step, state)
        finally:
            timer.cancel()

        assert result.status is Status.CANCELLED
        assert result.failure_kind is FailureKind.CANCELLED
        assert result.duration_ms < 5000


class TestConditions:
    """Steps are skipped without spawning anything when their condition is false."""

    def test_false_condition_skips(self, make_state, tmp_path) -> None:
        marker = tmp_path / "marker"
        step = sh("Touch", f"touch {marker}", if_="env.FLAG == 'yes'")
        result = execute_step(step, make_state(_single(step)))

        assert result.status is Status.SKIPPED
        assert not marker.exists()

    def test_default_condition_skips_after_failure(self, make_state) -> None:
        step = sh("Next", "true")
        state = make_state(_single(step))
        state.failed = True

        assert execute_step(step, state).status is Status.SKIPPED

    def test_always_runs_after_failure(self, make_state) -> None:
        step = sh("Cleanup", "true", if_="always()")
        state = make_state(_single(step))
        state.failed = True

        assert execute_step(step, state).status is Status.SUCCEEDED

    def test_invalid_condition_fails_the_step(self, make_state) -> None:
        step = sh("Broken", "true", if_="matrix.os ==")
        result = execute_step(step, make_state(_single(step)))

        assert result.status is Status.FAILED
        assert result.failure_kind is FailureKind.INFRASTRUCTURE


class TestActionSteps:
    def test_env_side_effects_reach_later_steps(self, ctx, make_state) -> None:
        ctx.actions.register("emit-env", lambda call: ActionOutcome(0, "", {"env": {"TOOL_HOME": "/opt/tool"}}))
        step = uses("Emit", "emit-env@v1")
        state = make_state(_single(step))

        result = execute_step(step, state)

        assert result.status is Status.SUCCEEDED
        assert state.env["TOOL_HOME"] == "/opt/tool"

    def test_provider_receives_parameters(self, ctx, make_state) -> None:
        seen = {}

        def provider(call):
            seen.update(name=call.name, version=call.version, params=call.params)
            return ActionOutcome(0)

        ctx.actions.register("acme/probe", provider)
        step = uses("Probe", "acme/probe@v2", depth=1)
        execute_step(step, make_state(_single(step)))

        assert seen == {"name": "acme/probe", "version": "v2", "params": {"depth": 1}}

    def test_non_zero_outcome_is_action_failure(self, ctx, make_state) -> None:
        ctx.actions.register("fails", lambda call: ActionOutcome(2, "3 problems"))
        step = uses("Fails", "fails")
        result = execute_step(step, make_state(_single(step)))

        assert result.failure_kind is FailureKind.ACTION
        assert result.exit_code == 2
        assert result.output == "3 problems"

    def test_unknown_action_is_infrastructure_failure(self, make_state) -> None:
        step = uses("Nope", "acme/unknown@v1")
        result = execute_step(step, make_state(_single(step)))

        assert result.status is Status.FAILED
        assert result.failure_kind is FailureKind.INFRASTRUCTURE

    def test_crashing_provider_is_contained(self, ctx, make_state) -> None:
        def boom(call):
            raise RuntimeError("kaput")

        ctx.actions.register("boom", boom)
        step = uses("Boom", "boom")
        result = execute_step(step, make_state(_single(step)))

        assert result.failure_kind is FailureKind.INFRASTRUCTURE
        assert "kaput" in result.message

    def test_slow_provider_times_out(self, ctx, make_state) -> None:
        ctx.actions.register("slow", lambda call: ActionOutcome(0 if not call.cancel.wait(5.0) else 1))
        step = uses("Slow", "slow", timeout=0.2)
        result = execute_step(step, make_state(_single(step)))

        assert result.status is Status.FAILED
        assert result.failure_kind is FailureKind.TIMEOUT
        assert result.duration_ms < 2000

    def test_cancellation_stops_a_running_provider(self, ctx, make_state) -> None:
        ctx.actions.register("waits", lambda call: ActionOutcome(0 if not call.cancel.wait(5.0) else 1))
        step = uses("Waits", "waits")
        token = CancelToken()
        state = make_state(_single(step), cancel=token)
        timer = threading.Timer(0.2, token.cancel)
        timer.start()
        try:
            result = execute_step(step, state)
        finally:
            timer.cancel()

        assert result.status is Status.CANCELLED
        assert result.failure_kind is FailureKind.CANCELLED
        assert result.duration_ms < 2000
