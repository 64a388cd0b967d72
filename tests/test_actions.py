"""Tests for the built-in named actions."""

from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

from matrixci.actions import ActionCall, ActionOutcome, default_registry
from matrixci.actions.checkout import checkout
from matrixci.actions.docker import build_command
from matrixci.actions.lint import lint
from matrixci.actions.tools import setup_tool
from matrixci.errors import InfrastructureFailure


@pytest.fixture
def call_factory(repo: Path, tmp_path: Path):
    workspace = tmp_path / "ws"
    workspace.mkdir()

    def factory(name: str = "x", **params) -> ActionCall:
        return ActionCall(
            name=name,
            version=None,
            params=params,
            workspace=workspace,
            env=dict(os.environ),
            repo_root=repo,
            work_root=tmp_path / "work",
            job="job",
            step="step",
            grace=1.0,
        )

    return factory


class TestRegistry:
    def test_resolves_full_and_bare_names(self) -> None:
        registry = default_registry()

        assert registry.resolve("actions/checkout@v3") is registry.resolve("checkout")
        assert "acme/lint@v9" in registry
        assert "acme/unknown" not in registry

    def test_unknown_action(self) -> None:
        with pytest.raises(InfrastructureFailure):
            default_registry().resolve("nobody/nothing@v1")

    def test_custom_provider_wins_over_bare_name(self) -> None:
        registry = default_registry()
        custom = lambda call: ActionOutcome(0)  # noqa: E731
        registry.register("acme/checkout", custom)

        assert registry.resolve("acme/checkout@v1") is custom
        assert registry.resolve("other/checkout@v1") is not custom


class TestCheckout:
    def test_copies_repository(self, call_factory) -> None:
        call = call_factory()
        outcome = checkout(call)

        assert outcome.exit_status == 0
        assert (call.workspace / "README.md").read_text() == "hello\n"
        assert (call.workspace / "src" / "app.py").exists()

    def test_into_subdirectory(self, call_factory) -> None:
        call = call_factory(path="code")
        checkout(call)

        assert (call.workspace / "code" / "README.md").exists()

    def test_path_cannot_escape_workspace(self, call_factory) -> None:
        with pytest.raises(InfrastructureFailure):
            checkout(call_factory(path="../outside"))


class TestSetupTool:
    def test_present_tool(self, call_factory) -> None:
        outcome = setup_tool(call_factory(tools=["sh"]))

        assert outcome.exit_status == 0
        assert "sh:" in outcome.output

    def test_missing_tool(self, call_factory) -> None:
        with pytest.raises(InfrastructureFailure) as exc:
            setup_tool(call_factory(tool="matrixci-missing-tool"))
        assert "hint" in exc.value.details

    def test_exports_pinned_parameters(self, call_factory) -> None:
        outcome = setup_tool(
            call_factory(toolchain="1.62.0"),
            default_tools=("sh",),
            env_params={"toolchain": "RUSTUP_TOOLCHAIN"},
        )

        assert outcome.side_effects["env"] == {"RUSTUP_TOOLCHAIN": "1.62.0"}

    def test_needs_a_tool(self, call_factory) -> None:
        with pytest.raises(InfrastructureFailure):
            setup_tool(call_factory())


class TestLint:
    def test_exit_status_is_returned(self, call_factory, tmp_path) -> None:
        script = tmp_path / "fake_lint.py"
        script.write_text("import sys\nprint('2 problems')\nsys.exit(1)\n")
        call = call_factory(tool=Path(sys.executable).name, args=str(script))
        call.env["PATH"] = str(Path(sys.executable).parent) + os.pathsep + call.env.get("PATH", "")

        outcome = lint(call)

        assert outcome.exit_status == 1
        assert "2 problems" in outcome.output

    def test_missing_tool(self, call_factory) -> None:
        with pytest.raises(InfrastructureFailure):
            lint(call_factory(tool="matrixci-missing-linter"))


class TestDockerCommand:
    def test_mounts_workspace_and_passes_declared_env(self, call_factory) -> None:
        call = call_factory(image="alpine:3", run="make test", env={"A": 1}, user="1000")

        cmd = build_command(call)

        assert cmd[:3] == ["docker", "run", "--rm"]
        assert f"{call.workspace.resolve()}:/workspace" in cmd
        assert cmd[cmd.index("-w") + 1] == "/workspace/."
        assert "A=1" in cmd
        assert cmd[-4:] == ["alpine:3", "sh", "-c", "make test"]

    def test_image_is_required(self, call_factory) -> None:
        with pytest.raises(InfrastructureFailure):
            build_command(call_factory(run="true"))
