# actions/docker.py
from __future__ import annotations

from typing import Dict, List

from ..errors import InfrastructureFailure
from ..process import run_process
from . import ActionCall, ActionOutcome
from .tools import require_tool

CONTAINER_WORKDIR = "/workspace"

# `docker run` reserves these for its own failures, not the command's
DOCKER_ERROR_CODES = {125: "docker run failed", 126: "command not executable", 127: "command not found"}


def _check_docker_available(call: ActionCall) -> None:
    require_tool("docker", call.env.get("PATH"))
    probe = run_process(["docker", "version"], cwd=call.workspace, env=call.env, timeout=30, cancel=call.cancel)
    if probe.exit_code != 0:
        raise InfrastructureFailure(
            "Docker is not available",
            hint="Install Docker and ensure the daemon is running.",
            output=probe.output,
        )


def build_command(call: ActionCall) -> List[str]:
    image = call.params.get("image")
    if not image:
        raise InfrastructureFailure(f"[{call.job}] step '{call.step}' has no docker image")
    run = call.params.get("run")
    if not run:
        raise InfrastructureFailure(f"[{call.job}] step '{call.step}' has no command to run")

    cmd = ["docker", "run", "--rm"]

    # Volume mount: workspace -> /workspace
    cmd.extend(["-v", f"{call.workspace.resolve()}:{CONTAINER_WORKDIR}"])
    for vol in call.params.get("volumes") or []:
        cmd.extend(["-v", str(vol)])

    step_cwd = str(call.params.get("working-directory") or ".")
    container_cwd = f"{CONTAINER_WORKDIR}/{step_cwd}".replace("//", "/")
    cmd.extend(["-w", container_cwd])

    # only the declared variables go into the container, not the host env
    env: Dict[str, str] = {str(k): str(v) for k, v in (call.params.get("env") or {}).items()}
    for key, value in env.items():
        cmd.extend(["-e", f"{key}={value}"])

    if call.params.get("user"):
        cmd.extend(["--user", str(call.params["user"])])

    cmd.append(str(image))
    cmd.extend(["sh", "-c", str(run)])
    return cmd


def docker(call: ActionCall) -> ActionOutcome:
    """
    Run a command inside a container with the workspace mounted at /workspace.

    Params: image, run, volumes, env, user, working-directory.
    """
    cmd = build_command(call)
    _check_docker_available(call)

    proc = run_process(
        cmd,
        cwd=call.workspace,
        env=call.env,
        timeout=call.timeout,
        cancel=call.cancel,
        grace=call.grace,
    )
    if proc.exit_code in DOCKER_ERROR_CODES:
        raise InfrastructureFailure(
            DOCKER_ERROR_CODES[proc.exit_code],
            exit_code=proc.exit_code,
            output=proc.output,
        )
    return ActionOutcome(exit_status=proc.exit_code, output=proc.output)
