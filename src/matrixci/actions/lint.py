# actions/lint.py
from __future__ import annotations

import shlex
from typing import List

from ..errors import InfrastructureFailure
from ..process import run_process
from . import ActionCall, ActionOutcome
from .tools import require_tool


# ---------------------------------------------------------------------
# Lint action
# ---------------------------------------------------------------------

def _files(value) -> List[str]:
    if not value:
        return []
    if isinstance(value, str):
        return shlex.split(value)
    return [str(v) for v in value]


def lint(call: ActionCall) -> ActionOutcome:
    """
    Run a linting tool.

    Params:
        tool: executable to run (required), e.g. "ruff"
        args: argument string, split like a shell would
        files: paths to lint (defaults to the working directory)
        working-directory: relative to the workspace

    A missing tool is an infrastructure failure; a non-zero exit means the
    tool reported violations and is returned as-is.
    """
    tool = call.params.get("tool")
    if not tool:
        raise InfrastructureFailure(f"[{call.job}] step '{call.step}' has no lint tool")

    require_tool(tool, call.env.get("PATH"))

    cmd_parts = [tool]
    args = call.params.get("args")
    if args:
        cmd_parts.extend(shlex.split(str(args)))

    files = _files(call.params.get("files"))
    cmd_parts.extend(files or ["."])

    cwd = (call.workspace / str(call.params.get("working-directory") or ".")).resolve()
    if not cwd.exists():
        raise InfrastructureFailure(f"[{call.job}] step '{call.step}' cwd not found: {cwd}")

    proc = run_process(
        cmd_parts,
        cwd=cwd,
        env=call.env,
        timeout=call.timeout,
        cancel=call.cancel,
        grace=call.grace,
    )
    return ActionOutcome(exit_status=proc.exit_code, output=proc.output)
