# actions/tools.py
from __future__ import annotations

import re
import shutil
from typing import Dict, List, Sequence

from ..errors import InfrastructureFailure
from . import ActionCall, ActionOutcome

TOOL_HINTS = {
    "npm": "Install Node.js (includes npm) or fix PATH.",
    "node": "Install Node.js or fix PATH.",
    "pytest": "Install pytest (e.g., pip install pytest).",
    "ruff": "Install ruff (e.g., pip install ruff).",
    "docker": "Install Docker and ensure the daemon is running.",
    "python3": "Install Python 3 or fix PATH (python3).",
    "nix": "Install Nix (https://nixos.org/download) or fix PATH.",
    "rustup": "Install rustup (https://rustup.rs) or fix PATH.",
    "cargo": "Install a Rust toolchain with rustup or fix PATH.",
}


def hint_for(tool: str) -> str:
    return TOOL_HINTS.get(tool, f"Install {tool} or fix PATH.")


def require_tool(tool: str, path: str | None = None) -> str:
    """Return the resolved executable, or raise InfrastructureFailure."""
    found = shutil.which(tool, path=path)
    if found is None:
        raise InfrastructureFailure(f"{tool} is not available", tool=tool, hint=hint_for(tool))
    return found


def _tool_list(value) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [t for t in re.split(r"[\s,]+", value) if t]
    return [str(t) for t in value]


def setup_tool(
    call: ActionCall,
    *,
    default_tools: Sequence[str] = (),
    env_params: Dict[str, str] | None = None,
) -> ActionOutcome:
    """
    Make sure toolchain executables are on PATH for the rest of the job run.

    Provisioning is the host's business; this only verifies and pins:
    `env_params` maps action parameters to environment variables exported
    for later steps (e.g. `toolchain` -> RUSTUP_TOOLCHAIN).
    """
    tools = _tool_list(call.params.get("tools")) + _tool_list(call.params.get("tool"))
    tools = tools or list(default_tools)
    if not tools:
        raise InfrastructureFailure("setup-tool needs a 'tool' or 'tools' parameter")

    search_path = call.env.get("PATH")
    lines = [f"{tool}: {require_tool(tool, search_path)}" for tool in tools]

    exported: Dict[str, str] = {}
    for param, var in (env_params or {}).items():
        if param in call.params and call.params[param] not in (None, ""):
            exported[var] = str(call.params[param])
            lines.append(f"{var}={exported[var]}")

    return ActionOutcome(exit_status=0, output="\n".join(lines), side_effects={"env": exported})
