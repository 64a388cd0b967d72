# actions/checkout.py
from __future__ import annotations

import shutil
from pathlib import Path
from typing import Callable, List

from ..errors import InfrastructureFailure
from . import ActionCall, ActionOutcome

ALWAYS_IGNORED = {".matrixci", "__pycache__", ".pytest_cache"}


def _ignore_for(work_root: Path) -> Callable[[str, List[str]], List[str]]:
    work_root = work_root.resolve()

    def ignore(dirpath: str, names: List[str]) -> List[str]:
        skipped = []
        for name in names:
            if name in ALWAYS_IGNORED or (Path(dirpath) / name).resolve() == work_root:
                skipped.append(name)
        return skipped

    return ignore


def checkout(call: ActionCall) -> ActionOutcome:
    """
    Populate the job run's workspace with the repository tree.

    Params:
        path: subdirectory of the workspace to check out into (default: root)
    """
    src = call.repo_root
    if not src.is_dir():
        raise InfrastructureFailure(f"repository root not found: {src}")

    dest = (call.workspace / str(call.params.get("path") or ".")).resolve()
    workspace = call.workspace.resolve()
    if dest != workspace and workspace not in dest.parents:
        raise InfrastructureFailure(f"checkout path escapes the workspace: {call.params.get('path')!r}")

    shutil.copytree(src, dest, ignore=_ignore_for(call.work_root), symlinks=True, dirs_exist_ok=True)

    count = sum(1 for p in dest.rglob("*") if p.is_file())
    return ActionOutcome(
        exit_status=0,
        output=f"checked out {src} -> {dest} ({count} files)",
        side_effects={"files": count},
    )
