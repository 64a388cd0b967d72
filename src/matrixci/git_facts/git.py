# git.py
# Small wrapper around the Git CLI. Nothing else in matrixci shells out to git.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional

from ..model import TriggerEvent


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout, stripped.

    Raises subprocess.CalledProcessError on a non-zero exit and
    FileNotFoundError when git is not installed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def _lines(out: str) -> List[str]:
    return out.splitlines() if out else []


def repo_root(cwd: Optional[str | Path] = None) -> Path:
    """Absolute path of the repository containing `cwd`."""
    return Path(_git(["rev-parse", "--show-toplevel"], cwd))


def head_sha(cwd: Optional[str | Path] = None) -> str:
    return _git(["rev-parse", "HEAD"], cwd)


def is_dirty(cwd: Optional[str | Path] = None) -> bool:
    """True when there are modified, staged or untracked files."""
    return _git(["status", "--porcelain"], cwd) != ""


def changed_files(base: str, head: str = "HEAD", cwd: Optional[str | Path] = None) -> List[str]:
    """Paths (relative to the repo root) changed between two refs."""
    return _lines(_git(["diff", "--name-only", f"{base}..{head}"], cwd))


def merge_base(with_ref: str = "origin/main", cwd: Optional[str | Path] = None) -> str:
    """Commit where HEAD diverged from `with_ref`."""
    return _git(["merge-base", "HEAD", with_ref], cwd)


def get_remote_url(remote: str = "origin", cwd: Optional[str | Path] = None) -> str:
    return _git(["remote", "get-url", remote], cwd)


def get_current_ref(cwd: Optional[str | Path] = None) -> str:
    """
    Full ref of the checked out branch (refs/heads/...), or the HEAD sha
    when detached.
    """
    try:
        return _git(["symbolic-ref", "-q", "HEAD"], cwd)
    except subprocess.CalledProcessError:
        return head_sha(cwd)


def working_tree_changes(cwd: Optional[str | Path] = None) -> List[str]:
    """Unstaged, staged and untracked paths."""
    files = set()
    files.update(_lines(_git(["diff", "--name-only"], cwd)))
    files.update(_lines(_git(["diff", "--name-only", "--cached"], cwd)))
    files.update(_lines(_git(["ls-files", "--others", "--exclude-standard"], cwd)))
    return sorted(files)


def changed_since(compare_ref: str = "origin/main", cwd: Optional[str | Path] = None) -> List[str]:
    """
    Files changed on this branch.

    A dirty tree reports its uncommitted changes. A clean tree is diffed
    against the merge-base with `compare_ref`, falling back to HEAD~1, and
    to every tracked file on the first commit.
    """
    if is_dirty(cwd):
        return working_tree_changes(cwd)

    try:
        base = merge_base(compare_ref, cwd)
    except subprocess.CalledProcessError:
        # no remote configured, unrelated histories, ...
        base = "HEAD~1"

    try:
        return changed_files(base, "HEAD", cwd)
    except subprocess.CalledProcessError:
        return _lines(_git(["ls-files"], cwd))


def event_from_repo(
    name: str,
    *,
    cwd: Optional[str | Path] = None,
    ref: str | None = None,
    sha: str | None = None,
    compare_ref: str | None = None,
) -> TriggerEvent:
    """
    Build a TriggerEvent from the repository at `cwd`.

    Missing ref/sha are read from git. Changed files are only computed when
    `compare_ref` is given; otherwise they are unknown and path filters
    match everything.
    """
    if ref is None:
        ref = get_current_ref(cwd)
    if sha is None:
        sha = head_sha(cwd)
    changed = tuple(changed_since(compare_ref, cwd)) if compare_ref else None
    return TriggerEvent(name=name, ref=ref, sha=sha, changed_files=changed)
