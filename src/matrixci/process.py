# process.py
#
# Subprocess execution with a time bound and cooperative cancellation.
# The process handle is scoped: whatever happens, the child (and its whole
# process group) is gone when `managed_process` exits.

from __future__ import annotations

import os
import signal
import subprocess
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Dict, Iterator, List, Sequence

from .errors import InfrastructureFailure, StepCancelled, StepTimeout

if TYPE_CHECKING:
    from .context import CancelToken


_SIGKILL = getattr(signal, "SIGKILL", signal.SIGTERM)


@dataclass
class ProcessOutcome:
    exit_code: int
    output: str
    duration_ms: int


def _signal_group(proc: subprocess.Popen, sig: int) -> None:
    try:
        if hasattr(os, "killpg"):
            os.killpg(proc.pid, sig)
        else:
            proc.send_signal(sig)
    except (ProcessLookupError, PermissionError):
        pass


def terminate(proc: subprocess.Popen, grace: float) -> None:
    """SIGTERM the process group, then SIGKILL it if still alive after `grace`."""
    if proc.poll() is not None:
        return
    _signal_group(proc, signal.SIGTERM)
    try:
        proc.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        _signal_group(proc, _SIGKILL)
        proc.wait()


def _drain(proc: subprocess.Popen, grace: float) -> str:
    try:
        out, _ = proc.communicate(timeout=grace)
    except (subprocess.TimeoutExpired, ValueError):
        return ""
    return out or ""


@contextmanager
def managed_process(
    args: Sequence[str],
    *,
    cwd: str | Path,
    env: Dict[str, str],
    grace: float,
) -> Iterator[subprocess.Popen]:
    try:
        proc = subprocess.Popen(
            list(args),
            cwd=str(cwd),
            env=env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            start_new_session=True,
        )
    except OSError as e:
        raise InfrastructureFailure(f"could not start {args[0]!r}: {e}", command=" ".join(args)) from e

    try:
        yield proc
    finally:
        terminate(proc, grace)
        if proc.stdout is not None and not proc.stdout.closed:
            proc.stdout.close()


def run_process(
    args: List[str],
    *,
    cwd: str | Path,
    env: Dict[str, str],
    timeout: float | None = None,
    cancel: "CancelToken | None" = None,
    grace: float = 5.0,
    poll_interval: float = 0.1,
) -> ProcessOutcome:
    """
    Run `args` to completion and return its exit code and merged output.

    Raises:
        StepTimeout: `timeout` elapsed; the process group was killed.
        StepCancelled: `cancel` fired; the process group was killed.
        InfrastructureFailure: the process could not be started.
    """
    start = time.monotonic()
    deadline = start + timeout if timeout is not None else None

    with managed_process(args, cwd=cwd, env=env, grace=grace) as proc:
        while True:
            wait = poll_interval
            if deadline is not None:
                wait = max(0.0, min(wait, deadline - time.monotonic()))
            try:
                out, _ = proc.communicate(timeout=wait)
                break
            except subprocess.TimeoutExpired:
                pass

            if cancel is not None and cancel.cancelled:
                terminate(proc, grace)
                raise StepCancelled(output=_drain(proc, grace))
            if deadline is not None and time.monotonic() >= deadline:
                terminate(proc, grace)
                raise StepTimeout(timeout, output=_drain(proc, grace))

    return ProcessOutcome(
        exit_code=proc.returncode,
        output=out or "",
        duration_ms=int((time.monotonic() - start) * 1000),
    )
