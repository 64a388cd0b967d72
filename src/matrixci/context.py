# context.py
#
# Everything a pipeline run shares, passed explicitly from the coordinator
# down to job runs and steps. There is no module-level run state.

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, FrozenSet, Optional

from . import settings
from .actions import ActionRegistry, default_registry
from .reporting import CompositeReporter, Reporter


class CancelToken:
    """
    Cooperative cancellation flag.

    A child token is cancelled when it or any ancestor is cancelled, so a
    pipeline token can stop every job run while a job token stops only its
    matrix siblings.
    """

    def __init__(self, parent: Optional["CancelToken"] = None):
        self._event = threading.Event()
        self._parent = parent

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    def child(self) -> "CancelToken":
        return CancelToken(parent=self)

    def wait(self, timeout: float) -> bool:
        """Sleep up to `timeout` seconds, waking early on own cancellation."""
        self._event.wait(timeout)
        return self.cancelled


@dataclass
class RunContext:
    """
    Process-wide configuration and shared resources for one pipeline run.

    The admission gate is the only resource shared between job runs: a slot
    is acquired before a job run is dispatched and released when it reaches
    a terminal status.
    """
    repo_root: Path = field(default_factory=lambda: Path("."))
    work_root: Path = field(default_factory=lambda: Path(settings.WORK_DIR))
    max_concurrency: int = settings.WORKERS
    env: Dict[str, str] = field(default_factory=dict)
    reporter: Reporter = field(default_factory=CompositeReporter)
    actions: ActionRegistry = field(default_factory=default_registry)
    cancel: CancelToken = field(default_factory=CancelToken)
    fail_fast: bool = False
    runner_labels: Optional[FrozenSet[str]] = settings.RUNNER_LABELS
    step_timeout: float | None = settings.STEP_TIMEOUT
    grace_period: float = settings.GRACE_SECONDS
    keep_workspaces: bool = settings.KEEP_WORKSPACES
    poll_interval: float = 0.05
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger("matrixci"))

    def __post_init__(self) -> None:
        if self.max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {self.max_concurrency}")
        self.repo_root = Path(self.repo_root).resolve()
        self.work_root = Path(self.work_root)
        if not self.work_root.is_absolute():
            self.work_root = (self.repo_root / self.work_root).resolve()
        self._gate = threading.BoundedSemaphore(self.max_concurrency)

    def admit(self, token: CancelToken | None = None, *, block: bool = True) -> bool:
        """
        Acquire an admission slot, giving up if `token` is cancelled while
        waiting. Returns True when a slot was acquired.
        """
        if not block:
            return self._gate.acquire(blocking=False)
        token = token or self.cancel
        while not token.cancelled:
            if self._gate.acquire(timeout=self.poll_interval):
                return True
        return False

    def release(self) -> None:
        self._gate.release()
