from __future__ import annotations
import os


def _flag(name: str, default: str = "0") -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


WORK_DIR = os.environ.get("MATRIXCI_WORK_DIR", ".matrixci/work")
WORKERS = int(os.environ.get("MATRIXCI_WORKERS", "0")) or max(1, (os.cpu_count() or 2) - 1)
GRACE_SECONDS = float(os.environ.get("MATRIXCI_GRACE_SECONDS", "5"))
STEP_TIMEOUT = float(os.environ.get("MATRIXCI_STEP_TIMEOUT", "0")) or None
KEEP_WORKSPACES = _flag("MATRIXCI_KEEP_WORKSPACES")
RUNNER_LABELS = frozenset(
    label.strip() for label in os.environ.get("MATRIXCI_RUNNER_LABELS", "").split(",") if label.strip()
) or None
LOG_LEVEL = os.environ.get("MATRIXCI_LOG_LEVEL", "WARNING").upper()
