# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - structured run events
      - debugging without full tracebacks
    """
    kind: str
    message: str
    job: Optional[str] = None
    step: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class ConfigurationError(CIError):
    """Malformed pipeline definition. Fatal: the pipeline run never starts."""

    def __init__(self, message: str, field_path: str | None = None, **details: Any):
        super().__init__(kind="ConfigurationError", message=message, details=details)
        self.field_path = field_path

    def __str__(self) -> str:
        if self.field_path:
            return f"{self.kind}: {self.field_path}: {self.message}"
        return f"{self.kind}: {self.message}"


class ActionFailure(CIError):
    """A step's action reported a logical failure (lint violations, failing tests)."""

    def __init__(self, message: str, *, exit_code: int | None = None, output: str = "", **details: Any):
        super().__init__(kind="ActionFailure", message=message, details=details)
        self.exit_code = exit_code
        self.output = output


class InfrastructureFailure(CIError):
    """The environment could not run the step (tool missing, network, bad cwd)."""

    def __init__(self, message: str, *, exit_code: int | None = None, output: str = "", **details: Any):
        super().__init__(kind="InfrastructureFailure", message=message, details=details)
        self.exit_code = exit_code
        self.output = output


class StepTimeout(CIError):
    """A step exceeded its time bound. The underlying process has been killed."""

    def __init__(self, timeout: float, *, output: str = ""):
        super().__init__(
            kind="Timeout",
            message=f"step exceeded its timeout of {timeout:g}s",
            details={"timeout": timeout},
        )
        self.timeout = timeout
        self.output = output


class StepCancelled(CIError):
    """External cancellation stopped a running step."""

    def __init__(self, *, output: str = ""):
        super().__init__(kind="Cancelled", message="step cancelled")
        self.output = output
