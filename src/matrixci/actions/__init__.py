"""
Named-action steps (`uses: owner/name@version`).

A provider is any callable `(ActionCall) -> ActionOutcome`. The registry is a
plain lookup table; resolution tries the full name first, then the bare name
(`actions/checkout` -> `checkout`).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from ..errors import InfrastructureFailure

if TYPE_CHECKING:
    from ..context import CancelToken


@dataclass(frozen=True)
class ActionCall:
    """Everything a provider may look at. Providers must stay inside `workspace`."""
    name: str
    version: str | None
    params: Dict[str, Any]
    workspace: Path
    env: Dict[str, str]
    repo_root: Path
    work_root: Path
    job: str
    step: str
    timeout: float | None = None
    cancel: Optional["CancelToken"] = None
    grace: float = 5.0


@dataclass
class ActionOutcome:
    exit_status: int
    output: str = ""
    # "env": {KEY: VALUE} is applied to the job run for later steps
    side_effects: Dict[str, Any] = field(default_factory=dict)


ActionProvider = Callable[[ActionCall], ActionOutcome]


class ActionRegistry:
    def __init__(self) -> None:
        self._providers: Dict[str, ActionProvider] = {}

    def register(self, name: str, provider: ActionProvider, *aliases: str) -> None:
        for key in (name, *aliases):
            self._providers[key] = provider

    def names(self) -> List[str]:
        return sorted(self._providers)

    def __contains__(self, uses: str) -> bool:
        try:
            self.resolve(uses)
        except InfrastructureFailure:
            return False
        return True

    def resolve(self, uses: str) -> ActionProvider:
        name = uses.split("@", 1)[0]
        for key in (name, name.rsplit("/", 1)[-1]):
            if key in self._providers:
                return self._providers[key]
        raise InfrastructureFailure(
            f"unknown action {uses!r}",
            known=", ".join(self.names()),
        )


def default_registry() -> ActionRegistry:
    from .checkout import checkout
    from .docker import docker
    from .lint import lint
    from .tools import setup_tool

    registry = ActionRegistry()
    registry.register("checkout", checkout, "actions/checkout")
    registry.register("setup-tool", setup_tool)
    registry.register("cachix/install-nix-action", partial(setup_tool, default_tools=("nix",)))
    registry.register(
        "actions-rs/toolchain",
        partial(setup_tool, default_tools=("rustup",), env_params={"toolchain": "RUSTUP_TOOLCHAIN"}),
    )
    registry.register("actions/setup-python", partial(setup_tool, default_tools=("python3",)))
    registry.register("lint", lint)
    registry.register("docker", docker)
    return registry


__all__ = ["ActionCall", "ActionOutcome", "ActionProvider", "ActionRegistry", "default_registry"]
