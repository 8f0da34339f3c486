import os
from collections.abc import Mapping
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from .installer import InstallOutcome
    from .options import ToolRequirement
    from .venv import VirtualEnvironment

__all__ = (
    "InstallationFacility",
    "IsolationFacility",
    "PathOrStr",
)


PathOrStr = str | os.PathLike[str]


class IsolationFacility(Protocol):
    def find(self, path: Path) -> "VirtualEnvironment | None": ...

    def create(self, path: Path) -> "VirtualEnvironment": ...

    def activate(self, environment: "VirtualEnvironment") -> None: ...

    def deactivate(self) -> None: ...


class InstallationFacility(Protocol):
    """
    Installs into whichever environment is currently activated.
    """

    def installed_versions(self) -> Mapping[str, str]: ...

    def install(self, tool: "ToolRequirement") -> "InstallOutcome": ...
