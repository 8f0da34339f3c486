import os
from pathlib import Path

import pytest
from packaging.utils import canonicalize_name
from packaging.version import Version

from buildenv import provisioner, venv
from buildenv.installer import InstallOutcome
from buildenv.options import ToolRequirement
from buildenv.provisioner import LOCK_FILE_NAME
from buildenv.util.cmd import CommandResult
from buildenv.venv import VirtualEnvironment, VirtualenvIsolation

RELEASES = {
    "builder": ["1.1", "1.2", "1.3"],
    "patcher": ["0.17.2", "0.18.0"],
    "auditor": ["6.0.0"],
}


class FakeIsolation(VirtualenvIsolation):
    """
    Finds and activates environments for real, but creates them without
    running virtualenv.
    """

    def __init__(self) -> None:
        super().__init__(ignore={LOCK_FILE_NAME})
        self.created: list[Path] = []

    def create(self, path: Path) -> VirtualEnvironment:
        environment = VirtualEnvironment(path)
        environment.bin_dir.mkdir(parents=True)
        path.joinpath("pyvenv.cfg").write_text("home = /usr/bin\n", encoding="utf-8")
        self.created.append(path)
        return environment


class FakeInstaller:
    """
    Installs from RELEASES into whatever environment VIRTUAL_ENV points at,
    so it only works while an environment is activated.
    """

    def __init__(
        self,
        *,
        failing: dict[str, int] | None = None,
        no_entry_point: set[str] | None = None,
    ) -> None:
        self.failing = failing or {}
        self.no_entry_point = no_entry_point or set()
        self.calls: list[str] = []
        self.environments: list[str] = []
        self.paths: list[str] = []
        self.installed: dict[str, dict[str, str]] = {}

    @staticmethod
    def _environment() -> VirtualEnvironment:
        return VirtualEnvironment(Path(os.environ["VIRTUAL_ENV"]))

    def installed_versions(self) -> dict[str, str]:
        return dict(self.installed.get(str(self._environment().path), {}))

    def install(self, tool: ToolRequirement) -> InstallOutcome:
        self.calls.append(tool.name)
        self.environments.append(os.environ["VIRTUAL_ENV"])
        self.paths.append(os.environ["PATH"])

        if tool.name in self.failing:
            return InstallOutcome(
                tool=tool.name,
                version=None,
                exit_code=self.failing[tool.name],
                log=f"ERROR: No matching distribution found for {tool.requirement}\n",
            )

        candidates = [v for v in RELEASES[tool.name] if tool.satisfied_by(v)]
        if not candidates:
            return InstallOutcome(
                tool=tool.name,
                version=None,
                exit_code=1,
                log=f"ERROR: Could not find a version that satisfies {tool.requirement}\n",
            )
        version = max(candidates, key=Version)

        environment = self._environment()
        packages = self.installed.setdefault(str(environment.path), {})
        packages[canonicalize_name(tool.name)] = version

        if tool.name not in self.no_entry_point:
            entry_point = environment.bin_dir / tool.entry_point
            entry_point.write_text("#!/bin/sh\n", encoding="utf-8")
            entry_point.chmod(0o755)

        return InstallOutcome(
            tool=tool.name,
            version=version,
            exit_code=0,
            log=f"Successfully installed {tool.name}-{version}\n",
        )


class ToolRuns:
    def __init__(self) -> None:
        self.calls: list[str] = []
        self.failing: dict[str, int] = {}

    def __call__(self, *args: object, **kwargs: object) -> CommandResult:
        name = Path(str(args[0])).name
        self.calls.append(name)
        returncode = self.failing.get(name, 0)
        output = f"{name}: error while loading shared libraries\n" if returncode else f"{name} 1.0\n"
        return CommandResult(args=[str(a) for a in args], returncode=returncode, stdout=output)


@pytest.fixture
def fake_isolation() -> FakeIsolation:
    return FakeIsolation()


@pytest.fixture
def fake_installer() -> FakeInstaller:
    return FakeInstaller()


@pytest.fixture
def tool_runs(monkeypatch) -> ToolRuns:
    """
    Stands in for running the installed entry points during verification.
    """
    runs = ToolRuns()
    monkeypatch.setattr(provisioner, "run", runs)
    return runs


@pytest.fixture(autouse=True)
def no_leftover_activation():
    yield
    if venv.active_environment() is not None:
        venv.deactivate()
        pytest.fail("a test left a virtual environment activated")
