import dataclasses
import json
import os
from collections.abc import Sequence
from pathlib import Path

from packaging.utils import canonicalize_name

from .options import ToolRequirement
from .util.cmd import CommandResult, run
from .venv import find_uv


@dataclasses.dataclass(frozen=True, kw_only=True)
class InstallOutcome:
    tool: str
    version: str | None
    exit_code: int
    log: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class InstallerError(Exception):
    def __init__(self, message: str, diagnostics: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.diagnostics = diagnostics


class PipInstaller:
    """
    The package-installation facility. Every command runs against the
    currently activated environment: `python` and VIRTUAL_ENV are looked up in
    os.environ at call time, never captured up front.
    """

    def __init__(self, *, use_uv: bool = False, pip_args: Sequence[str] = ()) -> None:
        self.use_uv = use_uv
        self.pip_args = tuple(pip_args)

    def _pip(self) -> list[str | Path]:
        if self.use_uv:
            uv_path = find_uv()
            if uv_path is None:
                msg = "uv was requested but couldn't be found"
                raise FileNotFoundError(msg)
            # uv targets VIRTUAL_ENV when it's set, which activation guarantees
            return [uv_path, "pip"]
        return ["python", "-m", "pip"]

    def _run(self, *args: str, merge_stderr: bool = True, echo: bool = True) -> CommandResult:
        env = dict(os.environ)
        if not self.use_uv:
            env.setdefault("PIP_DISABLE_PIP_VERSION_CHECK", "1")
        return run(*self._pip(), *args, env=env, merge_stderr=merge_stderr, echo=echo)

    def installed_versions(self) -> dict[str, str]:
        """
        Returns the distributions installed in the active environment, keyed
        by canonical name.
        """
        try:
            result = self._run("list", "--format=json", merge_stderr=False, echo=False)
        except OSError as e:
            msg = f"Couldn't list installed packages: {e}"
            raise InstallerError(msg) from e

        if not result.ok:
            msg = f"Listing installed packages failed with exit code {result.returncode}"
            raise InstallerError(msg, diagnostics=result.output)

        try:
            packages = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            msg = f"Couldn't parse the installed package list: {e}"
            raise InstallerError(msg, diagnostics=result.output) from e

        return {canonicalize_name(p["name"]): p["version"] for p in packages}

    def install(self, tool: ToolRequirement) -> InstallOutcome:
        try:
            result = self._run("install", *self.pip_args, tool.requirement)
        except OSError as e:
            return InstallOutcome(tool=tool.name, version=None, exit_code=127, log=str(e))

        if not result.ok:
            return InstallOutcome(
                tool=tool.name, version=None, exit_code=result.returncode, log=result.output
            )

        try:
            version = self.installed_versions().get(tool.key)
        except InstallerError as e:
            return InstallOutcome(
                tool=tool.name, version=None, exit_code=0, log=f"{result.output}\n{e.message}"
            )

        return InstallOutcome(tool=tool.name, version=version, exit_code=0, log=result.output)
