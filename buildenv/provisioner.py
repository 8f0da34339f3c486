"""
Brings a directory to a known state: an isolated Python environment with a
fixed set of tools installed at compatible versions.

The steps run strictly in order: lock, isolate, activate, install, verify.
The first failure stops the run, and the result carries the failure. Nothing
is retried.
"""

import contextlib
import dataclasses
import shutil
import threading
from collections.abc import Generator, Mapping
from pathlib import Path
from typing import Final

from filelock import FileLock, Timeout

from .errors import (
    ActivationError,
    ConcurrentProvisioningError,
    EnvironmentCreationError,
    ErrorDetail,
    ProvisioningError,
    ToolInstallError,
    ToolVerificationError,
)
from .installer import InstallerError, PipInstaller
from .logger import log
from .options import EnvironmentSpec, ToolRequirement
from .typing import InstallationFacility, IsolationFacility
from .util.cmd import run
from .venv import VirtualEnvironment, VirtualenvIsolation

LOCK_FILE_NAME: Final[str] = ".buildenv.lock"

# activation is process-wide, so runs in the same process take turns holding it
_activation_turn = threading.Lock()


@dataclasses.dataclass(frozen=True, kw_only=True)
class ProvisioningResult:
    success: bool
    installed_tools: frozenset[str]
    versions: Mapping[str, str]
    reused_tools: frozenset[str] = frozenset()
    environment: Path | None = None
    failure: ErrorDetail | None = None


@dataclasses.dataclass
class _Progress:
    versions: dict[str, str] = dataclasses.field(default_factory=dict)
    reused: set[str] = dataclasses.field(default_factory=set)
    environment: VirtualEnvironment | None = None

    def result(self, failure: ErrorDetail | None = None) -> ProvisioningResult:
        return ProvisioningResult(
            success=failure is None,
            installed_tools=frozenset(self.versions),
            versions=dict(self.versions),
            reused_tools=frozenset(self.reused),
            environment=self.environment.path if self.environment else None,
            failure=failure,
        )


def verify_tool(tool: ToolRequirement, environment: VirtualEnvironment, version: str | None) -> str:
    """
    Checks that `tool` landed at a compatible version and that its entry point
    actually runs from inside `environment`. An installer can report success
    and still leave a broken entry point, so the exit status of the install is
    not enough. Returns the tool's output.
    """
    if version is None:
        msg = "installation reported success, but the distribution isn't installed"
        raise ToolVerificationError(tool.name, msg)

    if not tool.satisfied_by(version):
        msg = f"installed version {version} doesn't satisfy {str(tool.specifier)!r}"
        raise ToolVerificationError(tool.name, msg)

    executable = shutil.which(tool.entry_point, path=str(environment.bin_dir))
    if executable is None:
        msg = f"no {tool.entry_point!r} entry point in {environment.bin_dir}"
        raise ToolVerificationError(tool.name, msg)

    try:
        result = run(executable, *tool.verify_args, env=environment.environ())
    except OSError as e:
        msg = f"couldn't run {executable}: {e}"
        raise ToolVerificationError(tool.name, msg) from e

    if not result.ok:
        msg = f"{tool.entry_point} {' '.join(tool.verify_args)} exited with code {result.returncode}"
        raise ToolVerificationError(tool.name, msg, diagnostics=result.output)

    return result.output


class Provisioner:
    def __init__(
        self,
        isolation: IsolationFacility | None = None,
        installer: InstallationFacility | None = None,
    ) -> None:
        self.isolation = isolation
        self.installer = installer

    def provision(self, spec: EnvironmentSpec) -> ProvisioningResult:
        """
        Provisions the environment described by `spec`. Never raises for a
        provisioning failure; the failure is returned on the result instead.
        """
        isolation = self.isolation or VirtualenvIsolation(
            python=spec.python, use_uv=spec.use_uv, ignore={LOCK_FILE_NAME}
        )
        installer = self.installer or PipInstaller(use_uv=spec.use_uv)
        progress = _Progress()

        log.provision_start(spec.root_path)
        try:
            with self._locked(spec):
                progress.environment = self._isolate(spec, isolation)
                with self._activated(isolation, progress.environment):
                    self._install(spec, installer, progress)
                    self._verify(spec, progress)
        except ProvisioningError as e:
            log.provision_abort(spec.root_path)
            return progress.result(failure=e.detail())

        log.provision_end(spec.root_path, progress.versions, progress.reused)
        return progress.result()

    @contextlib.contextmanager
    def _locked(self, spec: EnvironmentSpec) -> Generator[None, None, None]:
        log.step("Acquiring provisioning lock...")
        try:
            spec.root_path.mkdir(exist_ok=True)
        except FileNotFoundError as e:
            msg = f"Parent directory {spec.root_path.parent} does not exist"
            raise EnvironmentCreationError(msg) from e
        except OSError as e:
            msg = f"Couldn't create {spec.root_path}: {e}"
            raise EnvironmentCreationError(msg) from e

        lock_path = spec.root_path / LOCK_FILE_NAME
        lock = FileLock(lock_path, timeout=spec.lock_timeout)
        try:
            lock.acquire()
        except Timeout as e:
            msg = f"Another provisioning run holds {lock_path}"
            raise ConcurrentProvisioningError(msg) from e
        except OSError as e:
            msg = f"Couldn't lock {lock_path}: {e}"
            raise EnvironmentCreationError(msg) from e

        try:
            yield
        finally:
            lock.release()

    @staticmethod
    def _isolate(spec: EnvironmentSpec, isolation: IsolationFacility) -> VirtualEnvironment:
        existing = isolation.find(spec.root_path)
        if existing is not None:
            if not spec.reuse_existing:
                msg = f"An environment already exists at {spec.root_path} and reuse is disabled"
                raise EnvironmentCreationError(msg)
            log.step("Reusing isolated environment...")
            print(f"  {spec.root_path}")
            return existing

        log.step("Creating isolated environment...")
        try:
            return isolation.create(spec.root_path)
        except OSError as e:
            msg = f"Couldn't create an environment at {spec.root_path}: {e}"
            raise EnvironmentCreationError(msg) from e

    @staticmethod
    @contextlib.contextmanager
    def _activated(
        isolation: IsolationFacility, environment: VirtualEnvironment
    ) -> Generator[None, None, None]:
        with _activation_turn:
            log.step("Activating environment...")
            isolation.activate(environment)
            try:
                yield
            finally:
                isolation.deactivate()

    @staticmethod
    def _install(
        spec: EnvironmentSpec, installer: InstallationFacility, progress: _Progress
    ) -> None:
        try:
            present = installer.installed_versions()
        except InstallerError as e:
            msg = f"The activated environment couldn't be queried: {e.message}"
            raise ActivationError(msg, diagnostics=e.diagnostics) from e

        for tool in spec.tools:
            version = present.get(tool.key)
            if version is not None and tool.satisfied_by(version):
                log.quiet(f"{tool.name} {version} is already installed, skipping")
                progress.versions[tool.name] = version
                progress.reused.add(tool.name)
                continue

            log.step(f"Installing {tool.requirement}...")
            outcome = installer.install(tool)
            if not outcome.ok:
                raise ToolInstallError(tool.name, outcome.exit_code, outcome.log)
            if outcome.version is not None:
                progress.versions[tool.name] = outcome.version
            else:
                log.warning(f"{tool.name} installed but its version couldn't be determined")

    @staticmethod
    def _verify(spec: EnvironmentSpec, progress: _Progress) -> None:
        assert progress.environment is not None
        for tool in spec.tools:
            log.step(f"Verifying {tool.name}...")
            verify_tool(tool, progress.environment, progress.versions.get(tool.name))


def provision(
    spec: EnvironmentSpec,
    *,
    isolation: IsolationFacility | None = None,
    installer: InstallationFacility | None = None,
) -> ProvisioningResult:
    return Provisioner(isolation, installer).provision(spec)
