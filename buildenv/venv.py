import contextlib
import dataclasses
import os
import shutil
import sys
import threading
from collections.abc import Collection, Generator, Mapping
from pathlib import Path
from typing import Final

from .errors import ActivationError, EnvironmentCreationError
from .util.cmd import run

_IS_WIN: Final[bool] = sys.platform.startswith("win")

# the process environment keys that activation touches, restored on deactivation
ACTIVATION_KEYS: Final[tuple[str, ...]] = ("PATH", "VIRTUAL_ENV", "PYTHONHOME")


@dataclasses.dataclass(frozen=True)
class VirtualEnvironment:
    path: Path

    @property
    def bin_dir(self) -> Path:
        return self.path / "Scripts" if _IS_WIN else self.path / "bin"

    @property
    def python(self) -> Path:
        return self.bin_dir / ("python.exe" if _IS_WIN else "python")

    def exists(self) -> bool:
        return (self.path / "pyvenv.cfg").is_file()

    def environ(self, env: Mapping[str, str] | None = None) -> dict[str, str]:
        """
        Returns a copy of `env` (or os.environ) set up to run inside this
        environment.
        """
        venv_env = dict(os.environ if env is None else env)
        venv_env["PATH"] = os.pathsep.join(
            [str(self.bin_dir), *filter(None, [venv_env.get("PATH")])]
        )
        venv_env["VIRTUAL_ENV"] = str(self.path)
        venv_env.pop("PYTHONHOME", None)
        return venv_env


@dataclasses.dataclass(frozen=True)
class _Activation:
    environment: VirtualEnvironment
    saved: dict[str, str | None]


_active: _Activation | None = None
_active_lock = threading.Lock()


def active_environment() -> VirtualEnvironment | None:
    return _active.environment if _active else None


def activate(environment: VirtualEnvironment) -> None:
    """
    Activates `environment` for the whole process, the way sourcing
    bin/activate would for a shell. Must be paired with deactivate().
    """
    global _active  # noqa: PLW0603

    if not environment.exists():
        msg = f"{environment.path} is not a virtual environment (no pyvenv.cfg)"
        raise ActivationError(msg)
    if not environment.bin_dir.is_dir():
        msg = f"{environment.path} has no {environment.bin_dir.name} directory"
        raise ActivationError(msg)

    with _active_lock:
        if _active is not None:
            msg = f"Can't activate {environment.path}, {_active.environment.path} is already active"
            raise ActivationError(msg)

        saved = {key: os.environ.get(key) for key in ACTIVATION_KEYS}
        new_env = environment.environ({k: v for k, v in saved.items() if v is not None})
        for key in ACTIVATION_KEYS:
            if key in new_env:
                os.environ[key] = new_env[key]
            else:
                os.environ.pop(key, None)

        _active = _Activation(environment=environment, saved=saved)


def deactivate() -> None:
    global _active  # noqa: PLW0603

    with _active_lock:
        if _active is None:
            msg = "No virtual environment is active"
            raise ActivationError(msg)

        for key, value in _active.saved.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value

        _active = None


@contextlib.contextmanager
def activated(environment: VirtualEnvironment) -> Generator[VirtualEnvironment, None, None]:
    activate(environment)
    try:
        yield environment
    finally:
        deactivate()


def _is_populated(path: Path, ignore: Collection[str]) -> bool:
    if not path.exists():
        return False
    if not path.is_dir():
        return True
    return any(child.name not in ignore for child in path.iterdir())


def create_virtualenv(
    venv_path: Path,
    *,
    python: Path | None = None,
    use_uv: bool = False,
    ignore: Collection[str] = (),
) -> VirtualEnvironment:
    """
    Create a virtual environment at `venv_path`, which must be absent or empty
    (apart from names in `ignore`). If `use_uv` is True, uv creates it and
    seeds pip; otherwise virtualenv is used.
    """

    if _is_populated(venv_path, ignore):
        msg = f"Refusing to create a virtual environment in {venv_path}: it is not empty"
        raise EnvironmentCreationError(msg)

    # virtualenv may fail if this is a symlink.
    python = Path(python or sys.executable).resolve()
    if not python.exists():
        msg = f"Base interpreter {python} does not exist"
        raise EnvironmentCreationError(msg)

    try:
        if use_uv:
            uv_path = find_uv()
            if uv_path is None:
                msg = "uv was requested but couldn't be found"
                raise EnvironmentCreationError(msg)
            result = run(uv_path, "venv", venv_path, "--python", python, "--seed", "--allow-existing")
        else:
            result = run(
                sys.executable,
                "-m",
                "virtualenv",
                "--activators=",
                "--no-periodic-update",
                "--no-setuptools",
                "--python",
                python,
                venv_path,
            )
    except OSError as e:
        msg = f"Couldn't run the environment creation command: {e}"
        raise EnvironmentCreationError(msg) from e

    if not result.ok:
        msg = f"Environment creation exited with code {result.returncode}"
        raise EnvironmentCreationError(msg, exit_code=result.returncode, diagnostics=result.output)

    environment = VirtualEnvironment(venv_path)
    if not environment.exists():
        msg = f"Environment creation succeeded but {venv_path} has no pyvenv.cfg"
        raise EnvironmentCreationError(msg, diagnostics=result.output)

    return environment


def find_uv() -> Path | None:
    # Prefer uv in our environment
    with contextlib.suppress(ImportError, FileNotFoundError):
        # pylint: disable-next=import-outside-toplevel
        from uv import find_uv_bin

        return Path(find_uv_bin())

    uv_on_path = shutil.which("uv")
    return Path(uv_on_path) if uv_on_path else None


class VirtualenvIsolation:
    """
    The interpreter-isolation facility backed by virtualenv (or uv).
    """

    def __init__(
        self,
        *,
        python: Path | None = None,
        use_uv: bool = False,
        ignore: Collection[str] = (),
    ) -> None:
        self.python = python
        self.use_uv = use_uv
        self.ignore = ignore

    def find(self, path: Path) -> VirtualEnvironment | None:
        environment = VirtualEnvironment(path)
        return environment if environment.exists() else None

    def create(self, path: Path) -> VirtualEnvironment:
        return create_virtualenv(path, python=self.python, use_uv=self.use_uv, ignore=self.ignore)

    def activate(self, environment: VirtualEnvironment) -> None:
        activate(environment)

    def deactivate(self) -> None:
        deactivate()
