import dataclasses
import os
import shlex
import shutil
import subprocess
import sys
from collections.abc import Mapping
from typing import Final

from ..typing import PathOrStr

_IS_WIN: Final[bool] = sys.platform.startswith("win")


@dataclasses.dataclass(frozen=True)
class CommandResult:
    args: list[str]
    returncode: int
    stdout: str
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return self.stdout + self.stderr


def which(command: PathOrStr, env: Mapping[str, str] | None = None) -> str | None:
    path_env = env if env is not None else os.environ
    return shutil.which(str(command), path=path_env.get("PATH", None))


def run(
    *args: PathOrStr,
    env: Mapping[str, str] | None = None,
    cwd: PathOrStr | None = None,
    merge_stderr: bool = True,
    echo: bool = True,
) -> CommandResult:
    """
    Run a command without raising on a non-zero exit, capturing its output so
    that it can be reported verbatim. The command is printed first. Takes the
    command as *args, resolving args[0] against the PATH of `env` (or of
    os.environ) so that an activated environment is honoured.

    Raises FileNotFoundError if the executable can't be found.
    """
    args_ = [str(arg) for arg in args]
    # print the command executing for the logs
    print("+ " + " ".join(shlex.quote(a) for a in args_))
    # workaround platform behaviour differences outlined
    # in https://github.com/python/cpython/issues/52803
    executable = which(args_[0], env=env)
    if executable is None:
        path_env = env if env is not None else os.environ
        msg = f"Couldn't find {args_[0]!r} in PATH {path_env.get('PATH', None)!r}"
        raise FileNotFoundError(msg)
    args_[0] = executable

    result = subprocess.run(
        args_,
        check=False,
        shell=_IS_WIN,
        env=env,
        cwd=cwd,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT if merge_stderr else subprocess.PIPE,
        text=True,
    )
    completed = CommandResult(
        args=args_,
        returncode=result.returncode,
        stdout=result.stdout or "",
        stderr=result.stderr or "",
    )
    if echo and completed.output:
        sys.stdout.write(completed.output)
        sys.stdout.flush()
    return completed
