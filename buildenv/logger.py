import codecs
import dataclasses
import enum
import os
import re
import sys
import time
from collections.abc import Mapping
from pathlib import Path
from typing import IO, AnyStr, Final, Literal

import humanize

from .util.helpers import strtobool

FoldPattern = tuple[str, str]
DEFAULT_FOLD_PATTERN: Final[FoldPattern] = ("{name}", "")
FOLD_PATTERNS: Final[dict[str, FoldPattern]] = {
    "azure": ("##[group]{name}", "##[endgroup]"),
    "travis": ("travis_fold:start:{identifier}\n{name}", "travis_fold:end:{identifier}"),
    "github": ("::group::{name}", "::endgroup::{name}"),
}


class CIProvider(enum.Enum):
    travis_ci = "travis"
    azure_pipelines = "azure_pipelines"
    github_actions = "github_actions"
    gitlab = "gitlab"
    other = "other"


def detect_ci_provider() -> CIProvider | None:
    if "TRAVIS" in os.environ:
        return CIProvider.travis_ci
    elif "AZURE_HTTP_USER_AGENT" in os.environ:
        return CIProvider.azure_pipelines
    elif "GITHUB_ACTIONS" in os.environ:
        return CIProvider.github_actions
    elif "GITLAB_CI" in os.environ:
        return CIProvider.gitlab
    elif strtobool(os.environ.get("CI", "false")):
        return CIProvider.other
    else:
        return None


class Colors:
    def __init__(self, *, enabled: bool) -> None:
        self.red = "\033[31m" if enabled else ""
        self.green = "\033[32m" if enabled else ""
        self.yellow = "\033[33m" if enabled else ""
        self.blue = "\033[34m" if enabled else ""
        self.bright_red = "\033[91m" if enabled else ""
        self.gray = "\033[38;5;244m" if enabled else ""

        self.bold = "\033[1m" if enabled else ""

        self.end = "\033[0m" if enabled else ""


class Symbols:
    def __init__(self, *, unicode: bool) -> None:
        self.done = "✓" if unicode else "done"
        self.error = "✕" if unicode else "failed"


@dataclasses.dataclass(kw_only=True, frozen=True)
class ToolInfo:
    name: str
    version: str
    reused: bool

    def __str__(self) -> str:
        how = "already present" if self.reused else "installed"
        return f"{self.name} {self.version} ({how})"


class Logger:
    fold_mode: Literal["azure", "github", "travis", "disabled"]
    colors_enabled: bool
    unicode_enabled: bool
    provision_start_times: dict[Path, float]
    step_start_time: float | None = None
    active_fold_group_name: str | None = None

    def __init__(self) -> None:
        self.provision_start_times = {}

        if sys.platform == "win32" and hasattr(sys.stdout, "reconfigure"):
            # the encoding on Windows can be a 1-byte charmap, but all CIs
            # support utf8, so we hardcode that
            sys.stdout.reconfigure(encoding="utf8")

        self.unicode_enabled = file_supports_unicode(sys.stdout)

        match detect_ci_provider():
            case CIProvider.azure_pipelines:
                self.fold_mode = "azure"
                self.colors_enabled = True

            case CIProvider.github_actions:
                self.fold_mode = "github"
                self.colors_enabled = True

            case CIProvider.travis_ci:
                self.fold_mode = "travis"
                self.colors_enabled = True

            case _:
                self.fold_mode = "disabled"
                self.colors_enabled = file_supports_color(sys.stdout)

    def provision_start(self, root: Path) -> None:
        self.step_end()
        c = self.colors
        print()
        print(f"{c.bold}{c.blue}Provisioning build environment{c.end}")
        print(f"{root}")
        print()

        self.provision_start_times[root] = time.time()

    def provision_end(
        self, root: Path, tools: Mapping[str, str], reused: set[str] | frozenset[str]
    ) -> None:
        self.step_end()

        c = self.colors
        s = self.symbols
        now = time.time()
        duration = now - self.provision_start_times.pop(root, now)
        duration_str = humanize.naturaldelta(duration, minimum_unit="milliseconds")

        print()
        self._start_fold_group(f"{len(tools)} tool{'s' if len(tools) != 1 else ''} ready")
        for name, version in tools.items():
            print(" ", ToolInfo(name=name, version=version, reused=name in reused))
        self._end_fold_group()
        print(f"{c.green}{s.done} {c.end}{root} provisioned in {duration_str}")

    def provision_abort(self, root: Path) -> None:
        self.step_end(success=False)
        self.provision_start_times.pop(root, None)

    def step(self, step_description: str) -> None:
        self.step_end()
        self.step_start_time = time.time()
        self._start_fold_group(step_description)

    def step_end(self, success: bool = True) -> None:
        if self.step_start_time is not None:
            self._end_fold_group()
            c = self.colors
            s = self.symbols
            duration = time.time() - self.step_start_time

            if success:
                print(f"{c.green}{s.done} {c.end}{duration:.2f}s".rjust(78))
            else:
                print(f"{c.red}{s.error} {c.end}{duration:.2f}s".rjust(78))

            self.step_start_time = None

    def step_end_with_error(self, error: BaseException | str) -> None:
        self.step_end(success=False)
        self.error(error)

    def quiet(self, message: str) -> None:
        c = self.colors
        print(f"{c.gray}{message}{c.end}", file=sys.stderr)

    def warning(self, message: str) -> None:
        if self.fold_mode == "github":
            print(f"::warning::buildenv: {message}\n", file=sys.stderr)
        else:
            c = self.colors
            print(f"buildenv: {c.yellow}warning{c.end}: {message}\n", file=sys.stderr)

    def error(self, error: BaseException | str) -> None:
        if self.fold_mode == "github":
            # github annotations are single line, the full text follows
            first_line, _, _ = str(error).partition("\n")
            print(f"::error::buildenv: {first_line}", file=sys.stderr)
            print(f"{error}\n", file=sys.stderr)
        else:
            c = self.colors
            print(f"buildenv: {c.bright_red}error{c.end}: {error}\n", file=sys.stderr)

    @property
    def step_active(self) -> bool:
        return self.step_start_time is not None

    def _start_fold_group(self, name: str) -> None:
        self._end_fold_group()
        self.active_fold_group_name = name
        fold_start_pattern = FOLD_PATTERNS.get(self.fold_mode, DEFAULT_FOLD_PATTERN)[0]
        identifier = self._fold_group_identifier(name)

        print(fold_start_pattern.format(name=self.active_fold_group_name, identifier=identifier))
        print()
        sys.stdout.flush()

    def _end_fold_group(self) -> None:
        if self.active_fold_group_name:
            fold_end_pattern = FOLD_PATTERNS.get(self.fold_mode, DEFAULT_FOLD_PATTERN)[1]
            identifier = self._fold_group_identifier(self.active_fold_group_name)
            print(fold_end_pattern.format(name=self.active_fold_group_name, identifier=identifier))
            sys.stdout.flush()
            self.active_fold_group_name = None

    @staticmethod
    def _fold_group_identifier(name: str) -> str:
        """
        Travis doesn't like fold groups identifiers that have spaces in. This
        method converts them to ascii identifiers
        """
        # whitespace to underscores
        identifier = re.sub(r"\s+", "_", name)
        # remove non-alphanum
        identifier = re.sub(r"[^A-Za-z\d_]+", "", identifier)
        # trim underscores
        identifier = identifier.strip("_")
        # lowercase, shorten
        return identifier.lower()[:20]

    @property
    def colors(self) -> Colors:
        return Colors(enabled=self.colors_enabled)

    @property
    def symbols(self) -> Symbols:
        return Symbols(unicode=self.unicode_enabled)


def file_supports_color(file_obj: IO[AnyStr]) -> bool:
    """
    Returns True if the running system's terminal supports color.
    """
    plat = sys.platform
    supported_platform = plat != "win32" or "ANSICON" in os.environ

    is_a_tty = hasattr(file_obj, "isatty") and file_obj.isatty()

    return supported_platform and is_a_tty


def file_supports_unicode(file_obj: IO[AnyStr]) -> bool:
    encoding = getattr(file_obj, "encoding", None)
    if not encoding:
        return False

    codec_info = codecs.lookup(encoding)

    return "utf" in codec_info.name


# Global instance of the Logger.
# (there's only one stdout per-process, so a global instance is justified)
log = Logger()
