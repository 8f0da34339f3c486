import dataclasses
import difflib
import os
import re
import shlex
import sys
import tomllib
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any, Final, Self

from packaging.requirements import InvalidRequirement, Requirement
from packaging.specifiers import InvalidSpecifier, SpecifierSet
from packaging.utils import canonicalize_name
from packaging.version import InvalidVersion, Version

from . import errors
from .util import resources
from .util.helpers import strtobool

# https://packaging.python.org/en/latest/specifications/name-normalization/
_VALID_NAME: Final[re.Pattern[str]] = re.compile(
    r"^([A-Z0-9]|[A-Z0-9][A-Z0-9._-]*[A-Z0-9])$", re.IGNORECASE
)

ENV_PREFIX: Final[str] = "BUILDENV_"


@dataclasses.dataclass(frozen=True, kw_only=True)
class ToolRequirement:
    name: str
    version_constraint: str | None = None
    command: str | None = None
    verify_args: tuple[str, ...] = ("--version",)

    def __post_init__(self) -> None:
        if not self.name or not _VALID_NAME.match(self.name):
            msg = f"Invalid tool name {self.name!r}"
            raise ValueError(msg)
        if self.version_constraint is not None:
            try:
                _specifier_from_constraint(self.version_constraint)
            except InvalidSpecifier:
                msg = f"Invalid version constraint {self.version_constraint!r} for {self.name!r}"
                raise ValueError(msg) from None

    @classmethod
    def parse(cls, value: str | Mapping[str, Any]) -> Self:
        """
        Builds a requirement from a config entry: either a PEP 508 string like
        "maturin>=1.5", or a table with name, version and command keys.
        """
        if isinstance(value, Mapping):
            unknown = set(value) - {"name", "version", "command"}
            if unknown:
                msg = f"Unknown key(s) {', '.join(sorted(unknown))} in tool {dict(value)!r}"
                raise ValueError(msg)
            if "name" not in value:
                msg = f"Tool {dict(value)!r} has no name"
                raise ValueError(msg)
            version = value.get("version")
            return cls(
                name=str(value["name"]),
                version_constraint=str(version) if version else None,
                command=value.get("command"),
            )

        try:
            requirement = Requirement(value)
        except InvalidRequirement as e:
            msg = f"Invalid tool requirement {value!r}: {e}"
            raise ValueError(msg) from None

        if requirement.url or requirement.marker or requirement.extras:
            msg = f"Tool requirement {value!r} may only contain a name and a version specifier"
            raise ValueError(msg)

        return cls(name=requirement.name, version_constraint=str(requirement.specifier) or None)

    @property
    def key(self) -> str:
        return canonicalize_name(self.name)

    @property
    def specifier(self) -> SpecifierSet:
        if self.version_constraint is None:
            return SpecifierSet()
        return _specifier_from_constraint(self.version_constraint)

    @property
    def requirement(self) -> str:
        return f"{self.name}{self.specifier}"

    @property
    def entry_point(self) -> str:
        return self.command or self.name

    def satisfied_by(self, version: str) -> bool:
        try:
            return self.specifier.contains(Version(version), prereleases=True)
        except InvalidVersion:
            return False

    def __str__(self) -> str:
        return self.requirement


def _specifier_from_constraint(constraint: str) -> SpecifierSet:
    constraint = constraint.strip()
    # a bare version pins exactly
    if constraint[:1].isdigit():
        constraint = f"=={constraint}"
    return SpecifierSet(constraint)


@dataclasses.dataclass(frozen=True, kw_only=True)
class EnvironmentSpec:
    root_path: Path
    tools: tuple[ToolRequirement, ...]
    reuse_existing: bool = True
    python: Path | None = None
    use_uv: bool = False
    lock_timeout: float = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "root_path", Path(self.root_path).absolute())
        object.__setattr__(self, "tools", tuple(self.tools))

        if not self.tools:
            msg = "At least one tool is required"
            raise ValueError(msg)

        seen: set[str] = set()
        for tool in self.tools:
            if tool.key in seen:
                msg = f"Tool {tool.name!r} is listed more than once"
                raise ValueError(msg)
            seen.add(tool.key)


@dataclasses.dataclass(kw_only=True)
class CommandLineArguments:
    config_file: str
    env_dir: Path | None
    fresh: bool
    use_uv: bool
    debug_traceback: bool

    @classmethod
    def defaults(cls) -> Self:
        return cls(
            config_file="",
            env_dir=None,
            fresh=False,
            use_uv=False,
            debug_traceback=False,
        )


class OptionsReaderError(errors.ConfigurationError):
    pass


class OptionsReader:
    """
    Gets options from the environment, config or defaults.

    Example:
      >>> options_reader = OptionsReader(config_file, env=os.environ)
      >>> options_reader.get('env-dir')

      This will return the value of BUILDENV_ENV_DIR if it exists, otherwise
      'tool.buildenv.env-dir' from `config_file`, otherwise the value from
      buildenv/resources/defaults.toml. An error is thrown if there are any
      unexpected keys in tool.buildenv.
    """

    def __init__(self, config_file_path: Path | None = None, *, env: Mapping[str, str]) -> None:
        self.env = env
        self.default_options = self._load_file(resources.DEFAULTS)

        config_options: dict[str, Any] = {}
        if config_file_path is not None:
            config_options = self._load_file(config_file_path)

        for option_name in config_options:
            self._validate_option(option_name)

        self.config_options = config_options

    def _validate_option(self, name: str) -> None:
        allowed_option_names = self.default_options.keys()

        if name not in allowed_option_names:
            msg = f"Option {name!r} not supported in a config file."
            matches = difflib.get_close_matches(name, allowed_option_names, 1, 0.7)
            if matches:
                msg += f" Perhaps you meant {matches[0]!r}?"
            raise OptionsReaderError(msg)

    @staticmethod
    def _load_file(filename: Path) -> dict[str, Any]:
        try:
            with filename.open("rb") as f:
                config = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            msg = f"Failed to parse {filename}: {e}"
            raise OptionsReaderError(msg) from None

        options = config.get("tool", {}).get("buildenv", {})
        if not isinstance(options, dict):
            msg = f"'tool.buildenv' in {filename} must be a table"
            raise OptionsReaderError(msg)
        return options

    def get(self, name: str) -> Any:
        """
        Returns the raw value of an option: a string when it comes from the
        environment, otherwise whatever TOML type the config holds.
        """
        if name not in self.default_options:
            msg = f"{name!r} must be in defaults.toml"
            raise OptionsReaderError(msg)

        envvar = ENV_PREFIX + name.upper().replace("-", "_")
        if envvar in self.env:
            return self.env[envvar]
        if name in self.config_options:
            return self.config_options[name]
        return self.default_options[name]

    def get_bool(self, name: str) -> bool:
        value = self.get(name)
        if isinstance(value, str):
            return strtobool(value)
        if not isinstance(value, bool):
            msg = f"Option {name!r} must be a boolean, got {value!r}"
            raise OptionsReaderError(msg)
        return value

    def get_float(self, name: str) -> float:
        value = self.get(name)
        try:
            return float(value)
        except (TypeError, ValueError):
            msg = f"Option {name!r} must be a number, got {value!r}"
            raise OptionsReaderError(msg) from None

    def get_tools(self) -> list[ToolRequirement]:
        value = self.get("tools")
        if isinstance(value, str):
            # from the environment, shell-style: BUILDENV_TOOLS="maturin>=1.5 patchelf"
            entries: Sequence[Any] = shlex.split(value)
        elif isinstance(value, list):
            entries = value
        else:
            msg = f"Option 'tools' must be a list, got {value!r}"
            raise OptionsReaderError(msg)

        try:
            return [ToolRequirement.parse(entry) for entry in entries]
        except ValueError as e:
            raise OptionsReaderError(str(e)) from None


def _get_config_file_path(args: CommandLineArguments) -> Path | None:
    if args.config_file:
        return Path(args.config_file)

    pyproject = Path("pyproject.toml")
    return pyproject if pyproject.exists() else None


def compute_spec(args: CommandLineArguments, env: Mapping[str, str]) -> EnvironmentSpec:
    config_file_path = _get_config_file_path(args)
    if config_file_path is not None and not config_file_path.is_file():
        msg = f"Config file {config_file_path} does not exist"
        raise errors.ConfigurationError(msg)

    options = OptionsReader(config_file_path, env=env)

    env_dir = args.env_dir or Path(str(options.get("env-dir")))
    python = str(options.get("python"))

    try:
        return EnvironmentSpec(
            root_path=Path(os.path.expanduser(env_dir)),
            tools=tuple(options.get_tools()),
            reuse_existing=options.get_bool("reuse-existing") and not args.fresh,
            python=Path(python) if python else Path(sys.executable),
            use_uv=args.use_uv or options.get_bool("use-uv"),
            lock_timeout=options.get_float("lock-timeout"),
        )
    except ValueError as e:
        raise errors.ConfigurationError(str(e)) from None
