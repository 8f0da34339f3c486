import argparse
import dataclasses
import os
import sys
import traceback
from pathlib import Path

from buildenv import errors
from buildenv.logger import log
from buildenv.options import CommandLineArguments, compute_spec
from buildenv.provisioner import provision
from buildenv.util.helpers import strtobool


@dataclasses.dataclass
class GlobalOptions:
    print_traceback_on_error: bool = True  # decides what happens when errors are hit.


def main() -> None:
    global_options = GlobalOptions()
    try:
        main_inner(global_options)
    except errors.FatalError as e:
        message = e.args[0]
        if log.step_active:
            log.step_end_with_error(message)
        else:
            log.error(message)

        if global_options.print_traceback_on_error:
            traceback.print_exc(file=sys.stderr)

        sys.exit(e.return_code)


def main_inner(global_options: GlobalOptions) -> None:
    """
    `main_inner` is the same as `main`, but it raises FatalError exceptions
    rather than exiting directly.
    """

    parser = argparse.ArgumentParser(
        description="Provision an isolated environment with the tools to build and repair wheels.",
        epilog="""
            With no arguments, the built-in environment is provisioned: a
            virtualenv in .env holding maturin and patchelf. Options can also
            be set in the [tool.buildenv] table of --config-file, or with
            BUILDENV_* environment variables.
        """,
        allow_abbrev=False,
    )

    parser.add_argument(
        "--config-file",
        default="",
        help="""
            TOML config file. Default: "", meaning pyproject.toml in the
            working directory, if it exists.
        """,
    )

    parser.add_argument(
        "--env-dir",
        type=Path,
        default=None,
        help="Where to create the environment. Default: .env",
    )

    parser.add_argument(
        "--fresh",
        action="store_true",
        help="Fail rather than reuse an environment that already exists.",
    )

    parser.add_argument(
        "--use-uv",
        action="store_true",
        help="Create the environment and install the tools with uv instead of virtualenv and pip.",
    )

    parser.add_argument(
        "--debug-traceback",
        action="store_true",
        default=strtobool(os.environ.get("BUILDENV_DEBUG_TRACEBACK", "0")),
        help="Print a full traceback for all errors",
    )

    args = CommandLineArguments(**vars(parser.parse_args()))

    global_options.print_traceback_on_error = args.debug_traceback

    spec = compute_spec(args, env=os.environ)
    result = provision(spec)

    if not result.success:
        assert result.failure is not None
        raise errors.ProvisioningFailedError(result.failure)


if __name__ == "__main__":
    main()
