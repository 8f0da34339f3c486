#!/usr/bin/env -S uv run

# /// script
# dependencies = ["nox>=2025.2.9"]
# ///

"""
buildenv's nox support

See sessions with `nox -l`
"""

import shutil
from pathlib import Path

import nox

nox.needs_version = ">=2025.2.9"
nox.options.default_venv_backend = "uv|virtualenv"

DIR = Path(__file__).parent.resolve()


@nox.session(tags=["lint"])
def pylint(session: nox.Session) -> None:
    """
    Run pylint.
    """

    session.install("pylint>=3.2", "-e.")
    session.run("pylint", "buildenv", *session.posargs)


@nox.session
def tests(session: nox.Session) -> None:
    """
    Run the unit tests.
    """
    session.install("-e.[test]")
    session.run("pytest", "unit_test", *session.posargs)


@nox.session(default=False)
def provision(session: nox.Session) -> None:
    """
    Provision the real environment into a scratch directory. Needs network.
    """
    session.install("-e.")
    env_dir = Path(session.create_tmp()) / "env"
    if env_dir.exists():
        shutil.rmtree(env_dir)
    session.run("buildenv", "--env-dir", str(env_dir), *session.posargs)
    # a second run must reuse everything
    session.run("buildenv", "--env-dir", str(env_dir), *session.posargs)


@nox.session(default=False)
def build(session: nox.Session) -> None:
    """
    Build an SDist and wheel.
    """

    build_p = DIR.joinpath("build")
    if build_p.exists():
        shutil.rmtree(build_p)

    dist_p = DIR.joinpath("dist")
    if dist_p.exists():
        shutil.rmtree(dist_p)

    session.install("build")
    session.run("python", "-m", "build")


if __name__ == "__main__":
    nox.main()
