from __future__ import annotations

from setuptools import find_packages, setup

extras = {
    "test": [
        "pytest>=6",
        "pytest-timeout",
    ],
    "uv": [
        "uv",
    ],
}

extras["dev"] = [
    *extras["test"],
    "pylint>=3.2",
]

setup(
    name="buildenv",
    version="0.1.0",
    description="Provision an isolated environment with the tools to build and repair Rust extension wheels",
    python_requires=">=3.11",
    packages=find_packages(include=["buildenv", "buildenv.*"]),
    package_data={"buildenv": ["resources/*.toml"]},
    install_requires=[
        "filelock",
        "humanize",
        "packaging>=21.0",
        "virtualenv>=20.26",
    ],
    extras_require=extras,
    entry_points={
        "console_scripts": [
            "buildenv = buildenv.__main__:main",
        ],
    },
)
