import sys
from pathlib import Path

import pytest

import buildenv.__main__ as main_module
from buildenv.__main__ import main
from buildenv.errors import ErrorDetail, FailureKind, Step
from buildenv.provisioner import ProvisioningResult


class ArgsInterceptor:
    def __init__(self, result: ProvisioningResult) -> None:
        self.result = result
        self.call_count = 0
        self.args: tuple[object, ...] | None = None

    def __call__(self, *args: object, **kwargs: object) -> ProvisioningResult:
        self.call_count += 1
        self.args = args
        return self.result


SUCCESS = ProvisioningResult(
    success=True,
    installed_tools=frozenset({"maturin", "patchelf"}),
    versions={"maturin": "1.7.4", "patchelf": "0.17.2.1"},
)

FAILURE = ProvisioningResult(
    success=False,
    installed_tools=frozenset({"maturin"}),
    versions={"maturin": "1.7.4"},
    failure=ErrorDetail(
        kind=FailureKind.tool_install_failed,
        step=Step.install,
        message="installation facility exited with code 1",
        tool="patchelf",
        exit_code=1,
        diagnostics="ERROR: No matching distribution found for patchelf\n",
    ),
)


@pytest.fixture(autouse=True)
def in_tmp_path(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("BUILDENV_DEBUG_TRACEBACK", raising=False)
    return tmp_path


def test_no_arguments_uses_builtin_spec(monkeypatch, in_tmp_path):
    interceptor = ArgsInterceptor(SUCCESS)
    monkeypatch.setattr(main_module, "provision", interceptor)
    monkeypatch.setattr(sys, "argv", ["buildenv"])

    main()

    assert interceptor.call_count == 1
    assert interceptor.args is not None
    spec = interceptor.args[0]
    assert spec.root_path == in_tmp_path / ".env"
    assert [t.name for t in spec.tools] == ["maturin", "patchelf"]
    assert spec.reuse_existing


def test_flags(monkeypatch, in_tmp_path):
    interceptor = ArgsInterceptor(SUCCESS)
    monkeypatch.setattr(main_module, "provision", interceptor)
    monkeypatch.setattr(sys, "argv", ["buildenv", "--env-dir", "venvs/a", "--fresh", "--use-uv"])

    main()

    assert interceptor.args is not None
    spec = interceptor.args[0]
    assert spec.root_path == in_tmp_path / "venvs" / "a"
    assert not spec.reuse_existing
    assert spec.use_uv


def test_failure_exits_with_detail(monkeypatch, capfd):
    monkeypatch.setattr(main_module, "provision", ArgsInterceptor(FAILURE))
    monkeypatch.setattr(sys, "argv", ["buildenv"])

    with pytest.raises(SystemExit) as e:
        main()

    assert e.value.code == 12

    _, err = capfd.readouterr()
    assert "ToolInstallFailed during install of 'patchelf' (exit code 1)" in err
    assert "No matching distribution found for patchelf" in err
    assert "Traceback" not in err


def test_configuration_error(monkeypatch, capfd):
    interceptor = ArgsInterceptor(SUCCESS)
    monkeypatch.setattr(main_module, "provision", interceptor)
    monkeypatch.setattr(sys, "argv", ["buildenv", "--config-file", "missing.toml"])

    with pytest.raises(SystemExit) as e:
        main()

    assert e.value.code == 2
    assert interceptor.call_count == 0

    _, err = capfd.readouterr()
    assert "missing.toml does not exist" in err


def test_debug_traceback(monkeypatch, capfd):
    monkeypatch.setattr(main_module, "provision", ArgsInterceptor(FAILURE))
    monkeypatch.setattr(sys, "argv", ["buildenv", "--debug-traceback"])

    with pytest.raises(SystemExit):
        main()

    _, err = capfd.readouterr()
    assert "Traceback" in err


def test_config_file_is_read(monkeypatch, in_tmp_path):
    Path("pyproject.toml").write_text(
        '[tool.buildenv]\ntools = ["maturin==1.7.4"]\n', encoding="utf-8"
    )
    interceptor = ArgsInterceptor(SUCCESS)
    monkeypatch.setattr(main_module, "provision", interceptor)
    monkeypatch.setattr(sys, "argv", ["buildenv"])

    main()

    assert interceptor.args is not None
    assert [t.requirement for t in interceptor.args[0].tools] == ["maturin==1.7.4"]
