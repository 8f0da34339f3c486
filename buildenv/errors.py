"""
Errors that can cause provisioning to fail.

There are two families here. FatalError subclasses terminate the command line
tool, each with its own return code. ProvisioningError subclasses are raised
inside the provisioner and converted into an ErrorDetail on the
ProvisioningResult, so library callers never see them raised.
"""

import dataclasses
import enum
import textwrap
from typing import Final


class FailureKind(enum.Enum):
    environment_creation_failed = "EnvironmentCreationFailed"
    activation_failed = "ActivationFailed"
    tool_install_failed = "ToolInstallFailed"
    tool_verification_failed = "ToolVerificationFailed"
    concurrent_provisioning_detected = "ConcurrentProvisioningDetected"


class Step(enum.Enum):
    lock = "lock"
    isolate = "isolate"
    activate = "activate"
    install = "install"
    verify = "verify"


RETURN_CODES: Final[dict[FailureKind, int]] = {
    FailureKind.environment_creation_failed: 10,
    FailureKind.activation_failed: 11,
    FailureKind.tool_install_failed: 12,
    FailureKind.tool_verification_failed: 13,
    FailureKind.concurrent_provisioning_detected: 14,
}


@dataclasses.dataclass(frozen=True, kw_only=True)
class ErrorDetail:
    kind: FailureKind
    step: Step
    message: str
    tool: str | None = None
    exit_code: int | None = None
    diagnostics: str = ""

    @property
    def return_code(self) -> int:
        return RETURN_CODES[self.kind]

    def __str__(self) -> str:
        where = f"during {self.step.value}"
        if self.tool is not None:
            where += f" of {self.tool!r}"
        if self.exit_code is not None:
            where += f" (exit code {self.exit_code})"

        text = f"{self.kind.value} {where}: {self.message}"
        if self.diagnostics.strip():
            text += "\n\n" + textwrap.indent(self.diagnostics.rstrip(), "    ")
        return text


class ProvisioningError(Exception):
    kind: FailureKind
    step: Step

    def __init__(
        self,
        message: str,
        *,
        tool: str | None = None,
        exit_code: int | None = None,
        diagnostics: str = "",
    ) -> None:
        super().__init__(message)
        self.message = message
        self.tool = tool
        self.exit_code = exit_code
        self.diagnostics = diagnostics

    def detail(self) -> ErrorDetail:
        return ErrorDetail(
            kind=self.kind,
            step=self.step,
            message=self.message,
            tool=self.tool,
            exit_code=self.exit_code,
            diagnostics=self.diagnostics,
        )


class EnvironmentCreationError(ProvisioningError):
    kind = FailureKind.environment_creation_failed
    step = Step.isolate


class ActivationError(ProvisioningError):
    kind = FailureKind.activation_failed
    step = Step.activate


class ToolInstallError(ProvisioningError):
    kind = FailureKind.tool_install_failed
    step = Step.install

    def __init__(self, tool: str, exit_code: int, diagnostics: str = "") -> None:
        super().__init__(
            f"installation facility exited with code {exit_code}",
            tool=tool,
            exit_code=exit_code,
            diagnostics=diagnostics,
        )


class ToolVerificationError(ProvisioningError):
    kind = FailureKind.tool_verification_failed
    step = Step.verify

    def __init__(self, tool: str, message: str, diagnostics: str = "") -> None:
        super().__init__(message, tool=tool, diagnostics=diagnostics)


class ConcurrentProvisioningError(ProvisioningError):
    kind = FailureKind.concurrent_provisioning_detected
    step = Step.lock


class FatalError(BaseException):
    """
    Raising an error of this type will cause the message to be printed to
    stderr and the process to be terminated. Within buildenv, raising this
    exception produces a better error message, and optional traceback.
    """

    return_code: int = 1


class ConfigurationError(FatalError):
    return_code = 2


class ProvisioningFailedError(FatalError):
    def __init__(self, detail: ErrorDetail) -> None:
        super().__init__(str(detail))
        self.detail = detail
        self.return_code = detail.return_code
