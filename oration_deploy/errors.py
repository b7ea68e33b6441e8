"""Error taxonomy for release building and host activation."""

from __future__ import annotations

from collections.abc import Sequence


class DeployError(Exception):
    """Base class for every release or activation failure.

    Parameters
    ----------
    message:
        Human readable summary.
    step:
        Name of the workflow step that failed.
    detail:
        Diagnostic text of the underlying tool, if any.
    """

    def __init__(self, message: str, *, step: str = "", detail: str = "") -> None:
        super().__init__(message)
        self.step = step
        self.detail = detail


class BuildError(DeployError):
    """Raised when compiling the backend or bundling the frontend fails."""


class ConfigError(DeployError):
    """Raised when configuration templating or loading fails."""


class ProvisionError(DeployError):
    """Raised when a host convergence step fails."""

    def __init__(
        self,
        message: str,
        *,
        step: str = "",
        detail: str = "",
        host: str = "",
    ) -> None:
        super().__init__(message, step=step, detail=detail)
        self.host = host


class CommandError(DeployError):
    """Raised when an external tool returns a non-zero exit code."""

    def __init__(self, argv: Sequence[str], returncode: int, stderr: str) -> None:
        self.argv = list(argv)
        self.returncode = returncode
        super().__init__(
            f"{' '.join(self.argv)} failed (rc={returncode}): {stderr.strip()}",
            detail=stderr.strip(),
        )


class UnsafePermissionError(DeployError, PermissionError):
    """Raised before writing an executable or secret with an unsafe mode."""

    def __init__(self, path: str, mode: int) -> None:
        self.path = path
        self.mode = mode
        DeployError.__init__(
            self,
            f"Refusing to place {path} with mode {mode:04o}: "
            "group write or any access for others is not allowed",
            step="permissions",
        )
