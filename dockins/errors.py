# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Exception hierarchy for build environment provisioning.

Provisioning failures (image resolution, container start) abort the
operation that needed the container and always run cleanup first.
Execution failures are reported per build step. A non-zero exit code of
a build command is a normal result and is never raised.
"""

from __future__ import annotations


class DockinsError(Exception):
    """Base exception for all provisioning and execution errors."""


class RuntimeCommandError(DockinsError):
    """Raised when a container runtime invocation fails.

    Attributes:
        command: The (redacted) command line that failed.
        returncode: Exit status, or None if the command never completed.
        stderr: Captured error output.
    """

    def __init__(
        self,
        message: str,
        *,
        command: list[str],
        returncode: int | None = None,
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.command = command
        self.returncode = returncode
        self.stderr = stderr


class ProvisioningError(DockinsError):
    """Raised when a container could not be started for a build."""


class ResolutionError(ProvisioningError):
    """Raised when an image cannot be made available locally."""


class ExecError(DockinsError):
    """Raised when a process cannot be invoked inside a container.

    Distinct from a process that ran and exited non-zero.
    """


class ExecInterruptedError(ExecError):
    """Raised when an in-flight process was interrupted by an abort."""


class PhaseTransitionError(DockinsError):
    """Raised when an operation would move a build backwards in its phases."""


class CleanupError(DockinsError):
    """Raised after teardown when one or more containers failed to go away.

    The provisioner is already terminated when this is raised.

    Attributes:
        failures: ``(container name, error message)`` per failed container.
    """

    def __init__(self, failures: list[tuple[str, str]]) -> None:
        self.failures = list(failures)
        names = ", ".join(name for name, _ in self.failures)
        super().__init__(
            f"Failed to remove {len(self.failures)} container(s): {names}"
        )
