# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Bridge from an abstract process request to a container exec.

A request names the command, environment, working directory and output
sink. The bridge turns it into exactly one runtime ``exec``, waits for
completion and reports the exit code. Failed commands are never retried.
"""

from __future__ import annotations

import logging
import shlex
import time
from dataclasses import dataclass, field

from dockins.build_log import BuildLog
from dockins.container import Container, ContainerRole


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessRequest:
    """A process to run in a build container.

    Attributes:
        command: Command vector.
        env: Extra environment variables for the process.
        workdir: Working directory inside the container. None uses the
            build workspace.
        sink: Where process output goes. None uses the build log.
        role: Target a specific container role instead of the one the
            current phase selects.
    """

    command: list[str]
    env: dict[str, str] = field(default_factory=dict)
    workdir: str | None = None
    sink: BuildLog | None = None
    role: ContainerRole | None = None


class ProcessBridge:
    """Runs process requests inside containers."""

    def __init__(self, default_workdir: str) -> None:
        self._default_workdir = default_workdir

    def run(
        self,
        container: Container,
        request: ProcessRequest,
        listener: BuildLog,
    ) -> int:
        """Run *request* in *container* and return its exit code.

        Raises:
            ExecError: If the process cannot be invoked.
        """
        sink = request.sink or listener
        workdir = request.workdir or self._default_workdir
        listener.println(f"[{container.role.value}] $ {shlex.join(request.command)}")

        start_time = time.time()
        returncode = container.exec(
            request.command,
            env=request.env,
            workdir=workdir,
            sink=sink,
        )
        logger.info(
            "Process in %s exited with %d after %.2fs",
            container.name,
            returncode,
            time.time() - start_time,
        )
        return returncode
