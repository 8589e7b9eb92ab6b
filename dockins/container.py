# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Handle to one running container of a build.

A ``Container`` exposes the runtime id, the role it plays in the build,
an exec capability with live output forwarding, and idempotent
stop/remove. Once stopped, no new process may be started in it.

The remoting container additionally carries a ``Channel``: the stdin and
stdout of the agent process that talks to the orchestrating server.
"""

from __future__ import annotations

import logging
import signal
import subprocess
import threading
from enum import Enum
from typing import IO

from dockins.build_log import LogSink
from dockins.errors import ExecError, ExecInterruptedError
from dockins.runtime import ContainerRuntime


logger = logging.getLogger(__name__)

# Seconds to wait after SIGTERM before SIGKILL when interrupting a process.
_TERMINATE_GRACE = 5

# Exit status used by podman/docker for failures of the runtime itself.
RUNTIME_ERROR_EXIT_CODE = 125


class ContainerRole(Enum):
    """The part a container plays in a build."""

    REMOTING = "remoting"
    SCM = "scm"
    BUILD = "build"


def _terminate(process: subprocess.Popen) -> None:
    """SIGTERM, wait, then SIGKILL."""
    if process.poll() is not None:
        return
    try:
        process.send_signal(signal.SIGTERM)
        try:
            process.wait(timeout=_TERMINATE_GRACE)
        except subprocess.TimeoutExpired:
            logger.warning("Process did not terminate gracefully, sending SIGKILL")
            process.kill()
            process.wait()
    except OSError as e:
        logger.warning("Failed to terminate process %s: %s", process.pid, e)


class Channel:
    """Bidirectional byte channel to the agent in the remoting container.

    The channel is opaque: bytes written to ``stdin`` reach the agent and
    its replies are read from ``stdout``. The agent's stderr is drained
    into the service log on a daemon thread for as long as it runs.
    """

    def __init__(self, process: subprocess.Popen) -> None:
        self._process = process
        self._stderr_thread: threading.Thread | None = None
        if process.stderr is not None:
            self._stderr_thread = threading.Thread(
                target=self._drain_stderr,
                name=f"agent-stderr-{process.pid}",
                daemon=True,
            )
            self._stderr_thread.start()

    def _drain_stderr(self) -> None:
        stream = self._process.stderr
        if stream is None:
            return
        try:
            for raw in stream:
                line = raw.decode(errors="replace").rstrip()
                if line:
                    logger.debug("agent: %s", line)
        except (OSError, ValueError) as e:
            # Pipe closed under us during teardown
            logger.debug("Agent stderr closed: %s", e)

    @property
    def stdin(self) -> IO[bytes] | None:
        return self._process.stdin

    @property
    def stdout(self) -> IO[bytes] | None:
        return self._process.stdout

    @property
    def is_open(self) -> bool:
        return self._process.poll() is None

    def close(self) -> None:
        """Close the agent's stdin and terminate it (idempotent)."""
        if self._process.stdin and not self._process.stdin.closed:
            try:
                self._process.stdin.close()
            except OSError:
                logger.debug("Channel stdin already closed")
        _terminate(self._process)
        if self._stderr_thread is not None:
            self._stderr_thread.join(timeout=_TERMINATE_GRACE)


class Container:
    """A live container created for a build.

    Thread Safety:
        ``exec`` may run in the build thread while ``interrupt``, ``stop``
        and ``remove`` are called from a cleanup thread.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        *,
        container_id: str,
        name: str,
        role: ContainerRole,
        image: str,
    ) -> None:
        self._runtime = runtime
        self._id = container_id
        self._name = name
        self._role = role
        self._image = image
        self._lock = threading.Lock()
        self._live = True
        self._removed = False
        self._interrupted = False
        self._processes: set[subprocess.Popen] = set()
        self.channel: Channel | None = None

    def __repr__(self) -> str:
        state = "live" if self._live else "stopped"
        return f"Container({self._name}, role={self._role.value}, {state})"

    @property
    def id(self) -> str:
        """Runtime-assigned container id."""
        return self._id

    @property
    def name(self) -> str:
        return self._name

    @property
    def role(self) -> ContainerRole:
        return self._role

    @property
    def image(self) -> str:
        return self._image

    @property
    def live(self) -> bool:
        """False once the container is stopped or interrupted."""
        with self._lock:
            return self._live and not self._interrupted

    @property
    def removed(self) -> bool:
        with self._lock:
            return self._removed

    def exec(
        self,
        command: list[str],
        *,
        env: dict[str, str] | None = None,
        workdir: str | None = None,
        sink: LogSink,
    ) -> int:
        """Run a process in the container and wait for it.

        Output (stdout and stderr merged) is forwarded to *sink* line by
        line as it is produced.

        Exit code 125 is reserved by podman and docker for failures of the
        exec itself and is always reported as ``ExecError``. A command
        that exits 125 on its own is indistinguishable from that and is
        reported the same way.

        Returns:
            The process exit code.

        Raises:
            ExecError: If the container is not live, the runtime cannot
                run the process, or the exec exits with code 125.
            ExecInterruptedError: If the process was interrupted by
                ``interrupt()``.
        """
        if not command:
            raise ExecError("Cannot exec an empty command")
        with self._lock:
            if not self._live or self._interrupted:
                raise ExecError(f"Container {self._name} is not running")

        try:
            process = self._runtime.exec_process(
                self._id, command, env=env, workdir=workdir
            )
        except OSError as e:
            raise ExecError(
                f"Cannot exec in container {self._name}: {e}"
            ) from e

        with self._lock:
            self._processes.add(process)
        try:
            if process.stdout:
                for line in process.stdout:
                    sink.write(line)
            returncode = process.wait()
        finally:
            with self._lock:
                self._processes.discard(process)
            # Unwinding (e.g. KeyboardInterrupt) must not leave it running
            _terminate(process)

        with self._lock:
            interrupted = self._interrupted
        if interrupted:
            raise ExecInterruptedError(
                f"Process in container {self._name} was interrupted"
            )
        if returncode == RUNTIME_ERROR_EXIT_CODE:
            raise ExecError(
                f"Runtime failed to exec in container {self._name} "
                f"(exit code {returncode})"
            )
        return returncode

    def interrupt(self) -> None:
        """Terminate every in-flight process and refuse new ones."""
        with self._lock:
            self._interrupted = True
            processes = list(self._processes)
        for process in processes:
            logger.info("Interrupting process %s in %s", process.pid, self._name)
            _terminate(process)

    def stop(self, *, grace_seconds: int = 10, timeout: float = 30) -> None:
        """Stop the container. No-op if already stopped.

        Raises:
            RuntimeCommandError: If the runtime fails to stop it.
        """
        with self._lock:
            if not self._live:
                return
            # No new processes from here on, even if stop fails
            self._interrupted = True
        self._runtime.stop(self._id, grace_seconds=grace_seconds, timeout=timeout)
        with self._lock:
            self._live = False

    def remove(self, *, timeout: float = 30) -> None:
        """Remove the container. No-op if already removed.

        Raises:
            RuntimeCommandError: If the runtime fails to remove it.
        """
        with self._lock:
            if self._removed:
                return
            self._interrupted = True
        if self.channel is not None:
            self.channel.close()
        self._runtime.remove(self._id, timeout=timeout)
        with self._lock:
            self._removed = True
            self._live = False
