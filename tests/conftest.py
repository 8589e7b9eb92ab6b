# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Shared pytest fixtures: an in-memory container runtime and build log."""

import io
import signal
import threading
from collections.abc import Iterator

import pytest

from dockins.build_log import BuildLog
from dockins.errors import RuntimeCommandError
from dockins.logging import SecretFilter


class _BlockingOutput:
    """Process output that produces nothing until the process is signalled."""

    def __init__(self, started: threading.Event, released: threading.Event) -> None:
        self._started = started
        self._released = released

    def __iter__(self) -> "_BlockingOutput":
        return self

    def __next__(self) -> str:
        self._started.set()
        self._released.wait(timeout=10)
        raise StopIteration


class FakeProcess:
    """Stand-in for ``subprocess.Popen`` of a container exec.

    A finished process yields its output lines and exits with
    *returncode*. A *running* process (agent) stays alive until signalled.
    A *blocking* process sets *started* once its output is being read and
    then blocks until signalled, like a long build step.
    """

    def __init__(
        self,
        lines: list[str] | None = None,
        returncode: int = 0,
        running: bool = False,
        blocking: bool = False,
        started: threading.Event | None = None,
        stderr: bytes = b"",
    ) -> None:
        self.pid = 4242
        self.stdin = io.BytesIO()
        self.stderr = io.BytesIO(stderr)
        self.signals: list[int] = []
        self.released = threading.Event()
        self._final = returncode
        self._running = running
        self.returncode: int | None = None
        if blocking:
            self.stdout = _BlockingOutput(
                started or threading.Event(), self.released
            )
        else:
            self.stdout = io.StringIO("".join(lines or []))

    def poll(self) -> int | None:
        return self.returncode

    def wait(self, timeout: float | None = None) -> int:
        if self.returncode is None:
            self.returncode = self._final
        return self.returncode

    def send_signal(self, sig: int) -> None:
        self.signals.append(sig)
        if self.returncode is None:
            self.returncode = -sig
        self.released.set()

    def kill(self) -> None:
        self.send_signal(signal.SIGKILL)


class FakeRuntime:
    """In-memory ``ContainerRuntime`` recording every invocation.

    Attributes:
        images: Image references present locally.
        pull_results: Exit code per image for ``pull`` (default 0). A
            successful pull makes the image present.
        exec_results: Queue of ``(lines, returncode)`` for non-interactive
            execs; empty queue means no output and exit 0.
        fail_start: Container names whose ``run`` fails.
        fail_remove: Container ids whose ``rm`` fails.
        agent_exit: Exit code of the agent process, or None if it keeps
            running.
        block_exec: Non-interactive execs block until signalled.
        exec_started: Set once a blocking exec's output is being read.
        calls: ``(operation, target)`` per invocation, in order.
    """

    command = "podman"

    def __init__(self) -> None:
        self.images: set[str] = set()
        self.pull_results: dict[str, int] = {}
        self.build_result = 0
        self.exec_results: list[tuple[list[str], int]] = []
        self.fail_start: set[str] = set()
        self.fail_remove: set[str] = set()
        self.agent_exit: int | None = None
        self.block_exec = False
        self.exec_started = threading.Event()
        self.calls: list[tuple[str, str]] = []
        self.run_options: dict[str, list[str]] = {}
        self.exec_calls: list[dict] = []
        self.processes: list[FakeProcess] = []

    def ops(self, operation: str) -> list[str]:
        """Targets of every call to *operation*, in order."""
        return [target for op, target in self.calls if op == operation]

    def inspect_image(self, image: str) -> str | None:
        self.calls.append(("inspect", image))
        return f"sha256:{abs(hash(image)):x}" if image in self.images else None

    def pull(self, image: str, sink) -> int:
        self.calls.append(("pull", image))
        status = self.pull_results.get(image, 0)
        sink.write(f"Pulling {image}\n")
        if status == 0:
            self.images.add(image)
        return status

    def build(self, tag, dockerfile, context_dir, sink) -> int:
        self.calls.append(("build", tag))
        if self.build_result == 0:
            self.images.add(tag)
        return self.build_result

    def run_detached(self, name, image, *, options=None, command=None, timeout=None):
        self.calls.append(("run", name))
        if name in self.fail_start:
            raise RuntimeCommandError(
                f"Failed to start container {name}: boom",
                command=["podman", "run", "--name", name, image],
                returncode=125,
                stderr="boom",
            )
        self.run_options[name] = list(options or [])
        return f"id-{name}"

    def exec_process(
        self, container_id, command, *, env=None, workdir=None, interactive=False
    ):
        self.calls.append(("exec", container_id))
        self.exec_calls.append(
            {
                "container_id": container_id,
                "command": list(command),
                "env": dict(env or {}),
                "workdir": workdir,
                "interactive": interactive,
            }
        )
        if interactive:
            process = FakeProcess(running=True)
            if self.agent_exit is not None:
                process.returncode = self.agent_exit
        else:
            lines, returncode = (
                self.exec_results.pop(0) if self.exec_results else ([], 0)
            )
            process = FakeProcess(
                lines,
                returncode,
                blocking=self.block_exec,
                started=self.exec_started,
            )
        self.processes.append(process)
        return process

    def stop(self, container_id, *, grace_seconds, timeout) -> None:
        self.calls.append(("stop", container_id))

    def remove(self, container_id, *, timeout) -> None:
        self.calls.append(("rm", container_id))
        if container_id in self.fail_remove:
            raise RuntimeCommandError(
                f"rm {container_id} failed: device busy",
                command=["podman", "rm", "-f", "-v", container_id],
                returncode=1,
                stderr="device busy",
            )


@pytest.fixture
def fake_runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def make_process():
    """Factory for ``FakeProcess`` instances."""
    return FakeProcess


@pytest.fixture
def log_stream() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def build_log(log_stream: io.StringIO) -> BuildLog:
    return BuildLog(log_stream)


@pytest.fixture(autouse=True)
def _clear_secrets() -> Iterator[None]:
    """Keep registered secrets from leaking between tests."""
    SecretFilter.clear_secrets()
    yield
    SecretFilter.clear_secrets()
