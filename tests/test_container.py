# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Tests for dockins/container.py -- container handles and exec."""

import signal
from unittest.mock import MagicMock

import pytest

from dockins.container import (
    RUNTIME_ERROR_EXIT_CODE,
    Channel,
    Container,
    ContainerRole,
)
from dockins.errors import ExecError, ExecInterruptedError, RuntimeCommandError
from dockins.runtime import ContainerRuntime


def _container(runtime, role: ContainerRole = ContainerRole.BUILD) -> Container:
    return Container(
        runtime,
        container_id="abc123",
        name="dockins-app-t0k3n-build",
        role=role,
        image="build-env",
    )


class TestExec:
    """Tests for Container.exec."""

    def test_streams_output_and_returns_code(self, make_process) -> None:
        """Output lines reach the sink; a non-zero exit is returned."""
        runtime = MagicMock(spec=ContainerRuntime)
        runtime.exec_process.return_value = make_process(
            ["compiling\n", "FAILED\n"], returncode=1
        )
        sink = MagicMock()

        status = _container(runtime).exec(
            ["make"], env={"CI": "true"}, workdir="/workspace", sink=sink
        )

        assert status == 1
        runtime.exec_process.assert_called_once_with(
            "abc123", ["make"], env={"CI": "true"}, workdir="/workspace"
        )
        assert [c.args[0] for c in sink.write.call_args_list] == [
            "compiling\n",
            "FAILED\n",
        ]

    def test_empty_command_raises(self) -> None:
        with pytest.raises(ExecError, match="empty"):
            _container(MagicMock(spec=ContainerRuntime)).exec([], sink=MagicMock())

    def test_stopped_container_raises(self) -> None:
        """No process may start after stop."""
        runtime = MagicMock(spec=ContainerRuntime)
        container = _container(runtime)
        container.stop()

        with pytest.raises(ExecError, match="not running"):
            container.exec(["true"], sink=MagicMock())
        runtime.exec_process.assert_not_called()

    def test_runtime_unavailable_raises(self) -> None:
        runtime = MagicMock(spec=ContainerRuntime)
        runtime.exec_process.side_effect = FileNotFoundError("podman")

        with pytest.raises(ExecError, match="Cannot exec"):
            _container(runtime).exec(["true"], sink=MagicMock())

    def test_runtime_error_exit_code_raises(self, make_process) -> None:
        """Exit 125 is the runtime failing, not the command."""
        runtime = MagicMock(spec=ContainerRuntime)
        runtime.exec_process.return_value = make_process(
            returncode=RUNTIME_ERROR_EXIT_CODE
        )

        with pytest.raises(ExecError, match="125"):
            _container(runtime).exec(["true"], sink=MagicMock())

    def test_interrupt_during_exec(self, make_process) -> None:
        """Interrupting terminates the process and raises."""
        runtime = MagicMock(spec=ContainerRuntime)
        process = make_process(["line\n"], returncode=0)
        runtime.exec_process.return_value = process
        container = _container(runtime)
        sink = MagicMock()
        sink.write.side_effect = lambda text: container.interrupt()

        with pytest.raises(ExecInterruptedError):
            container.exec(["sleep", "100"], sink=sink)

        assert process.signals == [signal.SIGTERM]
        assert not container.live


class TestStopRemove:
    """Tests for Container.stop and Container.remove."""

    def test_stop_idempotent(self) -> None:
        runtime = MagicMock(spec=ContainerRuntime)
        container = _container(runtime)

        container.stop(grace_seconds=3, timeout=20)
        container.stop(grace_seconds=3, timeout=20)

        runtime.stop.assert_called_once_with("abc123", grace_seconds=3, timeout=20)
        assert not container.live

    def test_remove_idempotent(self) -> None:
        runtime = MagicMock(spec=ContainerRuntime)
        container = _container(runtime)

        container.remove(timeout=20)
        container.remove(timeout=20)

        runtime.remove.assert_called_once_with("abc123", timeout=20)
        assert container.removed

    def test_failed_remove_can_retry(self) -> None:
        runtime = MagicMock(spec=ContainerRuntime)
        runtime.remove.side_effect = [
            RuntimeCommandError("busy", command=["podman", "rm"]),
            None,
        ]
        container = _container(runtime)

        with pytest.raises(RuntimeCommandError):
            container.remove()
        assert not container.removed

        container.remove()
        assert container.removed

    def test_failed_stop_refuses_exec(self) -> None:
        """A container whose stop failed accepts no new processes."""
        runtime = MagicMock(spec=ContainerRuntime)
        runtime.stop.side_effect = RuntimeCommandError("x", command=["podman"])
        container = _container(runtime)

        with pytest.raises(RuntimeCommandError):
            container.stop()

        with pytest.raises(ExecError):
            container.exec(["true"], sink=MagicMock())

    def test_remove_closes_channel(self, make_process) -> None:
        runtime = MagicMock(spec=ContainerRuntime)
        agent = make_process(running=True)
        container = _container(runtime, ContainerRole.REMOTING)
        container.channel = Channel(agent)

        container.remove()

        assert agent.stdin.closed
        assert agent.signals == [signal.SIGTERM]
        assert not container.channel.is_open


class TestChannel:
    """Tests for Channel."""

    def test_exposes_agent_stdio(self, make_process) -> None:
        agent = make_process(running=True)
        channel = Channel(agent)

        assert channel.stdin is agent.stdin
        assert channel.stdout is agent.stdout
        assert channel.is_open

    def test_close_idempotent(self, make_process) -> None:
        agent = make_process(running=True)
        channel = Channel(agent)

        channel.close()
        channel.close()

        assert agent.signals == [signal.SIGTERM]
        assert not channel.is_open

    def test_agent_stderr_drained(self, make_process, caplog) -> None:
        """Agent stderr is read to the end so the agent never blocks on it."""
        noise = b"x" * 300_000 + b"\nagent ready\n"
        agent = make_process(running=True, stderr=noise)

        with caplog.at_level("DEBUG", logger="dockins.container"):
            channel = Channel(agent)
            channel.close()

        assert agent.stderr.tell() == len(noise)
        assert "agent: agent ready" in caplog.text
