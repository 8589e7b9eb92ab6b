# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Container runtime invocations through the podman/docker CLI.

Every interaction with the container engine goes through this module:
image inspect/pull/build, detached container start, exec, stop and
remove. The runtime daemon is the only shared resource between builds;
each call here targets a distinct container name or id, so no
in-process locking is needed.
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

from dockins.build_log import LogSink
from dockins.errors import RuntimeCommandError


logger = logging.getLogger(__name__)

# Substrings in stderr that mean the container is already gone.
# docker: "No such container", podman: "no container with name or ID"
_MISSING_CONTAINER_MARKERS = ("no such container", "no container with name or id")

# Timeout for short metadata queries (inspect, version).
_QUERY_TIMEOUT = 30


def _redact_command(cmd: list[str]) -> list[str]:
    """Replace values of ``-e NAME=VALUE`` arguments with ``***``."""
    redacted: list[str] = []
    skip_next = False
    for i, arg in enumerate(cmd):
        if skip_next:
            skip_next = False
            continue
        if arg == "-e" and i + 1 < len(cmd):
            next_arg = cmd[i + 1]
            if "=" in next_arg:
                var_name = next_arg.split("=")[0]
                redacted.extend(["-e", f"{var_name}=***"])
                skip_next = True
                continue
        redacted.append(arg)
    return redacted


def _is_missing_container(stderr: str) -> bool:
    lowered = stderr.lower()
    return any(marker in lowered for marker in _MISSING_CONTAINER_MARKERS)


class ContainerRuntime:
    """Thin wrapper around a container engine CLI.

    Thread Safety: Stateless apart from the command name; safe to share
    between builds.
    """

    def __init__(self, container_command: str = "podman") -> None:
        self._cmd = container_command

    @property
    def command(self) -> str:
        """Container runtime command (podman or docker)."""
        return self._cmd

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    def inspect_image(self, image: str) -> str | None:
        """Return the local image id, or None if inspect fails.

        A failure may be a daemon error or a missing image; the two are
        not distinguished here.
        """
        cmd = [self._cmd, "image", "inspect", "-f", "{{.Id}}", image]
        logger.debug("Inspecting image: %s", image)
        try:
            result = subprocess.run(
                cmd,
                check=True,
                capture_output=True,
                text=True,
                timeout=_QUERY_TIMEOUT,
            )
        except subprocess.CalledProcessError as e:
            logger.debug(
                "Image inspect failed for %s: %s",
                image,
                (e.stderr or "").strip(),
            )
            return None
        except (subprocess.TimeoutExpired, OSError) as e:
            logger.warning("Image inspect for %s did not complete: %s", image, e)
            return None
        return result.stdout.strip() or None

    def pull(self, image: str, sink: LogSink) -> int:
        """Pull an image, streaming progress to *sink*.

        Returns:
            Exit code of the pull.

        Raises:
            OSError: If the runtime command cannot be started.
        """
        return self._stream([self._cmd, "pull", image], sink)

    def build(
        self, tag: str, dockerfile: Path, context_dir: Path, sink: LogSink
    ) -> int:
        """Build an image from a Dockerfile, streaming output to *sink*.

        Returns:
            Exit code of the build.

        Raises:
            OSError: If the runtime command cannot be started.
        """
        cmd = [
            self._cmd,
            "build",
            "-t",
            tag,
            "-f",
            str(dockerfile),
            str(context_dir),
        ]
        return self._stream(cmd, sink)

    # ------------------------------------------------------------------
    # Containers
    # ------------------------------------------------------------------

    def run_detached(
        self,
        name: str,
        image: str,
        *,
        options: list[str] | None = None,
        command: list[str] | None = None,
        timeout: float | None = None,
    ) -> str:
        """Start a detached container and return its id.

        Args:
            name: Container name (must be unique on the host).
            image: Resolved image reference.
            options: Extra ``run`` options placed before the image.
            command: Command placed after the image.
            timeout: Seconds to wait for the runtime to report the start.

        Raises:
            RuntimeCommandError: If the container could not be started.
        """
        cmd = [self._cmd, "run", "-d", "--name", name]
        cmd.extend(options or [])
        cmd.append(image)
        cmd.extend(command or [])

        redacted = _redact_command(cmd)
        logger.debug("Starting container: %s", " ".join(redacted))
        try:
            result = subprocess.run(
                cmd,
                check=True,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or "").strip()
            raise RuntimeCommandError(
                f"Failed to start container {name}: {stderr or e}",
                command=redacted,
                returncode=e.returncode,
                stderr=stderr,
            ) from e
        except subprocess.TimeoutExpired as e:
            raise RuntimeCommandError(
                f"Timed out starting container {name} after {timeout}s",
                command=redacted,
            ) from e
        except OSError as e:
            raise RuntimeCommandError(
                f"Cannot run {self._cmd}: {e}", command=redacted
            ) from e

        # Pull progress may precede the id; the id is the last line
        lines = result.stdout.strip().splitlines()
        if not lines:
            raise RuntimeCommandError(
                f"Runtime returned no id for container {name}",
                command=redacted,
                returncode=0,
            )
        container_id = lines[-1].strip()
        logger.debug("Container %s started: %s", name, container_id)
        return container_id

    def exec_process(
        self,
        container_id: str,
        command: list[str],
        *,
        env: dict[str, str] | None = None,
        workdir: str | None = None,
        interactive: bool = False,
    ) -> subprocess.Popen:
        """Start a process inside a running container.

        Non-interactive processes are text-mode with stderr merged into
        stdout. Interactive processes (control channels) are binary with
        stdin and stdout pipes and a separate stderr pipe.

        Raises:
            OSError: If the runtime command cannot be started.
        """
        cmd = [self._cmd, "exec"]
        if interactive:
            cmd.append("-i")
        if workdir:
            cmd.extend(["-w", workdir])
        for name, value in (env or {}).items():
            cmd.extend(["-e", f"{name}={value}"])
        cmd.append(container_id)
        cmd.extend(command)

        logger.debug("Exec: %s", " ".join(_redact_command(cmd)))
        if interactive:
            return subprocess.Popen(
                cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        return subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
        )

    def stop(
        self, container_id: str, *, grace_seconds: int, timeout: float
    ) -> None:
        """Stop a container. Already-absent containers are a no-op.

        Raises:
            RuntimeCommandError: If stop fails or exceeds *timeout*.
        """
        self._lifecycle(
            [self._cmd, "stop", "-t", str(grace_seconds), container_id],
            container_id,
            timeout,
        )

    def remove(self, container_id: str, *, timeout: float) -> None:
        """Force-remove a container and its anonymous volumes (idempotent).

        Raises:
            RuntimeCommandError: If removal fails or exceeds *timeout*.
        """
        self._lifecycle(
            [self._cmd, "rm", "-f", "-v", container_id],
            container_id,
            timeout,
        )

    def version(self) -> str:
        """Return the client version string reported by the runtime.

        Raises:
            RuntimeCommandError: If the version cannot be queried.
        """
        cmd = [self._cmd, "version", "--format", "{{.Client.Version}}"]
        try:
            result = subprocess.run(
                cmd,
                check=True,
                capture_output=True,
                text=True,
                timeout=_QUERY_TIMEOUT,
            )
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or "").strip()
            raise RuntimeCommandError(
                f"{self._cmd} version failed: {stderr or e}",
                command=cmd,
                returncode=e.returncode,
                stderr=stderr,
            ) from e
        except (subprocess.TimeoutExpired, OSError) as e:
            raise RuntimeCommandError(
                f"{self._cmd} version failed: {e}", command=cmd
            ) from e
        return result.stdout.strip()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _lifecycle(
        self, cmd: list[str], container_id: str, timeout: float
    ) -> None:
        """Run a stop/rm command, treating a missing container as success."""
        try:
            subprocess.run(
                cmd,
                check=True,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or "").strip()
            if _is_missing_container(stderr):
                logger.debug("Container already gone: %s", container_id)
                return
            raise RuntimeCommandError(
                f"{cmd[1]} {container_id} failed: {stderr or e}",
                command=cmd,
                returncode=e.returncode,
                stderr=stderr,
            ) from e
        except subprocess.TimeoutExpired as e:
            raise RuntimeCommandError(
                f"{cmd[1]} {container_id} timed out after {timeout}s",
                command=cmd,
            ) from e
        except OSError as e:
            raise RuntimeCommandError(
                f"Cannot run {self._cmd}: {e}", command=cmd
            ) from e
        logger.debug("%s %s: done", cmd[1], container_id)

    @staticmethod
    def _stream(cmd: list[str], sink: LogSink) -> int:
        """Run *cmd* forwarding merged stdout/stderr to *sink* line by line."""
        logger.debug("Running: %s", " ".join(cmd))
        process = subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
        )
        completed = False
        try:
            if process.stdout:
                for line in process.stdout:
                    sink.write(line)
            completed = True
        finally:
            if not completed:
                process.kill()
                process.wait()
        return process.wait()
