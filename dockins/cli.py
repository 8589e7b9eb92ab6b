# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Dockins CLI -- multi-command entry point.

Subcommands:

* ``check`` -- verify the container runtime is installed and recent enough
* ``run``   -- run a job's checkout and build steps in ephemeral containers
"""

from __future__ import annotations

import argparse
import logging
import shutil
import sys
from collections.abc import Callable
from pathlib import Path

from dockins.build_log import BuildLog
from dockins.config import ConfigError, JobConfig, ProvisionerConfig
from dockins.errors import (
    CleanupError,
    DockinsError,
    ProvisioningError,
    RuntimeCommandError,
)
from dockins.logging import configure_logging
from dockins.node import BuildIdentity, JobIdentity, NodeManager
from dockins.process import ProcessRequest
from dockins.runtime import ContainerRuntime


logger = logging.getLogger(__name__)

# Exit code when the build environment could not be provisioned.
EXIT_PROVISIONING_FAILED = 2

# Exit code when the build was aborted (Ctrl-C).
EXIT_ABORTED = 130

# Minimum runtime versions. Podman 4 and Docker 20.10 are the first
# releases whose ``version --format`` and ``exec -w`` behave the same.
_MIN_VERSIONS: dict[str, tuple[int, ...]] = {
    "podman": (4, 0),
    "docker": (20, 10),
}

_USAGE = """\
usage: dockins <command> [args]

commands:
  check   Verify the container runtime is available
  run     Run a job in ephemeral build containers

Run 'dockins <command> --help' for command-specific help.\
"""


def _parse_version(output: str) -> tuple[int, ...]:
    """Extract a numeric version tuple from command output.

    Looks for the first token that starts with a digit and parses it as a
    dotted version string::

        5.3.1           -> (5, 3, 1)
        24.0.7-ce       -> (24, 0, 7)

    Raises:
        ValueError: If no version number is found.
    """
    for token in output.split():
        if token and token[0].isdigit():
            parts: list[int] = []
            for segment in token.split("."):
                digits = ""
                for ch in segment:
                    if ch.isdigit():
                        digits += ch
                    else:
                        break
                if digits:
                    parts.append(int(digits))
            if parts:
                return tuple(parts)
    raise ValueError(f"Cannot parse version from: {output!r}")


def _fmt_version(v: tuple[int, ...]) -> str:
    return ".".join(str(p) for p in v)


def _check_runtime(container_command: str) -> tuple[bool, str]:
    """Check the runtime is installed and meets the minimum version.

    Returns:
        ``(ok, detail)`` -- *detail* is a human-readable status line.
    """
    path = shutil.which(container_command)
    if path is None:
        return False, f"{container_command}: not found"

    try:
        raw = ContainerRuntime(container_command).version()
    except RuntimeCommandError as e:
        return False, f"{container_command}: found at {path} but {e}"

    try:
        version = _parse_version(raw)
    except ValueError:
        return False, f"{container_command}: cannot parse version from: {raw}"

    min_version = _MIN_VERSIONS.get(Path(container_command).name)
    if min_version and version < min_version:
        return False, (
            f"{container_command}: {_fmt_version(version)} "
            f"(need >= {_fmt_version(min_version)})"
        )
    return True, f"{container_command}: {_fmt_version(version)}"


def _load_provisioner_config(path: Path | None) -> ProvisionerConfig:
    if path is None:
        return ProvisionerConfig()
    return ProvisionerConfig.from_yaml(path)


# ── check subcommand ────────────────────────────────────────────────


def cmd_check(argv: list[str]) -> int:
    """Verify the configured container runtime.

    Returns:
        0 if the runtime is usable, 1 otherwise.
    """
    parser = argparse.ArgumentParser(prog="dockins check")
    parser.add_argument("--config", type=Path, help="Provisioner config YAML")
    args = parser.parse_args(argv)

    try:
        config = _load_provisioner_config(args.config)
    except ConfigError as e:
        print(f"config: {e}", file=sys.stderr)
        return 1

    ok, detail = _check_runtime(config.container_command)
    print(f"{'ok' if ok else 'FAIL'}  {detail}")
    return 0 if ok else 1


# ── run subcommand ──────────────────────────────────────────────────


def _run_steps(
    commands: list[list[str]],
    launch: Callable[[ProcessRequest], int],
    env: dict[str, str],
) -> int:
    """Run commands in order, stopping at the first non-zero exit."""
    for command in commands:
        returncode = launch(ProcessRequest(command=command, env=env))
        if returncode != 0:
            return returncode
    return 0


def run_job(
    manager: NodeManager,
    job: JobConfig,
    build_number: int,
    log: BuildLog,
) -> int:
    """Drive one build through the node lifecycle hooks.

    Returns:
        0 on success, the failing step's exit code, 1 for an exec
        or phase failure, ``EXIT_PROVISIONING_FAILED`` or ``EXIT_ABORTED``.
    """
    try:
        handle = manager.node_requested(
            JobIdentity(job.name), job.container_set, log
        )
    except ProvisioningError as e:
        log.error(f"Could not provision build environment: {e}")
        return EXIT_PROVISIONING_FAILED

    build = BuildIdentity(job.name, build_number)
    try:
        manager.build_environment_setup(handle, build, log)
    except DockinsError as e:
        log.error(str(e))
        try:
            manager.abandon(handle, log)
        except CleanupError as cleanup_error:
            log.error(str(cleanup_error))
        return EXIT_PROVISIONING_FAILED
    launcher = manager.create_launcher(build)
    env = dict(job.container_set.env)

    status = 0
    try:
        status = _run_steps(job.checkout, launcher.launch, env)
        if status == 0:
            manager.scm_checkout_completed(build)
            status = _run_steps(job.steps, launcher.launch, env)
    except ProvisioningError as e:
        log.error(f"Could not provision build environment: {e}")
        status = EXIT_PROVISIONING_FAILED
    except DockinsError as e:
        log.error(str(e))
        status = 1
    except KeyboardInterrupt:
        log.error("Build aborted")
        status = EXIT_ABORTED
    finally:
        try:
            manager.node_terminate(build)
        except CleanupError as e:
            log.error(str(e))

    logger.info("Build %s finished with status %d", build, status)
    log.println(f"Finished: {'SUCCESS' if status == 0 else 'FAILURE'}")
    return status


def cmd_run(argv: list[str]) -> int:
    """Run a job file in ephemeral containers.

    Returns:
        The build's exit status (see ``run_job``), or 1 for a config error.
    """
    parser = argparse.ArgumentParser(prog="dockins run")
    parser.add_argument(
        "--job", type=Path, required=True, help="Job definition YAML"
    )
    parser.add_argument("--config", type=Path, help="Provisioner config YAML")
    parser.add_argument(
        "--build-number", type=int, default=1, help="Build number (default: 1)"
    )
    parser.add_argument("--debug", action="store_true", help="Debug logging")
    args = parser.parse_args(argv)

    configure_logging(level=logging.DEBUG if args.debug else logging.WARNING)

    try:
        config = _load_provisioner_config(args.config)
        job = JobConfig.from_yaml(args.job)
    except ConfigError as e:
        print(f"dockins: {e}", file=sys.stderr)
        return 1

    manager = NodeManager(config)
    return run_job(manager, job, args.build_number, BuildLog(sys.stdout))


_DISPATCH = {
    "check": "cmd_check",
    "run": "cmd_run",
}


def main() -> None:
    """Entry point for ``dockins``."""
    argv = sys.argv[1:]

    if not argv or argv[0] == "--help":
        print(_USAGE)
        sys.exit(0)

    if argv[0] not in _DISPATCH:
        print(f"dockins: unknown command '{argv[0]}'", file=sys.stderr)
        print(_USAGE, file=sys.stderr)
        sys.exit(2)

    # Look up handler by name so tests can mock individual commands.
    import dockins.cli as _self

    handler = getattr(_self, _DISPATCH[argv[0]])
    sys.exit(handler(argv[1:]))
