# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Container provisioning and execution orchestrator for one build.

The provisioner decides which containers a build needs, starts them in
dependency order and routes build processes to the right one::

    IDLE -> REMOTING_UP -> AWAITING_BUILD_START -> SCM_PHASE
         -> BUILD_PHASE -> CLEANING -> TERMINATED

1. ``launch_remoting_container`` starts the agent container and opens
   the control channel. It owns the build workspace volume.
2. ``launch_scm_container`` starts the checkout container. Checkout
   commands run there.
3. ``on_checkout_completed`` switches process routing to the build
   container set, which ``launch_build_containers`` creates lazily. The
   SCM container stays up until cleanup.
4. ``clean`` stops and removes every container ever created, whatever
   state the build is in.

Any failure to provision a container runs ``clean`` before the error
reaches the caller, so no partial environment is left running. A build
command exiting non-zero is a normal result, not an error.
"""

from __future__ import annotations

import logging
import re
import threading
from enum import Enum

from dockins.build_log import BuildLog
from dockins.config import ProvisionerConfig
from dockins.container import Channel, Container, ContainerRole
from dockins.context import ContainersContext, Phase
from dockins.definitions import ContainerDefinition, ContainerSetDefinition
from dockins.errors import (
    CleanupError,
    DockinsError,
    ExecError,
    PhaseTransitionError,
    ProvisioningError,
    RuntimeCommandError,
)
from dockins.image import ImageResolver
from dockins.process import ProcessBridge, ProcessRequest
from dockins.runtime import ContainerRuntime


logger = logging.getLogger(__name__)

_UNSAFE_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_.-]+")

LABEL_JOB = "dockins.job"
LABEL_ROLE = "dockins.role"


class ProvisionerState(Enum):
    """Lifecycle state of a provisioner."""

    IDLE = "idle"
    REMOTING_UP = "remoting-up"
    AWAITING_BUILD_START = "awaiting-build-start"
    SCM_PHASE = "scm-phase"
    BUILD_PHASE = "build-phase"
    CLEANING = "cleaning"
    TERMINATED = "terminated"


_PRE_SCM_STATES = (
    ProvisionerState.REMOTING_UP,
    ProvisionerState.AWAITING_BUILD_START,
)
_ENDING_STATES = (ProvisionerState.CLEANING, ProvisionerState.TERMINATED)


def _safe_name(value: str) -> str:
    return _UNSAFE_NAME_CHARS.sub("-", value).strip("-.") or "job"


class ContainerProvisioner:
    """Provisions and tears down the containers of a single build.

    Callers invoke methods sequentially from the build thread. The one
    exception is ``clean``, which may be called from another thread to
    abort the build; it interrupts any process still running.
    """

    def __init__(
        self,
        context: ContainersContext,
        container_set: ContainerSetDefinition,
        config: ProvisionerConfig,
        *,
        runtime: ContainerRuntime | None = None,
        resolver: ImageResolver | None = None,
        bridge: ProcessBridge | None = None,
    ) -> None:
        self._context = context
        self._container_set = container_set
        self._config = config
        self._runtime = runtime or ContainerRuntime(config.container_command)
        self._resolver = resolver or ImageResolver(self._runtime)
        self._bridge = bridge or ProcessBridge(config.workspace)

        # Guards _state and every context write
        self._lock = threading.Lock()
        self._clean_lock = threading.Lock()
        self._state = ProvisionerState.IDLE

    @property
    def context(self) -> ContainersContext:
        return self._context

    @property
    def state(self) -> ProvisionerState:
        with self._lock:
            return self._state

    # ------------------------------------------------------------------
    # Phase transitions
    # ------------------------------------------------------------------

    def launch_remoting_container(self, listener: BuildLog) -> Container:
        """Start the agent container and open the control channel.

        Returns:
            The remoting container, with ``channel`` set.

        Raises:
            ProvisioningError: If the container or channel could not be
                started. Cleanup has already run.
            PhaseTransitionError: If called more than once.
        """
        with self._lock:
            if self._state is not ProvisionerState.IDLE:
                raise PhaseTransitionError(
                    f"Remoting container already launched "
                    f"(state {self._state.value})"
                )

        remoting = self._config.remoting
        listener.println(
            f"Provisioning build environment for {self._context.job_name}"
        )
        try:
            container = self._start_container(
                ContainerRole.REMOTING,
                remoting.definition,
                name=self._container_name("remoting"),
                options=[
                    "-i",
                    "--entrypoint",
                    self._config.keepalive_entrypoint,
                    "-v",
                    self._config.workspace,
                    "-w",
                    self._config.workspace,
                ],
                listener=listener,
            )
            container.channel = self._open_channel(
                container, list(remoting.agent_command)
            )
        except ProvisioningError as e:
            self._fail(e, listener)
            raise

        with self._lock:
            self._ensure_not_ending()
            self._state = ProvisionerState.REMOTING_UP
            self._context.advance(Phase.AWAITING_SCM)
        logger.info(
            "Remoting container %s up for %s", container.name, self._context.token
        )
        return container

    def attach_build(self, build_id: str) -> None:
        """Record that the build has started on this node.

        Raises:
            PhaseTransitionError: If the remoting container is not up or
                a build is already attached.
        """
        with self._lock:
            if self._state is not ProvisionerState.REMOTING_UP:
                raise PhaseTransitionError(
                    f"Cannot attach build {build_id} in state {self._state.value}"
                )
            self._context.build_id = build_id
            self._state = ProvisionerState.AWAITING_BUILD_START
        logger.info("Build %s attached to %s", build_id, self._context.token)

    def launch_scm_container(self, listener: BuildLog) -> Container:
        """Start the SCM checkout container.

        Calling again during the SCM phase returns the existing container.

        Raises:
            ProvisioningError: If the container could not be started.
                Cleanup has already run.
            PhaseTransitionError: If the build is past checkout or the
                remoting container is not up.
        """
        with self._lock:
            state = self._state
        if state is ProvisionerState.SCM_PHASE:
            existing = self._context.get(ContainerRole.SCM)
            if existing is not None:
                return existing
        if state not in _PRE_SCM_STATES:
            raise PhaseTransitionError(
                f"Cannot launch SCM container in state {state.value}"
            )

        try:
            container = self._start_container(
                ContainerRole.SCM,
                self._config.scm,
                name=self._container_name("scm"),
                options=self._exec_container_options(env={}),
                listener=listener,
            )
        except ProvisioningError as e:
            self._fail(e, listener)
            raise

        with self._lock:
            self._ensure_not_ending()
            if self._state in _PRE_SCM_STATES:
                self._state = ProvisionerState.SCM_PHASE
                self._context.advance(Phase.SCM_RUNNING)
        return container

    def on_checkout_completed(self, listener: BuildLog) -> None:
        """Switch process routing from the SCM container to the build set.

        Duplicate events are ignored, as are events after cleanup started.

        Raises:
            PhaseTransitionError: If no remoting container was launched.
        """
        with self._lock:
            state = self._state
            if state is ProvisionerState.IDLE:
                raise PhaseTransitionError(
                    "Checkout completed before the node was provisioned"
                )
            if state is ProvisionerState.BUILD_PHASE:
                logger.debug("Duplicate checkout-completed event ignored")
                return
            if state in _ENDING_STATES:
                logger.info(
                    "Checkout completed after cleanup started for %s; ignoring",
                    self._context.token,
                )
                return
            self._state = ProvisionerState.BUILD_PHASE
            self._context.advance(Phase.BUILD_RUNNING)
        listener.println("SCM checkout completed, switching to build containers")

    def launch_build_containers(self, listener: BuildLog) -> Container:
        """Create the job's build container set, once.

        Returns:
            The main build container.

        Raises:
            ProvisioningError: If a container could not be started or
                the set was created before and is no longer running.
                Cleanup has already run.
            PhaseTransitionError: If checkout has not completed.
        """
        with self._lock:
            state = self._state
        if state is not ProvisionerState.BUILD_PHASE:
            raise PhaseTransitionError(
                f"Cannot launch build containers in state {state.value}"
            )

        existing = self._context.get(ContainerRole.BUILD)
        if existing is not None:
            return existing
        if self._context.by_role(ContainerRole.BUILD):
            error = ProvisioningError("Build containers are no longer running")
            self._fail(error, listener)
            raise error

        env = self._container_set.env
        try:
            main = self._start_container(
                ContainerRole.BUILD,
                self._container_set.build,
                name=self._container_name("build"),
                options=self._exec_container_options(env=env),
                listener=listener,
            )
            for side_name, definition in self._container_set.side_containers.items():
                self._start_container(
                    ContainerRole.BUILD,
                    definition,
                    name=self._container_name(f"build-{_safe_name(side_name)}"),
                    options=self._side_container_options(env=env),
                    listener=listener,
                )
        except ProvisioningError as e:
            self._fail(e, listener)
            raise
        return main

    # ------------------------------------------------------------------
    # Process execution
    # ------------------------------------------------------------------

    def launch_build_process(
        self, request: ProcessRequest, listener: BuildLog
    ) -> int:
        """Run a process in the container the current phase selects.

        SCM phase targets the SCM container; build phase targets the main
        build container, creating the build set on first use.

        Returns:
            The process exit code.

        Raises:
            ExecError: If no suitable container is live or the process
                cannot be invoked.
            ProvisioningError: If the build set had to be created and
                failed.
        """
        with self._lock:
            state = self._state

        container: Container | None = None
        if state in _ENDING_STATES:
            container = None
        elif request.role is not None:
            container = self._context.get(request.role)
        elif state is ProvisionerState.SCM_PHASE:
            container = self._context.get(ContainerRole.SCM)
        elif state is ProvisionerState.BUILD_PHASE:
            if self._context.by_role(ContainerRole.BUILD):
                container = self._context.get(ContainerRole.BUILD)
            else:
                container = self.launch_build_containers(listener)

        if container is None:
            raise ExecError(
                f"No running container for '{' '.join(request.command)}' "
                f"(state {state.value})"
            )
        return self._bridge.run(container, request, listener)

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def clean(self, listener: BuildLog) -> None:
        """Stop and remove every container created for this build.

        Continues past individual failures and always ends in
        ``TERMINATED``. Calling again afterwards does nothing.

        Raises:
            CleanupError: If one or more containers could not be removed.
        """
        with self._clean_lock:
            with self._lock:
                if self._state is ProvisionerState.TERMINATED:
                    return
                self._state = ProvisionerState.CLEANING
                containers = self._context.containers

            failures: list[tuple[str, str]] = []
            if containers:
                listener.println(f"Cleaning up {len(containers)} container(s)")

            # Unblock running processes before stopping anything
            for container in containers:
                container.interrupt()

            # Reverse creation order: the remoting container owns the
            # workspace volume the others use
            for container in reversed(containers):
                try:
                    container.stop(
                        grace_seconds=self._config.stop_grace_period,
                        timeout=self._config.cleanup_timeout,
                    )
                except DockinsError as e:
                    logger.warning("Failed to stop %s: %s", container.name, e)
                try:
                    container.remove(timeout=self._config.cleanup_timeout)
                    logger.info("Removed container %s", container.name)
                except DockinsError as e:
                    logger.error("Failed to remove %s: %s", container.name, e)
                    listener.error(f"Failed to remove container {container.name}: {e}")
                    failures.append((container.name, str(e)))

            with self._lock:
                self._state = ProvisionerState.TERMINATED
                self._context.advance(Phase.TERMINATED)

        if failures:
            raise CleanupError(failures)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _container_name(self, suffix: str) -> str:
        return "-".join(
            [
                self._config.name_prefix,
                _safe_name(self._context.job_name),
                self._context.token,
                suffix,
            ]
        )

    def _labels(self, role: ContainerRole) -> list[str]:
        return [
            "--label",
            f"{LABEL_JOB}={self._context.job_name}",
            "--label",
            f"{LABEL_ROLE}={role.value}",
        ]

    def _workspace_options(self) -> list[str]:
        remoting = self._context.get(ContainerRole.REMOTING)
        if remoting is None:
            raise ProvisioningError("Remoting container is not running")
        return ["--volumes-from", remoting.id, "-w", self._config.workspace]

    def _exec_container_options(self, env: dict[str, str]) -> list[str]:
        """Options for containers kept alive to exec processes into."""
        options = ["-i", "--entrypoint", self._config.keepalive_entrypoint]
        options.extend(self._workspace_options())
        for name, value in env.items():
            options.extend(["-e", f"{name}={value}"])
        return options

    def _side_container_options(self, env: dict[str, str]) -> list[str]:
        """Side containers run their image's own entrypoint."""
        options = self._workspace_options()
        for name, value in env.items():
            options.extend(["-e", f"{name}={value}"])
        return options

    def _start_container(
        self,
        role: ContainerRole,
        definition: ContainerDefinition,
        *,
        name: str,
        options: list[str],
        listener: BuildLog,
    ) -> Container:
        """Resolve the image, start the container and track it.

        Raises:
            ResolutionError: If the image cannot be resolved.
            ProvisioningError: If the container cannot be started or the
                build was aborted meanwhile.
        """
        with self._lock:
            self._ensure_not_ending()

        image = self._resolver.resolve(definition, listener)

        listener.println(f"Starting {role.value} container {name} ({image})")
        try:
            container_id = self._runtime.run_detached(
                name,
                image,
                options=options + self._labels(role),
                timeout=self._config.start_timeout,
            )
        except RuntimeCommandError as e:
            logger.error(
                "Command '%s' failed for image %s: %s",
                " ".join(e.command),
                image,
                e,
            )
            self._discard(name)
            raise ProvisioningError(
                f"Failed to start {role.value} container from {image}: {e}"
            ) from e

        container = Container(
            self._runtime,
            container_id=container_id,
            name=name,
            role=role,
            image=image,
        )
        with self._lock:
            aborted = self._state in _ENDING_STATES
            if not aborted:
                self._context.add(container)
        if aborted:
            # clean() already took its snapshot; remove this one here
            self._discard(container_id)
            raise ProvisioningError(
                f"Build aborted while starting {role.value} container"
            )
        return container

    def _open_channel(self, container: Container, command: list[str]) -> Channel:
        """Start the agent process whose stdio is the control channel.

        Raises:
            ProvisioningError: If the agent cannot be started.
        """
        try:
            process = self._runtime.exec_process(
                container.id,
                command,
                workdir=self._config.workspace,
                interactive=True,
            )
        except OSError as e:
            raise ProvisioningError(
                f"Cannot start agent in {container.name}: {e}"
            ) from e

        returncode = process.poll()
        if returncode is not None:
            stderr = b""
            if process.stderr:
                stderr = process.stderr.read() or b""
            raise ProvisioningError(
                f"Agent in {container.name} exited with code {returncode}: "
                f"{stderr.decode(errors='replace').strip()}"
            )
        return Channel(process)

    def _discard(self, name_or_id: str) -> None:
        """Best-effort removal of a container not tracked in the context."""
        try:
            self._runtime.remove(name_or_id, timeout=self._config.cleanup_timeout)
        except RuntimeCommandError as e:
            logger.warning("Failed to discard container %s: %s", name_or_id, e)

    def _ensure_not_ending(self) -> None:
        """Raise if cleanup has started. Caller must hold ``_lock``."""
        if self._state in _ENDING_STATES:
            raise ProvisioningError(
                f"Build environment {self._context.token} is being torn down"
            )

    def _fail(self, error: DockinsError, listener: BuildLog) -> None:
        """Report a provisioning failure and tear everything down."""
        logger.error(
            "Could not provision build environment for %s: %s",
            self._context.job_name,
            error,
        )
        listener.error(f"Could not provision build environment: {error}")
        try:
            self.clean(listener)
        except CleanupError as e:
            # Reported; the provisioning error is what the caller sees
            logger.error("Cleanup after provisioning failure incomplete: %s", e)
