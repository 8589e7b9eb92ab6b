# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Host-facing lifecycle of build nodes.

The host build system drives provisioning through four hooks on
``NodeManager``:

- ``node_requested(job)`` creates a context, launches the remoting
  container and returns a ``ProvisioningHandle``.
- ``build_environment_setup(handle, build)`` moves the handle's
  container context into a ``BuildContext`` now that the build exists.
- ``scm_checkout_completed(build)`` switches routing to build containers.
- ``node_terminate(build)`` cleans up. It is the only guaranteed cleanup
  trigger and runs even if earlier phases failed.

A node exists before its build does, so the two lifetimes are separate
objects: the handle owns the containers until the build takes them.
Event callbacks are registered per build identity with
``LifecycleEvents``; nothing is discovered implicitly.
"""

from __future__ import annotations

import logging
import secrets
import threading
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Protocol, runtime_checkable

from dockins.build_log import BuildLog
from dockins.config import ProvisionerConfig
from dockins.container import Container
from dockins.context import ContainersContext
from dockins.definitions import ContainerSetDefinition
from dockins.errors import DockinsError
from dockins.process import ProcessRequest
from dockins.provisioner import ContainerProvisioner, ProvisionerState
from dockins.runtime import ContainerRuntime


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobIdentity:
    """The job a node is requested for."""

    name: str


@dataclass(frozen=True)
class BuildIdentity:
    """A specific build of a job."""

    job: str
    number: int

    def __str__(self) -> str:
        return f"{self.job}#{self.number}"


@runtime_checkable
class NodeProvisioner(Protocol):
    """Capability the host uses to bring a node up and down."""

    def launch_remoting_container(self, listener: BuildLog) -> Container: ...

    def clean(self, listener: BuildLog) -> None: ...


@runtime_checkable
class ProcessLauncher(Protocol):
    """Capability the host uses to run build processes on a node."""

    def launch(self, request: ProcessRequest) -> int: ...


class LifecycleEvent(Enum):
    """Host events a build can subscribe to."""

    SCM_CHECKOUT_COMPLETED = "scm-checkout-completed"
    NODE_TERMINATE = "node-terminate"


class LifecycleEvents:
    """Callback registry keyed by build identity and event.

    Thread Safety: Thread-safe. Callbacks run on the emitting thread, in
    registration order, outside the registry lock.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._callbacks: dict[
            tuple[BuildIdentity, LifecycleEvent], list[Callable[[], None]]
        ] = {}

    def subscribe(
        self,
        build: BuildIdentity,
        event: LifecycleEvent,
        callback: Callable[[], None],
    ) -> None:
        with self._lock:
            self._callbacks.setdefault((build, event), []).append(callback)

    def unsubscribe_all(self, build: BuildIdentity) -> None:
        with self._lock:
            for key in [k for k in self._callbacks if k[0] == build]:
                del self._callbacks[key]

    def emit(self, build: BuildIdentity, event: LifecycleEvent) -> int:
        """Invoke the callbacks for *event* of *build*.

        Every callback runs even if an earlier one raises; the first
        error is re-raised afterwards.

        Returns:
            Number of callbacks invoked.
        """
        with self._lock:
            callbacks = list(self._callbacks.get((build, event), []))
        if not callbacks:
            logger.debug("No subscribers for %s of %s", event.value, build)

        first_error: Exception | None = None
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.error("%s callback for %s failed: %s", event.value, build, e)
                if first_error is None:
                    first_error = e
        if first_error is not None:
            raise first_error
        return len(callbacks)


class ProvisioningHandle:
    """A provisioned node whose build has not started yet.

    Owns the container context until ``take_context`` moves it to a
    ``BuildContext``.
    """

    def __init__(
        self,
        job: JobIdentity,
        provisioner: ContainerProvisioner,
        remoting: Container,
    ) -> None:
        self.job = job
        self.provisioner = provisioner
        self.remoting = remoting
        self._context: ContainersContext | None = provisioner.context

    @property
    def token(self) -> str:
        return self.provisioner.context.token

    @property
    def context(self) -> ContainersContext | None:
        """The owned context, or None once moved to a build."""
        return self._context

    def take_context(self) -> ContainersContext:
        """Move the container context out of this handle.

        Raises:
            DockinsError: If it was already moved.
        """
        if self._context is None:
            raise DockinsError(f"Node {self.token} is already bound to a build")
        context, self._context = self._context, None
        return context


@dataclass
class BuildContext:
    """Build metadata: the build and the containers it runs in."""

    build: BuildIdentity
    context: ContainersContext
    provisioner: ContainerProvisioner
    listener: BuildLog


class DockerLauncher:
    """Routes a build's processes into its containers.

    Before checkout completes, processes go to the SCM container, which
    is launched on first use. Afterwards they go to the build container.
    """

    def __init__(self, provisioner: ContainerProvisioner, listener: BuildLog) -> None:
        self._provisioner = provisioner
        self._listener = listener

    def launch(self, request: ProcessRequest) -> int:
        """Run *request* and return its exit code.

        Raises:
            ExecError: If the process cannot be invoked.
            ProvisioningError: If a needed container fails to start.
        """
        if request.role is None and self._provisioner.state in (
            ProvisionerState.REMOTING_UP,
            ProvisionerState.AWAITING_BUILD_START,
        ):
            self._provisioner.launch_scm_container(self._listener)
        return self._provisioner.launch_build_process(request, self._listener)


class NodeManager:
    """Implements the host lifecycle hooks for container-backed nodes.

    Each build gets its own ``ContainerProvisioner``; nothing mutable is
    shared between builds apart from the runtime daemon's image cache.
    """

    def __init__(
        self,
        config: ProvisionerConfig,
        *,
        runtime: ContainerRuntime | None = None,
        events: LifecycleEvents | None = None,
    ) -> None:
        self._config = config
        self._runtime = runtime or ContainerRuntime(config.container_command)
        self._events = events or LifecycleEvents()
        self._lock = threading.Lock()
        self._builds: dict[BuildIdentity, BuildContext] = {}

    @property
    def events(self) -> LifecycleEvents:
        return self._events

    def node_requested(
        self,
        job: JobIdentity,
        container_set: ContainerSetDefinition,
        listener: BuildLog,
    ) -> ProvisioningHandle:
        """Provision a node for *job*.

        Raises:
            ProvisioningError: If the remoting container cannot be
                started. Nothing is left running.
        """
        # Unique per request, independent of the eventual build number
        token = secrets.token_hex(4)
        context = ContainersContext(job.name, token)
        provisioner = ContainerProvisioner(
            context, container_set, self._config, runtime=self._runtime
        )
        logger.info("Node requested for %s (token %s)", job.name, token)
        remoting = provisioner.launch_remoting_container(listener)
        return ProvisioningHandle(job, provisioner, remoting)

    def build_environment_setup(
        self,
        handle: ProvisioningHandle,
        build: BuildIdentity,
        listener: BuildLog,
    ) -> BuildContext:
        """Bind a started build to its node.

        Raises:
            DockinsError: If the handle was already bound or the build
                identity is already in use.
        """
        with self._lock:
            if build in self._builds:
                raise DockinsError(f"Build {build} already has a node")

        provisioner = handle.provisioner
        provisioner.attach_build(str(build))
        with self._lock:
            # Another setup may have claimed the identity during attach
            if build in self._builds:
                raise DockinsError(f"Build {build} already has a node")
            build_context = BuildContext(
                build=build,
                context=handle.take_context(),
                provisioner=provisioner,
                listener=listener,
            )
            self._builds[build] = build_context

        self._events.subscribe(
            build,
            LifecycleEvent.SCM_CHECKOUT_COMPLETED,
            lambda: provisioner.on_checkout_completed(listener),
        )
        self._events.subscribe(
            build,
            LifecycleEvent.NODE_TERMINATE,
            lambda: provisioner.clean(listener),
        )
        logger.info("Build %s running on node %s", build, handle.token)
        return build_context

    def get_build(self, build: BuildIdentity) -> BuildContext | None:
        with self._lock:
            return self._builds.get(build)

    def create_launcher(self, build: BuildIdentity) -> ProcessLauncher:
        """Launcher delegating process execution to the build's node.

        Raises:
            DockinsError: If the build has no node.
        """
        build_context = self.get_build(build)
        if build_context is None:
            raise DockinsError(f"No node for build {build}")
        return DockerLauncher(build_context.provisioner, build_context.listener)

    def scm_checkout_completed(self, build: BuildIdentity) -> None:
        self._events.emit(build, LifecycleEvent.SCM_CHECKOUT_COMPLETED)

    def node_terminate(self, build: BuildIdentity) -> None:
        """Tear down the build's node.

        Raises:
            CleanupError: If some containers could not be removed. The
                build is forgotten regardless.
        """
        try:
            self._events.emit(build, LifecycleEvent.NODE_TERMINATE)
        finally:
            self._events.unsubscribe_all(build)
            with self._lock:
                self._builds.pop(build, None)
            logger.info("Node for build %s terminated", build)

    def abandon(self, handle: ProvisioningHandle, listener: BuildLog) -> None:
        """Tear down a node whose build never started.

        Raises:
            CleanupError: If some containers could not be removed.
        """
        logger.info("Abandoning node %s", handle.token)
        handle.provisioner.clean(listener)
