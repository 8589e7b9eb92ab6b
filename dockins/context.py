# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Per-build aggregate of containers and build phase.

The context owns every ``Container`` handle created for one build. The
provisioner is its only writer; everything else reads. Phases only move
forward::

    provisioning-remoting -> awaiting-scm -> scm-running
        -> build-running -> terminated

Any phase may jump straight to ``terminated``.
"""

from __future__ import annotations

import threading
from enum import Enum

from dockins.container import Container, ContainerRole
from dockins.errors import PhaseTransitionError


class Phase(Enum):
    """Build phase marker."""

    PROVISIONING_REMOTING = "provisioning-remoting"
    AWAITING_SCM = "awaiting-scm"
    SCM_RUNNING = "scm-running"
    BUILD_RUNNING = "build-running"
    TERMINATED = "terminated"

    @property
    def rank(self) -> int:
        return _PHASE_ORDER.index(self)


_PHASE_ORDER = (
    Phase.PROVISIONING_REMOTING,
    Phase.AWAITING_SCM,
    Phase.SCM_RUNNING,
    Phase.BUILD_RUNNING,
    Phase.TERMINATED,
)


class ContainersContext:
    """Containers and phase of a single build.

    Attributes:
        job_name: Name of the job the node was requested for.
        token: Unique id of the provisioning request.
        build_id: Build identity, set once the build has started.

    Thread Safety: Thread-safe; a cleanup thread may read while the build
    thread writes.
    """

    def __init__(self, job_name: str, token: str) -> None:
        self.job_name = job_name
        self.token = token
        self.build_id: str | None = None
        self._lock = threading.Lock()
        self._phase = Phase.PROVISIONING_REMOTING
        self._containers: list[Container] = []

    def __repr__(self) -> str:
        return (
            f"ContainersContext({self.job_name}, token={self.token}, "
            f"phase={self._phase.value}, containers={len(self._containers)})"
        )

    @property
    def phase(self) -> Phase:
        with self._lock:
            return self._phase

    @property
    def containers(self) -> list[Container]:
        """All containers in creation order."""
        with self._lock:
            return list(self._containers)

    def advance(self, phase: Phase) -> None:
        """Move to *phase*. Staying in the current phase is a no-op.

        Raises:
            PhaseTransitionError: If *phase* is earlier than the current one.
        """
        with self._lock:
            if phase.rank < self._phase.rank:
                raise PhaseTransitionError(
                    f"Cannot move build {self.build_id or self.job_name} "
                    f"from {self._phase.value} back to {phase.value}"
                )
            self._phase = phase

    def add(self, container: Container) -> None:
        """Track a newly created container.

        Raises:
            ValueError: If a remoting container is already tracked.
        """
        with self._lock:
            if container.role is ContainerRole.REMOTING and any(
                c.role is ContainerRole.REMOTING for c in self._containers
            ):
                raise ValueError(
                    f"Context {self.token} already has a remoting container"
                )
            self._containers.append(container)

    def get(self, role: ContainerRole) -> Container | None:
        """First live container holding *role*, or None.

        For ``BUILD`` this is the main build container; side containers
        are added after it.
        """
        with self._lock:
            for container in self._containers:
                if container.role is role and container.live:
                    return container
        return None

    def by_role(self, role: ContainerRole) -> list[Container]:
        with self._lock:
            return [c for c in self._containers if c.role is role]
