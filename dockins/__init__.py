# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Ephemeral multi-container build nodes.

Each build runs in a set of short-lived containers: a remoting container
hosting the agent, an SCM container for checkout, and build containers
for the build itself. ``NodeManager`` implements the host lifecycle
hooks; ``ContainerProvisioner`` orchestrates one build's containers.
"""

from dockins.build_log import BuildLog, LogSink
from dockins.config import ConfigError, JobConfig, ProvisionerConfig
from dockins.container import Channel, Container, ContainerRole
from dockins.context import ContainersContext, Phase
from dockins.definitions import (
    ContainerDefinition,
    ContainerSetDefinition,
    DockerfileBuild,
    ImageReference,
    PullPolicy,
)
from dockins.errors import (
    CleanupError,
    DockinsError,
    ExecError,
    ExecInterruptedError,
    PhaseTransitionError,
    ProvisioningError,
    ResolutionError,
    RuntimeCommandError,
)
from dockins.image import ImageResolver
from dockins.node import (
    BuildContext,
    BuildIdentity,
    DockerLauncher,
    JobIdentity,
    LifecycleEvent,
    LifecycleEvents,
    NodeManager,
    ProvisioningHandle,
)
from dockins.process import ProcessBridge, ProcessRequest
from dockins.provisioner import ContainerProvisioner, ProvisionerState
from dockins.runtime import ContainerRuntime


__all__ = [
    # definitions
    "ContainerDefinition",
    "ContainerSetDefinition",
    "DockerfileBuild",
    "ImageReference",
    "PullPolicy",
    # runtime
    "ContainerRuntime",
    # image
    "ImageResolver",
    # container
    "Channel",
    "Container",
    "ContainerRole",
    # context
    "ContainersContext",
    "Phase",
    # process
    "ProcessBridge",
    "ProcessRequest",
    # provisioner
    "ContainerProvisioner",
    "ProvisionerState",
    # node
    "BuildContext",
    "BuildIdentity",
    "DockerLauncher",
    "JobIdentity",
    "LifecycleEvent",
    "LifecycleEvents",
    "NodeManager",
    "ProvisioningHandle",
    # config
    "ConfigError",
    "JobConfig",
    "ProvisionerConfig",
    # build_log
    "BuildLog",
    "LogSink",
    # errors
    "CleanupError",
    "DockinsError",
    "ExecError",
    "ExecInterruptedError",
    "PhaseTransitionError",
    "ProvisioningError",
    "ResolutionError",
    "RuntimeCommandError",
]
