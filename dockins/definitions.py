# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Container definitions: how to obtain a runnable image.

A definition is one of:

- ``ImageReference`` -- a registry image plus a pull policy.
- ``DockerfileBuild`` -- an image built locally from a Dockerfile.

Both are resolved through ``ImageResolver.resolve``. A job's full
container environment is a ``ContainerSetDefinition``: the main build
container plus optional named side containers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class PullPolicy(Enum):
    """When an image must be fetched from the registry."""

    NEVER = "never"
    IF_MISSING = "if-missing"
    ALWAYS = "always"

    @classmethod
    def parse(cls, value: str) -> PullPolicy:
        """Parse a policy name (``never``, ``if-missing``, ``always``).

        Raises:
            ValueError: If the name is unknown.
        """
        normalized = value.strip().lower().replace("_", "-")
        for policy in cls:
            if policy.value == normalized:
                return policy
        valid = ", ".join(p.value for p in cls)
        raise ValueError(f"Unknown pull policy {value!r} (expected: {valid})")


@dataclass(frozen=True)
class ImageReference:
    """An image identified by reference (``name[:tag]`` or digest).

    Attributes:
        image: Image reference as understood by the container runtime.
        pull_policy: When to pull the image before use.
    """

    image: str
    pull_policy: PullPolicy = PullPolicy.IF_MISSING

    def __post_init__(self) -> None:
        if not self.image.strip():
            raise ValueError("Image reference must not be empty")

    def describe(self) -> str:
        return self.image


@dataclass(frozen=True)
class DockerfileBuild:
    """An image built from a local Dockerfile.

    Attributes:
        dockerfile: Path to the Dockerfile.
        context: Build context directory. Defaults to the Dockerfile's
            directory.
    """

    dockerfile: Path
    context: Path | None = None

    @property
    def context_dir(self) -> Path:
        return self.context if self.context is not None else self.dockerfile.parent

    def describe(self) -> str:
        return f"Dockerfile {self.dockerfile}"


ContainerDefinition = ImageReference | DockerfileBuild


@dataclass(frozen=True)
class ContainerSetDefinition:
    """The containers a job's build steps run in.

    Attributes:
        build: Main build container; all build processes run here.
        side_containers: Named auxiliary containers (databases, caches)
            started alongside the build container.
        env: Environment variables for every build and side container.
    """

    build: ContainerDefinition
    side_containers: dict[str, ContainerDefinition] = field(
        default_factory=dict
    )
    env: dict[str, str] = field(default_factory=dict)
