# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Image resolution: make a container definition's image available locally.

For an ``ImageReference`` the local image is inspected first. A failed
inspect (daemon error or missing image, indistinguishable here) or an
``always`` pull policy triggers a single pull. A failed pull is fatal.
There is no retry: a build should fail fast rather than hang on a
flaky daemon.

For a ``DockerfileBuild`` the image is tagged by content hash of the
Dockerfile and build context, and only built when that tag is not
present locally.
"""

from __future__ import annotations

import hashlib
import logging
import time
from pathlib import Path

from dockins.build_log import BuildLog
from dockins.definitions import (
    ContainerDefinition,
    DockerfileBuild,
    ImageReference,
    PullPolicy,
)
from dockins.errors import ResolutionError
from dockins.runtime import ContainerRuntime


logger = logging.getLogger(__name__)

BUILD_IMAGE_REPOSITORY = "dockins-build"


def _content_hash(dockerfile: Path, context_dir: Path) -> str:
    """SHA-256 over the Dockerfile and every file in the build context."""
    digest = hashlib.sha256(dockerfile.read_bytes())
    for path in sorted(p for p in context_dir.rglob("*") if p.is_file()):
        digest.update(str(path.relative_to(context_dir)).encode())
        digest.update(path.read_bytes())
    return digest.hexdigest()


class ImageResolver:
    """Resolves container definitions to verified local image references."""

    def __init__(self, runtime: ContainerRuntime) -> None:
        self._runtime = runtime

    def resolve(self, definition: ContainerDefinition, listener: BuildLog) -> str:
        """Ensure the definition's image is present locally.

        Args:
            definition: What to resolve.
            listener: Build log for pull/build progress.

        Returns:
            Image reference usable with ``run``.

        Raises:
            ResolutionError: If the image cannot be made available.
        """
        if isinstance(definition, ImageReference):
            return self._resolve_reference(definition, listener)
        if isinstance(definition, DockerfileBuild):
            return self._resolve_build(definition, listener)
        raise ResolutionError(
            f"Unsupported container definition: {definition!r}"
        )

    def _resolve_reference(
        self, definition: ImageReference, listener: BuildLog
    ) -> str:
        image = definition.image
        policy = definition.pull_policy

        pull = policy is PullPolicy.ALWAYS
        if self._runtime.inspect_image(image) is None:
            if policy is PullPolicy.NEVER:
                logger.error("Image %s not present and pull policy is never", image)
                raise ResolutionError(
                    f"Image {image} is not available locally "
                    "and pull policy is 'never'"
                )
            # Could be a daemon failure, but most probably the image
            # isn't available yet
            pull = True

        if not pull:
            logger.debug("Image %s present locally", image)
            return image

        listener.println(f"Pulling container image {image}")
        start_time = time.time()
        try:
            status = self._runtime.pull(image, listener)
        except OSError as e:
            logger.error("Cannot run pull for %s: %s", image, e)
            raise ResolutionError(f"Failed to pull image {image}: {e}") from e

        if status != 0:
            # Another build may have pulled the same image concurrently
            if (
                policy is PullPolicy.IF_MISSING
                and self._runtime.inspect_image(image) is not None
            ):
                logger.warning(
                    "Pull of %s failed (exit %d) but the image is now present",
                    image,
                    status,
                )
                return image
            logger.error(
                "Command '%s pull %s' failed with exit code %d",
                self._runtime.command,
                image,
                status,
            )
            raise ResolutionError(
                f"Failed to pull image {image} (exit code {status})"
            )

        logger.info("Pulled %s in %.2fs", image, time.time() - start_time)
        return image

    def _resolve_build(
        self, definition: DockerfileBuild, listener: BuildLog
    ) -> str:
        dockerfile = definition.dockerfile
        context_dir = definition.context_dir
        try:
            content_hash = _content_hash(dockerfile, context_dir)
        except OSError as e:
            raise ResolutionError(
                f"Cannot read build definition {dockerfile}: {e}"
            ) from e
        tag = f"{BUILD_IMAGE_REPOSITORY}:{content_hash}"

        if self._runtime.inspect_image(tag) is not None:
            logger.debug("Built image %s present, reusing", tag)
            return tag

        listener.println(f"Building container image {tag} from {dockerfile}")
        start_time = time.time()
        try:
            status = self._runtime.build(tag, dockerfile, context_dir, listener)
        except OSError as e:
            raise ResolutionError(f"Failed to build image {tag}: {e}") from e
        if status != 0:
            logger.error(
                "Image build from %s failed with exit code %d", dockerfile, status
            )
            raise ResolutionError(
                f"Failed to build image from {dockerfile} (exit code {status})"
            )

        logger.info("Image built in %.2fs: %s", time.time() - start_time, tag)
        return tag
