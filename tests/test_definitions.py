# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Tests for dockins/definitions.py."""

from pathlib import Path

import pytest

from dockins.definitions import (
    ContainerSetDefinition,
    DockerfileBuild,
    ImageReference,
    PullPolicy,
)


class TestPullPolicy:
    """Tests for PullPolicy.parse."""

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("never", PullPolicy.NEVER),
            ("if-missing", PullPolicy.IF_MISSING),
            ("IF_MISSING", PullPolicy.IF_MISSING),
            (" always ", PullPolicy.ALWAYS),
        ],
    )
    def test_parse(self, value: str, expected: PullPolicy) -> None:
        assert PullPolicy.parse(value) is expected

    def test_unknown(self) -> None:
        with pytest.raises(ValueError, match="expected: never, if-missing, always"):
            PullPolicy.parse("daily")


class TestImageReference:
    """Tests for ImageReference."""

    def test_default_policy(self) -> None:
        assert ImageReference("alpine").pull_policy is PullPolicy.IF_MISSING

    def test_empty_rejected(self) -> None:
        with pytest.raises(ValueError):
            ImageReference("  ")


class TestDockerfileBuild:
    """Tests for DockerfileBuild."""

    def test_context_defaults_to_dockerfile_dir(self) -> None:
        build = DockerfileBuild(Path("/src/ci/Dockerfile"))
        assert build.context_dir == Path("/src/ci")

    def test_explicit_context(self) -> None:
        build = DockerfileBuild(Path("/src/ci/Dockerfile"), Path("/src"))
        assert build.context_dir == Path("/src")


def test_container_set_defaults() -> None:
    container_set = ContainerSetDefinition(build=ImageReference("alpine"))
    assert container_set.side_containers == {}
    assert container_set.env == {}
