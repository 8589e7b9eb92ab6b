# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Tests for dockins/config.py -- provisioner and job configuration."""

from pathlib import Path

import pytest

from dockins.config import (
    DEFAULT_AGENT_COMMAND,
    ConfigError,
    JobConfig,
    ProvisionerConfig,
    RemotingConfig,
    _coerce_bool,
    _make_loader,
    _resolve,
    parse_container_definition,
    reset_dotenv_state,
)
from dockins.definitions import DockerfileBuild, ImageReference, PullPolicy
from dockins.logging import SecretFilter


@pytest.fixture(autouse=True)
def _reset_dotenv():
    reset_dotenv_state()
    yield
    reset_dotenv_state()


def _write(tmp_path: Path, name: str, content: str) -> Path:
    path = tmp_path / name
    path.write_text(content)
    return path


class TestResolve:
    """Tests for _resolve and helpers."""

    def test_literal_passthrough(self) -> None:
        assert _resolve(30, int) == 30

    def test_string_to_int(self) -> None:
        assert _resolve("45", int) == 45

    def test_default_when_missing(self) -> None:
        assert _resolve(None, int, default=120) == 120

    def test_required_missing(self) -> None:
        with pytest.raises(ConfigError, match="'name' is missing"):
            _resolve(None, str, required="name")

    def test_bad_int(self) -> None:
        with pytest.raises(ConfigError, match="must be int"):
            _resolve("soon", int, required="start_timeout")

    def test_env_tag(self, monkeypatch: pytest.MonkeyPatch) -> None:
        import yaml

        monkeypatch.setenv("DOCKINS_TEST_RUNTIME", "docker")
        raw = yaml.load("value: !env DOCKINS_TEST_RUNTIME", Loader=_make_loader())

        assert _resolve(raw["value"], str) == "docker"

    def test_env_tag_unset_required(self, monkeypatch: pytest.MonkeyPatch) -> None:
        import yaml

        monkeypatch.delenv("DOCKINS_TEST_UNSET", raising=False)
        raw = yaml.load("value: !env DOCKINS_TEST_UNSET", Loader=_make_loader())

        with pytest.raises(ConfigError, match="DOCKINS_TEST_UNSET"):
            _resolve(raw["value"], str, required="value")

    @pytest.mark.parametrize("value", ["yes", "TRUE", "1", True])
    def test_coerce_bool_true(self, value) -> None:
        assert _coerce_bool(value) is True

    def test_coerce_bool_invalid(self) -> None:
        with pytest.raises(ConfigError):
            _coerce_bool("maybe")


class TestContainerDefinition:
    """Tests for parse_container_definition."""

    def test_image_string(self) -> None:
        assert parse_container_definition("alpine:3", "scm") == ImageReference(
            "alpine:3"
        )

    def test_image_with_policy(self) -> None:
        definition = parse_container_definition(
            {"image": "python:3.13", "pull": "always"}, "build"
        )
        assert definition == ImageReference("python:3.13", PullPolicy.ALWAYS)

    def test_dockerfile(self) -> None:
        definition = parse_container_definition(
            {"dockerfile": "ci/Dockerfile", "context": "."}, "build"
        )
        assert isinstance(definition, DockerfileBuild)
        assert definition.dockerfile == Path("ci/Dockerfile")
        assert definition.context_dir == Path(".")

    def test_both_variants_rejected(self) -> None:
        with pytest.raises(ConfigError, match="exactly one"):
            parse_container_definition(
                {"image": "x", "dockerfile": "Dockerfile"}, "build"
            )

    def test_unknown_policy(self) -> None:
        with pytest.raises(ConfigError, match="Unknown pull policy"):
            parse_container_definition({"image": "x", "pull": "sometimes"}, "build")


class TestProvisionerConfig:
    """Tests for ProvisionerConfig."""

    def test_defaults(self) -> None:
        config = ProvisionerConfig()
        assert config.container_command == "podman"
        assert config.workspace == "/workspace"
        assert config.cleanup_timeout == 30
        assert config.remoting.agent_command == DEFAULT_AGENT_COMMAND

    def test_from_yaml(self, tmp_path: Path) -> None:
        path = _write(
            tmp_path,
            "server.yaml",
            "container_command: docker\n"
            "cleanup_timeout: 15\n"
            "remoting:\n"
            "  image: example/agent:1.0\n"
            "  pull: always\n"
            "  agent_command: [agent, --stdio]\n"
            "scm:\n"
            "  image: alpine/git:2\n"
            "  pull: never\n",
        )

        config = ProvisionerConfig.from_yaml(path)

        assert config.container_command == "docker"
        assert config.cleanup_timeout == 15
        assert config.remoting == RemotingConfig(
            definition=ImageReference("example/agent:1.0", PullPolicy.ALWAYS),
            agent_command=("agent", "--stdio"),
        )
        assert config.scm == ImageReference("alpine/git:2", PullPolicy.NEVER)

    def test_invalid_value(self) -> None:
        with pytest.raises(ConfigError, match="absolute"):
            ProvisionerConfig.from_raw({"workspace": "relative"})

    def test_post_init_validates(self) -> None:
        with pytest.raises(ValueError, match="Cleanup timeout"):
            ProvisionerConfig(cleanup_timeout=0)

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError, match="not found"):
            ProvisionerConfig.from_yaml(tmp_path / "missing.yaml")

    def test_not_a_mapping(self, tmp_path: Path) -> None:
        path = _write(tmp_path, "server.yaml", "- a\n- b\n")
        with pytest.raises(ConfigError, match="mapping"):
            ProvisionerConfig.from_yaml(path)


class TestJobConfig:
    """Tests for JobConfig."""

    def test_from_yaml(self, tmp_path: Path) -> None:
        path = _write(
            tmp_path,
            "service.yaml",
            "build:\n"
            "  image: python:3.13\n"
            "side_containers:\n"
            "  db: postgres:16\n"
            "env:\n"
            "  CI: 'true'\n"
            "checkout:\n"
            "  - git clone https://example.com/repo.git .\n"
            "steps:\n"
            "  - [make, test]\n",
        )

        job = JobConfig.from_yaml(path)

        assert job.name == "service"
        assert job.container_set.build == ImageReference("python:3.13")
        assert job.container_set.side_containers == {
            "db": ImageReference("postgres:16")
        }
        assert job.container_set.env == {"CI": "true"}
        assert job.checkout == [
            ["sh", "-c", "git clone https://example.com/repo.git ."]
        ]
        assert job.steps == [["make", "test"]]

    def test_secret_env_registered(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Secret values are merged into env and redacted from logs."""
        monkeypatch.setenv("DOCKINS_TEST_TOKEN", "tok-123")
        import yaml

        raw = yaml.load(
            "name: app\n"
            "build: alpine\n"
            "secret_env:\n"
            "  API_TOKEN: !env DOCKINS_TEST_TOKEN\n",
            Loader=_make_loader(),
        )

        job = JobConfig.from_raw(raw)

        assert job.container_set.env == {"API_TOKEN": "tok-123"}
        assert SecretFilter.redact("token tok-123") == "token [REDACTED]"

    def test_build_required(self) -> None:
        with pytest.raises(ConfigError, match="'build'"):
            JobConfig.from_raw({"name": "app"})

    def test_bad_step(self) -> None:
        with pytest.raises(ConfigError, match=r"steps\[0\]"):
            JobConfig.from_raw({"name": "app", "build": "alpine", "steps": [""]})
