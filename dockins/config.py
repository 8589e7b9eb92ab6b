# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Configuration for the provisioner and for jobs.

Provisioner configuration (``ProvisionerConfig``) is host-wide: which
container runtime to call, timeouts, and the images for the remoting and
SCM containers. Job configuration (``JobConfig``) declares the container
set a job builds in plus its checkout and build steps.

Both are YAML files. Values tagged ``!env VAR_NAME`` are resolved from
the environment at load time, after loading a ``.env`` file once.
Example provisioner config::

    container_command: docker
    workspace: /workspace
    cleanup_timeout: 30
    remoting:
      image: example/agent:latest
      pull: if-missing
      agent_command: [java, -jar, /usr/share/agent/agent.jar]
    scm:
      image: alpine/git:latest

Example job config::

    name: my-service
    build:
      image: python:3.13
      pull: always
    side_containers:
      db:
        image: postgres:16
    env:
      CI: "true"
    secret_env:
      API_TOKEN: !env API_TOKEN
    checkout:
      - git clone https://example.com/repo.git .
    steps:
      - [make, test]
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from dockins.definitions import (
    ContainerDefinition,
    ContainerSetDefinition,
    DockerfileBuild,
    ImageReference,
    PullPolicy,
)
from dockins.logging import SecretFilter


logger = logging.getLogger(__name__)

_BOOL_TRUTHY = frozenset({"true", "1", "yes", "on"})
_BOOL_FALSY = frozenset({"false", "0", "no", "off"})

DEFAULT_AGENT_COMMAND = ("java", "-jar", "/usr/share/agent/agent.jar")

_dotenv_loaded = False


class ConfigError(Exception):
    """Base exception for configuration errors."""


def load_dotenv_once(env_path: Path | None = None) -> None:
    """Load a .env file once (explicit path, else current directory)."""
    global _dotenv_loaded
    if _dotenv_loaded:
        return
    if env_path is not None and env_path.exists():
        load_dotenv(env_path)
        logger.debug("Loaded .env from %s", env_path)
    else:
        load_dotenv()
    _dotenv_loaded = True


def reset_dotenv_state() -> None:
    """Reset the dotenv loaded state. For testing only."""
    global _dotenv_loaded
    _dotenv_loaded = False


# ---------------------------------------------------------------------------
# YAML loading
# ---------------------------------------------------------------------------


class _EnvVar:
    """Placeholder for an unresolved ``!env VAR_NAME`` tag."""

    def __init__(self, var_name: str) -> None:
        self.var_name = var_name


def _env_constructor(loader: yaml.SafeLoader, node: yaml.Node) -> _EnvVar:
    """Handle ``!env VAR_NAME`` in YAML."""
    value = loader.construct_scalar(node)  # type: ignore[arg-type]
    return _EnvVar(str(value))


def _make_loader() -> type[yaml.SafeLoader]:
    """Create a YAML loader that understands ``!env``."""

    class EnvLoader(yaml.SafeLoader):
        pass

    EnvLoader.add_constructor("!env", _env_constructor)
    return EnvLoader


def _load_yaml(path: Path) -> dict:
    load_dotenv_once()
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    with open(path) as f:
        try:
            raw = yaml.load(f, Loader=_make_loader())
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"Config file must be a YAML mapping: {path}")
    return raw


# ---------------------------------------------------------------------------
# Value resolution
# ---------------------------------------------------------------------------


def _coerce_bool(value: object) -> bool:
    """Coerce a value to bool, handling string representations."""
    if isinstance(value, bool):
        return value
    s = str(value).lower().strip()
    if s in _BOOL_TRUTHY:
        return True
    if s in _BOOL_FALSY:
        return False
    raise ConfigError(f"Cannot convert {value!r} to bool")


def _raw_resolve(value: object) -> str | None:
    """Resolve an ``_EnvVar`` to its string value, or stringify literals.

    Returns None if the value is None or the env var is unset/empty.
    """
    if isinstance(value, _EnvVar):
        return os.environ.get(value.var_name) or None
    if value is None:
        return None
    return str(value)


_MISSING = object()


def _resolve(
    value: object,
    coerce: type[Any],
    *,
    default: object = _MISSING,
    required: str = "",
) -> Any:
    """Resolve a YAML value, handling ``!env`` tags and type coercion.

    Args:
        value: Raw value from YAML (may be ``_EnvVar``, None, or a
            literal already parsed by PyYAML).
        coerce: Target type (``str``, ``int``, ``bool``, ``Path``).
        default: Default when value is absent.
        required: Human-readable field name. When set, raises
            ``ConfigError`` if the value is absent.

    Returns:
        The resolved, coerced value, or None when optional and absent.
    """
    if not isinstance(value, _EnvVar) and value is not None:
        if coerce is bool:
            return _coerce_bool(value)
        if isinstance(value, coerce) and not (
            coerce is int and isinstance(value, bool)
        ):
            return value

    resolved = _raw_resolve(value)

    if resolved is None:
        if required:
            if isinstance(value, _EnvVar):
                raise ConfigError(
                    f"Required config '{required}': environment variable "
                    f"'{value.var_name}' is not set"
                )
            raise ConfigError(f"Required config '{required}' is missing")
        if default is not _MISSING:
            return default
        return None

    if coerce is bool:
        return _coerce_bool(resolved)
    if coerce is Path:
        return Path(resolved).expanduser()
    try:
        return coerce(resolved)
    except ValueError as e:
        raise ConfigError(
            f"Config '{required or resolved}' must be {coerce.__name__}: {e}"
        ) from e


def _resolve_mapping(value: object, key: str) -> dict[str, str]:
    """Resolve a ``NAME: value`` mapping, dropping unset ``!env`` entries."""
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{key}' must be a YAML mapping")
    result: dict[str, str] = {}
    for name, raw in value.items():
        resolved = _raw_resolve(raw)
        if resolved is not None:
            result[str(name)] = resolved
    return result


def _parse_command(value: object, key: str) -> list[str]:
    """A string runs through ``sh -c``; a list is used as argv."""
    if isinstance(value, str):
        if not value.strip():
            raise ConfigError(f"'{key}' must not be empty")
        return ["sh", "-c", value]
    if isinstance(value, list) and value:
        return [str(_raw_resolve(v) or "") for v in value]
    raise ConfigError(f"'{key}' must be a string or a non-empty list")


def _parse_command_list(value: object, key: str) -> list[list[str]]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigError(f"'{key}' must be a list of commands")
    return [_parse_command(v, f"{key}[{i}]") for i, v in enumerate(value)]


def parse_container_definition(raw: object, key: str) -> ContainerDefinition:
    """Parse an ``{image, pull}`` or ``{dockerfile, context}`` mapping.

    Args:
        raw: Raw YAML value.
        key: Config path used in error messages.

    Raises:
        ConfigError: If the mapping is neither variant or is invalid.
    """
    if isinstance(raw, str):
        raw = {"image": raw}
    if not isinstance(raw, dict):
        raise ConfigError(f"'{key}' must be a YAML mapping")

    has_image = "image" in raw
    has_dockerfile = "dockerfile" in raw
    if has_image == has_dockerfile:
        raise ConfigError(
            f"'{key}' must set exactly one of 'image' or 'dockerfile'"
        )

    if has_image:
        image = _resolve(raw.get("image"), str, required=f"{key}.image")
        pull = _resolve(raw.get("pull"), str, default="if-missing")
        try:
            return ImageReference(image=image, pull_policy=PullPolicy.parse(pull))
        except ValueError as e:
            raise ConfigError(f"{key}: {e}") from e

    dockerfile = _resolve(
        raw.get("dockerfile"), Path, required=f"{key}.dockerfile"
    )
    context = _resolve(raw.get("context"), Path)
    return DockerfileBuild(dockerfile=dockerfile, context=context)


# ---------------------------------------------------------------------------
# Provisioner configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RemotingConfig:
    """Remoting container settings.

    Attributes:
        definition: Image hosting the agent.
        agent_command: Command started in the container whose stdin and
            stdout form the control channel.
    """

    definition: ContainerDefinition = field(
        default_factory=lambda: ImageReference("dockins/agent:latest")
    )
    agent_command: tuple[str, ...] = DEFAULT_AGENT_COMMAND


@dataclass(frozen=True)
class ProvisionerConfig:
    """Host-wide provisioning settings.

    Attributes:
        container_command: Container runtime command (podman or docker).
        workspace: Workspace path shared by all containers of a build.
        name_prefix: Prefix for container names.
        keepalive_entrypoint: Entrypoint keeping SCM/build containers
            alive between execs.
        start_timeout: Seconds to wait for a container to start.
        cleanup_timeout: Seconds allowed per container for stop and
            for remove during cleanup.
        stop_grace_period: Seconds between SIGTERM and SIGKILL on stop.
        remoting: Remoting container settings.
        scm: Definition of the SCM checkout container.
    """

    container_command: str = "podman"
    workspace: str = "/workspace"
    name_prefix: str = "dockins"
    keepalive_entrypoint: str = "cat"
    start_timeout: int = 120
    cleanup_timeout: int = 30
    stop_grace_period: int = 10
    remoting: RemotingConfig = field(default_factory=RemotingConfig)
    scm: ContainerDefinition = field(
        default_factory=lambda: ImageReference("alpine/git:latest")
    )

    def __post_init__(self) -> None:
        """Validate configuration.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not self.workspace.startswith("/"):
            raise ValueError(f"Workspace must be absolute: {self.workspace}")
        if self.start_timeout < 1:
            raise ValueError(f"Start timeout must be >= 1s: {self.start_timeout}")
        if self.cleanup_timeout < 1:
            raise ValueError(
                f"Cleanup timeout must be >= 1s: {self.cleanup_timeout}"
            )
        if self.stop_grace_period < 0:
            raise ValueError(
                f"Stop grace period must be >= 0s: {self.stop_grace_period}"
            )
        if not self.remoting.agent_command:
            raise ValueError("Remoting agent command must not be empty")

    @classmethod
    def from_yaml(cls, config_path: Path) -> ProvisionerConfig:
        """Load configuration from a YAML file.

        Raises:
            ConfigError: If the file is missing or values are invalid.
        """
        return cls.from_raw(_load_yaml(config_path))

    @classmethod
    def from_raw(cls, raw: dict) -> ProvisionerConfig:
        """Build config from a parsed (but unresolved) YAML dict."""
        remoting_raw = raw.get("remoting") or {}
        if not isinstance(remoting_raw, dict):
            raise ConfigError("'remoting' must be a YAML mapping")

        remoting = RemotingConfig()
        definition = remoting.definition
        agent_command = remoting.agent_command
        if "image" in remoting_raw or "dockerfile" in remoting_raw:
            definition = parse_container_definition(remoting_raw, "remoting")
        if "agent_command" in remoting_raw:
            agent_command = tuple(
                _parse_command(
                    remoting_raw["agent_command"], "remoting.agent_command"
                )
            )
        remoting = RemotingConfig(
            definition=definition, agent_command=agent_command
        )

        defaults = cls()
        scm = defaults.scm
        if raw.get("scm") is not None:
            scm = parse_container_definition(raw["scm"], "scm")

        try:
            config = cls(
                container_command=_resolve(
                    raw.get("container_command"), str, default="podman"
                ),
                workspace=_resolve(raw.get("workspace"), str, default="/workspace"),
                name_prefix=_resolve(raw.get("name_prefix"), str, default="dockins"),
                keepalive_entrypoint=_resolve(
                    raw.get("keepalive_entrypoint"), str, default="cat"
                ),
                start_timeout=_resolve(raw.get("start_timeout"), int, default=120),
                cleanup_timeout=_resolve(
                    raw.get("cleanup_timeout"), int, default=30
                ),
                stop_grace_period=_resolve(
                    raw.get("stop_grace_period"), int, default=10
                ),
                remoting=remoting,
                scm=scm,
            )
        except ValueError as e:
            raise ConfigError(str(e)) from e

        logger.debug(
            "Provisioner config loaded: runtime=%s, workspace=%s",
            config.container_command,
            config.workspace,
        )
        return config


# ---------------------------------------------------------------------------
# Job configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class JobConfig:
    """A job's container set and steps.

    Attributes:
        name: Job name.
        container_set: Build and side containers.
        checkout: Commands run in the SCM container.
        steps: Commands run in the build container after checkout.
    """

    name: str
    container_set: ContainerSetDefinition
    checkout: list[list[str]] = field(default_factory=list)
    steps: list[list[str]] = field(default_factory=list)

    @classmethod
    def from_yaml(cls, config_path: Path) -> JobConfig:
        """Load a job from a YAML file.

        The job name defaults to the file name without extension.

        Raises:
            ConfigError: If the file is missing or values are invalid.
        """
        raw = _load_yaml(config_path)
        raw.setdefault("name", config_path.stem)
        return cls.from_raw(raw)

    @classmethod
    def from_raw(cls, raw: dict) -> JobConfig:
        """Build a job from a parsed YAML dict.

        Values under ``secret_env`` are registered with ``SecretFilter``.
        """
        name = _resolve(raw.get("name"), str, required="name")
        if "build" not in raw:
            raise ConfigError("Required config 'build' is missing")
        build = parse_container_definition(raw["build"], "build")

        side_raw = raw.get("side_containers") or {}
        if not isinstance(side_raw, dict):
            raise ConfigError("'side_containers' must be a YAML mapping")
        side_containers = {
            str(side_name): parse_container_definition(
                side_def, f"side_containers.{side_name}"
            )
            for side_name, side_def in side_raw.items()
        }

        env = _resolve_mapping(raw.get("env"), "env")
        secret_env = _resolve_mapping(raw.get("secret_env"), "secret_env")
        for value in secret_env.values():
            SecretFilter.register_secret(value)
        env.update(secret_env)

        return cls(
            name=name,
            container_set=ContainerSetDefinition(
                build=build, side_containers=side_containers, env=env
            ),
            checkout=_parse_command_list(raw.get("checkout"), "checkout"),
            steps=_parse_command_list(raw.get("steps"), "steps"),
        )
