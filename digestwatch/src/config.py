from __future__ import annotations

import logging
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

LOGGER = logging.getLogger(__name__)

DOCKER_HUB_REGISTRY = "https://registry-1.docker.io"
DEFAULT_CHECK_INTERVAL_SECONDS = 300
DEFAULT_REGISTRY_TIMEOUT_SECONDS = 10
DEFAULT_ROLLOUT_ANNOTATION_KEY = "kubectl.kubernetes.io/restartedAt"
DEFAULT_TAG = "latest"

_DURATION_PART = re.compile(r"(\d+)(h|m|s)")
_DURATION_UNITS = {"h": 3600, "m": 60, "s": 1}


class ConfigError(RuntimeError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class RegistryAuth:
    """Registry credentials.  Values may hold ``$VAR`` placeholders expanded at use time."""

    username: str
    password: str


@dataclass(frozen=True)
class Registry:
    """A registry endpoint.  An empty ``name`` means the default public hub."""

    name: str
    auth: RegistryAuth | None = None


@dataclass(frozen=True)
class Image:
    name: str
    registry: str = ""
    tag: str = DEFAULT_TAG

    @property
    def key(self) -> str:
        """Tracker identity, ``registry/name:tag``."""
        return f"{self.registry}/{self.name}:{self.tag}"


@dataclass(frozen=True)
class DeploymentTarget:
    """A deployment/container pair whose ``image`` is matched by prefix."""

    name: str
    namespace: str
    container: str
    image: str


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration loaded at startup.

    Attributes:
        check_interval_seconds: Delay between two reconciliation cycles.
        registries: Known registry endpoints, referenced by ``Image.registry``.
        images: Images whose digest is polled every cycle.
        deployments: Deployments restarted when their running digest drifts.
        registry_timeout_seconds: Per-request HTTP timeout for registry calls.
        rollout_annotation_key: Pod template annotation stamped on restart.
        kubeconfig: Optional kubeconfig path used outside the cluster.
    """

    check_interval_seconds: float = DEFAULT_CHECK_INTERVAL_SECONDS
    registries: tuple[Registry, ...] = field(default_factory=tuple)
    images: tuple[Image, ...] = field(default_factory=tuple)
    deployments: tuple[DeploymentTarget, ...] = field(default_factory=tuple)
    registry_timeout_seconds: int = DEFAULT_REGISTRY_TIMEOUT_SECONDS
    rollout_annotation_key: str = DEFAULT_ROLLOUT_ANNOTATION_KEY
    kubeconfig: str | None = None

    def find_registry(self, name: str) -> Registry | None:
        for registry in self.registries:
            if registry.name == name:
                return registry
        return None


def is_default_registry(name: str) -> bool:
    return name in {"", DOCKER_HUB_REGISTRY}


def parse_duration(value: str | int | float) -> float:
    """Parse ``90``, ``"30s"``, ``"5m"``, ``"1h30m"`` into seconds."""
    if isinstance(value, bool):
        raise ConfigError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = value.strip().lower()
        if text.isdigit():
            seconds = float(text)
        else:
            parts = _DURATION_PART.findall(text)
            if not parts or "".join(n + u for n, u in parts) != text:
                raise ConfigError(f"invalid duration: {value!r}")
            seconds = float(sum(int(n) * _DURATION_UNITS[u] for n, u in parts))
    if seconds <= 0:
        raise ConfigError(f"duration must be positive, got: {value!r}")
    return seconds


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


def _require(entry: Mapping[str, Any], key: str, kind: str) -> str:
    value = entry.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{kind} entry is missing required field {key!r}: {dict(entry)}")
    return value.strip()


def _as_list(document: Mapping[str, Any], key: str) -> list[Mapping[str, Any]]:
    raw = document.get(key) or []
    if not isinstance(raw, list) or not all(isinstance(item, Mapping) for item in raw):
        raise ConfigError(f"{key} must be a list of mappings")
    return raw


def _parse_registry(entry: Mapping[str, Any]) -> Registry:
    name = str(entry.get("name") or "").strip()
    auth_raw = entry.get("auth")
    auth = None
    if auth_raw:
        if not isinstance(auth_raw, Mapping):
            raise ConfigError(f"auth for registry {name!r} must be a mapping")
        auth = RegistryAuth(
            username=str(auth_raw.get("username") or ""),
            password=str(auth_raw.get("password") or ""),
        )
    return Registry(name=name, auth=auth)


def _parse_image(entry: Mapping[str, Any]) -> Image:
    return Image(
        name=_require(entry, "name", "image"),
        registry=str(entry.get("registry") or "").strip(),
        tag=str(entry.get("tag") or DEFAULT_TAG).strip(),
    )


def _parse_deployment(entry: Mapping[str, Any]) -> DeploymentTarget:
    return DeploymentTarget(
        name=_require(entry, "name", "deployment"),
        namespace=_require(entry, "namespace", "deployment"),
        container=_require(entry, "container", "deployment"),
        image=_require(entry, "image", "deployment"),
    )


def parse_config(document: Mapping[str, Any], env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Build a :class:`ControllerConfig` from a parsed document plus env overrides.

    Scalar settings can be overridden from the environment:
    ``CHECK_INTERVAL``, ``REGISTRY_TIMEOUT_SECONDS``, ``ROLLOUT_ANNOTATION_KEY``
    and ``KUBECONFIG_PATH``.  Lists only come from the document.
    """
    values = env if env is not None else os.environ

    interval_raw = values.get("CHECK_INTERVAL", document.get("check_interval"))
    check_interval = (
        parse_duration(interval_raw)
        if interval_raw is not None
        else float(DEFAULT_CHECK_INTERVAL_SECONDS)
    )

    timeout_default = document.get("registry_timeout_seconds", DEFAULT_REGISTRY_TIMEOUT_SECONDS)
    if not isinstance(timeout_default, int) or isinstance(timeout_default, bool):
        raise ConfigError("registry_timeout_seconds must be an integer")
    timeout = env_int("REGISTRY_TIMEOUT_SECONDS", timeout_default, minimum=1, env=values)

    annotation_key = values.get(
        "ROLLOUT_ANNOTATION_KEY",
        document.get("rollout_annotation_key") or DEFAULT_ROLLOUT_ANNOTATION_KEY,
    )
    kubeconfig = values.get("KUBECONFIG_PATH", document.get("kubeconfig")) or None

    registries = tuple(_parse_registry(entry) for entry in _as_list(document, "registries"))
    images = tuple(_parse_image(entry) for entry in _as_list(document, "images"))
    deployments = tuple(_parse_deployment(entry) for entry in _as_list(document, "deployments"))

    config = ControllerConfig(
        check_interval_seconds=check_interval,
        registries=registries,
        images=images,
        deployments=deployments,
        registry_timeout_seconds=timeout,
        rollout_annotation_key=annotation_key,
        kubeconfig=kubeconfig,
    )

    for image in images:
        if config.find_registry(image.registry) is None:
            LOGGER.warning(
                "Image %s references unconfigured registry %r; it will fail every check",
                image.key,
                image.registry,
            )
    return config


def load_config(
    path: str | Path | None = None, env: Mapping[str, str] | None = None
) -> ControllerConfig:
    """Load controller config from a YAML file with environment overrides.

    The file path comes from *path*, then ``CONFIG_PATH``, then
    ``config.yaml``.  A missing file is not fatal: defaults are used with
    empty image and deployment lists.
    """
    values = env if env is not None else os.environ
    config_path = Path(path or values.get("CONFIG_PATH", "config.yaml"))

    document: Any = {}
    if config_path.is_file():
        try:
            document = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"failed to parse {config_path}: {exc}") from exc
    else:
        LOGGER.warning("Config file %s not found; using defaults", config_path)

    if not isinstance(document, Mapping):
        raise ConfigError(f"{config_path} must contain a mapping at the top level")

    config = parse_config(document, env=values)
    LOGGER.info(
        "Loaded configuration with %d registries, %d images and %d deployments",
        len(config.registries),
        len(config.images),
        len(config.deployments),
    )
    return config
