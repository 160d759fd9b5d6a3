"""Environment registry access.

The registry is owned by the cluster; the engine reads from it through the
EnvironmentRegistry interface and never writes back.

SECURITY: File-backed records enforce size limits before parsing.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import DEFAULT_REGISTRY_NAMESPACE, MAX_ENVIRONMENT_FILE_SIZE_BYTES
from .errors import (
    EnvironmentNotFoundError,
    EnvironmentSourceMissingError,
    RegistryUnavailableError,
)
from .models import Environment, EnvironmentSource

logger = logging.getLogger(__name__)

ENVIRONMENT_FILE_SUFFIXES = (".yaml", ".yml")


# =============================================================================
# Registry Interface
# =============================================================================


class EnvironmentRegistry:
    """Abstract interface for reading environment records.

    Implementations:
    - StaticEnvironmentRegistry: In-memory records
    - YamlEnvironmentRegistry: Records exported as YAML files
    """

    def get_environment(self, name: str) -> Environment:
        """Get an environment by name.

        Raises:
            EnvironmentNotFoundError: If no environment has this name.
            RegistryUnavailableError: If the registry cannot be read.
        """
        raise NotImplementedError

    def list_environments(self, namespace: str) -> list[Environment]:
        """List environments registered in a namespace."""
        raise NotImplementedError


class StaticEnvironmentRegistry(EnvironmentRegistry):
    """Registry over a fixed set of environment records."""

    def __init__(
        self,
        environments: list[Environment] | None = None,
        namespace: str = DEFAULT_REGISTRY_NAMESPACE,
    ) -> None:
        self._namespace = namespace
        self._environments: dict[str, Environment] = {}
        for env in environments or []:
            self.add(env)

    def add(self, environment: Environment) -> None:
        """Add or replace a record, defaulting its registry namespace."""
        if not environment.registry_namespace:
            environment = environment.model_copy(update={"registry_namespace": self._namespace})
        self._environments[environment.name] = environment

    def get_environment(self, name: str) -> Environment:
        env = self._environments.get(name)
        if env is None:
            raise EnvironmentNotFoundError(name)
        return env

    def list_environments(self, namespace: str) -> list[Environment]:
        return [e for e in self._environments.values() if e.registry_namespace == namespace]


class YamlEnvironmentRegistry(StaticEnvironmentRegistry):
    """Registry backed by a directory of Environment YAML records.

    Each file may hold several documents, in Kubernetes style
    (apiVersion/kind/metadata/spec) or flat. Records are loaded lazily on
    first access so a missing directory surfaces as an infrastructure error
    at lookup time.
    """

    def __init__(self, directory: Path, namespace: str = DEFAULT_REGISTRY_NAMESPACE) -> None:
        super().__init__(namespace=namespace)
        self._directory = directory
        self._loaded = False

    def get_environment(self, name: str) -> Environment:
        self._ensure_loaded()
        return super().get_environment(name)

    def list_environments(self, namespace: str) -> list[Environment]:
        self._ensure_loaded()
        return super().list_environments(namespace)

    def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        for env in load_environments(self._directory, self._namespace):
            self.add(env)
        self._loaded = True


# =============================================================================
# Loading
# =============================================================================


def load_environments(
    directory: Path, namespace: str = DEFAULT_REGISTRY_NAMESPACE
) -> list[Environment]:
    """Load and validate every Environment record in a directory.

    Args:
        directory: Directory containing ``*.yaml`` / ``*.yml`` records.
        namespace: Registry namespace for records that do not declare one.

    Returns:
        Validated environments sorted by file name.

    Raises:
        RegistryUnavailableError: If the directory or a record cannot be read
            or fails validation.
    """
    if not directory.is_dir():
        raise RegistryUnavailableError(f"Environment directory not found: {directory}")

    environments: list[Environment] = []
    for path in sorted(directory.iterdir()):
        if path.suffix not in ENVIRONMENT_FILE_SUFFIXES or not path.is_file():
            continue
        environments.extend(_load_environment_file(path, namespace))

    logger.info(
        "Loaded environment records",
        extra={"directory": str(directory), "count": len(environments)},
    )
    return environments


def _load_environment_file(path: Path, namespace: str) -> list[Environment]:
    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise RegistryUnavailableError(f"Failed to stat environment file {path}: {e}") from e

    if file_size > MAX_ENVIRONMENT_FILE_SIZE_BYTES:
        raise RegistryUnavailableError(
            f"Environment file exceeds maximum size of "
            f"{MAX_ENVIRONMENT_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise RegistryUnavailableError(f"Failed to read environment file {path}: {e}") from e

    try:
        documents = [d for d in yaml.safe_load_all(content) if d is not None]
    except yaml.YAMLError as e:
        raise RegistryUnavailableError(f"Invalid YAML in {path}: {e}") from e

    environments = []
    for document in documents:
        if not isinstance(document, dict):
            raise RegistryUnavailableError(f"Environment record must be a YAML mapping: {path}")
        environments.append(_parse_environment(document, path, namespace))
    return environments


def _parse_environment(document: dict[str, Any], path: Path, namespace: str) -> Environment:
    # Kubernetes-style format: apiVersion, kind, metadata, spec
    if "apiVersion" in document and "spec" in document:
        metadata = document.get("metadata") or {}
        spec = document.get("spec") or {}
        if not isinstance(metadata, dict) or not isinstance(spec, dict):
            raise RegistryUnavailableError(f"metadata and spec must be mappings: {path}")
        data = {
            **spec,
            "name": metadata.get("name", ""),
            "registryNamespace": metadata.get("namespace") or namespace,
        }
    else:
        data = {"registryNamespace": namespace, **document}

    try:
        return Environment.model_validate(data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")
        error_list = "\n".join(errors)
        raise RegistryUnavailableError(f"Validation failed for {path}:\n{error_list}") from e


# =============================================================================
# Source Resolution
# =============================================================================


def find_dev_environment(registry: EnvironmentRegistry, namespace: str) -> Environment | None:
    """Find the Development environment of a registry namespace.

    Falls back to an environment literally named ``dev`` for registries
    whose records do not set ``kind``.
    """
    candidates = registry.list_environments(namespace)
    for env in candidates:
        if env.is_development:
            return env
    for env in candidates:
        if env.name == "dev":
            return env
    return None


def resolve_source(
    environment: Environment, registry: EnvironmentRegistry
) -> tuple[EnvironmentSource, bool]:
    """Resolve the repository to mutate for an environment.

    Environments without a git source are promoted through the dev
    environment's repository; the declaration still targets the
    environment's own namespace.

    Returns:
        Tuple of (source, used_dev_fallback).

    Raises:
        EnvironmentSourceMissingError: If neither has a git source.
    """
    if environment.source.is_git:
        return environment.source, False

    dev_env = find_dev_environment(registry, environment.registry_namespace)
    if dev_env is not None and dev_env.source.is_git:
        logger.info(
            "Environment has no git source, using dev environment repository",
            extra={
                "environment": environment.name,
                "dev_environment": dev_env.name,
                "url": dev_env.source.url,
            },
        )
        return dev_env.source, True

    raise EnvironmentSourceMissingError(
        f"Environment '{environment.name}' has no git source and no dev environment "
        f"with a git source exists in namespace '{environment.registry_namespace}'"
    )
