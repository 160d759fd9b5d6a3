"""Tests for environment registry access."""

from pathlib import Path

import pytest
import yaml

from promoter.config import MAX_ENVIRONMENT_FILE_SIZE_BYTES
from promoter.environments import (
    StaticEnvironmentRegistry,
    YamlEnvironmentRegistry,
    find_dev_environment,
    load_environments,
    resolve_source,
)
from promoter.errors import (
    EnvironmentNotFoundError,
    EnvironmentSourceMissingError,
    RegistryUnavailableError,
)
from promoter.models import Environment, PromotionStrategy


def write_yaml(path: Path, *documents: dict) -> None:
    path.write_text(yaml.safe_dump_all(documents), encoding="utf-8")


class TestLoadEnvironments:
    """Tests for load_environments()."""

    def test_kubernetes_style_record(self, tmp_path: Path) -> None:
        """Test loading an apiVersion/kind/metadata/spec record."""
        write_yaml(
            tmp_path / "staging.yaml",
            {
                "apiVersion": "jenkins.io/v1",
                "kind": "Environment",
                "metadata": {"name": "staging", "namespace": "jx"},
                "spec": {
                    "namespace": "jx-staging",
                    "order": 100,
                    "promotionStrategy": "Auto",
                    "source": {"url": "https://github.com/acme/environment-staging.git"},
                },
            },
        )

        [env] = load_environments(tmp_path)

        assert env.name == "staging"
        assert env.registry_namespace == "jx"
        assert env.target_namespace == "jx-staging"
        assert env.promotion_strategy == PromotionStrategy.AUTOMATIC

    def test_flat_records_multiple_documents(self, tmp_path: Path) -> None:
        """Test several flat records in one file get the default namespace."""
        write_yaml(
            tmp_path / "envs.yml",
            {"name": "dev", "kind": "Development"},
            {"name": "production", "promotionStrategy": "Manual"},
        )

        envs = load_environments(tmp_path, namespace="cd")

        assert [e.name for e in envs] == ["dev", "production"]
        assert all(e.registry_namespace == "cd" for e in envs)

    def test_non_yaml_files_ignored(self, tmp_path: Path) -> None:
        """Test that only .yaml/.yml files are read."""
        (tmp_path / "README.md").write_text("# environments")
        assert load_environments(tmp_path) == []

    def test_missing_directory(self, tmp_path: Path) -> None:
        """Test that a missing directory is an infrastructure error."""
        with pytest.raises(RegistryUnavailableError) as exc_info:
            load_environments(tmp_path / "missing")

        assert exc_info.value.retryable is True

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        """Test that malformed YAML is reported with the file."""
        (tmp_path / "broken.yaml").write_text("name: [unclosed")

        with pytest.raises(RegistryUnavailableError) as exc_info:
            load_environments(tmp_path)

        assert "broken.yaml" in str(exc_info.value)

    def test_validation_errors_listed(self, tmp_path: Path) -> None:
        """Test that pydantic errors are formatted as loc: msg lines."""
        write_yaml(tmp_path / "bad.yaml", {"name": "staging", "order": "first"})

        with pytest.raises(RegistryUnavailableError) as exc_info:
            load_environments(tmp_path)

        assert "order:" in str(exc_info.value)

    def test_oversized_file_rejected(self, tmp_path: Path) -> None:
        """Test that files over the size limit are not parsed."""
        path = tmp_path / "huge.yaml"
        path.write_text("#" * (MAX_ENVIRONMENT_FILE_SIZE_BYTES + 1))

        with pytest.raises(RegistryUnavailableError) as exc_info:
            load_environments(tmp_path)

        assert "maximum size" in str(exc_info.value)


class TestRegistries:
    """Tests for registry implementations."""

    def test_static_registry_lookup(self, staging_env: Environment) -> None:
        """Test lookup by name and listing by namespace."""
        registry = StaticEnvironmentRegistry([staging_env])

        assert registry.get_environment("staging").name == "staging"
        assert [e.name for e in registry.list_environments("jx")] == ["staging"]
        assert registry.list_environments("other") == []

    def test_static_registry_not_found(self) -> None:
        """Test that an unknown environment is an input error."""
        registry = StaticEnvironmentRegistry()

        with pytest.raises(EnvironmentNotFoundError) as exc_info:
            registry.get_environment("qa")

        assert exc_info.value.name == "qa"
        assert exc_info.value.retryable is False

    def test_yaml_registry_loads_lazily(self, tmp_path: Path) -> None:
        """Test that a missing directory only fails on first access."""
        registry = YamlEnvironmentRegistry(tmp_path / "missing")

        with pytest.raises(RegistryUnavailableError):
            registry.get_environment("staging")

    def test_yaml_registry(self, tmp_path: Path) -> None:
        """Test reading records through the registry interface."""
        write_yaml(tmp_path / "staging.yaml", {"name": "staging"})
        registry = YamlEnvironmentRegistry(tmp_path)

        assert registry.get_environment("staging").target_namespace == "jx-staging"
        assert len(registry.list_environments("jx")) == 1


class TestResolveSource:
    """Tests for resolve_source() and the dev repository fallback."""

    def test_own_source(self, staging_env: Environment, dev_env: Environment) -> None:
        """Test that an environment with a git source uses it."""
        registry = StaticEnvironmentRegistry([staging_env, dev_env])

        source, used_fallback = resolve_source(staging_env, registry)

        assert source == staging_env.source
        assert used_fallback is False

    def test_dev_fallback(self, dev_env: Environment) -> None:
        """Test that a sourceless environment falls back to the dev repository."""
        staging = Environment(name="staging", namespace="jx-staging")
        registry = StaticEnvironmentRegistry([staging, dev_env])

        source, used_fallback = resolve_source(registry.get_environment("staging"), registry)

        assert source.url == dev_env.source.url
        assert used_fallback is True

    def test_dev_found_by_name(self) -> None:
        """Test that an environment named dev is used when no kind is set."""
        dev = Environment.model_validate(
            {"name": "dev", "source": {"url": "https://github.com/acme/dev.git"}}
        )
        registry = StaticEnvironmentRegistry([dev])

        assert find_dev_environment(registry, "jx") == registry.get_environment("dev")

    def test_no_source_anywhere(self) -> None:
        """Test that missing sources are an input error."""
        staging = Environment(name="staging")
        registry = StaticEnvironmentRegistry([staging])

        with pytest.raises(EnvironmentSourceMissingError):
            resolve_source(registry.get_environment("staging"), registry)
