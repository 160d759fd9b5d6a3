"""Configuration management with validation.

Limits are enforced at configuration load time so a promotion run never
starts with an unbounded poll loop or worker pool.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_POLL_INTERVAL_SECONDS = 20
MIN_POLL_INTERVAL_SECONDS = 0
MAX_POLL_INTERVAL_SECONDS = 600

DEFAULT_MAX_POLL_ATTEMPTS = 90  # 30 minutes at the default interval
MAX_POLL_ATTEMPTS_LIMIT = 1000

DEFAULT_MAX_WORKERS = 4
MAX_WORKERS_LIMIT = 16

DEFAULT_CHART_REPO_PREFIX = "dev"
DEFAULT_CHART_REPOSITORY = "http://jenkins-x-chartmuseum:8080"
DEFAULT_BRANCH_PREFIX = "promote"
DEFAULT_REGISTRY_NAMESPACE = "jx"

DEFAULT_GIT_AUTHOR_NAME = "promoter-bot"
DEFAULT_GIT_AUTHOR_EMAIL = "promoter-bot@users.noreply.github.com"

# Wall-clock bound on one git network operation; the process is killed after it
DEFAULT_GIT_TIMEOUT_SECONDS = 300
MAX_GIT_TIMEOUT_SECONDS = 3600

# Security constraints
MAX_DECLARATION_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max declaration file
MAX_ENVIRONMENT_FILE_SIZE_BYTES = 256 * 1024

# Input validation patterns
VALID_PREFIX_PATTERN = r"^[a-z0-9][a-z0-9._-]{0,62}$"
VALID_BRANCH_PREFIX_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9._/-]{0,62}$"


@dataclass(frozen=True)
class PromoteConfig:
    """Promotion engine configuration.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-promotion.
    """

    # Merge polling
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    max_poll_attempts: int = DEFAULT_MAX_POLL_ATTEMPTS

    # Fan-out
    max_workers: int = DEFAULT_MAX_WORKERS

    # Overall invocation timeout, None means unbounded
    timeout_seconds: float | None = None

    # Declarations
    chart_repo_prefix: str = DEFAULT_CHART_REPO_PREFIX
    chart_repository: str = DEFAULT_CHART_REPOSITORY
    branch_prefix: str = DEFAULT_BRANCH_PREFIX
    strict_layout_detection: bool = False

    # Commit identity
    git_author_name: str = DEFAULT_GIT_AUTHOR_NAME
    git_author_email: str = DEFAULT_GIT_AUTHOR_EMAIL
    git_timeout_seconds: float = DEFAULT_GIT_TIMEOUT_SECONDS

    # Sources for the YAML registry and version stream wiring
    registry_namespace: str = DEFAULT_REGISTRY_NAMESPACE
    environments_dir: Path | None = None
    versions_dir: Path | None = None

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not (
            MIN_POLL_INTERVAL_SECONDS <= self.poll_interval_seconds <= MAX_POLL_INTERVAL_SECONDS
        ):
            errors.append(
                f"POLL_INTERVAL must be between {MIN_POLL_INTERVAL_SECONDS} "
                f"and {MAX_POLL_INTERVAL_SECONDS} seconds"
            )

        if not (1 <= self.max_poll_attempts <= MAX_POLL_ATTEMPTS_LIMIT):
            errors.append(f"MAX_POLL_ATTEMPTS must be between 1 and {MAX_POLL_ATTEMPTS_LIMIT}")

        if not (1 <= self.max_workers <= MAX_WORKERS_LIMIT):
            errors.append(f"MAX_WORKERS must be between 1 and {MAX_WORKERS_LIMIT}")

        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            errors.append("TIMEOUT must be positive when set")

        if not re.match(VALID_PREFIX_PATTERN, self.chart_repo_prefix):
            errors.append(
                f"CHART_REPO_PREFIX must match pattern {VALID_PREFIX_PATTERN}: "
                f"{self.chart_repo_prefix}"
            )

        if not re.match(VALID_BRANCH_PREFIX_PATTERN, self.branch_prefix):
            errors.append(
                f"BRANCH_PREFIX must match pattern {VALID_BRANCH_PREFIX_PATTERN}: "
                f"{self.branch_prefix}"
            )

        if not self.git_author_name or not self.git_author_email:
            errors.append("GIT_AUTHOR_NAME and GIT_AUTHOR_EMAIL are required")

        if not (0 < self.git_timeout_seconds <= MAX_GIT_TIMEOUT_SECONDS):
            errors.append(f"GIT_TIMEOUT must be between 0 and {MAX_GIT_TIMEOUT_SECONDS} seconds")

        if self.environments_dir is not None and not self.environments_dir.is_dir():
            errors.append(f"Environments directory does not exist: {self.environments_dir}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> PromoteConfig:
        """Load configuration from environment variables.

        Environment Variables:
            PROMOTE_POLL_INTERVAL: Seconds between merge polls (default: 20)
            PROMOTE_MAX_POLL_ATTEMPTS: Poll attempts before timing out (default: 90)
            PROMOTE_MAX_WORKERS: Concurrent environment workflows (default: 4)
            PROMOTE_TIMEOUT: Overall invocation timeout in seconds (default: none)
            PROMOTE_CHART_REPO_PREFIX: Prefix for new chart references (default: dev)
            PROMOTE_CHART_REPOSITORY: Chart repository URL for requirements files
            PROMOTE_BRANCH_PREFIX: Prefix of deterministic branches (default: promote)
            PROMOTE_STRICT_LAYOUT: Treat repos with several layout markers as unknown
            PROMOTE_GIT_AUTHOR_NAME / PROMOTE_GIT_AUTHOR_EMAIL: Commit identity
            PROMOTE_GIT_TIMEOUT: Seconds before a clone or push is killed (default: 300)
            PROMOTE_REGISTRY_NAMESPACE: Namespace holding Environment records (default: jx)
            PROMOTE_ENVIRONMENTS_DIR: Directory of Environment YAML records
            PROMOTE_VERSIONS_DIR: Version stream checkout
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str) -> float | None:
            value = os.environ.get(key)
            if not value:
                return None
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        def get_path(key: str) -> Path | None:
            value = os.environ.get(key)
            return Path(value) if value else None

        poll_interval = get_float("PROMOTE_POLL_INTERVAL")
        git_timeout = get_float("PROMOTE_GIT_TIMEOUT")

        return cls(
            poll_interval_seconds=(
                DEFAULT_POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
            ),
            max_poll_attempts=get_int("PROMOTE_MAX_POLL_ATTEMPTS", DEFAULT_MAX_POLL_ATTEMPTS),
            max_workers=get_int("PROMOTE_MAX_WORKERS", DEFAULT_MAX_WORKERS),
            timeout_seconds=get_float("PROMOTE_TIMEOUT"),
            chart_repo_prefix=os.environ.get(
                "PROMOTE_CHART_REPO_PREFIX", DEFAULT_CHART_REPO_PREFIX
            ),
            chart_repository=os.environ.get(
                "PROMOTE_CHART_REPOSITORY", DEFAULT_CHART_REPOSITORY
            ),
            branch_prefix=os.environ.get("PROMOTE_BRANCH_PREFIX", DEFAULT_BRANCH_PREFIX),
            strict_layout_detection=get_bool("PROMOTE_STRICT_LAYOUT", False),
            git_author_name=os.environ.get("PROMOTE_GIT_AUTHOR_NAME", DEFAULT_GIT_AUTHOR_NAME),
            git_author_email=os.environ.get(
                "PROMOTE_GIT_AUTHOR_EMAIL", DEFAULT_GIT_AUTHOR_EMAIL
            ),
            git_timeout_seconds=(
                DEFAULT_GIT_TIMEOUT_SECONDS if git_timeout is None else git_timeout
            ),
            registry_namespace=os.environ.get(
                "PROMOTE_REGISTRY_NAMESPACE", DEFAULT_REGISTRY_NAMESPACE
            ),
            environments_dir=get_path("PROMOTE_ENVIRONMENTS_DIR"),
            versions_dir=get_path("PROMOTE_VERSIONS_DIR"),
        )
