"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for scm_fakes imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from promoter.config import PromoteConfig  # noqa: E402
from promoter.models import Environment  # noqa: E402

STAGING_URL = "https://github.com/acme/environment-staging.git"
PRODUCTION_URL = "https://github.com/acme/environment-production.git"
DEV_URL = "https://github.com/acme/environment-dev.git"


@pytest.fixture
def fast_config() -> PromoteConfig:
    """Configuration with instant polling."""
    return PromoteConfig(poll_interval_seconds=0, max_poll_attempts=3)


@pytest.fixture
def staging_env() -> Environment:
    return Environment.model_validate(
        {
            "name": "staging",
            "namespace": "jx-staging",
            "order": 100,
            "promotionStrategy": "Automatic",
            "source": {"url": STAGING_URL},
        }
    )


@pytest.fixture
def production_env() -> Environment:
    return Environment.model_validate(
        {
            "name": "production",
            "namespace": "jx-production",
            "order": 200,
            "promotionStrategy": "Manual",
            "source": {"url": PRODUCTION_URL},
        }
    )


@pytest.fixture
def dev_env() -> Environment:
    return Environment.model_validate(
        {
            "name": "dev",
            "namespace": "jx",
            "kind": "Development",
            "promotionStrategy": "Never",
            "source": {"url": DEV_URL},
        }
    )
