"""Pytest configuration and fixtures."""

import sys
from datetime import UTC, datetime
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for provider_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from provisioner.config import EngineConfig  # noqa: E402
from provisioner.context import DeploymentContext  # noqa: E402

TEST_TENANT_ID = "88a91815-758a-48c5-8810-c5520e8f581a"
TEST_SUBSCRIPTION_ID = "12345678-1234-1234-1234-123456789012"


class FixedClock:
    """Clock frozen at a given instant."""

    def __init__(self, instant: datetime) -> None:
        self.instant = instant

    def now(self) -> datetime:
        return self.instant


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2024, 6, 1, 12, 0, tzinfo=UTC))


@pytest.fixture
def context(clock: FixedClock) -> DeploymentContext:
    """Deployment context for the "dev" stack."""
    return DeploymentContext(
        stack_name="dev",
        tenant_id=TEST_TENANT_ID,
        location="westeurope",
        subscription_id=TEST_SUBSCRIPTION_ID,
        clock=clock,
    )


@pytest.fixture
def fast_config() -> EngineConfig:
    """Engine configuration without retry delays."""
    return EngineConfig(
        max_concurrency=4,
        max_attempts=3,
        backoff_base_seconds=0.0,
        backoff_max_seconds=0.0,
        call_timeout_seconds=5,
    )
