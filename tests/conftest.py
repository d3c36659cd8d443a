"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for provider_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from convergence.config import Config  # noqa: E402
from provider_mock import MockProviderClient  # noqa: E402


@pytest.fixture
def config() -> Config:
    """Fast-polling configuration for tests."""
    return Config(
        poll_interval_seconds=1,
        timeout_seconds=5,
        creation_grace_period_seconds=0,
        deletion_timeout_seconds=5,
        request_poll_interval_seconds=0.01,
    )


@pytest.fixture
def client() -> MockProviderClient:
    return MockProviderClient()
