"""Shared fixtures for the edge test suite."""

import pytest

from edge.app.services.rate_limit import reset_rate_limiter


@pytest.fixture(autouse=True)
def fresh_rate_limiter():
    """Every test starts with an empty process-wide rate limit window."""
    reset_rate_limiter()
    yield
    reset_rate_limiter()
