"""Shared fixtures for the switchboard test suite."""

import pytest

from switchboard.core.metrics import metrics


@pytest.fixture(autouse=True)
def _reset_metrics():
    """Metrics are a process-wide singleton; start every test from zero."""
    metrics.reset()
    yield
    metrics.reset()
