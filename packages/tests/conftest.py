"""Pytest configuration and shared fixtures."""

import logging
from collections.abc import Iterator

import pytest

# The commandbridge testing plugin is registered via a ``pytest11`` entry
# point (pyproject.toml) for external consumers.  In our own test suite
# it is disabled (``-p no:commandbridge``) and loaded here, during
# ``pytest_load_initial_conftests`` after ``pytest-cov`` has started
# coverage tracing.
pytest_plugins = ["commandbridge.testing._plugin"]


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "unit: Unit tests (fast, no external dependencies)"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests (may require external services)"
    )


@pytest.fixture
def _restore_root_logger() -> Iterator[None]:
    """Save and restore root logger handlers and level.

    Apps call ``configure_logging()`` during bootstrap, which replaces
    the root handlers; this keeps that from leaking across tests.
    """
    root = logging.getLogger()
    original_handlers = root.handlers[:]
    original_level = root.level
    yield
    for h in root.handlers:
        if h not in original_handlers:
            h.close()
    root.handlers = original_handlers
    root.setLevel(original_level)
