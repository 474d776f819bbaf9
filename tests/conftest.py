# tests/conftest.py

"""Shared pytest fixtures for all pricewatch tests."""

from collections.abc import Generator
from unittest.mock import patch

import pytest

from pricewatch.config.settings import Settings


@pytest.fixture(autouse=True)
def fast_scrapers() -> Generator[None, None, None]:
    """Zero retry delays and skip robots.txt fetches."""
    with (
        patch.object(Settings, "REQUEST_DELAY", 0.0),
        patch.object(Settings, "RESPECT_ROBOTS_TXT", False),
    ):
        yield
