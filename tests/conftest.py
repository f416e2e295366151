"""
Project-wide test fixtures.

Module-level state (cached settings, the current run ID) is reset around
every test so tests never observe each other's configuration.
"""

import pytest

from config.settings import get_settings
from libs.common.logging import clear_run_id


@pytest.fixture(autouse=True)
def lifecycle_globals():
    """Clear cached settings and the run ID before and after each test.

    ``get_settings`` is lru_cached, so a test that sets LIFECYCLE_ROOT or
    similar through monkeypatch would otherwise leak it into later tests.
    """
    get_settings.cache_clear()
    clear_run_id()

    yield

    get_settings.cache_clear()
    clear_run_id()
