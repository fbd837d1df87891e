# companion/conftest.py
import os
import tempfile
from pathlib import Path

import pytest

# Point the store at a throwaway SQLite file before any companion module builds the engine
_TEST_DB = Path(tempfile.mkdtemp(prefix="companion-tests-")) / "test.db"
os.environ.setdefault("TEST_DATABASE_URL", f"sqlite:///{_TEST_DB}")


@pytest.fixture(scope="session", autouse=True)
def create_tables():
    """Create all tables once per test session."""
    from companion.core.database import create_all_tables, drop_all_tables

    create_all_tables()
    yield
    drop_all_tables()


@pytest.fixture(scope="function", autouse=True)
def reset_db():
    """
    Start every test from empty tables, default restrictions and a cold cache.

    Image trackers are process-wide, so they are cancelled on both sides.
    """
    from companion.core.database import reset_database
    from companion.core.settings_cache import clear_settings_cache
    from companion.features.images.tracker import registry
    from companion.features.plans.service import seed_default_restrictions

    registry.cancel_all()
    reset_database()
    clear_settings_cache()
    seed_default_restrictions()
    yield
    registry.cancel_all()
    clear_settings_cache()


@pytest.fixture
def inline_defer():
    """Run deferred side effects synchronously so tests can observe them."""
    from companion.core.deferred import run_inline

    return run_inline
