"""
tests/conftest.py
"""
from __future__ import annotations

from pathlib import Path
from typing import Generator

import pytest
from flask.testing import FlaskClient

# The single-file app lives here:
from navshelf.shelf import (  # noqa: WPS433 (importing from a module)
    FAVICON_CACHE_KEY,
    PUBLIC_CACHE_KEY,
    QUOTE_CACHE_KEY,
    WALLPAPER_CACHE_KEY,
    app,
    get_store,
    init_db,
    local_storage,
    reset_feeds,
)


@pytest.fixture(scope="session")
def _tmp_paths(tmp_path_factory: pytest.TempPathFactory) -> tuple[Path, Path]:
    """One temp DB + cache dir for the whole test session (faster than per-test)."""
    root = tmp_path_factory.mktemp("data")
    return root / "test.sqlite3", root / "cache"


@pytest.fixture(scope="session", autouse=True)
def _configure_app(_tmp_paths: tuple[Path, Path]) -> None:
    """
    Configure the Flask app *once* before the first test is collected.

    Refresh timers are pushed far out and background work runs inline so
    no thread outlives the test that started it.
    """
    db_file, cache_dir = _tmp_paths
    app.config.update(
        TESTING=True,
        DATABASE=str(db_file),
        CACHE_DIR=str(cache_dir),
        AUX_ENABLED=False,
        REFRESH_DEBOUNCE=3600,
        BACKGROUND_REFRESH=False,
    )
    with app.app_context():
        reset_feeds()
        init_db()


@pytest.fixture(autouse=True)
def _empty_shelf() -> Generator[None, None, None]:
    """Every test starts with no categories, no links and nothing cached."""
    with app.app_context():
        reset_feeds()
        db = get_store().connect()
        db.execute("DELETE FROM category")  # links cascade
        db.commit()
        db.close()
        storage = local_storage()
        for key in (PUBLIC_CACHE_KEY, QUOTE_CACHE_KEY, WALLPAPER_CACHE_KEY, FAVICON_CACHE_KEY):
            storage.remove_item(key)
    yield
    with app.app_context():
        reset_feeds()


@pytest.fixture
def client() -> Generator[FlaskClient, None, None]:
    """
    Gives each test an isolated application context *and* test client.

    Yields:
        `flask.testing.FlaskClient`
    """
    with app.test_client() as client:
        with app.app_context():
            yield client


@pytest.fixture
def admin_client(client: FlaskClient) -> FlaskClient:
    """A test client whose session is already logged in (CSRF token = "t0k")."""
    with client.session_transaction() as sess:
        sess["logged_in"] = True
        sess["csrf"] = "t0k"
    return client


@pytest.fixture
def store():
    """The app’s own store, bound to the temp DB."""
    with app.app_context():
        return get_store()
