"""
tests/conftest.py
"""
from __future__ import annotations

import datetime as _dt
import itertools
from pathlib import Path
from typing import Generator

import pytest
from flask.testing import FlaskClient
from pytest import MonkeyPatch

# The single-file app lives here:
from linkinbio.page import api_analytics, app, get_db, init_db, login


@pytest.fixture(scope="session")
def _tmp_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    """One temp file for the whole test session (faster than per-test)."""
    return tmp_path_factory.mktemp("data") / "test.sqlite3"


@pytest.fixture(scope="session", autouse=True)
def _configure_app(_tmp_db_path: Path, tmp_path_factory: pytest.TempPathFactory) -> None:
    """
    Configure the Flask app *once* before the first test is collected.
    """
    scratch = tmp_path_factory.mktemp("scratch")
    app.config.update(
        TESTING=True,
        DATABASE=str(_tmp_db_path),
        STORE_BACKEND="sqlite",
        DATA_FILE=str(scratch / "settings.json"),
        VISITS_LOG_DIR=str(scratch / "visits"),
        UPLOAD_DIR="",
        KV_REST_API_URL="",
        KV_REST_API_TOKEN="",
    )
    with app.app_context():
        init_db()


@pytest.fixture(autouse=True)
def _clean_state() -> None:
    """Every test starts with no saved document, no visits, no rate-limit hits."""
    with app.app_context():
        db = get_db()
        db.execute("DELETE FROM settings_doc")
        db.execute("DELETE FROM analytics")
        db.commit()
    login.hits.clear()
    api_analytics.hits.clear()


@pytest.fixture
def client() -> Generator[FlaskClient, None, None]:
    """
    Gives each test an isolated application context *and* test client.
    """
    with app.test_client() as client:
        with app.app_context():
            yield client


@pytest.fixture(autouse=True, scope="session")
def _ticking_clock():
    """
    Patch linkinbio.page.utc_now for the whole session so every call
    returns an ever-increasing timestamp (unique item ids, ordered visits).
    """
    from linkinbio import page

    counter = itertools.count()

    base = _dt.datetime(2099, 1, 1, tzinfo=_dt.timezone.utc)

    def _fake_now():
        return base + _dt.timedelta(seconds=next(counter))

    mp = MonkeyPatch()
    mp.setattr(page, "utc_now", _fake_now)

    yield

    mp.undo()
