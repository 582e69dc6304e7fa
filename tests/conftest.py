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

from microlight.blog import app, init_db
from microlight.db import DB, init_schema

BASE_URL = "https://example.com/"
TOKEN_ENDPOINT = "https://tokens.example.org/token"


@pytest.fixture(scope="session")
def _tmp_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    """One temp file for the whole test session (faster than per-test)."""
    return tmp_path_factory.mktemp("data") / "test.sqlite3"


@pytest.fixture(scope="session", autouse=True)
def _configure_app(_tmp_db_path: Path) -> None:
    """
    Configure the Flask app *once* before the first test is collected.
    """
    app.config.update(
        TESTING=True,
        DATABASE=str(_tmp_db_path),
        BASE_URL=BASE_URL,
        TOKEN_ENDPOINT=TOKEN_ENDPOINT,
        POSTS_PER_PAGE=20,
    )
    with app.app_context():
        init_db()


@pytest.fixture
def client() -> Generator[FlaskClient, None, None]:
    with app.test_client() as client:
        with app.app_context():
            yield client


@pytest.fixture
def db(tmp_path: Path) -> Generator[DB, None, None]:
    """A private, freshly created database for data-layer tests."""
    with DB(str(tmp_path / "unit.sqlite3")) as conn:
        init_schema(conn)
        yield conn


@pytest.fixture(autouse=True, scope="session")
def _fast_slugs():
    """
    Patch microlight.posts.utc_now for the whole session so every call
    returns an ever-increasing timestamp (and so a unique time slug).
    """
    from microlight import posts  # import here to avoid early import

    counter = itertools.count()

    base = _dt.datetime(2099, 1, 1, tzinfo=_dt.timezone.utc)

    def _fake_now():
        return base + _dt.timedelta(seconds=next(counter))

    mp = MonkeyPatch()
    mp.setattr(posts, "utc_now", _fake_now)

    yield

    mp.undo()
