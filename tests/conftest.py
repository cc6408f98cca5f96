"""
tests/conftest.py
"""
from __future__ import annotations

import datetime as _dt
import itertools
from pathlib import Path
from typing import Iterator

import pytest
from flask.testing import FlaskClient

from inkwell import blog
from inkwell.blog import app, init_db

# every utc_now() call is one second later than the previous one
CLOCK_START = _dt.datetime(2099, 1, 1, tzinfo=_dt.timezone.utc)


@pytest.fixture(scope="session", autouse=True)
def blog_db(tmp_path_factory: pytest.TempPathFactory) -> Path:
    """Schema and seeded taxonomy in one throwaway file for the whole run."""
    path = tmp_path_factory.mktemp("inkwell") / "blog.sqlite3"
    app.config.update(
        TESTING=True,
        DATABASE=str(path),
        SESSION_COOKIE_SECURE=False,
    )
    with app.app_context():
        init_db()
    return path


@pytest.fixture(scope="session", autouse=True)
def ticking_clock() -> Iterator[None]:
    """
    Timestamps stay strictly ordered, and anything scheduled for 2100 is
    still in the future.
    """
    ticks = itertools.count()
    with pytest.MonkeyPatch.context() as mp:
        mp.setattr(
            blog, "utc_now", lambda: CLOCK_START + _dt.timedelta(seconds=next(ticks))
        )
        yield


@pytest.fixture
def client() -> Iterator[FlaskClient]:
    """A fresh test client (empty cookie jar) inside an app context."""
    with app.test_client() as c, app.app_context():
        yield c
