"""Shared fixtures for sh2store tests."""

import pytest

from sh2store.database import Database, reset_db


LOCAL_REMOTE_ID = "0b5c6d2e-3f4a-4b5c-8d9e-0f1a2b3c4d5e"


@pytest.fixture
def tmp_db_path(tmp_path):
    """Temporary path for the SQLite store."""
    return tmp_path / "sh2.db"


@pytest.fixture
def db(tmp_db_path):
    """File-backed Database, closed after the test."""
    database = Database(str(tmp_db_path))
    yield database
    database.close()


@pytest.fixture
def fake_host(monkeypatch):
    """Pin the local machine accessors to known values."""
    monkeypatch.setattr("sh2store.host.get_remote_id", lambda: LOCAL_REMOTE_ID)
    monkeypatch.setattr("sh2store.host.get_hostname", lambda: "devbox")
    monkeypatch.setattr("sh2store.host.get_current_user", lambda: "mike")
    return {"remote_id": LOCAL_REMOTE_ID, "hostname": "devbox", "user": "mike"}


@pytest.fixture
def global_db_env(tmp_path, monkeypatch):
    """Point the process-wide store at a temp home and reset it around the test."""
    monkeypatch.setenv("SH2_HOME", str(tmp_path / "home"))
    reset_db()
    yield tmp_path / "home"
    reset_db()


@pytest.fixture
def session_window(db):
    """A session with one window: (session_id, window_id)."""
    from sh2store.store import get_all_sessions, insert_session_with_name

    session_id = insert_session_with_name(db, "work", activate=True)
    session = [s for s in get_all_sessions(db) if s.session_id == session_id][0]
    return session_id, session.screens[0].windows[0].window_id
