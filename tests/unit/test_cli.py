"""Tests for the sh2store maintenance CLI."""

import pytest
from click.testing import CliRunner

from sh2store.cli import main
from sh2store.database import Database
from sh2store.models import HistoryItem
from sh2store.store import insert_history_item


@pytest.fixture
def runner():
    return CliRunner()


def test_init_bootstraps_store(runner, tmp_db_path, fake_host):
    result = runner.invoke(main, ["--db", str(tmp_db_path), "init"])
    assert result.exit_code == 0, result.output
    assert "Store ready" in result.output
    assert "default" in result.output
    assert tmp_db_path.exists()


def test_init_twice_is_harmless(runner, tmp_db_path, fake_host):
    first = runner.invoke(main, ["--db", str(tmp_db_path), "init"])
    second = runner.invoke(main, ["--db", str(tmp_db_path), "init"])
    assert first.exit_code == 0
    assert second.exit_code == 0

    check = Database(str(tmp_db_path))
    assert check.with_tx(lambda tx: tx.get_int("SELECT count(*) FROM session")) == 1
    check.close()


def test_init_failure_exits_nonzero(runner, tmp_db_path, fake_host, monkeypatch):
    def _no_user():
        raise OSError("no passwd entry")

    monkeypatch.setattr("sh2store.host.get_current_user", _no_user)
    result = runner.invoke(main, ["--db", str(tmp_db_path), "init"])
    assert result.exit_code == 1
    assert "Bootstrap failed" in result.output


def test_init_uses_sh2_home(runner, global_db_env, fake_host):
    result = runner.invoke(main, ["init"])
    assert result.exit_code == 0, result.output
    assert (global_db_env / "sh2.db").exists()


def test_sessions_empty(runner, tmp_db_path):
    result = runner.invoke(main, ["--db", str(tmp_db_path), "sessions"])
    assert result.exit_code == 0
    assert "No sessions" in result.output


def test_sessions_and_remotes_after_init(runner, tmp_db_path, fake_host):
    runner.invoke(main, ["--db", str(tmp_db_path), "init"])

    sessions = runner.invoke(main, ["--db", str(tmp_db_path), "sessions"])
    assert sessions.exit_code == 0
    assert "default" in sessions.output

    remotes = runner.invoke(main, ["--db", str(tmp_db_path), "remotes"])
    assert remotes.exit_code == 0
    assert "local" in remotes.output


def test_remotes_empty(runner, tmp_db_path):
    result = runner.invoke(main, ["--db", str(tmp_db_path), "remotes"])
    assert result.exit_code == 0
    assert "No remotes" in result.output


def test_history(runner, tmp_db_path):
    db = Database(str(tmp_db_path))
    insert_history_item(db, HistoryItem(history_id="h1", ts=1000, session_id="s1", cmd_str="make"))
    insert_history_item(db, HistoryItem(history_id="h2", ts=2000, session_id="s2", cmd_str="pwd"))
    db.close()

    result = runner.invoke(main, ["--db", str(tmp_db_path), "history", "-s", "s1"])
    assert result.exit_code == 0
    assert "make" in result.output
    assert "pwd" not in result.output


def test_history_empty(runner, tmp_db_path):
    result = runner.invoke(main, ["--db", str(tmp_db_path), "history"])
    assert result.exit_code == 0
    assert "No history" in result.output
