"""Tests for StoreConfig.from_env."""

from pathlib import Path

import pytest

from sh2store.config import DB_FILE_NAME, DEFAULT_BUSY_TIMEOUT_MS, StoreConfig


def test_defaults(monkeypatch):
    monkeypatch.delenv("SH2_HOME", raising=False)
    monkeypatch.delenv("SH2_BUSY_TIMEOUT_MS", raising=False)
    cfg = StoreConfig.from_env()
    assert cfg.home_dir == Path.home() / ".sh2"
    assert cfg.busy_timeout_ms == DEFAULT_BUSY_TIMEOUT_MS
    assert cfg.db_path == Path.home() / ".sh2" / DB_FILE_NAME


def test_home_override(monkeypatch, tmp_path):
    monkeypatch.setenv("SH2_HOME", str(tmp_path))
    cfg = StoreConfig.from_env()
    assert cfg.db_path == tmp_path / "sh2.db"


def test_busy_timeout_override(monkeypatch):
    monkeypatch.setenv("SH2_BUSY_TIMEOUT_MS", " 250 ")
    assert StoreConfig.from_env().busy_timeout_ms == 250


@pytest.mark.parametrize("raw", ["soon", "1.5", "0", "-10"])
def test_bad_busy_timeout(monkeypatch, raw):
    monkeypatch.setenv("SH2_BUSY_TIMEOUT_MS", raw)
    with pytest.raises(ValueError, match="SH2_BUSY_TIMEOUT_MS"):
        StoreConfig.from_env()
