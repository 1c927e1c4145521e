"""Tests for local machine accessors."""

import uuid

import pytest

from sh2store import host


def test_remote_id_is_stable(monkeypatch):
    monkeypatch.delenv("SH2_REMOTE_ID", raising=False)
    assert host.get_remote_id() == host.get_remote_id()
    uuid.UUID(host.get_remote_id())


def test_remote_id_from_machine_id(monkeypatch, tmp_path):
    machine_id = tmp_path / "machine-id"
    machine_id.write_text("abc123\n")
    monkeypatch.delenv("SH2_REMOTE_ID", raising=False)
    monkeypatch.setattr(host, "MACHINE_ID_PATHS", (tmp_path / "missing", machine_id))
    assert host.get_remote_id() == str(uuid.uuid5(host.REMOTE_ID_NAMESPACE, "abc123"))


def test_remote_id_falls_back_to_hostname(monkeypatch, tmp_path):
    monkeypatch.delenv("SH2_REMOTE_ID", raising=False)
    monkeypatch.setattr(host, "MACHINE_ID_PATHS", (tmp_path / "missing",))
    monkeypatch.setattr(host, "get_hostname", lambda: "devbox")
    assert host.get_remote_id() == str(uuid.uuid5(host.REMOTE_ID_NAMESPACE, "devbox"))


def test_remote_id_override(monkeypatch):
    rid = "0b5c6d2e-3f4a-4b5c-8d9e-0f1a2b3c4d5e"
    monkeypatch.setenv("SH2_REMOTE_ID", rid.upper())
    assert host.get_remote_id() == rid


def test_remote_id_bad_override(monkeypatch):
    monkeypatch.setenv("SH2_REMOTE_ID", "not-a-uuid")
    with pytest.raises(ValueError, match="SH2_REMOTE_ID"):
        host.get_remote_id()
