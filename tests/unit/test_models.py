"""Unit tests for the entity models and their key/value map form."""

import pytest
from pydantic import ValidationError

from sh2store.errors import CodecError
from sh2store.models import (
    CMD_STATUS_DONE,
    CMD_STATUS_RUNNING,
    Cmd,
    Layout,
    Line,
    RemoteState,
    RemoteTarget,
    Screen,
    ScreenOpts,
    Session,
    SSHOpts,
    TermOpts,
    cmd_from_map,
    remote_from_map,
)


def _populated_remote() -> RemoteTarget:
    return RemoteTarget(
        remote_id="r-1",
        physical_id="phys-9",
        remote_type="ssh",
        remote_alias="prod",
        remote_canonical_name="deploy@prod.example.com",
        remote_sudo=True,
        remote_user="deploy",
        remote_host="prod.example.com",
        auto_connect=True,
        init_pk={"type": "init", "version": "v0.1.0", "homedir": "/home/deploy"},
        ssh_opts=SSHOpts(ssh_host="prod.example.com", ssh_opts="-A", ssh_identity="~/.ssh/prod", ssh_user="deploy"),
        last_connect_ts=1700000000123,
    )


def _populated_cmd() -> Cmd:
    return Cmd(
        session_id="s-1",
        cmd_id="c-1",
        remote_id="r-1",
        cmd_str="ls -l",
        remote_state=RemoteState(cwd="/tmp"),
        term_opts=TermOpts(rows=25, cols=80, flex_rows=True),
        status=CMD_STATUS_DONE,
        start_pk={"type": "cmdstart", "pid": 4242},
        done_pk={"type": "cmddone", "exitcode": 0, "durationms": 12},
        used_rows=3,
        run_out=[{"type": "data", "data": "dG90YWwgMA=="}],
    )


def test_remote_map_round_trip():
    """Every field of a populated remote survives to_map / remote_from_map."""
    remote = _populated_remote()
    restored = remote_from_map(remote.to_map())
    assert restored == remote
    assert restored is not remote


def test_remote_map_uses_wire_keys_and_json_text():
    m = _populated_remote().to_map()
    assert m["remotecanonicalname"] == "deploy@prod.example.com"
    assert m["lastconnectts"] == 1700000000123
    assert isinstance(m["initpk"], str)
    assert isinstance(m["sshopts"], str)
    assert '"sshidentity":"~/.ssh/prod"' in m["sshopts"]


def test_remote_map_without_payloads():
    remote = RemoteTarget(remote_id="r-2", remote_canonical_name="a@b")
    m = remote.to_map()
    assert m["initpk"] == "null"
    assert remote_from_map(m) == remote


def test_cmd_map_round_trip():
    cmd = _populated_cmd()
    assert cmd_from_map(cmd.to_map()) == cmd


def test_from_map_empty_returns_none():
    assert remote_from_map({}) is None
    assert cmd_from_map(None) is None


def test_from_map_missing_keys_stay_zero():
    """Absent keys decode to zero values, never to errors."""
    remote = remote_from_map({"remoteid": "r-3", "remotesudo": True})
    assert remote.remote_id == "r-3"
    assert remote.remote_sudo is True
    assert remote.remote_alias == ""
    assert remote.ssh_opts is None
    assert remote.last_connect_ts == 0


def test_from_map_bad_json_column_raises_codec_error():
    with pytest.raises(CodecError):
        cmd_from_map({"cmdid": "c-1", "termopts": "{broken"})


def test_cmd_status_is_validated():
    assert Cmd(cmd_id="c").status == CMD_STATUS_RUNNING
    with pytest.raises(ValidationError):
        Cmd(cmd_id="c", status="exploded")


def test_child_collections_not_in_map():
    session = Session(session_id="s", name="default", screens=[Screen(screen_id="x")], access_key="secret")
    m = session.to_map()
    assert "screens" not in m
    assert "remotes" not in m
    assert "accesskey" not in m
    assert m["sessionid"] == "s"


def test_to_row_encodes_json_columns():
    screen = Screen(session_id="s", screen_id="x", screen_opts=ScreenOpts(tab_color="red"))
    row = screen.to_row()
    assert row["screen_opts"] == '{"tabcolor":"red"}'
    assert "windows" not in row
    assert Screen.from_row(row) == screen


def test_from_row_converts_sqlite_booleans():
    remote = RemoteTarget.from_row(
        {
            "remote_id": "r",
            "remote_canonical_name": "a@b",
            "remote_sudo": 0,
            "auto_connect": 1,
            "init_pk": None,
            "ssh_opts": None,
        }
    )
    assert remote.remote_sudo is False
    assert remote.auto_connect is True
    assert remote.init_pk is None


@pytest.mark.parametrize(
    "alias,user,host,expected",
    [
        ("local", "mike", "devbox", "local"),
        ("", "mike", "devbox", "mike@devbox"),
        ("", "", "devbox", "devbox"),
    ],
)
def test_remote_get_name(alias, user, host, expected):
    remote = RemoteTarget(remote_alias=alias, remote_user=user, remote_host=host)
    assert remote.get_name() == expected


def test_entity_keys():
    assert Line(line_id="l").entity_key() == "l"
    assert Layout().model_dump(by_alias=True)["float"] is False
