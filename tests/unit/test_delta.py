"""Unit tests for update deltas and the UpdateRegistry.

Covers the three delta shapes, patch application, JSON round trips of
deltas, and topic-scoped broadcasting with dead-subscriber pruning.
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from sh2store.delta import (
    Patch,
    Tombstone,
    Upsert,
    UpdateRegistry,
    apply_patch,
    dump_delta,
    load_delta,
    make_patch,
    make_tombstone,
    make_upsert,
    snapshot_model,
)
from sh2store.errors import CodecError
from sh2store.models import (
    CMD_STATUS_DONE,
    Cmd,
    Line,
    RemoteState,
    RemoteTarget,
    Screen,
    ScreenOpts,
    ScreenWindow,
    Session,
)


def _run(coro):
    """Run an async coroutine synchronously."""
    return asyncio.new_event_loop().run_until_complete(coro)


def _mock_sub():
    """Create a mock subscriber with async send_text."""
    sub = MagicMock()
    sub.send_text = AsyncMock()
    return sub


# ------------------------------------------------------------------
# Delta shapes
# ------------------------------------------------------------------


def test_upsert_carries_full_snapshot():
    remote = RemoteTarget(remote_id="r1", remote_canonical_name="a@b", remote_sudo=True)
    delta = make_upsert(remote)
    assert delta.kind == "upsert"
    assert delta.entity == "remote"
    assert delta.id == "r1"
    assert snapshot_model(delta) == remote


def test_patch_only_listed_fields():
    cmd = Cmd(cmd_id="c1", cmd_str="ls", status=CMD_STATUS_DONE, remote_state=RemoteState(cwd="/x"))
    patch = make_patch(cmd, "status", "remote_state")
    assert set(patch.fields) == {"status", "remotestate"}
    assert patch.fields["remotestate"] == '{"cwd":"/x"}'


def test_patch_unknown_field_rejected():
    with pytest.raises(ValueError):
        make_patch(Cmd(cmd_id="c1"), "nope")
    with pytest.raises(ValueError):
        make_patch(Session(session_id="s"), "screens")


def test_apply_patch_leaves_other_fields():
    screen = Screen(
        session_id="s",
        screen_id="x",
        name="main",
        screen_opts=ScreenOpts(tab_color="red"),
        windows=[ScreenWindow(screen_id="x", window_id="w")],
    )
    patch = Patch(entity="screen", id="x", fields={"screenopts": '{"tabcolor":"blue"}'})

    patched = apply_patch(screen, patch)

    assert patched.screen_opts.tab_color == "blue"
    assert patched.name == "main"
    assert patched.windows == screen.windows
    assert screen.screen_opts.tab_color == "red"


def test_apply_patch_keeps_excluded_fields():
    session = Session(session_id="s", name="a", access_key="k")
    patched = apply_patch(session, Patch(entity="session", id="s", fields={"name": "b"}))
    assert patched.name == "b"
    assert patched.access_key == "k"


def test_apply_patch_wrong_entity():
    with pytest.raises(ValueError):
        apply_patch(Line(line_id="l"), Patch(entity="cmd", id="l", fields={}))


def test_tombstone():
    assert make_tombstone(ScreenWindow(screen_id="a", window_id="b")) == Tombstone(
        entity="screenwindow", id="a/b"
    )


@pytest.mark.parametrize(
    "delta",
    [
        Upsert(entity="line", id="l1", snapshot={"lineid": "l1", "text": "hi"}),
        Patch(entity="cmd", id="c1", fields={"status": "done"}),
        Tombstone(entity="window", id="w1"),
    ],
)
def test_delta_json_round_trip(delta):
    assert load_delta(dump_delta(delta)) == delta


def test_load_delta_rejects_unknown_kind():
    with pytest.raises(CodecError):
        load_delta('{"kind": "explode", "entity": "line", "id": "x"}')


def test_snapshot_unknown_entity():
    with pytest.raises(CodecError):
        snapshot_model(Upsert(entity="widget", id="x", snapshot={"a": 1}))


# ------------------------------------------------------------------
# UpdateRegistry
# ------------------------------------------------------------------


def test_subscribe_unsubscribe():
    r = UpdateRegistry()
    sub = _mock_sub()
    r.subscribe(sub)
    assert r.subscriber_count == 1
    r.unsubscribe(sub)
    assert r.subscriber_count == 0


def test_broadcast_to_matching_session():
    r = UpdateRegistry()
    s1_sub = _mock_sub()
    s2_sub = _mock_sub()
    r.subscribe(s1_sub, session_ids=["s1"])
    r.subscribe(s2_sub, session_ids=["s2"])

    sent = _run(r.broadcast("s1", [Tombstone(entity="line", id="l1")]))

    assert sent == 1
    s1_sub.send_text.assert_called_once()
    s2_sub.send_text.assert_not_called()
    msg = json.loads(s1_sub.send_text.call_args[0][0])
    assert msg["type"] == "update"
    assert msg["sessionid"] == "s1"
    assert msg["deltas"] == [{"kind": "tombstone", "entity": "line", "id": "l1"}]


def test_wildcard_receives_everything():
    r = UpdateRegistry()
    sub = _mock_sub()
    r.subscribe(sub)
    _run(r.broadcast("any", [Tombstone(entity="line", id="l1")]))
    sub.send_text.assert_called_once()


def test_dead_subscriber_pruned():
    r = UpdateRegistry()
    dead = _mock_sub()
    dead.send_text.side_effect = ConnectionError("gone")
    alive = _mock_sub()
    r.subscribe(dead)
    r.subscribe(alive)

    sent = _run(r.broadcast("s1", [Tombstone(entity="line", id="l1")]))

    assert sent == 1
    assert r.subscriber_count == 1
    alive.send_text.assert_called_once()


def test_empty_broadcast_sends_nothing():
    r = UpdateRegistry()
    sub = _mock_sub()
    r.subscribe(sub)
    assert _run(r.broadcast("s1", [])) == 0
    sub.send_text.assert_not_called()
