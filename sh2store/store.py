"""Typed reads and writes over the sh2 store.

Each public function takes a ``Database`` and runs in a single
transaction. Functions ending in ``_tx`` take a running ``TxWrap`` so that
callers (bootstrap) can compose several steps into one transaction.

Deletes return the tombstone deltas a caller should broadcast.
"""

import logging
import time
import uuid
from typing import Any, Optional

from sh2store.codec import encode
from sh2store.database import Database, TxWrap
from sh2store.delta import Tombstone, make_tombstone
from sh2store.errors import DuplicateEntityError, EntityNotFoundError
from sh2store.models import (
    CMD_STATUS_DONE,
    CMD_STATUSES,
    DEFAULT_SCREEN_NAME,
    DEFAULT_SCREEN_WINDOW_NAME,
    LAYOUT_FULL,
    LINE_TYPE_CMD,
    LINE_TYPES,
    LOCAL_REMOTE_ALIAS,
    SHARE_MODE_LOCAL,
    Cmd,
    HistoryItem,
    Layout,
    Line,
    RemoteInstance,
    RemoteState,
    RemoteTarget,
    Screen,
    ScreenWindow,
    Session,
    Window,
)

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 1000


def _new_id() -> str:
    return str(uuid.uuid4())


def _now_ms() -> int:
    return int(time.time() * 1000)


# ==================================================================
# Sessions
# ==================================================================


def get_session_by_name_tx(tx: TxWrap, name: str) -> Optional[Session]:
    return tx.get_model(Session, "SELECT * FROM session WHERE name = ?", (name,))


def get_session_by_name(db: Database, name: str) -> Optional[Session]:
    return db.with_tx(lambda tx: get_session_by_name_tx(tx, name))


def get_session_by_id(db: Database, session_id: str) -> Optional[Session]:
    return db.with_tx(
        lambda tx: tx.get_model(Session, "SELECT * FROM session WHERE session_id = ?", (session_id,))
    )


def insert_session_with_name_tx(tx: TxWrap, name: str, activate: bool = False) -> str:
    """Create a session with one screen, one window and a full-size layout.

    Raises:
        DuplicateEntityError: If a session with *name* already exists.
    """
    if not name:
        raise ValueError("session name must not be empty")
    if tx.exists("SELECT 1 FROM session WHERE name = ?", (name,)):
        raise DuplicateEntityError(f"session name '{name}' already exists")
    session_id = _new_id()
    max_idx = tx.get_int("SELECT COALESCE(MAX(session_idx), 0) FROM session")
    session = Session(
        session_id=session_id,
        name=name,
        session_idx=max_idx + 1,
        share_mode=SHARE_MODE_LOCAL,
    )
    tx.insert_model("session", session)
    insert_screen_tx(tx, session_id, DEFAULT_SCREEN_NAME, activate)
    logger.info("[db] added session '%s', id=%s", name, session_id)
    return session_id


def insert_session_with_name(db: Database, name: str, activate: bool = False) -> str:
    return db.with_tx(lambda tx: insert_session_with_name_tx(tx, name, activate))


def _load_screens_tx(tx: TxWrap, session_id: str) -> list[Screen]:
    screens = tx.select_models(
        Screen,
        "SELECT * FROM screen WHERE session_id = ? ORDER BY screen_idx",
        (session_id,),
    )
    sws = tx.select_models(
        ScreenWindow,
        "SELECT * FROM screen_window WHERE session_id = ? ORDER BY rowid",
        (session_id,),
    )
    by_screen: dict[str, list[ScreenWindow]] = {}
    for sw in sws:
        by_screen.setdefault(sw.screen_id, []).append(sw)
    for screen in screens:
        screen.windows = by_screen.get(screen.screen_id, [])
    return screens


def get_all_sessions(db: Database) -> list[Session]:
    """All sessions with screens, screen-windows and session remotes loaded."""

    def _load(tx: TxWrap) -> list[Session]:
        sessions = tx.select_models(Session, "SELECT * FROM session ORDER BY session_idx")
        for session in sessions:
            session.screens = _load_screens_tx(tx, session.session_id)
            session.remotes = tx.select_models(
                RemoteInstance,
                "SELECT * FROM remote_instance WHERE session_id = ? AND session_scope = 1",
                (session.session_id,),
            )
        return sessions

    return db.with_tx(_load)


def delete_session(db: Database, session_id: str) -> list[Tombstone]:
    """Delete a session and everything it owns except history items."""

    def _delete(tx: TxWrap) -> list[Tombstone]:
        session = tx.get_model(Session, "SELECT * FROM session WHERE session_id = ?", (session_id,))
        if session is None:
            raise EntityNotFoundError(f"session[{session_id}] not found")
        for table in ("screen_window", "screen", "window", "remote_instance", "line", "cmd"):
            tx.execute(f"DELETE FROM {table} WHERE session_id = ?", (session_id,))
        tx.execute("DELETE FROM session WHERE session_id = ?", (session_id,))
        return [make_tombstone(session)]

    rtn = db.with_tx(_delete)
    logger.info("[db] deleted session %s", session_id)
    return rtn


# ==================================================================
# Screens and windows
# ==================================================================


def _insert_window_tx(tx: TxWrap, session_id: str) -> str:
    window = Window(
        session_id=session_id,
        window_id=_new_id(),
        cur_remote=LOCAL_REMOTE_ALIAS,
        share_mode=SHARE_MODE_LOCAL,
    )
    tx.insert_model("window", window)
    return window.window_id


def insert_screen_tx(tx: TxWrap, session_id: str, name: str, activate: bool = False) -> str:
    """Add a screen (with its first window) to a session."""
    if not tx.exists("SELECT 1 FROM session WHERE session_id = ?", (session_id,)):
        raise EntityNotFoundError(f"session[{session_id}] not found")
    max_idx = tx.get_int(
        "SELECT COALESCE(MAX(screen_idx), 0) FROM screen WHERE session_id = ?", (session_id,)
    )
    window_id = _insert_window_tx(tx, session_id)
    screen = Screen(
        session_id=session_id,
        screen_id=_new_id(),
        screen_idx=max_idx + 1,
        name=name,
        active_window_id=window_id,
        share_mode=SHARE_MODE_LOCAL,
    )
    tx.insert_model("screen", screen)
    tx.insert_model(
        "screen_window",
        ScreenWindow(
            session_id=session_id,
            screen_id=screen.screen_id,
            window_id=window_id,
            name=DEFAULT_SCREEN_WINDOW_NAME,
            layout=Layout(type=LAYOUT_FULL),
        ),
    )
    if activate:
        tx.execute(
            "UPDATE session SET active_screen_id = ? WHERE session_id = ?",
            (screen.screen_id, session_id),
        )
    return screen.screen_id


def insert_screen(db: Database, session_id: str, name: str, activate: bool = False) -> str:
    return db.with_tx(lambda tx: insert_screen_tx(tx, session_id, name, activate))


def get_screen_by_id(db: Database, session_id: str, screen_id: str) -> Optional[Screen]:
    def _load(tx: TxWrap) -> Optional[Screen]:
        screen = tx.get_model(
            Screen,
            "SELECT * FROM screen WHERE session_id = ? AND screen_id = ?",
            (session_id, screen_id),
        )
        if screen is not None:
            screen.windows = tx.select_models(
                ScreenWindow,
                "SELECT * FROM screen_window WHERE session_id = ? AND screen_id = ? ORDER BY rowid",
                (session_id, screen_id),
            )
        return screen

    return db.with_tx(_load)


def delete_window_tx(tx: TxWrap, session_id: str, window_id: str) -> list[Tombstone]:
    """Delete a window, its screen placements and its window-scoped remotes.

    Lines and cmds stay behind as history.
    """
    window = tx.get_model(
        Window,
        "SELECT * FROM window WHERE session_id = ? AND window_id = ?",
        (session_id, window_id),
    )
    if window is None:
        raise EntityNotFoundError(f"window[{window_id}] not found")
    sws = tx.select_models(
        ScreenWindow,
        "SELECT * FROM screen_window WHERE session_id = ? AND window_id = ?",
        (session_id, window_id),
    )
    ris = tx.select_models(
        RemoteInstance,
        "SELECT * FROM remote_instance WHERE session_id = ? AND window_id = ?",
        (session_id, window_id),
    )
    tx.execute(
        "DELETE FROM screen_window WHERE session_id = ? AND window_id = ?", (session_id, window_id)
    )
    tx.execute(
        "DELETE FROM remote_instance WHERE session_id = ? AND window_id = ?", (session_id, window_id)
    )
    tx.execute("DELETE FROM window WHERE session_id = ? AND window_id = ?", (session_id, window_id))
    tx.execute(
        "UPDATE screen SET active_window_id = '' WHERE session_id = ? AND active_window_id = ?",
        (session_id, window_id),
    )
    return (
        [make_tombstone(sw) for sw in sws]
        + [make_tombstone(ri) for ri in ris]
        + [make_tombstone(window)]
    )


def delete_window(db: Database, session_id: str, window_id: str) -> list[Tombstone]:
    return db.with_tx(lambda tx: delete_window_tx(tx, session_id, window_id))


def delete_screen(db: Database, session_id: str, screen_id: str) -> list[Tombstone]:
    """Delete a screen. Windows no other screen shows are deleted with it."""

    def _delete(tx: TxWrap) -> list[Tombstone]:
        screen = tx.get_model(
            Screen,
            "SELECT * FROM screen WHERE session_id = ? AND screen_id = ?",
            (session_id, screen_id),
        )
        if screen is None:
            raise EntityNotFoundError(f"screen[{screen_id}] not found")
        sws = tx.select_models(
            ScreenWindow,
            "SELECT * FROM screen_window WHERE session_id = ? AND screen_id = ?",
            (session_id, screen_id),
        )
        tx.execute(
            "DELETE FROM screen_window WHERE session_id = ? AND screen_id = ?",
            (session_id, screen_id),
        )
        tx.execute(
            "DELETE FROM screen WHERE session_id = ? AND screen_id = ?", (session_id, screen_id)
        )
        rtn: list[Tombstone] = [make_tombstone(sw) for sw in sws]
        for sw in sws:
            still_shown = tx.exists(
                "SELECT 1 FROM screen_window WHERE session_id = ? AND window_id = ?",
                (session_id, sw.window_id),
            )
            if not still_shown:
                rtn.extend(delete_window_tx(tx, session_id, sw.window_id))
        next_screen_id = tx.get_row(
            "SELECT screen_id FROM screen WHERE session_id = ? ORDER BY screen_idx LIMIT 1",
            (session_id,),
        )
        tx.execute(
            "UPDATE session SET active_screen_id = ? WHERE session_id = ? AND active_screen_id = ?",
            (next_screen_id["screen_id"] if next_screen_id else "", session_id, screen_id),
        )
        rtn.append(make_tombstone(screen))
        return rtn

    return db.with_tx(_delete)


def get_window_by_id(db: Database, session_id: str, window_id: str) -> Optional[Window]:
    """A window with its lines, the cmds those lines reference, and its remotes."""

    def _load(tx: TxWrap) -> Optional[Window]:
        window = tx.get_model(
            Window,
            "SELECT * FROM window WHERE session_id = ? AND window_id = ?",
            (session_id, window_id),
        )
        if window is None:
            return None
        window.lines = _window_lines_tx(tx, session_id, window_id)
        window.cmds = tx.select_models(
            Cmd,
            """SELECT * FROM cmd WHERE session_id = ? AND cmd_id IN (
                   SELECT cmd_id FROM line
                   WHERE session_id = ? AND window_id = ? AND line_type = ?)""",
            (session_id, session_id, window_id, LINE_TYPE_CMD),
        )
        window.remotes = tx.select_models(
            RemoteInstance,
            "SELECT * FROM remote_instance WHERE session_id = ? AND window_id = ?",
            (session_id, window_id),
        )
        return window

    return db.with_tx(_load)


# ==================================================================
# Remotes
# ==================================================================


def get_remote_by_id_tx(tx: TxWrap, remote_id: str) -> Optional[RemoteTarget]:
    return tx.get_model(RemoteTarget, "SELECT * FROM remote WHERE remote_id = ?", (remote_id,))


def get_remote_by_id(db: Database, remote_id: str) -> Optional[RemoteTarget]:
    return db.with_tx(lambda tx: get_remote_by_id_tx(tx, remote_id))


def get_remote_by_alias(db: Database, alias: str) -> Optional[RemoteTarget]:
    return db.with_tx(
        lambda tx: tx.get_model(RemoteTarget, "SELECT * FROM remote WHERE remote_alias = ?", (alias,))
    )


def get_remote_by_canonical_name(db: Database, canonical_name: str) -> Optional[RemoteTarget]:
    return db.with_tx(
        lambda tx: tx.get_model(
            RemoteTarget,
            "SELECT * FROM remote WHERE remote_canonical_name = ?",
            (canonical_name,),
        )
    )


def get_all_remotes(db: Database) -> list[RemoteTarget]:
    return db.with_tx(
        lambda tx: tx.select_models(RemoteTarget, "SELECT * FROM remote ORDER BY rowid")
    )


def insert_remote_tx(tx: TxWrap, remote: RemoteTarget) -> None:
    """Insert a remote.

    Raises:
        DuplicateEntityError: If the id, alias or canonical name is taken.
    """
    if not remote.remote_id:
        raise ValueError("cannot insert remote without remoteid")
    if not remote.remote_canonical_name:
        raise ValueError("cannot insert remote without canonical name")
    if tx.exists("SELECT 1 FROM remote WHERE remote_id = ?", (remote.remote_id,)):
        raise DuplicateEntityError(f"remote[{remote.remote_id}] already exists")
    if remote.remote_alias and tx.exists(
        "SELECT 1 FROM remote WHERE remote_alias = ?", (remote.remote_alias,)
    ):
        raise DuplicateEntityError(f"remote alias '{remote.remote_alias}' already in use")
    if tx.exists(
        "SELECT 1 FROM remote WHERE remote_canonical_name = ?", (remote.remote_canonical_name,)
    ):
        raise DuplicateEntityError(
            f"remote canonical name '{remote.remote_canonical_name}' already in use"
        )
    tx.insert_model("remote", remote)


def insert_remote(db: Database, remote: RemoteTarget) -> None:
    db.with_tx(lambda tx: insert_remote_tx(tx, remote))


def update_remote_last_connect(db: Database, remote_id: str, ts: Optional[int] = None) -> int:
    """Stamp the last successful connect time; returns the stored value."""
    if ts is None:
        ts = _now_ms()

    def _update(tx: TxWrap) -> int:
        count = tx.execute(
            "UPDATE remote SET last_connect_ts = ? WHERE remote_id = ?", (ts, remote_id)
        )
        if count == 0:
            raise EntityNotFoundError(f"remote[{remote_id}] not found")
        return ts

    return db.with_tx(_update)


# ==================================================================
# Remote instances
# ==================================================================


def get_remote_instance(
    db: Database, session_id: str, window_id: str, remote_id: str
) -> Optional[RemoteInstance]:
    return db.with_tx(
        lambda tx: tx.get_model(
            RemoteInstance,
            "SELECT * FROM remote_instance WHERE session_id = ? AND window_id = ? AND remote_id = ?",
            (session_id, window_id, remote_id),
        )
    )


def get_session_remote_instances(db: Database, session_id: str) -> list[RemoteInstance]:
    return db.with_tx(
        lambda tx: tx.select_models(
            RemoteInstance,
            "SELECT * FROM remote_instance WHERE session_id = ? AND session_scope = 1",
            (session_id,),
        )
    )


def update_remote_state(
    db: Database, session_id: str, window_id: str, remote_id: str, state: RemoteState
) -> RemoteInstance:
    """Set the state of the (scope, remote) binding, creating it if needed.

    An empty *window_id* addresses the session-scoped binding.
    """

    def _update(tx: TxWrap) -> RemoteInstance:
        ri = tx.get_model(
            RemoteInstance,
            "SELECT * FROM remote_instance WHERE session_id = ? AND window_id = ? AND remote_id = ?",
            (session_id, window_id, remote_id),
        )
        if ri is not None:
            tx.execute(
                "UPDATE remote_instance SET state = ? WHERE ri_id = ?", (encode(state), ri.ri_id)
            )
            return ri.model_copy(update={"state": state})
        remote = get_remote_by_id_tx(tx, remote_id)
        if remote is None:
            raise EntityNotFoundError(f"remote[{remote_id}] not found")
        if not tx.exists("SELECT 1 FROM session WHERE session_id = ?", (session_id,)):
            raise EntityNotFoundError(f"session[{session_id}] not found")
        if window_id and not tx.exists(
            "SELECT 1 FROM window WHERE session_id = ? AND window_id = ?",
            (session_id, window_id),
        ):
            raise EntityNotFoundError(f"window[{window_id}] not found")
        ri = RemoteInstance(
            ri_id=_new_id(),
            name=remote.get_name(),
            session_id=session_id,
            window_id=window_id,
            remote_id=remote_id,
            session_scope=(window_id == ""),
            state=state,
        )
        tx.insert_model("remote_instance", ri)
        return ri

    return db.with_tx(_update)


# ==================================================================
# Lines and cmds
# ==================================================================


def insert_line(db: Database, line: Line, cmd: Optional[Cmd] = None) -> None:
    """Append a line, and its cmd when given, in one transaction.

    Raises:
        EntityNotFoundError: If the line's window does not exist.
        DuplicateEntityError: If the line id or cmd id is already stored.
    """
    if not line.line_id:
        raise ValueError("cannot insert line with empty lineid")
    if line.line_type not in LINE_TYPES:
        raise ValueError(f"invalid line type '{line.line_type}'")
    if cmd is not None:
        if line.line_type != LINE_TYPE_CMD:
            raise ValueError("only cmd lines can carry a cmd")
        if cmd.cmd_id != line.cmd_id or cmd.session_id != line.session_id:
            raise ValueError(f"cmd[{cmd.cmd_id}] does not match line[{line.line_id}]")

    def _insert(tx: TxWrap) -> None:
        if not tx.exists(
            "SELECT 1 FROM window WHERE session_id = ? AND window_id = ?",
            (line.session_id, line.window_id),
        ):
            raise EntityNotFoundError(f"window[{line.window_id}] not found")
        tx.insert_model("line", line)
        if cmd is not None:
            tx.insert_model("cmd", cmd)

    db.with_tx(_insert)


def _window_lines_tx(tx: TxWrap, session_id: str, window_id: str) -> list[Line]:
    return tx.select_models(
        Line,
        "SELECT * FROM line WHERE session_id = ? AND window_id = ? ORDER BY ts, rowid",
        (session_id, window_id),
    )


def get_window_lines(db: Database, session_id: str, window_id: str) -> list[Line]:
    return db.with_tx(lambda tx: _window_lines_tx(tx, session_id, window_id))


def get_cmd_by_id(db: Database, session_id: str, cmd_id: str) -> Optional[Cmd]:
    return db.with_tx(
        lambda tx: tx.get_model(
            Cmd, "SELECT * FROM cmd WHERE session_id = ? AND cmd_id = ?", (session_id, cmd_id)
        )
    )


def update_cmd_status(db: Database, session_id: str, cmd_id: str, status: str) -> None:
    if status not in CMD_STATUSES:
        raise ValueError(f"invalid cmd status '{status}'")

    def _update(tx: TxWrap) -> None:
        count = tx.execute(
            "UPDATE cmd SET status = ? WHERE session_id = ? AND cmd_id = ?",
            (status, session_id, cmd_id),
        )
        if count == 0:
            raise EntityNotFoundError(f"cmd[{cmd_id}] not found")

    db.with_tx(_update)


def update_cmd_done(
    db: Database,
    session_id: str,
    cmd_id: str,
    done_pk: dict[str, Any],
    status: str = CMD_STATUS_DONE,
) -> None:
    """Record the cmd-done packet and final status."""
    if status not in CMD_STATUSES:
        raise ValueError(f"invalid cmd status '{status}'")

    def _update(tx: TxWrap) -> None:
        count = tx.execute(
            "UPDATE cmd SET done_pk = ?, status = ? WHERE session_id = ? AND cmd_id = ?",
            (encode(done_pk), status, session_id, cmd_id),
        )
        if count == 0:
            raise EntityNotFoundError(f"cmd[{cmd_id}] not found")

    db.with_tx(_update)


def append_cmd_output(
    db: Database,
    session_id: str,
    cmd_id: str,
    packets: list[dict[str, Any]],
    used_rows: Optional[int] = None,
) -> Cmd:
    """Append process-output packets to a cmd's run output."""

    def _append(tx: TxWrap) -> Cmd:
        cmd = tx.get_model(
            Cmd, "SELECT * FROM cmd WHERE session_id = ? AND cmd_id = ?", (session_id, cmd_id)
        )
        if cmd is None:
            raise EntityNotFoundError(f"cmd[{cmd_id}] not found")
        updates: dict[str, Any] = {"run_out": cmd.run_out + list(packets)}
        if used_rows is not None:
            updates["used_rows"] = used_rows
        cmd = cmd.model_copy(update=updates)
        tx.execute(
            "UPDATE cmd SET run_out = ?, used_rows = ? WHERE session_id = ? AND cmd_id = ?",
            (encode(cmd.run_out), cmd.used_rows, session_id, cmd_id),
        )
        return cmd

    return db.with_tx(_append)


# ==================================================================
# History
# ==================================================================


def insert_history_item(db: Database, item: HistoryItem) -> None:
    if not item.history_id:
        raise ValueError("cannot insert history item without historyid")
    db.with_tx(lambda tx: tx.insert_model("history", item))


def get_history_items(
    db: Database, session_id: Optional[str] = None, limit: int = DEFAULT_HISTORY_LIMIT
) -> list[HistoryItem]:
    """Most recent history items first, optionally for one session."""
    if session_id is None:
        return db.with_tx(
            lambda tx: tx.select_models(
                HistoryItem, "SELECT * FROM history ORDER BY ts DESC, rowid DESC LIMIT ?", (limit,)
            )
        )
    return db.with_tx(
        lambda tx: tx.select_models(
            HistoryItem,
            "SELECT * FROM history WHERE session_id = ? ORDER BY ts DESC, rowid DESC LIMIT ?",
            (session_id, limit),
        )
    )
