"""Append-only line creation for window history."""

import time
import uuid

from sh2store.database import Database
from sh2store.delta import Upsert, make_upsert
from sh2store.models import LINE_TYPE_CMD, LINE_TYPE_TEXT, Cmd, Line
from sh2store.store import insert_line


def _make_line(session_id: str, window_id: str, user_id: str, line_type: str) -> Line:
    return Line(
        session_id=session_id,
        window_id=window_id,
        line_id=str(uuid.uuid4()),
        ts=int(time.time() * 1000),
        user_id=user_id,
        line_type=line_type,
    )


def add_comment_line(
    db: Database, session_id: str, window_id: str, user_id: str, comment_text: str
) -> Line:
    """Append a free-text line to a window."""
    line = _make_line(session_id, window_id, user_id, LINE_TYPE_TEXT)
    line.text = comment_text
    insert_line(db, line)
    return line


def add_cmd_line(db: Database, session_id: str, window_id: str, user_id: str, cmd: Cmd) -> Line:
    """Append a command line; the line and *cmd* are stored together or not at all.

    A cmd without a session id is stored under the line's session.
    """
    line = _make_line(session_id, window_id, user_id, LINE_TYPE_CMD)
    line.cmd_id = cmd.cmd_id
    if not cmd.session_id:
        cmd = cmd.model_copy(update={"session_id": session_id})
    insert_line(db, line, cmd)
    return line


def line_delta(line: Line) -> Upsert:
    """Delta announcing a newly appended line to viewers."""
    return make_upsert(line)
