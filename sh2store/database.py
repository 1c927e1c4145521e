"""SQLite transaction manager for the sh2 store.

10 tables mirror the entity model:
- Identity: client
- Hierarchy: session, screen, screen_window, window
- Remotes: remote, remote_instance
- History: line, cmd, history

WAL mode with a bounded busy timeout. Every write goes through
``Database.with_tx`` (or ``Database.transaction``), which takes the write
lock up front with ``BEGIN IMMEDIATE`` so count-then-insert sequences are
serialized. Transactions never nest.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path
from typing import Any, Callable, Iterator, Optional, Sequence, TypeVar

from sh2store.config import DEFAULT_BUSY_TIMEOUT_MS, StoreConfig
from sh2store.errors import (
    ContentionError,
    DuplicateEntityError,
    NestedTransactionError,
    StoreError,
)
from sh2store.models import StoreModel

logger = logging.getLogger(__name__)

T = TypeVar("T")
M = TypeVar("M", bound=StoreModel)

# ---------------------------------------------------------------------------
# Schema SQL
# ---------------------------------------------------------------------------

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS client (
    user_id TEXT PRIMARY KEY,
    user_public_key_bytes BLOB NOT NULL,
    user_private_key_bytes BLOB NOT NULL
);

CREATE TABLE IF NOT EXISTS session (
    session_id TEXT PRIMARY KEY,
    name TEXT NOT NULL UNIQUE,
    session_idx INTEGER NOT NULL,
    active_screen_id TEXT NOT NULL DEFAULT '',
    owner_user_id TEXT NOT NULL DEFAULT '',
    share_mode TEXT NOT NULL DEFAULT 'local',
    access_key TEXT NOT NULL DEFAULT '',
    notify_num INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS screen (
    session_id TEXT NOT NULL,
    screen_id TEXT NOT NULL,
    screen_idx INTEGER NOT NULL,
    name TEXT NOT NULL,
    active_window_id TEXT NOT NULL DEFAULT '',
    screen_opts TEXT NOT NULL DEFAULT '{}',
    owner_user_id TEXT NOT NULL DEFAULT '',
    share_mode TEXT NOT NULL DEFAULT 'local',
    PRIMARY KEY (session_id, screen_id)
);

CREATE TABLE IF NOT EXISTS screen_window (
    session_id TEXT NOT NULL,
    screen_id TEXT NOT NULL,
    window_id TEXT NOT NULL,
    name TEXT NOT NULL,
    layout TEXT NOT NULL DEFAULT '{}',
    PRIMARY KEY (session_id, screen_id, window_id)
);

CREATE TABLE IF NOT EXISTS window (
    session_id TEXT NOT NULL,
    window_id TEXT NOT NULL,
    cur_remote TEXT NOT NULL DEFAULT '',
    win_opts TEXT NOT NULL DEFAULT '{}',
    owner_user_id TEXT NOT NULL DEFAULT '',
    share_mode TEXT NOT NULL DEFAULT 'local',
    share_opts TEXT NOT NULL DEFAULT '{}',
    PRIMARY KEY (session_id, window_id)
);

CREATE TABLE IF NOT EXISTS remote (
    remote_id TEXT PRIMARY KEY,
    physical_id TEXT NOT NULL DEFAULT '',
    remote_type TEXT NOT NULL DEFAULT '',
    remote_alias TEXT NOT NULL DEFAULT '',
    remote_canonical_name TEXT NOT NULL UNIQUE,
    remote_sudo BOOLEAN NOT NULL DEFAULT 0,
    remote_user TEXT NOT NULL DEFAULT '',
    remote_host TEXT NOT NULL DEFAULT '',
    auto_connect BOOLEAN NOT NULL DEFAULT 0,
    init_pk TEXT,
    ssh_opts TEXT,
    last_connect_ts INTEGER NOT NULL DEFAULT 0
);

-- window_id is '' for a session-scoped binding
CREATE TABLE IF NOT EXISTS remote_instance (
    ri_id TEXT PRIMARY KEY,
    name TEXT NOT NULL DEFAULT '',
    session_id TEXT NOT NULL,
    window_id TEXT NOT NULL DEFAULT '',
    remote_id TEXT NOT NULL,
    session_scope BOOLEAN NOT NULL DEFAULT 0,
    state TEXT NOT NULL DEFAULT '{}',
    UNIQUE (session_id, window_id, remote_id)
);

CREATE TABLE IF NOT EXISTS line (
    session_id TEXT NOT NULL,
    window_id TEXT NOT NULL,
    line_id TEXT NOT NULL,
    ts INTEGER NOT NULL,
    user_id TEXT NOT NULL DEFAULT '',
    line_type TEXT NOT NULL,
    text TEXT NOT NULL DEFAULT '',
    cmd_id TEXT NOT NULL DEFAULT '',
    PRIMARY KEY (session_id, window_id, line_id)
);

CREATE TABLE IF NOT EXISTS cmd (
    session_id TEXT NOT NULL,
    cmd_id TEXT NOT NULL,
    remote_id TEXT NOT NULL DEFAULT '',
    cmd_str TEXT NOT NULL DEFAULT '',
    remote_state TEXT NOT NULL DEFAULT '{}',
    term_opts TEXT NOT NULL DEFAULT '{}',
    status TEXT NOT NULL,
    start_pk TEXT,
    done_pk TEXT,
    used_rows INTEGER NOT NULL DEFAULT 0,
    run_out TEXT NOT NULL DEFAULT '[]',
    PRIMARY KEY (session_id, cmd_id)
);

CREATE TABLE IF NOT EXISTS history (
    history_id TEXT PRIMARY KEY,
    ts INTEGER NOT NULL,
    user_id TEXT NOT NULL DEFAULT '',
    session_id TEXT NOT NULL DEFAULT '',
    screen_id TEXT NOT NULL DEFAULT '',
    window_id TEXT NOT NULL DEFAULT '',
    line_id TEXT NOT NULL DEFAULT '',
    had_error BOOLEAN NOT NULL DEFAULT 0,
    cmd_id TEXT NOT NULL DEFAULT '',
    cmd_str TEXT NOT NULL DEFAULT ''
);
"""

INDEXES_SQL = """
CREATE UNIQUE INDEX IF NOT EXISTS idx_remote_alias ON remote(remote_alias) WHERE remote_alias <> '';
CREATE INDEX IF NOT EXISTS idx_screen_session ON screen(session_id, screen_idx);
CREATE INDEX IF NOT EXISTS idx_screen_window_window ON screen_window(session_id, window_id);
CREATE INDEX IF NOT EXISTS idx_remote_instance_session ON remote_instance(session_id, window_id);
CREATE INDEX IF NOT EXISTS idx_line_window_ts ON line(session_id, window_id, ts);
CREATE INDEX IF NOT EXISTS idx_history_session_ts ON history(session_id, ts);
CREATE INDEX IF NOT EXISTS idx_history_ts ON history(ts);
"""

# Marks the transaction running in the current thread / task.
_active_tx: ContextVar[Optional["TxWrap"]] = ContextVar("sh2store_active_tx", default=None)


def in_transaction() -> bool:
    return _active_tx.get() is not None


def _translate_error(exc: sqlite3.Error) -> Exception:
    """Map sqlite errors onto the store's typed errors."""
    msg = str(exc)
    if isinstance(exc, sqlite3.IntegrityError):
        if "UNIQUE" in msg or "PRIMARY KEY" in msg:
            return DuplicateEntityError(msg)
        return StoreError(msg)
    if isinstance(exc, sqlite3.OperationalError):
        lowered = msg.lower()
        if "locked" in lowered or "busy" in lowered:
            return ContentionError(f"store busy, retry later: {msg}")
    return exc


class TxWrap:
    """Handle to a running transaction, passed to ``with_tx`` callbacks.

    Query helpers take the SQL and a parameter sequence. Reads that may
    find nothing return ``None`` instead of raising.
    """

    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    def _run(self, query: str, params: Sequence[Any]) -> sqlite3.Cursor:
        try:
            return self._conn.execute(query, tuple(params))
        except sqlite3.Error as exc:
            translated = _translate_error(exc)
            if translated is exc:
                raise
            raise translated from exc

    def execute(self, query: str, params: Sequence[Any] = ()) -> int:
        """Run a write statement and return the affected row count."""
        return self._run(query, params).rowcount

    def get_int(self, query: str, params: Sequence[Any] = ()) -> int:
        row = self._run(query, params).fetchone()
        if row is None or row[0] is None:
            return 0
        return int(row[0])

    def exists(self, query: str, params: Sequence[Any] = ()) -> bool:
        return self._run(query, params).fetchone() is not None

    def get_row(self, query: str, params: Sequence[Any] = ()) -> Optional[dict]:
        row = self._run(query, params).fetchone()
        return dict(row) if row else None

    def select_rows(self, query: str, params: Sequence[Any] = ()) -> list[dict]:
        return [dict(row) for row in self._run(query, params).fetchall()]

    def get_model(self, model_cls: type[M], query: str, params: Sequence[Any] = ()) -> Optional[M]:
        row = self.get_row(query, params)
        return model_cls.from_row(row) if row is not None else None

    def select_models(self, model_cls: type[M], query: str, params: Sequence[Any] = ()) -> list[M]:
        return [model_cls.from_row(row) for row in self.select_rows(query, params)]

    def insert_model(self, table: str, model: StoreModel) -> None:
        row = model.to_row()
        cols = ", ".join(row.keys())
        placeholders = ", ".join("?" for _ in row)
        self.execute(f"INSERT INTO {table} ({cols}) VALUES ({placeholders})", list(row.values()))


def _default_db_path() -> str:
    return str(StoreConfig.from_env().db_path)


class Database:
    """SQLite store with WAL mode and serialized write transactions.

    Connections are per thread. An in-memory path gives each thread its
    own empty database, so use a file path whenever threads are involved.
    """

    def __init__(
        self,
        db_path: Optional[str] = None,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
    ):
        if db_path is None:
            db_path = _default_db_path()

        self.db_path = db_path
        self.busy_timeout_ms = busy_timeout_ms
        self._local = threading.local()
        self._connections: set[sqlite3.Connection] = set()
        self._connections_lock = threading.Lock()

        if db_path != ":memory:" and not Path(db_path).exists():
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
            Path(db_path).touch()

        self._init_schema()

    # ------------------------------------------------------------------
    # Connection helpers
    # ------------------------------------------------------------------

    def _get_connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, "connection", None)
        with self._connections_lock:
            if conn is not None and conn not in self._connections:
                # closed by close() from another thread
                conn = None
        if conn is None:
            conn = sqlite3.connect(
                self.db_path,
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,
                check_same_thread=False,
            )
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA foreign_keys=ON")
            conn.execute(f"PRAGMA busy_timeout={int(self.busy_timeout_ms)}")
            conn.row_factory = sqlite3.Row
            with self._connections_lock:
                self._connections.add(conn)
            self._local.connection = conn
        return conn

    def connection(self) -> sqlite3.Connection:
        """Raw connection for this thread. Refused inside a transaction."""
        if in_transaction():
            raise NestedTransactionError(
                "cannot get a raw connection from within a running transaction"
            )
        return self._get_connection()

    @contextmanager
    def transaction(self) -> Iterator[TxWrap]:
        """Run the body inside one write transaction.

        Commits when the body returns, rolls back on any exception.
        """
        if in_transaction():
            raise NestedTransactionError("transaction already running in this context")
        conn = self._get_connection()
        tx = TxWrap(conn)
        token = _active_tx.set(tx)
        try:
            self._exec_control(conn, "BEGIN IMMEDIATE")
            try:
                yield tx
                self._exec_control(conn, "COMMIT")
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
        finally:
            _active_tx.reset(token)

    def with_tx(self, fn: Callable[[TxWrap], T]) -> T:
        """Call ``fn(tx)`` inside a transaction and return its result."""
        with self.transaction() as tx:
            return fn(tx)

    @staticmethod
    def _exec_control(conn: sqlite3.Connection, statement: str) -> None:
        try:
            conn.execute(statement)
        except sqlite3.Error as exc:
            translated = _translate_error(exc)
            if translated is exc:
                raise
            raise translated from exc

    def _init_schema(self) -> None:
        with self.transaction() as tx:
            for statement in (SCHEMA_SQL + INDEXES_SQL).split(";"):
                if statement.strip():
                    tx.execute(statement)

    def close(self) -> None:
        """Close the connections of every thread that used this store."""
        with self._connections_lock:
            connections = list(self._connections)
            self._connections.clear()
        for conn in connections:
            conn.close()
        self._local.connection = None


# ---------------------------------------------------------------------------
# Process-wide handle
# ---------------------------------------------------------------------------

_global_db_lock = threading.Lock()
_global_db: Optional[Database] = None
_global_db_err: Optional[Exception] = None


def get_db(config: Optional[StoreConfig] = None) -> Database:
    """Return the process-wide store, opening it on first use.

    The open happens once under a lock. A failed open is remembered and
    re-raised to every later caller.
    """
    global _global_db, _global_db_err
    if in_transaction():
        raise NestedTransactionError("cannot call get_db from within a running transaction")
    with _global_db_lock:
        if _global_db is None and _global_db_err is None:
            config = config or StoreConfig.from_env()
            try:
                _global_db = Database(str(config.db_path), busy_timeout_ms=config.busy_timeout_ms)
                logger.debug("Opened store %s", config.db_file_name)
            except (sqlite3.Error, OSError, StoreError) as exc:
                # strerror keeps the filesystem path out of the message
                reason = exc.strerror if isinstance(exc, OSError) and exc.strerror else str(exc)
                _global_db_err = StoreError(f"opening db[{config.db_file_name}]: {reason}")
        if _global_db_err is not None:
            raise _global_db_err
        return _global_db


def reset_db() -> None:
    """Drop the process-wide handle (and any remembered open error)."""
    global _global_db, _global_db_err
    with _global_db_lock:
        if _global_db is not None:
            _global_db.close()
        _global_db = None
        _global_db_err = None
