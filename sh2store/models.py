"""Typed records for the sh2 store.

One pydantic model per table plus the small structured types that live in
JSON text columns. Attributes use snake_case and match the column names;
the wire form (JSON columns, key/value maps, deltas) drops the underscores,
so ``remote_canonical_name`` travels as ``remotecanonicalname``.

>>> Layout(type=LAYOUT_FULL).model_dump(by_alias=True, exclude_defaults=True)
{'type': 'full'}
>>> RemoteTarget(remote_host="box", remote_user="mike").get_name()
'mike@box'
"""

from typing import Any, ClassVar, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from sh2store.codec import decode, encode, quick_json
from sh2store.errors import CodecError

LINE_TYPE_CMD = "cmd"
LINE_TYPE_TEXT = "text"
LINE_TYPES = frozenset({LINE_TYPE_CMD, LINE_TYPE_TEXT})

DEFAULT_SESSION_NAME = "default"
DEFAULT_SCREEN_NAME = "s1"
DEFAULT_SCREEN_WINDOW_NAME = "w1"
LOCAL_REMOTE_ALIAS = "local"
DEFAULT_CWD = "~"

CMD_STATUS_RUNNING = "running"
CMD_STATUS_DETACHED = "detached"
CMD_STATUS_ERROR = "error"
CMD_STATUS_DONE = "done"
CMD_STATUS_HANGUP = "hangup"
CMD_STATUSES = frozenset(
    {
        CMD_STATUS_RUNNING,
        CMD_STATUS_DETACHED,
        CMD_STATUS_ERROR,
        CMD_STATUS_DONE,
        CMD_STATUS_HANGUP,
    }
)

SHARE_MODE_LOCAL = "local"
SHARE_MODE_PRIVATE = "private"
SHARE_MODE_VIEW = "view"
SHARE_MODE_SHARED = "shared"

LAYOUT_FULL = "full"

REMOTE_TYPE_SSH = "ssh"


def wire_name(name: str) -> str:
    """Map an attribute name to its wire key.

    >>> wire_name("remote_canonical_name")
    'remotecanonicalname'
    >>> wire_name("float_")
    'float'
    """
    return name.replace("_", "")


class StoreModel(BaseModel):
    """Base for every stored record.

    ``JSON_COLUMNS`` lists attributes persisted as JSON text.
    ``CHILD_FIELDS`` lists loaded-on-read collections that have no column.
    ``OMIT_EMPTY`` lists attributes left out of JSON text while empty.
    """

    model_config = ConfigDict(alias_generator=wire_name, populate_by_name=True)

    ENTITY_TYPE: ClassVar[str] = ""
    JSON_COLUMNS: ClassVar[tuple[str, ...]] = ()
    CHILD_FIELDS: ClassVar[tuple[str, ...]] = ()
    NON_COLUMNS: ClassVar[tuple[str, ...]] = ()
    OMIT_EMPTY: ClassVar[tuple[str, ...]] = ()

    def entity_key(self) -> str:
        raise NotImplementedError(f"{type(self).__name__} has no entity key")

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @classmethod
    def column_names(cls) -> list[str]:
        skip = set(cls.CHILD_FIELDS) | set(cls.NON_COLUMNS)
        return [name for name in cls.model_fields if name not in skip]

    def to_row(self) -> dict[str, Any]:
        """Column name -> value, JSON columns encoded as text."""
        row = {}
        for name in self.column_names():
            value = getattr(self, name)
            row[name] = encode(value) if name in self.JSON_COLUMNS else value
        return row

    @classmethod
    def from_row(cls, row: dict[str, Any]):
        values = dict(row)
        for name in cls.JSON_COLUMNS:
            if name in values:
                values[name] = decode(
                    values[name], cls.model_fields[name].annotation, field=name
                )
        try:
            return cls.model_validate(values)
        except ValidationError as exc:
            raise CodecError(f"invalid {cls.__name__} row: {exc}") from exc

    # ------------------------------------------------------------------
    # Key/value maps (delta boundary)
    # ------------------------------------------------------------------

    def to_map(self) -> dict[str, Any]:
        """Flatten into a wire-keyed map; JSON columns become JSON text."""
        rtn = {}
        for name, field in type(self).model_fields.items():
            if name in self.CHILD_FIELDS or field.exclude:
                continue
            key = field.alias or name
            value = getattr(self, name)
            rtn[key] = quick_json(value) if name in self.JSON_COLUMNS else value
        return rtn

    @classmethod
    def fields_from_map(cls, m: dict[str, Any]) -> dict[str, Any]:
        """Decode the keys present in *m* into attribute values.

        Keys that are missing stay missing, which is what lets a map act
        as a partial patch.
        """
        values = {}
        for name, field in cls.model_fields.items():
            if name in cls.CHILD_FIELDS or field.exclude:
                continue
            key = field.alias or name
            if key not in m:
                continue
            value = m[key]
            if name in cls.JSON_COLUMNS and (value is None or isinstance(value, (str, bytes))):
                value = decode(value, field.annotation, field=key)
            values[name] = value
        return values

    @classmethod
    def from_map(cls, m: Optional[dict[str, Any]]):
        if not m:
            return None
        try:
            return cls.model_validate(cls.fields_from_map(m))
        except ValidationError as exc:
            raise CodecError(f"invalid {cls.__name__} map: {exc}") from exc


# ---------------------------------------------------------------------------
# JSON column types
# ---------------------------------------------------------------------------


class WindowOpts(StoreModel):
    pass


class WindowShareOpts(StoreModel):
    pass


class ScreenOpts(StoreModel):
    tab_color: str = ""


class Layout(StoreModel):
    """Placement of a window inside a screen."""

    type: str = ""
    parent: str = ""
    z_index: int = 0
    float_: bool = False
    top: str = ""
    bottom: str = ""
    left: str = ""
    right: str = ""
    width: str = ""
    height: str = ""

    OMIT_EMPTY = (
        "parent",
        "z_index",
        "float_",
        "top",
        "bottom",
        "left",
        "right",
        "width",
        "height",
    )


class RemoteState(StoreModel):
    cwd: str = ""


class TermOpts(StoreModel):
    rows: int = 0
    cols: int = 0
    flex_rows: bool = False
    cmd_size: int = 0

    OMIT_EMPTY = ("flex_rows", "cmd_size")


class SSHOpts(StoreModel):
    ssh_host: str = ""
    ssh_opts: str = ""
    ssh_identity: str = ""
    ssh_user: str = ""


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------


class UserData(StoreModel):
    """The single local client identity (``client`` table)."""

    user_id: str = ""
    user_public_key_bytes: bytes = Field(b"", exclude=True)
    user_private_key_bytes: bytes = Field(b"", exclude=True)
    user_public_key: Any = Field(None, exclude=True)
    user_private_key: Any = Field(None, exclude=True)

    NON_COLUMNS = ("user_public_key", "user_private_key")


class RemoteInstance(StoreModel):
    """A RemoteTarget bound to a session (window_id empty) or a window."""

    ri_id: str = ""
    name: str = ""
    session_id: str = ""
    window_id: str = ""
    remote_id: str = ""
    session_scope: bool = False
    state: RemoteState = Field(default_factory=RemoteState)

    ENTITY_TYPE = "remoteinstance"
    JSON_COLUMNS = ("state",)

    def entity_key(self) -> str:
        return self.ri_id


class Line(StoreModel):
    session_id: str = ""
    window_id: str = ""
    line_id: str = ""
    ts: int = 0
    user_id: str = ""
    line_type: str = ""
    text: str = ""
    cmd_id: str = ""

    ENTITY_TYPE = "line"

    def entity_key(self) -> str:
        return self.line_id


class Cmd(StoreModel):
    """Full record of one executed command.

    Protocol packets are kept as opaque dicts; the store never looks inside.
    """

    session_id: str = ""
    cmd_id: str = ""
    remote_id: str = ""
    cmd_str: str = ""
    remote_state: RemoteState = Field(default_factory=RemoteState)
    term_opts: TermOpts = Field(default_factory=TermOpts)
    status: str = CMD_STATUS_RUNNING
    start_pk: Optional[dict[str, Any]] = None
    done_pk: Optional[dict[str, Any]] = None
    used_rows: int = 0
    run_out: list[dict[str, Any]] = Field(default_factory=list)

    ENTITY_TYPE = "cmd"
    JSON_COLUMNS = ("remote_state", "term_opts", "start_pk", "done_pk", "run_out")

    @field_validator("status")
    @classmethod
    def _check_status(cls, v: str) -> str:
        if v not in CMD_STATUSES:
            raise ValueError(f"invalid cmd status '{v}'")
        return v

    def entity_key(self) -> str:
        return self.cmd_id


class ScreenWindow(StoreModel):
    session_id: str = ""
    screen_id: str = ""
    window_id: str = ""
    name: str = ""
    layout: Layout = Field(default_factory=Layout)

    ENTITY_TYPE = "screenwindow"
    JSON_COLUMNS = ("layout",)

    def entity_key(self) -> str:
        return f"{self.screen_id}/{self.window_id}"


class Window(StoreModel):
    session_id: str = ""
    window_id: str = ""
    cur_remote: str = ""
    win_opts: WindowOpts = Field(default_factory=WindowOpts)
    owner_user_id: str = ""
    share_mode: str = SHARE_MODE_LOCAL
    share_opts: WindowShareOpts = Field(default_factory=WindowShareOpts)
    lines: list[Line] = Field(default_factory=list)
    cmds: list[Cmd] = Field(default_factory=list)
    remotes: list[RemoteInstance] = Field(default_factory=list)

    ENTITY_TYPE = "window"
    JSON_COLUMNS = ("win_opts", "share_opts")
    CHILD_FIELDS = ("lines", "cmds", "remotes")

    def entity_key(self) -> str:
        return self.window_id


class Screen(StoreModel):
    session_id: str = ""
    screen_id: str = ""
    screen_idx: int = 0
    name: str = ""
    active_window_id: str = ""
    screen_opts: ScreenOpts = Field(default_factory=ScreenOpts)
    owner_user_id: str = ""
    share_mode: str = SHARE_MODE_LOCAL
    windows: list[ScreenWindow] = Field(default_factory=list)

    ENTITY_TYPE = "screen"
    JSON_COLUMNS = ("screen_opts",)
    CHILD_FIELDS = ("windows",)

    def entity_key(self) -> str:
        return self.screen_id


class Session(StoreModel):
    session_id: str = ""
    name: str = ""
    session_idx: int = 0
    active_screen_id: str = ""
    owner_user_id: str = ""
    share_mode: str = SHARE_MODE_LOCAL
    access_key: str = Field("", exclude=True)
    notify_num: int = 0
    screens: list[Screen] = Field(default_factory=list)
    remotes: list[RemoteInstance] = Field(default_factory=list)

    ENTITY_TYPE = "session"
    CHILD_FIELDS = ("screens", "remotes")

    def entity_key(self) -> str:
        return self.session_id


class HistoryItem(StoreModel):
    history_id: str = ""
    ts: int = 0
    user_id: str = ""
    session_id: str = ""
    screen_id: str = ""
    window_id: str = ""
    line_id: str = ""
    had_error: bool = False
    cmd_id: str = ""
    cmd_str: str = ""

    ENTITY_TYPE = "history"

    def entity_key(self) -> str:
        return self.history_id


class RemoteTarget(StoreModel):
    """A known execution target, including the distinguished local machine."""

    remote_id: str = ""
    physical_id: str = ""
    remote_type: str = ""
    remote_alias: str = ""
    remote_canonical_name: str = ""
    remote_sudo: bool = False
    remote_user: str = ""
    remote_host: str = ""
    auto_connect: bool = False
    init_pk: Optional[dict[str, Any]] = None
    ssh_opts: Optional[SSHOpts] = None
    last_connect_ts: int = 0

    ENTITY_TYPE = "remote"
    JSON_COLUMNS = ("init_pk", "ssh_opts")

    def entity_key(self) -> str:
        return self.remote_id

    def get_name(self) -> str:
        if self.remote_alias:
            return self.remote_alias
        if not self.remote_user:
            return self.remote_host
        return f"{self.remote_user}@{self.remote_host}"


def remote_from_map(m: Optional[dict[str, Any]]) -> Optional[RemoteTarget]:
    return RemoteTarget.from_map(m)


def cmd_from_map(m: Optional[dict[str, Any]]) -> Optional[Cmd]:
    return Cmd.from_map(m)


ENTITY_MODELS: dict[str, type[StoreModel]] = {
    model.ENTITY_TYPE: model
    for model in (
        Session,
        Screen,
        ScreenWindow,
        Window,
        RemoteTarget,
        RemoteInstance,
        Line,
        Cmd,
        HistoryItem,
    )
}
