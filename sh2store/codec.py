"""JSON codec for structured column values.

Options, layouts, remote state, terminal geometry and opaque protocol
payloads are stored as single JSON text columns. ``encode`` produces the
compact canonical text, ``decode`` parses it back into a typed value.

Empty input always decodes to the zero value of the target type, so a
freshly added column or a NULL cell never breaks a read:

>>> decode("", list[int])
[]
>>> decode(None, dict[str, int])
{}
>>> encode({"cwd": "~"})
'{"cwd":"~"}'
>>> decode('{"cwd": "/tmp", "extra": 1}', dict[str, object])
{'cwd': '/tmp', 'extra': 1}
"""

import json
import logging
import types
from functools import lru_cache
from typing import Any, Optional, Union, get_origin, get_args

from pydantic import BaseModel, TypeAdapter, ValidationError
from pydantic_core import to_jsonable_python

from sh2store.errors import CodecError

logger = logging.getLogger(__name__)

_UNION_TYPES = (Union, types.UnionType)


@lru_cache(maxsize=None)
def _adapter(target_type: Any) -> TypeAdapter:
    return TypeAdapter(target_type)


def zero_value(target_type: Any) -> Any:
    """Return the zero value used when a column is empty.

    >>> zero_value(list[str])
    []
    >>> zero_value(Optional[dict]) is None
    True
    >>> zero_value(int)
    0
    """
    origin = get_origin(target_type)
    if origin in _UNION_TYPES:
        if type(None) in get_args(target_type):
            return None
        return zero_value(get_args(target_type)[0])
    if isinstance(target_type, type) and issubclass(target_type, BaseModel):
        return target_type()
    if target_type is list or origin is list:
        return []
    if target_type is dict or origin is dict:
        return {}
    if target_type in (str, int, float, bool, bytes):
        return target_type()
    return None


def encode(value: Any) -> str:
    """Encode a structured value as compact JSON text.

    Models are dumped by their wire (alias) names. Attributes a model lists
    in ``OMIT_EMPTY`` are left out while they hold an empty value.

    >>> encode(None)
    'null'
    >>> encode([])
    '[]'
    """
    if isinstance(value, BaseModel):
        omit_empty = getattr(value, "OMIT_EMPTY", ())
        if not omit_empty:
            return value.model_dump_json(by_alias=True)
        data = value.model_dump(mode="json", by_alias=True)
        for name in omit_empty:
            key = type(value).model_fields[name].alias or name
            if not data.get(key):
                data.pop(key, None)
        return json.dumps(data, separators=(",", ":"))
    try:
        return json.dumps(to_jsonable_python(value, by_alias=True), separators=(",", ":"))
    except (TypeError, ValueError) as exc:
        raise CodecError(f"cannot encode {type(value).__name__}: {exc}") from exc


def decode(text: Any, target_type: Any, field: Optional[str] = None) -> Any:
    """Decode JSON text into *target_type*.

    Raises ``CodecError`` for malformed text or values that do not fit the
    target type. Unknown object keys are ignored.

    >>> decode("null", list[int])
    []
    >>> decode("[1, 2]", list[int])
    [1, 2]
    """
    if isinstance(text, (bytes, bytearray)):
        try:
            text = bytes(text).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise CodecError(
                f"cannot decode json column: invalid utf-8 ({exc.reason})", field=field
            ) from exc
    if text is None or not str(text).strip() or str(text).strip() == "null":
        return zero_value(target_type)
    try:
        return _adapter(target_type).validate_json(text)
    except ValidationError as exc:
        logger.debug("Failed to decode %s: %s", field or target_type, exc)
        detail = exc.errors()[0].get("msg", "invalid value") if exc.errors() else str(exc)
        raise CodecError(f"cannot decode json column: {detail}", field=field) from exc


def quick_json(value: Any) -> str:
    """Alias of ``encode`` used by the key/value map layer."""
    return encode(value)
