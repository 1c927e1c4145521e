"""Exception types raised by the sh2 store.

Every error derives from ``StoreError`` so callers can catch the whole
family. ``ContentionError`` is the only one meant to be retried.

>>> issubclass(CodecError, StoreError)
True
>>> str(CodecError("bad json", field="layout"))
'layout: bad json'
"""

from typing import Optional


class StoreError(Exception):
    """Base class for sh2 store errors."""


class CodecError(StoreError):
    """A JSON-valued column could not be decoded (corrupt row)."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.message = message
        self.field = field
        super().__init__(f"{field}: {message}" if field else message)


class NestedTransactionError(StoreError):
    """A transaction (or raw connection) was requested inside a running one."""


class CorruptStoreError(StoreError):
    """A store invariant is violated (identity rows, key material, defaults)."""


class ContentionError(StoreError):
    """The store stayed locked past the busy timeout. Retry with backoff."""


class DuplicateEntityError(StoreError):
    """An insert collided with an existing row."""


class EntityNotFoundError(StoreError):
    """An update referenced a row that does not exist."""
