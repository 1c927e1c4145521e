"""Update deltas and the in-process update registry.

A delta is one of three shapes:

- ``Upsert``: a complete snapshot that replaces whatever the viewer holds.
- ``Patch``: a partial key/value map; keys that are absent stay unchanged.
- ``Tombstone``: the entity is gone.

Snapshots and patch fields use the wire-keyed map form from
``StoreModel.to_map()``, so JSON columns travel as JSON text.

>>> from sh2store.models import Line
>>> make_tombstone(Line(line_id="l1")).model_dump()
{'kind': 'tombstone', 'entity': 'line', 'id': 'l1'}
"""

import json
import logging
import time
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from sh2store.errors import CodecError
from sh2store.models import ENTITY_MODELS, StoreModel

logger = logging.getLogger(__name__)


class Upsert(BaseModel):
    kind: Literal["upsert"] = "upsert"
    entity: str
    id: str
    snapshot: dict[str, Any]


class Patch(BaseModel):
    kind: Literal["patch"] = "patch"
    entity: str
    id: str
    fields: dict[str, Any]


class Tombstone(BaseModel):
    kind: Literal["tombstone"] = "tombstone"
    entity: str
    id: str


Delta = Annotated[Union[Upsert, Patch, Tombstone], Field(discriminator="kind")]

_delta_adapter = TypeAdapter(Delta)


def make_upsert(model: StoreModel) -> Upsert:
    return Upsert(entity=model.ENTITY_TYPE, id=model.entity_key(), snapshot=model.to_map())


def make_patch(model: StoreModel, *field_names: str) -> Patch:
    """Build a patch carrying only *field_names* (attribute names) of *model*.

    >>> from sh2store.models import Cmd
    >>> make_patch(Cmd(cmd_id="c1", status="done"), "status").fields
    {'status': 'done'}
    """
    full = model.to_map()
    fields = {}
    for name in field_names:
        field = type(model).model_fields.get(name)
        if field is None:
            raise ValueError(f"{type(model).__name__} has no field '{name}'")
        key = field.alias or name
        if key not in full:
            raise ValueError(f"{type(model).__name__}.{name} cannot be patched")
        fields[key] = full[key]
    return Patch(entity=model.ENTITY_TYPE, id=model.entity_key(), fields=fields)


def make_tombstone(model: StoreModel) -> Tombstone:
    return Tombstone(entity=model.ENTITY_TYPE, id=model.entity_key())


def apply_patch(model: StoreModel, patch: Patch) -> StoreModel:
    """Return a copy of *model* with the patch fields merged in."""
    if patch.entity != model.ENTITY_TYPE:
        raise ValueError(f"cannot apply {patch.entity} patch to {model.ENTITY_TYPE}")
    current = {name: getattr(model, name) for name in type(model).model_fields}
    updates = type(model).fields_from_map(patch.fields)
    return type(model).model_validate({**current, **updates})


def snapshot_model(delta: Upsert) -> Optional[StoreModel]:
    """Rebuild the typed entity carried by an upsert."""
    model_cls = ENTITY_MODELS.get(delta.entity)
    if model_cls is None:
        raise CodecError(f"unknown entity type '{delta.entity}'", field="entity")
    return model_cls.from_map(delta.snapshot)


def dump_delta(delta: Union[Upsert, Patch, Tombstone]) -> str:
    return delta.model_dump_json()


def load_delta(text: str) -> Union[Upsert, Patch, Tombstone]:
    try:
        return _delta_adapter.validate_json(text)
    except ValueError as exc:
        raise CodecError(f"invalid delta: {exc}") from exc


class UpdateRegistry:
    """Session-scoped registry of update subscribers.

    A subscriber is anything with an async ``send_text(str)`` method.
    Subscribers register for a set of session ids, or ``*`` for all.

    >>> r = UpdateRegistry()
    >>> r.subscriber_count
    0
    """

    def __init__(self):
        self._subscribers: dict[Any, set[str]] = {}

    def subscribe(self, subscriber: Any, session_ids: Optional[list[str]] = None):
        self._subscribers[subscriber] = set(session_ids or ["*"])

    def unsubscribe(self, subscriber: Any):
        """Remove a subscriber.

        >>> r = UpdateRegistry()
        >>> r.unsubscribe(object())  # no-op for unknown subscriber
        """
        self._subscribers.pop(subscriber, None)

    async def broadcast(
        self, session_id: str, deltas: list[Union[Upsert, Patch, Tombstone]]
    ) -> int:
        """Send *deltas* to every subscriber of *session_id* or ``*``.

        Subscribers whose send fails are pruned. Returns the number of
        subscribers that received the message.
        """
        if not deltas:
            return 0
        message = json.dumps(
            {
                "type": "update",
                "sessionid": session_id,
                "deltas": [d.model_dump(mode="json") for d in deltas],
                "timestamp": int(time.time()),
            }
        )
        dead: list[Any] = []
        sent = 0
        for sub in list(self._subscribers):
            subs = self._subscribers[sub]
            if "*" in subs or session_id in subs:
                try:
                    await sub.send_text(message)
                    sent += 1
                except Exception:
                    dead.append(sub)
        for sub in dead:
            self._subscribers.pop(sub, None)
            logger.debug("Pruned dead update subscriber")
        return sent

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
