"""
codec.py - Entity codec and canonical MessagePack framing.

One schema-driven codec serves every place an entity crosses a
boundary: SQLite rows, sync stream payloads and CLI output all use
encode_entity()/decode_entity(). The schema is the dataclass itself;
field types drive the conversion:

- UUID      <-> canonical lowercase string
- datetime  <-> integer Unix microseconds (UTC)
- int/float/str pass through (with coercion on decode)

Stream frames are MessagePack maps with sorted keys, so identical
frames produce identical bytes.
"""

import dataclasses
import types
import typing
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, TypeVar
from uuid import UUID

import msgpack

from chat_sync.errors import ValidationError

E = TypeVar("E")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def to_micros(value: datetime) -> int:
    """Convert a datetime to Unix microseconds. Naive values are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    delta = value - _EPOCH
    return (delta.days * 86_400 + delta.seconds) * 1_000_000 + delta.microseconds


def from_micros(value: int) -> datetime:
    """Convert Unix microseconds to a UTC datetime."""
    seconds, micros = divmod(int(value), 1_000_000)
    return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(microsecond=micros)


def _strip_optional(hint: Any) -> Any:
    """Reduce `X | None` (or Optional[X]) to X."""
    origin = typing.get_origin(hint)
    if origin is typing.Union or origin is types.UnionType:
        args = [a for a in typing.get_args(hint) if a is not type(None)]
        if len(args) == 1:
            return args[0]
    return hint


@lru_cache(maxsize=None)
def _schema(cls: type) -> tuple[tuple[str, Any], ...]:
    if not dataclasses.is_dataclass(cls):
        raise TypeError(f"{cls.__name__} is not a dataclass")
    hints = typing.get_type_hints(cls)
    return tuple(
        (f.name, _strip_optional(hints[f.name])) for f in dataclasses.fields(cls)
    )


def _encode_value(value: Any) -> Any:
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, datetime):
        return to_micros(value)
    return value


def _decode_value(name: str, kind: Any, value: Any) -> Any:
    if value is None:
        return None
    try:
        if kind is UUID:
            return value if isinstance(value, UUID) else UUID(str(value))
        if kind is datetime:
            return value if isinstance(value, datetime) else from_micros(value)
        if kind is float:
            return float(value)
        if kind is int:
            return int(value)
        if kind is str:
            return str(value)
    except (TypeError, ValueError, OverflowError) as e:
        raise ValidationError(
            f"Cannot decode field {name!r}: {e}",
            field=name,
            value=value,
        ) from e
    return value


def encode_entity(entity: Any) -> dict[str, Any]:
    """
    Encode a dataclass entity into a plain dict of primitive values.

    Args:
        entity: Chatroom, Peer, Message (or any dataclass built from
            str/int/float/UUID/datetime fields)

    Returns:
        Dict keyed by field name, suitable for SQL named parameters
        and MessagePack
    """
    return {
        name: _encode_value(getattr(entity, name)) for name, _ in _schema(type(entity))
    }


def decode_entity(cls: type[E], data: typing.Mapping[str, Any]) -> E:
    """
    Decode a dict (or sqlite3.Row) produced by encode_entity().

    Keys missing from data fall back to the field default; unknown
    keys are ignored.

    Raises:
        ValidationError: If a value cannot be converted or a required
            field is missing
    """
    keys = set(data.keys())
    kwargs = {}
    for name, kind in _schema(cls):
        if name in keys:
            kwargs[name] = _decode_value(name, kind, data[name])
    try:
        return cls(**kwargs)
    except TypeError as e:
        raise ValidationError(
            f"Cannot build {cls.__name__}: {e}",
            field=cls.__name__,
        ) from e


def pack_dict(data: dict[str, Any]) -> bytes:
    """
    Serialize a dictionary to canonical MessagePack.

    Keys are sorted alphabetically (recursively for nested maps) to
    ensure a canonical representation.

    Raises:
        ValidationError: If data cannot be serialized
    """
    if not isinstance(data, dict):
        raise ValidationError(
            f"Expected dict, got {type(data).__name__}",
            field="data",
            value=data,
        )

    try:
        return msgpack.packb(_sorted(data), use_bin_type=True)
    except (TypeError, ValueError) as e:
        raise ValidationError(
            f"Cannot serialize dict to MessagePack: {e}",
            field="data",
            value=str(data)[:100],
        ) from e


def unpack_dict(data: bytes) -> dict[str, Any]:
    """
    Deserialize a dictionary from MessagePack.

    Raises:
        ValidationError: If data cannot be deserialized or is not a dict
    """
    try:
        result = msgpack.unpackb(data, raw=False)
    except (msgpack.UnpackException, ValueError) as e:
        raise ValidationError(
            f"Cannot deserialize MessagePack: {e}",
            field="data",
            value=data[:50] if len(data) > 50 else data,
        ) from e

    if not isinstance(result, dict):
        raise ValidationError(
            f"Expected dict, got {type(result).__name__}",
            field="data",
            value=result,
        )

    return result


def _sorted(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _sorted(value[k]) for k in sorted(value.keys())}
    return value
