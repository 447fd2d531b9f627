"""Typed object storage on top of the bucketed key/value store.

Objects are dataclasses. A field's ``db`` metadata entry names the column it
is stored under; ``"-"`` keeps the field out of storage, and an untagged field
holding a dataclass is stored flattened into its parent.
"""

from __future__ import annotations

import copy
import dataclasses
import datetime
import json
import threading
from collections.abc import Callable, Iterable, Iterator, Sequence
from dataclasses import dataclass
from typing import Any

from .kv import KeyValueStore, Transaction

MAX_ID = 2147483647

Filter = Callable[[Any], bool]

_NAMED_TYPES: dict[str, type] = {
    "datetime.datetime": datetime.datetime,
    "datetime": datetime.datetime,
    "datetime.date": datetime.date,
    "date": datetime.date,
}


class NotFoundError(LookupError):
    """Raised when a requested object or bucket does not exist."""


class InvalidOperationError(Exception):
    """Raised when an operation is refused, such as deleting an object in use."""


@dataclass(frozen=True)
class ObjectProps:
    """How one kind of object is stored."""

    table_name: str
    type: type
    primary_column_name: str = ""
    referring_column_suffix: str = ""
    sortable_columns: tuple[str, ...] = ()
    sort_inverted: bool = False
    is_global: bool = False


@dataclass
class RetrieveQueryParams:
    """Paging, sorting and filtering of a listing."""

    offset: int = 0
    count: int = 0
    sort_by: str = ""
    sort_inverted: bool = False
    filter: str = ""


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def object_id_bytes(value: int | str | bytes) -> bytes:
    """Return the storage key for an object ID."""
    if _is_int(value):
        return f"{value:010d}".encode("ascii")
    if isinstance(value, str):
        return value.encode("utf-8")
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    raise TypeError("unsupported ID type")


def make_bucket_id(props: ObjectProps, *args: int) -> bytes:
    """Return the name of the bucket holding objects of props under the given parent IDs."""
    name = props.table_name
    if not props.is_global:
        name += "".join(f"_{parent_id:010d}" for parent_id in args)
    return name.encode("utf-8")


def _named_type(annotation: str) -> type | None:
    """Resolve a textual annotation naming a date or time type."""
    for part in annotation.replace("Optional[", "").replace("]", "").split("|"):
        name = part.strip()
        if name and name != "None" and name in _NAMED_TYPES:
            return _NAMED_TYPES[name]
    return None


def _field_type(f: dataclasses.Field) -> type | None:
    """Return the concrete type of a field, as far as it can be known."""
    if isinstance(f.type, type):
        return f.type
    if isinstance(f.type, str):
        named = _named_type(f.type)
        if named is not None:
            return named
    if f.default_factory is not dataclasses.MISSING and isinstance(f.default_factory, type):
        return f.default_factory
    if f.default is not dataclasses.MISSING and f.default is not None:
        return type(f.default)
    return None


def _is_dataclass_type(value: Any) -> bool:
    return isinstance(value, type) and dataclasses.is_dataclass(value)


def _is_dataclass_instance(value: Any) -> bool:
    return dataclasses.is_dataclass(value) and not isinstance(value, type)


def _find_field_path(cls: type, suffix: str) -> tuple[str, ...]:
    """Return the attribute path of the first field whose db tag ends with suffix."""
    fields = dataclasses.fields(cls)
    for f in fields:
        if f.metadata.get("db", "").endswith(suffix):
            return (f.name,)
    for f in fields:
        if "db" in f.metadata:
            continue
        ftype = _field_type(f)
        if not _is_dataclass_type(ftype):
            continue
        try:
            return (f.name, *_find_field_path(ftype, suffix))
        except LookupError:
            continue
    raise LookupError(f"field not found: {suffix}")


def _get_path(obj: Any, path: Sequence[str]) -> Any:
    target = obj
    for name in path:
        target = getattr(target, name)
    return target


def _set_path(obj: Any, path: Sequence[str], value: Any) -> None:
    target = _get_path(obj, path[:-1])
    object.__setattr__(target, path[-1], value)


def _encode_value(value: Any) -> Any:
    if _is_dataclass_instance(value):
        return _to_document(value)
    if isinstance(value, (datetime.datetime, datetime.date)):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return [_encode_value(item) for item in value]
    if isinstance(value, dict):
        return {key: _encode_value(item) for key, item in value.items()}
    return value


def _to_document(obj: Any) -> dict[str, Any]:
    document: dict[str, Any] = {}
    for f in dataclasses.fields(obj):
        tag = f.metadata.get("db")
        if tag == "-":
            continue
        value = getattr(obj, f.name)
        if tag is None and _is_dataclass_instance(value):
            for key, item in _to_document(value).items():
                document.setdefault(key, item)
            continue
        document[tag or f.name] = _encode_value(value)
    return document


def _decode_value(value: Any, ftype: type | None) -> Any:
    if _is_dataclass_type(ftype) and isinstance(value, dict):
        return _from_document(value, ftype)
    if ftype is datetime.datetime and isinstance(value, str):
        return datetime.datetime.fromisoformat(value)
    if ftype is datetime.date and isinstance(value, str):
        return datetime.date.fromisoformat(value)
    return value


def _from_document(document: dict[str, Any], cls: type) -> Any:
    kwargs: dict[str, Any] = {}
    for f in dataclasses.fields(cls):
        if not f.init:
            continue
        tag = f.metadata.get("db")
        ftype = _field_type(f)
        has_default = (
            f.default is not dataclasses.MISSING
            or f.default_factory is not dataclasses.MISSING
        )
        if tag == "-":
            if not has_default:
                kwargs[f.name] = None
            continue
        if tag is None and _is_dataclass_type(ftype):
            kwargs[f.name] = _from_document(document, ftype)
            continue
        key = tag or f.name
        if key in document:
            kwargs[f.name] = _decode_value(document[key], ftype)
        elif not has_default:
            kwargs[f.name] = None
    return cls(**kwargs)


def marshal_object(obj: Any) -> bytes:
    """Serialize a dataclass instance to its stored JSON form."""
    if not _is_dataclass_instance(obj):
        raise TypeError(f"expected a dataclass instance, got {type(obj).__name__}")
    return json.dumps(_to_document(obj), separators=(",", ":")).encode("utf-8")


def unmarshal_object(data: bytes | str, cls: type) -> Any:
    """Build an instance of cls from its stored JSON form."""
    document = json.loads(data)
    if not isinstance(document, dict):
        raise ValueError("stored object must be a JSON object")
    return _from_document(document, cls)


def sort_objects(objects: Iterable[Any], sort_by: str, inverted: bool = False) -> list[Any]:
    """Return objects stably sorted by the field whose db tag ends with sort_by."""
    items = list(objects)
    if not items:
        return items
    path = _find_field_path(type(items[0]), sort_by)
    values = [_get_path(item, path) for item in items]
    numeric = all(_is_int(v) or isinstance(v, float) for v in values)
    textual = all(isinstance(v, str) for v in values)
    if not (numeric or textual):
        return items
    return sorted(items, key=lambda item: _get_path(item, path), reverse=inverted)


def is_object_referred_by(props: ObjectProps, object_id: int | str, referring_obj: Any) -> bool:
    """Tell whether referring_obj points at the object of props with object_id."""
    if not props.referring_column_suffix:
        return False
    try:
        path = _find_field_path(type(referring_obj), props.referring_column_suffix)
    except LookupError:
        return False
    value = _get_path(referring_obj, path)
    if value is None or isinstance(value, bool) or not value:
        return False
    if not (_is_int(value) or isinstance(value, str)):
        return False
    return object_id_bytes(value) == object_id_bytes(object_id)


def _object_key(obj: Any, props: ObjectProps) -> bytes:
    path = _find_field_path(type(obj), props.primary_column_name)
    value = _get_path(obj, path)
    if _is_int(value) or isinstance(value, str):
        return object_id_bytes(value)
    raise TypeError("unsupported ID type")


class BoltStore:
    """Stores dataclass objects in buckets of a KeyValueStore."""

    def __init__(self, filename: str | None = None, session_connection: bool = False) -> None:
        self.filename = str(filename) if filename is not None else None
        self.session_connection = session_connection
        self._kv: KeyValueStore | None = None
        self._connections: set[str] = set()
        self._lock = threading.Lock()

    @property
    def kv(self) -> KeyValueStore:
        """The open key/value store."""
        if self._kv is None:
            raise RuntimeError("store is not connected")
        return self._kv

    @property
    def permanent_connection(self) -> bool:
        return not self.session_connection

    def _open(self) -> None:
        self._kv = KeyValueStore(self.filename)

    def connect(self, token: str) -> None:
        """Open the store; in session mode the first session opens the file."""
        if self.permanent_connection:
            self._open()
            return
        with self._lock:
            if token in self._connections:
                raise RuntimeError(f"connection {token} already exists")
            if not self._connections:
                self._open()
            self._connections.add(token)

    def close(self, token: str) -> None:
        """Close the store; in session mode the last session closes the file."""
        if self.permanent_connection:
            self.kv.close()
            self._kv = None
            return
        with self._lock:
            if token not in self._connections:
                raise RuntimeError(f"can not close closed connection {token}")
            if len(self._connections) > 1:
                self._connections.discard(token)
                return
            self.kv.close()
            self._kv = None
            self._connections.discard(token)

    def is_initialized(self) -> bool:
        """Tell whether the store holds any bucket."""
        with self.kv.view() as tx:
            return tx.first_key() is not None

    @staticmethod
    def _entries(tx: Transaction, bucket_id: int, props: ObjectProps) -> Iterator[tuple[bytes, bytes]]:
        bucket = tx.bucket(make_bucket_id(props, bucket_id))
        if bucket is None:
            return iter(())
        return bucket.items()

    @staticmethod
    def _apply(
        entries: Iterable[tuple[bytes, bytes]],
        props: ObjectProps,
        params: RetrieveQueryParams,
        filter: Filter | None,
    ) -> Iterator[Any]:
        skipped = 0
        added = 0
        for _key, raw in entries:
            if params.offset > 0 and skipped < params.offset:
                skipped += 1
                continue
            obj = unmarshal_object(raw, props.type)
            if filter is not None and not filter(obj):
                continue
            yield obj
            added += 1
            if params.count > 0 and added >= params.count:
                return

    def get_object(self, bucket_id: int, props: ObjectProps, object_id: int | str) -> Any:
        """Return one object; raise NotFoundError if it is missing."""
        with self.kv.view() as tx:
            bucket = tx.bucket(make_bucket_id(props, bucket_id))
            if bucket is None:
                raise NotFoundError(props.table_name)
            raw = bucket.get(object_id_bytes(object_id))
            if raw is None:
                raise NotFoundError(f"{props.table_name} {object_id}")
            return unmarshal_object(raw, props.type)

    def get_objects(
        self,
        bucket_id: int,
        props: ObjectProps,
        params: RetrieveQueryParams | None = None,
        filter: Filter | None = None,
    ) -> list[Any]:
        """Return the objects of a bucket, paged, filtered and sorted by params."""
        params = params or RetrieveQueryParams()
        with self.kv.view() as tx:
            objects = list(self._apply(self._entries(tx, bucket_id, props), props, params, filter))
        if params.sort_by and params.sort_by in props.sortable_columns:
            objects = sort_objects(objects, params.sort_by, params.sort_inverted)
        return objects

    def count(
        self,
        bucket_id: int,
        props: ObjectProps,
        params: RetrieveQueryParams | None = None,
        filter: Filter | None = None,
    ) -> int:
        """Count matching objects; raise NotFoundError if the bucket is missing."""
        params = params or RetrieveQueryParams()
        with self.kv.view() as tx:
            bucket = tx.bucket(make_bucket_id(props, bucket_id))
            if bucket is None:
                raise NotFoundError(props.table_name)
            return sum(1 for _ in self._apply(bucket.items(), props, params, filter))

    def create_object(self, bucket_id: int, props: ObjectProps, obj: Any) -> Any:
        """Store a new object, assigning an ID when needed, and return it."""
        with self.kv.update() as tx:
            bucket = tx.create_bucket_if_not_exists(make_bucket_id(props, bucket_id))
            new_obj = copy.deepcopy(obj)
            if props.primary_column_name:
                path = _find_field_path(type(obj), props.primary_column_name)
                value = _get_path(new_obj, path)
                if _is_int(value):
                    if value == 0:
                        value = bucket.next_sequence()
                        if props.sort_inverted:
                            value = MAX_ID - value
                        _set_path(new_obj, path, value)
                    key = object_id_bytes(value)
                elif isinstance(value, str):
                    if not value:
                        raise ValueError("object ID can not be empty string")
                    key = object_id_bytes(value)
                else:
                    raise TypeError("unsupported ID type")
            else:
                sequence = bucket.next_sequence()
                if props.sort_inverted:
                    sequence = MAX_ID - sequence
                key = object_id_bytes(sequence)
            bucket.put(key, marshal_object(new_obj))
        return new_obj

    def update_object(self, bucket_id: int, props: ObjectProps, obj: Any) -> None:
        """Replace a stored object; raise NotFoundError if it does not exist."""
        with self.kv.update() as tx:
            bucket = tx.bucket(make_bucket_id(props, bucket_id))
            if bucket is None:
                raise NotFoundError(props.table_name)
            key = _object_key(obj, props)
            if bucket.get(key) is None:
                raise NotFoundError(f"{props.table_name} {key.decode('utf-8', 'replace')}")
            bucket.put(key, marshal_object(obj))

    def delete_object(
        self,
        bucket_id: int,
        props: ObjectProps,
        object_id: int | str,
        referrers: Iterable[ObjectProps] = (),
    ) -> None:
        """Delete an object unless an object of one of referrers points at it."""
        for referring_props in referrers:
            if self.is_object_in_use(bucket_id, props, object_id, referring_props):
                raise InvalidOperationError(
                    f"{props.table_name} {object_id} is used by {referring_props.table_name}"
                )
        with self.kv.update() as tx:
            bucket = tx.bucket(make_bucket_id(props, bucket_id))
            if bucket is None:
                raise NotFoundError(props.table_name)
            bucket.delete(object_id_bytes(object_id))

    def is_object_in_use(
        self,
        bucket_id: int,
        props: ObjectProps,
        object_id: int | str,
        referring_props: ObjectProps,
    ) -> bool:
        """Tell whether any object of referring_props refers to the given object."""
        with self.kv.view() as tx:
            matches = self._apply(
                self._entries(tx, bucket_id, referring_props),
                referring_props,
                RetrieveQueryParams(),
                lambda candidate: is_object_referred_by(props, object_id, candidate),
            )
            return any(True for _ in matches)

    def get_referring_objects(
        self,
        bucket_id: int,
        props: ObjectProps,
        object_id: int | str,
        referring_props: ObjectProps,
    ) -> list[tuple[Any, str]]:
        """Return (id, name) of every object of referring_props that refers to the object."""
        referring = self.get_objects(
            bucket_id,
            referring_props,
            filter=lambda candidate: is_object_referred_by(props, object_id, candidate),
        )
        return [(getattr(o, "id", None), getattr(o, "name", "")) for o in referring]