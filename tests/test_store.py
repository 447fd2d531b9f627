import datetime
import json
from dataclasses import dataclass, field

import pytest

from boltstore.store import (
    MAX_ID,
    BoltStore,
    InvalidOperationError,
    NotFoundError,
    ObjectProps,
    RetrieveQueryParams,
    is_object_referred_by,
    make_bucket_id,
    marshal_object,
    object_id_bytes,
    sort_objects,
    unmarshal_object,
)


@dataclass
class Item:
    id: int = field(default=0, metadata={"db": "id"})
    project_id: int = field(default=0, metadata={"db": "project_id"})
    name: str = field(default="", metadata={"db": "name"})
    hidden: str = field(default="", metadata={"db": "-"})


@dataclass
class Ref:
    id: int = field(default=0, metadata={"db": "id"})
    name: str = field(default="", metadata={"db": "name"})
    item_id: int | None = field(default=None, metadata={"db": "item_id"})


@dataclass
class Base:
    id: int = field(default=0, metadata={"db": "id"})
    name: str = field(default="", metadata={"db": "name"})


@dataclass
class Extended:
    base: Base = field(default_factory=Base)
    extra: str = field(default="", metadata={"db": "extra"})


@dataclass
class Stamped:
    id: int = field(default=0, metadata={"db": "id"})
    created: datetime.datetime = field(
        default_factory=lambda: datetime.datetime(2000, 1, 1), metadata={"db": "created"}
    )


@dataclass
class Keyed:
    key: str = field(default="", metadata={"db": "key"})
    value: str = field(default="", metadata={"db": "value"})


ITEM_PROPS = ObjectProps(
    table_name="project__item",
    type=Item,
    primary_column_name="id",
    referring_column_suffix="item_id",
    sortable_columns=("name",),
)
REF_PROPS = ObjectProps(table_name="project__ref", type=Ref, primary_column_name="id")
INVERTED_PROPS = ObjectProps(
    table_name="event", type=Item, primary_column_name="id", sort_inverted=True
)
KEYED_PROPS = ObjectProps(
    table_name="option", type=Keyed, primary_column_name="key", is_global=True
)
EXTENDED_PROPS = ObjectProps(table_name="ext", type=Extended, primary_column_name="id")


@pytest.fixture
def store(tmp_path):
    s = BoltStore(str(tmp_path / "db.json"))
    s.connect("test")
    return s


def test_object_id_bytes():
    assert object_id_bytes(7) == b"0000000007"
    assert object_id_bytes("abc") == b"abc"
    with pytest.raises(TypeError):
        object_id_bytes(1.5)
    with pytest.raises(TypeError):
        object_id_bytes(True)


def test_make_bucket_id():
    assert make_bucket_id(ITEM_PROPS, 1) == b"project__item_0000000001"
    assert make_bucket_id(ITEM_PROPS) == b"project__item"
    assert make_bucket_id(KEYED_PROPS, 5) == b"option"


def test_marshal_uses_db_tags():
    doc = json.loads(marshal_object(Item(1, 2, "a", "skip")))
    assert doc == {"id": 1, "project_id": 2, "name": "a"}


def test_marshal_round_trip():
    item = Item(3, 4, "name")
    assert unmarshal_object(marshal_object(item), Item) == item


def test_marshal_flattens_embedded():
    obj = Extended(Base(3, "x"), "e")
    doc = json.loads(marshal_object(obj))
    assert doc == {"id": 3, "name": "x", "extra": "e"}
    assert unmarshal_object(marshal_object(obj), Extended) == obj


def test_unmarshal_missing_fields_keep_defaults():
    assert unmarshal_object(b'{"name":"only"}', Item) == Item(name="only")


def test_datetime_round_trip():
    obj = Stamped(1, datetime.datetime(2021, 5, 6, 7, 8, 9))
    assert unmarshal_object(marshal_object(obj), Stamped) == obj


def test_marshal_rejects_non_dataclass():
    with pytest.raises(TypeError):
        marshal_object({"id": 1})


def test_sort_objects():
    items = [Item(1, name="b"), Item(2, name="a"), Item(3, name="c")]
    assert [i.name for i in sort_objects(items, "name")] == ["a", "b", "c"]
    assert [i.name for i in sort_objects(items, "name", True)] == ["c", "b", "a"]
    assert sort_objects([], "name") == []
    with pytest.raises(LookupError):
        sort_objects(items, "missing")


def test_is_object_referred_by():
    assert is_object_referred_by(ITEM_PROPS, 5, Ref(item_id=5))
    assert not is_object_referred_by(ITEM_PROPS, 5, Ref(item_id=6))
    assert not is_object_referred_by(ITEM_PROPS, 5, Ref(item_id=None))
    assert not is_object_referred_by(REF_PROPS, 5, Ref(item_id=5))
    assert not is_object_referred_by(ITEM_PROPS, 5, Item(id=5))


def test_create_assigns_sequential_ids(store):
    first = store.create_object(1, ITEM_PROPS, Item(name="a"))
    second = store.create_object(1, ITEM_PROPS, Item(name="b"))
    assert (first.id, second.id) == (1, 2)
    assert store.get_object(1, ITEM_PROPS, second.id) == second


def test_create_does_not_modify_argument(store):
    original = Item(name="a")
    store.create_object(1, ITEM_PROPS, original)
    assert original.id == 0


def test_create_keeps_given_id(store):
    created = store.create_object(1, ITEM_PROPS, Item(id=42, name="x"))
    assert store.get_object(1, ITEM_PROPS, 42) == created


def test_create_inverted_ids(store):
    created = store.create_object(0, INVERTED_PROPS, Item(name="e"))
    assert created.id == MAX_ID - 1


def test_create_string_key(store):
    store.create_object(-1, KEYED_PROPS, Keyed("age", "33"))
    assert store.get_object(-1, KEYED_PROPS, "age").value == "33"
    with pytest.raises(ValueError):
        store.create_object(-1, KEYED_PROPS, Keyed("", "x"))


def test_create_embedded_id(store):
    created = store.create_object(0, EXTENDED_PROPS, Extended(Base(name="n"), "e"))
    assert created.base.id == 1
    assert store.get_object(0, EXTENDED_PROPS, 1) == created


def test_get_missing_raises(store):
    with pytest.raises(NotFoundError):
        store.get_object(1, ITEM_PROPS, 1)
    store.create_object(1, ITEM_PROPS, Item(name="a"))
    with pytest.raises(NotFoundError):
        store.get_object(1, ITEM_PROPS, 99)


def test_update(store):
    created = store.create_object(1, ITEM_PROPS, Item(name="a"))
    created.name = "changed"
    store.update_object(1, ITEM_PROPS, created)
    assert store.get_object(1, ITEM_PROPS, created.id).name == "changed"
    with pytest.raises(NotFoundError):
        store.update_object(1, ITEM_PROPS, Item(id=99, name="x"))
    with pytest.raises(NotFoundError):
        store.update_object(2, ITEM_PROPS, Item(id=1, name="x"))


def test_get_objects_paging_and_filter(store):
    for name in ["c", "a", "d", "b"]:
        store.create_object(1, ITEM_PROPS, Item(name=name))
    all_items = store.get_objects(1, ITEM_PROPS)
    assert [i.name for i in all_items] == ["c", "a", "d", "b"]
    page = store.get_objects(1, ITEM_PROPS, RetrieveQueryParams(offset=1, count=2))
    assert [i.name for i in page] == ["a", "d"]
    filtered = store.get_objects(1, ITEM_PROPS, filter=lambda i: i.name in ("a", "b"))
    assert [i.name for i in filtered] == ["a", "b"]
    ordered = store.get_objects(1, ITEM_PROPS, RetrieveQueryParams(sort_by="name"))
    assert [i.name for i in ordered] == ["a", "b", "c", "d"]
    unsortable = store.get_objects(1, ITEM_PROPS, RetrieveQueryParams(sort_by="project_id"))
    assert [i.name for i in unsortable] == ["c", "a", "d", "b"]
    assert store.get_objects(7, ITEM_PROPS) == []


def test_count(store):
    for name in ["a", "b", "a"]:
        store.create_object(1, ITEM_PROPS, Item(name=name))
    assert store.count(1, ITEM_PROPS) == 3
    assert store.count(1, ITEM_PROPS, filter=lambda i: i.name == "a") == 2
    with pytest.raises(NotFoundError):
        store.count(2, ITEM_PROPS)


def test_delete(store):
    created = store.create_object(1, ITEM_PROPS, Item(name="a"))
    store.delete_object(1, ITEM_PROPS, created.id)
    with pytest.raises(NotFoundError):
        store.get_object(1, ITEM_PROPS, created.id)
    with pytest.raises(NotFoundError):
        store.delete_object(3, ITEM_PROPS, 1)


def test_delete_in_use(store):
    item = store.create_object(1, ITEM_PROPS, Item(name="a"))
    store.create_object(1, REF_PROPS, Ref(name="r", item_id=item.id))
    assert store.is_object_in_use(1, ITEM_PROPS, item.id, REF_PROPS)
    with pytest.raises(InvalidOperationError):
        store.delete_object(1, ITEM_PROPS, item.id, [REF_PROPS])
    assert store.get_object(1, ITEM_PROPS, item.id) == item


def test_get_referring_objects(store):
    item = store.create_object(1, ITEM_PROPS, Item(name="a"))
    ref = store.create_object(1, REF_PROPS, Ref(name="r", item_id=item.id))
    store.create_object(1, REF_PROPS, Ref(name="other", item_id=item.id + 100))
    assert store.get_referring_objects(1, ITEM_PROPS, item.id, REF_PROPS) == [(ref.id, "r")]


def test_is_initialized(store):
    assert store.is_initialized() is False
    store.create_object(1, ITEM_PROPS, Item(name="a"))
    assert store.is_initialized() is True


def test_persistence(tmp_path):
    path = str(tmp_path / "db.json")
    first = BoltStore(path)
    first.connect("test")
    created = first.create_object(1, ITEM_PROPS, Item(name="kept"))
    first.close("test")
    second = BoltStore(path)
    second.connect("test")
    assert second.get_object(1, ITEM_PROPS, created.id) == created


def test_not_connected_raises():
    with pytest.raises(RuntimeError):
        BoltStore().get_objects(1, ITEM_PROPS)


def test_session_connections():
    s = BoltStore(session_connection=True)
    s.connect("a")
    s.connect("b")
    with pytest.raises(RuntimeError):
        s.connect("a")
    created = s.create_object(1, ITEM_PROPS, Item(name="x"))
    s.close("a")
    assert s.get_object(1, ITEM_PROPS, created.id) == created
    s.close("b")
    with pytest.raises(RuntimeError):
        s.get_objects(1, ITEM_PROPS)
    with pytest.raises(RuntimeError):
        s.close("b")