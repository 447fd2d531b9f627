# boltstore

An embedded object store built on named buckets of key/value pairs. The
buckets are kept in a single JSON file. Records are dataclasses serialised to
JSON. Buckets are scoped per parent object, for example per project. Integer
keys are zero-padded to ten digits so that they sort in numeric order.

## Installation

    pip install boltstore

To run the test suite:

    pip install "boltstore[test]"

## Modules

- `boltstore.kv` is the storage layer.
  - `KeyValueStore(filename)` holds named buckets. Pass `None` as the
    filename to keep everything in memory.
  - `view()` and `update()` are context managers that yield a `Transaction`.
    An `update()` commits when the block ends normally. If the block raises,
    nothing is kept. An `update()` opened inside another one on the same
    thread joins it. Each commit rewrites the file atomically.
  - `Transaction` provides `bucket()`, `create_bucket_if_not_exists()`,
    `delete_bucket()` and `first_key()`.
  - `Bucket` provides `get()`, `put()`, `delete()`, `next_sequence()` and
    `items()`. `items()` yields pairs in byte order of the keys.
- `boltstore.store` stores typed objects on top of `kv`.
  - `BoltStore(filename, session_connection=False)` is the object store.
  - `ObjectProps` describes one kind of object: its table name, its
    dataclass type, its primary column, and the column suffix by which other
    objects refer to it.
  - A field's `db` metadata entry names the column the field is stored
    under. The value `"-"` leaves the field out of storage. An untagged field
    holding a dataclass is stored flattened into its parent.
  - `RetrieveQueryParams` sets offset, count and sorting for
    `get_objects()`.
- `boltstore.options` keeps global string settings: `get_options`,
  `set_option`, `get_option`, `delete_option` and `delete_options`. Keys can
  be dotted. A filter matches the key itself and every key below it.
- `boltstore.migrations` rewrites stored project records in place. Run it
  with `apply_migration(kv, version)` and check it with
  `is_migration_applied(kv, version)`. These versions carry data changes:
  - `2.8.26` splits repository URLs of the form `url#branch`.
  - `2.8.40` renames the template field `alias` to `name`.
  - `2.8.91` replaces the project user flag `admin` with a `role`.
  - `2.10.12` marks every schedule active.
  - `2.10.16` sets `app` to `ansible` on templates that have no app.

  Any other version is only recorded as applied.

## Example

```python
from dataclasses import dataclass, field

from boltstore.store import BoltStore, ObjectProps
from boltstore.options import set_option, get_option, get_options


@dataclass
class Project:
    id: int = field(default=0, metadata={"db": "id"})
    name: str = field(default="", metadata={"db": "name"})


PROJECT = ObjectProps(table_name="project", type=Project, primary_column_name="id")

store = BoltStore("app.db")
store.connect("main")

project = store.create_object(0, PROJECT, Project(name="Test1"))
assert store.get_object(0, PROJECT, project.id).name == "Test1"

set_option(store, "age", "33")
assert get_option(store, "age") == "33"

set_option(store, "apps.ansible.active", "true")
print(get_options(store, "apps"))   # {'apps.ansible.active': 'true'}

store.close("main")
```

With `session_connection=True`, the first `connect(token)` opens the file and
the last matching `close(token)` closes it. Connecting twice with the same
token raises `RuntimeError`. Closing a token that is not open also raises
`RuntimeError`.

### Migrations

```python
from boltstore.kv import KeyValueStore
from boltstore.migrations import apply_migration, is_migration_applied

kv = KeyValueStore("app.db")
if not is_migration_applied(kv, "2.10.16"):
    apply_migration(kv, "2.10.16")
kv.close()
```

## Errors

- Looking up a missing object or bucket through `BoltStore` raises
  `boltstore.store.NotFoundError`.
- `delete_object()` with `referrers` raises
  `boltstore.store.InvalidOperationError` while another object still refers
  to the object being deleted.
- `Transaction.delete_bucket()` on a missing bucket raises
  `boltstore.kv.BucketNotFoundError`.
- Any transaction on a closed `KeyValueStore` raises `ValueError`.

## What it does not do

- There is no command-line tool and no server. The package is a library
  only.
- There is only one backend: the JSON-file bucket store. There is no SQL
  database support.
- Stored options are not turned into nested configuration objects. Callers
  get the flat `key -> value` mapping from `get_options` and interpret it
  themselves.