"""Global key/value options kept in the object store."""

from __future__ import annotations

from dataclasses import dataclass, field

from .store import BoltStore, NotFoundError, ObjectProps

# Options live in one global bucket, so the parent ID passed alongside is ignored.
_GLOBAL_BUCKET = -1


@dataclass
class Option:
    """A single stored option."""

    key: str = field(default="", metadata={"db": "key"})
    value: str = field(default="", metadata={"db": "value"})


OPTION_PROPS = ObjectProps(
    table_name="option",
    type=Option,
    primary_column_name="key",
    is_global=True,
)


def _validate_key(key: str) -> None:
    if not key:
        raise ValueError("option key can not be empty")


def _matches(key: str, filter: str) -> bool:
    return key == filter or key.startswith(filter + ".")


def get_options(store: BoltStore, filter: str = "") -> dict[str, str]:
    """Return options as a flat dict, limited to filter and its dotted children."""
    options = store.get_objects(
        _GLOBAL_BUCKET,
        OPTION_PROPS,
        filter=lambda opt: not filter or _matches(opt.key, filter),
    )
    return {opt.key: opt.value for opt in options}


def set_option(store: BoltStore, key: str, value: str) -> None:
    """Create the option or replace its value."""
    option = Option(key=key, value=value)
    try:
        store.get_object(_GLOBAL_BUCKET, OPTION_PROPS, key)
    except NotFoundError:
        store.create_object(_GLOBAL_BUCKET, OPTION_PROPS, option)
    else:
        store.update_object(_GLOBAL_BUCKET, OPTION_PROPS, option)


def get_option(store: BoltStore, key: str) -> str:
    """Return the option's value, or an empty string when it is not set."""
    try:
        option = store.get_object(_GLOBAL_BUCKET, OPTION_PROPS, key)
    except NotFoundError:
        return ""
    return option.value


def delete_option(store: BoltStore, key: str) -> None:
    """Delete one option."""
    _validate_key(key)
    store.delete_object(_GLOBAL_BUCKET, OPTION_PROPS, key)


def delete_options(store: BoltStore, filter: str) -> None:
    """Delete the option named filter and every option below it."""
    _validate_key(filter)
    for key in get_options(store, filter):
        delete_option(store, key)