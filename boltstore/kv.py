"""A small transactional key/value store made of named buckets.

Keys inside a bucket are kept in byte order, every bucket has its own
auto-increment sequence, and all changes made in a write transaction are
committed together or not at all. The committed state is kept in a JSON file.
"""

from __future__ import annotations

import base64
import json
import os
import tempfile
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Union

KeyLike = Union[bytes, bytearray, str]


class BucketNotFoundError(LookupError):
    """Raised when a bucket that has to exist does not."""


def _to_bytes(value: KeyLike) -> bytes:
    if isinstance(value, str):
        return value.encode("utf-8")
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    raise TypeError(f"expected bytes or str, got {type(value).__name__}")


@dataclass
class _BucketState:
    items: dict[bytes, bytes] = field(default_factory=dict)
    sequence: int = 0

    def copy(self) -> _BucketState:
        return _BucketState(dict(self.items), self.sequence)


class Bucket:
    """A named collection of key/value pairs seen through one transaction."""

    def __init__(self, name: bytes, state: _BucketState, writable: bool) -> None:
        self.name = name
        self._state = state
        self._writable = writable

    def _check_writable(self) -> None:
        if not self._writable:
            raise PermissionError("transaction is read-only")

    def get(self, key: KeyLike) -> bytes | None:
        """Return the value stored under key, or None."""
        return self._state.items.get(_to_bytes(key))

    def put(self, key: KeyLike, value: KeyLike) -> None:
        """Store value under key, replacing any previous value."""
        self._check_writable()
        raw_key = _to_bytes(key)
        if not raw_key:
            raise ValueError("key required")
        self._state.items[raw_key] = _to_bytes(value)

    def delete(self, key: KeyLike) -> None:
        """Remove key; removing a missing key is not an error."""
        self._check_writable()
        self._state.items.pop(_to_bytes(key), None)

    def next_sequence(self) -> int:
        """Advance and return the bucket's sequence number."""
        self._check_writable()
        self._state.sequence += 1
        return self._state.sequence

    def items(self) -> Iterator[tuple[bytes, bytes]]:
        """Yield key/value pairs in byte order of the keys.

        The pairs are taken when iteration starts, so the bucket may be
        changed while iterating.
        """
        yield from sorted(self._state.items.items())

    def __len__(self) -> int:
        return len(self._state.items)


class Transaction:
    """A consistent view of the store; writable inside KeyValueStore.update."""

    def __init__(self, buckets: dict[bytes, _BucketState], writable: bool) -> None:
        self._buckets = buckets
        self.writable = writable

    def bucket(self, name: KeyLike) -> Bucket | None:
        """Return the named bucket, or None if it does not exist."""
        raw_name = _to_bytes(name)
        state = self._buckets.get(raw_name)
        if state is None:
            return None
        return Bucket(raw_name, state, self.writable)

    def create_bucket_if_not_exists(self, name: KeyLike) -> Bucket:
        """Return the named bucket, creating it when missing."""
        if not self.writable:
            raise PermissionError("transaction is read-only")
        raw_name = _to_bytes(name)
        if not raw_name:
            raise ValueError("bucket name required")
        state = self._buckets.setdefault(raw_name, _BucketState())
        return Bucket(raw_name, state, True)

    def delete_bucket(self, name: KeyLike) -> None:
        """Remove the named bucket and everything in it."""
        if not self.writable:
            raise PermissionError("transaction is read-only")
        raw_name = _to_bytes(name)
        if raw_name not in self._buckets:
            raise BucketNotFoundError(raw_name.decode("utf-8", "replace"))
        del self._buckets[raw_name]

    def first_key(self) -> bytes | None:
        """Return the lowest bucket name, or None when there are no buckets."""
        return min(self._buckets, default=None)


class KeyValueStore:
    """Bucketed key/value storage backed by a file (or memory if filename is None)."""

    def __init__(self, filename: str | os.PathLike[str] | None) -> None:
        self.filename = os.fspath(filename) if filename is not None else None
        self._lock = threading.RLock()
        self._local = threading.local()
        self._closed = False
        self._buckets: dict[bytes, _BucketState] = self._load()

    def _load(self) -> dict[bytes, _BucketState]:
        if self.filename is None or not os.path.exists(self.filename):
            return {}
        with open(self.filename, "r", encoding="utf-8") as fh:
            text = fh.read()
        if not text.strip():
            return {}
        document = json.loads(text)
        return {
            bytes.fromhex(name): _BucketState(
                {
                    bytes.fromhex(key): base64.b64decode(value)
                    for key, value in body["items"].items()
                },
                int(body["sequence"]),
            )
            for name, body in document["buckets"].items()
        }

    def _save(self) -> None:
        if self.filename is None:
            return
        document = {
            "buckets": {
                name.hex(): {
                    "sequence": state.sequence,
                    "items": {
                        key.hex(): base64.b64encode(value).decode("ascii")
                        for key, value in state.items.items()
                    },
                }
                for name, state in self._buckets.items()
            }
        }
        directory = os.path.dirname(os.path.abspath(self.filename))
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".kv-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(document, fh)
            os.replace(tmp_path, self.filename)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def _check_open(self) -> None:
        if self._closed:
            raise ValueError("store is closed")

    @contextmanager
    def view(self) -> Iterator[Transaction]:
        """Open a read-only transaction over the committed state."""
        self._check_open()
        active = getattr(self._local, "tx", None)
        if active is not None:
            # Reads inside a write transaction see the state it started from.
            yield Transaction(self._buckets, writable=False)
            return
        with self._lock:
            buckets = self._buckets
        yield Transaction(buckets, writable=False)

    @contextmanager
    def update(self) -> Iterator[Transaction]:
        """Open a write transaction; it commits on normal exit and rolls back on error.

        An update opened inside another update on the same thread joins it.
        """
        self._check_open()
        active = getattr(self._local, "tx", None)
        if active is not None:
            yield active
            return
        with self._lock:
            working = {name: state.copy() for name, state in self._buckets.items()}
            tx = Transaction(working, writable=True)
            self._local.tx = tx
            try:
                yield tx
            finally:
                self._local.tx = None
            self._buckets = working
            self._save()

    def close(self) -> None:
        """Close the store; later transactions raise ValueError."""
        self._check_open()
        with self._lock:
            self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    def __enter__(self) -> KeyValueStore:
        return self

    def __exit__(self, *exc_info: object) -> None:
        if not self._closed:
            self.close()