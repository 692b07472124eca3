"""Chained hash map with FNV-1 string hashing and a byte-string intern pool."""

from __future__ import annotations

import errno
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Optional

from erofskit.config import ErofsError

_FNV32_BASE = 0x811C9DC5
_FNV32_PRIME = 0x01000193
_MASK32 = 0xFFFFFFFF

_INITIAL_SIZE = 64
_RESIZE_BITS = 2
_LOAD_FACTOR = 80


def _to_bytes(text: str | bytes | bytearray | memoryview) -> bytes:
    if isinstance(text, str):
        return text.encode("utf-8")
    return bytes(text)


def _fnv1(data: bytes, fold_case: bool) -> int:
    hash_ = _FNV32_BASE
    for c in data:
        if fold_case and 0x61 <= c <= 0x7A:
            c -= 0x20
        hash_ = ((hash_ * _FNV32_PRIME) & _MASK32) ^ c
    return hash_


def strhash(text: str | bytes) -> int:
    """FNV-1 hash of a string, stopping at the first NUL."""
    return _fnv1(_to_bytes(text).split(b"\0", 1)[0], False)


def strihash(text: str | bytes) -> int:
    """Case-insensitive FNV-1 hash of a string (ASCII letters folded)."""
    return _fnv1(_to_bytes(text).split(b"\0", 1)[0], True)


def memhash(buf: bytes | bytearray | memoryview) -> int:
    """FNV-1 hash of a byte buffer."""
    return _fnv1(_to_bytes(buf), False)


def memihash(buf: bytes | bytearray | memoryview) -> int:
    """Case-insensitive FNV-1 hash of a byte buffer."""
    return _fnv1(_to_bytes(buf), True)


@dataclass(eq=False)
class HashMapEntry:
    """Base class for objects stored in a HashMap; carries the hash value."""

    hash: int = 0


EqualsFn = Callable[[HashMapEntry, HashMapEntry, Any], bool]


class HashMap:
    """Hash map of entries chained per bucket, resized by a factor of four.

    Without an equality function, entries with the same hash count as equal.
    """

    def __init__(self, equals: Optional[EqualsFn] = None,
                 initial_size: int = 0) -> None:
        self._equals: Optional[EqualsFn] = equals
        self._size = 0
        wanted = initial_size * 100 // _LOAD_FACTOR
        size = _INITIAL_SIZE
        while wanted > size:
            size <<= _RESIZE_BITS
        self._alloc_table(size)

    def _alloc_table(self, size: int) -> None:
        self.tablesize = size
        self._table: list[list[HashMapEntry]] = [[] for _ in range(size)]
        self.grow_at = size * _LOAD_FACTOR // 100
        if size <= _INITIAL_SIZE:
            self.shrink_at = 0
        else:
            self.shrink_at = self.grow_at // ((1 << _RESIZE_BITS) + 1)

    def _bucket(self, entry: HashMapEntry) -> list[HashMapEntry]:
        return self._table[entry.hash & (self.tablesize - 1)]

    def _entry_equals(self, e1: HashMapEntry, e2: HashMapEntry,
                      keydata: Any) -> bool:
        if e1 is e2:
            return True
        if e1.hash != e2.hash:
            return False
        return self._equals is None or self._equals(e1, e2, keydata)

    def _rehash(self, newsize: int) -> None:
        old = self._table
        self._alloc_table(newsize)
        for chain in old:
            for entry in chain:
                self._bucket(entry).insert(0, entry)

    def get(self, key: HashMapEntry, keydata: Any = None) -> Optional[HashMapEntry]:
        """Return the first entry equal to key, or None."""
        for entry in self._bucket(key):
            if self._entry_equals(entry, key, keydata):
                return entry
        return None

    def get_next(self, entry: HashMapEntry) -> Optional[HashMapEntry]:
        """Return the next entry after entry in its chain that equals it."""
        chain = self._bucket(entry)
        found = False
        for candidate in chain:
            if found and self._entry_equals(entry, candidate, None):
                return candidate
            if candidate is entry:
                found = True
        return None

    def add(self, entry: HashMapEntry) -> None:
        """Add an entry; duplicates are allowed."""
        self._bucket(entry).insert(0, entry)
        self._size += 1
        if self._size > self.grow_at:
            self._rehash(self.tablesize << _RESIZE_BITS)

    def remove(self, entry: HashMapEntry) -> Optional[HashMapEntry]:
        """Remove exactly this entry object; return it, or None if absent."""
        chain = self._bucket(entry)
        for pos, candidate in enumerate(chain):
            if candidate is entry:
                del chain[pos]
                break
        else:
            return None
        self._size -= 1
        if self._size < self.shrink_at:
            self._rehash(self.tablesize >> _RESIZE_BITS)
        return entry

    def clear(self) -> None:
        """Release the table; refuses while entries are still stored."""
        if self._size:
            raise ErofsError(errno.EBUSY, "hashmap still holds entries")
        self._alloc_table(_INITIAL_SIZE)

    def __iter__(self) -> Iterator[HashMapEntry]:
        for chain in self._table:
            yield from list(chain)

    def __len__(self) -> int:
        return self._size


@dataclass(eq=False)
class _PoolEntry(HashMapEntry):
    data: bytes = b""


def _pool_equals(e1: HashMapEntry, e2: HashMapEntry, keydata: Any) -> bool:
    assert isinstance(e1, _PoolEntry) and isinstance(e2, _PoolEntry)
    if keydata is None:
        keydata = e2.data
    return e1.data is keydata or e1.data == keydata


_pool = HashMap(_pool_equals)


def memintern(data: bytes | bytearray | memoryview) -> bytes:
    """Return a canonical bytes object equal to data, shared between callers."""
    raw = bytes(data)
    key = _PoolEntry(memhash(raw), raw)
    found = _pool.get(key, raw)
    if found is None:
        _pool.add(key)
        return key.data
    assert isinstance(found, _PoolEntry)
    return found.data