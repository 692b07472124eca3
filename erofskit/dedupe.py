"""Content-defined deduplication of compressed extents via a rolling hash."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Optional

_BASE = 257
_MOD = (1 << 61) - 1
_HASHMASK = 65536 - 1


def memcmp2(a: bytes, b: bytes) -> int:
    """Number of leading bytes a and b have in common."""
    limit = min(len(a), len(b))
    n = 0
    while n < limit:
        step = min(4096, limit - n)
        if a[n:n + step] == b[n:n + step]:
            n += step
            continue
        while n < limit and a[n] == b[n]:
            n += 1
        break
    return n


def _rolling_init(window) -> int:
    h = 0
    for byte in reversed(bytes(window)):
        h = (h * _BASE + byte) % _MOD
    return h


def _rolling_advance(h: int, rm: int, out: int, new: int) -> int:
    # slide the window one byte towards the start of the buffer
    return (new + _BASE * (h - out * rm)) % _MOD


def _prefix_digest(window) -> bytes:
    return hashlib.blake2b(window, digest_size=8).digest()


@dataclass
class DedupeExtent:
    """An extent of original data and where its compressed form lives."""

    length: int
    compressedblks: int = 0
    blkaddr: int = 0
    raw: bool = False
    partial: bool = False
    inlined: bool = False


@dataclass
class DedupeMatch:
    """A match: the data at cur may reuse extent."""

    cur: int
    extent: DedupeExtent


@dataclass(eq=False)
class _Item:
    hash: int
    prefix_sha256: bytes
    prefix_digest: bytes
    extra_data: bytes
    original_length: int
    blkaddr: int
    compressedblks: int
    partial: bool
    raw: bool


class DedupeTable:
    """Index of previously written extents keyed by their first window bytes."""

    def __init__(self, window_size: int = 0) -> None:
        self.window_size = window_size
        self._rm = pow(_BASE, window_size - 1, _MOD) if window_size else 0
        self._buckets: dict[int, list[_Item]] = {}
        self._pending: list[_Item] = []

    def match(self, data, start: int, cur: int, end: int) -> Optional[DedupeMatch]:
        """Search backwards from cur (not before start) for a stored extent.

        Matches must extend past cur; data[end:] is never looked at.
        """
        w = self.window_size
        if not w:
            return None
        mv = memoryview(data)
        first = min(cur, end - w)
        h: Optional[int] = None
        for pos in range(first, start - 1, -1):
            if h is None:
                h = _rolling_init(mv[pos:pos + w])
            else:
                h = _rolling_advance(h, self._rm, mv[pos + w], mv[pos])
            window = mv[pos:pos + w]
            digest: Optional[bytes] = None
            found: Optional[_Item] = None
            for item in self._buckets.get(h & _HASHMASK, ()):
                if item.hash != h:
                    continue
                if digest is None:
                    digest = _prefix_digest(window)
                if item.prefix_digest == digest:
                    found = item
                    break
            if found is None:
                continue
            if hashlib.sha256(window).digest() != found.prefix_sha256:
                continue
            extra = min(end - pos - w, found.original_length - w)
            extra = memcmp2(mv[pos + w:pos + w + extra], found.extra_data[:extra])
            if w + extra <= cur - pos:
                continue
            length = w + extra
            return DedupeMatch(pos, DedupeExtent(
                length=length,
                compressedblks=found.compressedblks,
                blkaddr=found.blkaddr,
                raw=found.raw,
                partial=found.partial or length < found.original_length,
                inlined=False,
            ))
        return None

    def insert(self, extent: DedupeExtent, data) -> bool:
        """Remember extent whose original data starts data; True if stored."""
        w = self.window_size
        if not w or extent.length < w:
            return False
        raw = bytes(memoryview(data)[:extent.length])
        if len(raw) < extent.length:
            raise ValueError("data shorter than the extent")
        window = raw[:w]
        item = _Item(
            hash=_rolling_init(window),
            prefix_sha256=hashlib.sha256(window).digest(),
            prefix_digest=_prefix_digest(window),
            extra_data=raw[w:],
            original_length=extent.length,
            blkaddr=extent.blkaddr,
            compressedblks=extent.compressedblks,
            partial=extent.partial,
            raw=extent.raw,
        )
        bucket = self._buckets.setdefault(item.hash & _HASHMASK, [])
        if any(k.prefix_digest == item.prefix_digest for k in bucket):
            return False
        bucket.append(item)
        self._pending.append(item)
        return True

    def commit(self, drop: bool = False) -> None:
        """Keep (or, with drop, forget) the entries inserted since the last commit."""
        if drop:
            for item in self._pending:
                self._buckets[item.hash & _HASHMASK].remove(item)
        self._pending.clear()

    def clear(self) -> None:
        """Forget every entry."""
        self.commit(True)
        self._buckets.clear()