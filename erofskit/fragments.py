"""Packing of file tails into a shared packed file, with tail deduplication."""

from __future__ import annotations

import errno
import os
import tempfile
from dataclasses import dataclass
from typing import IO, Optional

from erofskit.config import ErofsError

TOF_HASHLEN = 16
COMPR_MAX_SZ = 4000 * 1024
_HASHMASK = 65536 - 1
_CHUNK = 16384
_COPY_CHUNK = 32768

_CRC32C_POLY = 0x82F63B78


def _make_table() -> list[int]:
    table = []
    for n in range(256):
        crc = n
        for _ in range(8):
            crc = (crc >> 1) ^ (_CRC32C_POLY if crc & 1 else 0)
        table.append(crc)
    return table


_CRC_TABLE = _make_table()


def crc32c(data: bytes, crc: int = 0xFFFFFFFF) -> int:
    """Raw CRC-32C update of crc over data (no final inversion)."""
    for byte in data:
        crc = _CRC_TABLE[(crc ^ byte) & 0xFF] ^ (crc >> 8)
    return crc


@dataclass(frozen=True)
class Fragment:
    """A file tail stored in the packed file: size bytes at offset."""

    size: int
    offset: int


@dataclass(eq=False)
class _Item:
    data: bytes
    pos: int


def _read_at(fileobj: IO[bytes], offset: int, length: int) -> bytes:
    fileobj.seek(offset)
    return fileobj.read(length)


def _common_suffix(a: bytes, b: bytes, limit: int) -> int:
    """Length of the common suffix of a and b, at most limit."""
    la, lb = len(a), len(b)
    n = 0
    while n < limit:
        step = min(4096, limit - n)
        if a[la - n - step:la - n] == b[lb - n - step:lb - n]:
            n += step
            continue
        while n < limit and a[la - n - 1] == b[lb - n - 1]:
            n += 1
        break
    return n


class FragmentPacker:
    """Appends fragments to a packed file and finds reusable tails in it."""

    def __init__(self, packed_file: Optional[IO[bytes]] = None) -> None:
        self._file: IO[bytes] = (packed_file if packed_file is not None
                                 else tempfile.TemporaryFile())
        self._buckets: dict[int, list[_Item]] = {}

    def __enter__(self) -> "FragmentPacker":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _insert(self, data: bytes, pos: int, crc: int) -> None:
        if len(data) <= TOF_HASHLEN:
            return
        if len(data) > COMPR_MAX_SZ:
            pos += len(data) - COMPR_MAX_SZ
            data = data[len(data) - COMPR_MAX_SZ:]
        self._buckets.setdefault(crc & _HASHMASK, []).append(_Item(bytes(data), pos))

    def _find(self, fileobj: IO[bytes], size: int, crc: int) -> Optional[Fragment]:
        bucket = self._buckets.get(crc & _HASHMASK)
        if not bucket:
            return None
        length = min(size, COMPR_MAX_SZ)
        data = _read_at(fileobj, size - length, length)
        if len(data) != length:
            raise ErofsError(errno.EIO, "short read of file tail")
        e2 = length - TOF_HASHLEN
        best: Optional[_Item] = None
        deduped = 0
        for cur in bucket:
            e1 = len(cur.data) - TOF_HASHLEN
            if cur.data[e1:] != data[e2:]:
                continue
            i = _common_suffix(cur.data[:e1], data[:e2], min(e1, e2))
            if best is None or i + TOF_HASHLEN > deduped:
                deduped = i + TOF_HASHLEN
                best = cur
                if i == e2:
                    break
        if best is None:
            return None

        pos = best.pos + len(best.data) - deduped
        # a whole stored item matched: keep extending backwards
        if deduped == len(best.data):
            self._file.flush()
            while deduped < size and pos:
                sz = min(pos, _CHUNK)
                fpos = size - deduped - sz
                if fpos < 0:
                    break
                packed = _read_at(self._file, pos - sz, sz)
                ours = _read_at(fileobj, fpos, sz)
                if len(packed) != sz or len(ours) != sz or packed != ours:
                    break
                pos -= sz
                deduped += sz
        return Fragment(deduped, pos)

    def dedupe(self, fileobj: IO[bytes], size: int) -> tuple[int, Optional[Fragment]]:
        """Look for the tail of a file already in the packed file.

        Returns (tail crc, fragment or None); the crc is 0 for files too
        small to hash. The file is left positioned at its start.
        """
        if size <= TOF_HASHLEN:
            return 0, None
        tail = _read_at(fileobj, size - TOF_HASHLEN, TOF_HASHLEN)
        if len(tail) != TOF_HASHLEN:
            raise ErofsError(errno.EIO, "short read of file tail")
        tofcrc = crc32c(tail)
        fragment = self._find(fileobj, size, tofcrc)
        fileobj.seek(0)
        return tofcrc, fragment

    def pack(self, data: bytes, tofcrc: int) -> Fragment:
        """Append data to the packed file and remember it for deduplication."""
        offset = self._file.seek(0, os.SEEK_END)
        self._file.write(data)
        self._insert(bytes(data), offset, tofcrc)
        return Fragment(len(data), offset)

    def pack_file(self, fileobj: IO[bytes], size: int, tofcrc: int) -> Fragment:
        """Append a whole file of size bytes to the packed file."""
        offset = self._file.seek(0, os.SEEK_END)
        fileobj.seek(0)
        tail = bytearray()
        remaining = size
        while remaining:
            want = min(remaining, _COPY_CHUNK)
            chunk = fileobj.read(want)
            if len(chunk) != want:
                raise ErofsError(errno.EAGAIN, "short read while packing file")
            self._file.write(chunk)
            tail += chunk
            if len(tail) > COMPR_MAX_SZ:
                del tail[:len(tail) - COMPR_MAX_SZ]
            remaining -= want
        fileobj.seek(0)
        self._insert(bytes(tail), offset + size - len(tail), tofcrc)
        return Fragment(size, offset)

    def packed_size(self) -> int:
        """Current size of the packed file."""
        self._file.flush()
        return self._file.seek(0, os.SEEK_END)

    def close(self) -> None:
        """Close the packed file and forget stored fragments."""
        self._buckets.clear()
        self._file.close()