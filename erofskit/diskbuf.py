"""Shared temporary-file streams for buffering file data before it is placed."""

from __future__ import annotations

import errno
import mmap
import os
import tempfile
from dataclasses import dataclass
from typing import Optional

from erofskit.config import ErofsError


def make_tmpfile(tmpdir: Optional[str] = None) -> int:
    """Create an anonymous (already unlinked) temporary file and return its fd."""
    directory = tmpdir if tmpdir is not None else (os.environ.get("TMPDIR") or "/tmp")
    try:
        fd, path = tempfile.mkstemp(prefix="tmp.", dir=directory)
    except OSError as exc:
        raise ErofsError(exc.errno or errno.EIO,
                         f"cannot create temporary file in {directory}") from exc
    os.unlink(path)
    mask = os.umask(0)
    os.umask(mask)
    if hasattr(os, "fchmod"):
        os.fchmod(fd, 0o666 & ~mask)
    return fd


@dataclass(eq=False)
class _Stream:
    fd: int
    alignsize: int
    devpos: int = 0
    tailoffset: int = 0
    count: int = 1
    locked: bool = False


@dataclass(eq=False)
class DiskBuf:
    """A region reserved at the tail of a stream."""

    _stream: Optional[_Stream]
    offset: int = 0

    def getfd(self) -> Optional[tuple[int, int]]:
        """Return (fd, file position) of the region, or None once closed."""
        if self._stream is None:
            return None
        return self._stream.fd, self.offset + self._stream.devpos

    def commit(self, length: int) -> None:
        """Mark length bytes written at the region, advancing the stream tail."""
        strm = self._stream
        if strm is None or not strm.locked:
            raise ErofsError(errno.EINVAL, "disk buffer is not reserved")
        if strm.tailoffset != self.offset:
            raise ErofsError(errno.EINVAL, "disk buffer is not at the stream tail")
        strm.tailoffset += length

    def close(self) -> None:
        """Release the region; its data stays in the stream."""
        strm = self._stream
        if strm is None:
            raise ErofsError(errno.EINVAL, "disk buffer already closed")
        if strm.count <= 1:
            raise ErofsError(errno.EINVAL, "unbalanced disk buffer release")
        strm.count -= 1
        self._stream = None


class DiskBufPool:
    """A fixed set of temporary-file streams handing out aligned regions."""

    def __init__(self, nstreams: int = 1, tmpdir: Optional[str] = None) -> None:
        self._streams: list[_Stream] = []
        try:
            for _ in range(nstreams):
                try:
                    fd = make_tmpfile(tmpdir)
                except ErofsError as exc:
                    raise ErofsError(errno.ENOSPC, str(exc)) from exc
                try:
                    blksize = getattr(os.fstat(fd), "st_blksize", 0) or 0
                except OSError as exc:
                    os.close(fd)
                    raise ErofsError(exc.errno or errno.EIO) from exc
                self._streams.append(_Stream(fd, max(blksize, mmap.PAGESIZE)))
        except BaseException:
            for strm in self._streams:
                os.close(strm.fd)
            self._streams.clear()
            raise

    def __enter__(self) -> "DiskBufPool":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def __len__(self) -> int:
        return len(self._streams)

    def reserve(self, sid: int = 0) -> DiskBuf:
        """Reserve a region at the aligned tail of stream sid."""
        if not 0 <= sid < len(self._streams):
            raise ErofsError(errno.EINVAL, f"invalid stream {sid}")
        strm = self._streams[sid]
        if strm.tailoffset & (strm.alignsize - 1):
            strm.tailoffset = -(-strm.tailoffset // strm.alignsize) * strm.alignsize
            target = strm.tailoffset + strm.devpos
            if os.lseek(strm.fd, target, os.SEEK_SET) != target:
                raise ErofsError(errno.EIO)
        db = DiskBuf(strm, strm.tailoffset)
        strm.count += 1
        strm.locked = True
        return db

    def close(self) -> None:
        """Close every stream; raises if regions are still reserved."""
        busy = any(strm.count != 1 for strm in self._streams)
        for strm in self._streams:
            os.close(strm.fd)
        self._streams.clear()
        if busy:
            raise ErofsError(errno.EBUSY, "disk buffers still reserved")