"""Block list output describing where file data landed in the image."""

from __future__ import annotations

import errno
import stat
from typing import IO, Optional

from erofskit.config import Config, ErofsError


class BlockListWriter:
    """Writes tar source maps and per-file block lists to a text stream."""

    def __init__(self, stream: Optional[IO[str]], srcmap: bool = False,
                 config: Optional[Config] = None) -> None:
        if stream is None:
            raise ErofsError(errno.ENOENT, "no block list stream")
        self.stream: Optional[IO[str]] = stream
        self.srcmap = srcmap
        self.config = config if config is not None else Config()

    def __enter__(self) -> "BlockListWriter":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> Optional[IO[str]]:
        """Detach and return the stream; later writes are ignored."""
        stream, self.stream = self.stream, None
        return stream

    def write_tar_extent(self, blkaddr: int, nblocks: int, srcoff: int) -> None:
        """Record that nblocks at blkaddr come from srcoff in the source tar."""
        if self.stream is None or not nblocks or not self.srcmap:
            return
        self.stream.write(f"{blkaddr:08x} {nblocks:8x} {srcoff:08x}\n")

    def _active(self) -> bool:
        return self.stream is not None and self.config.mount_point is not None

    def _write_range(self, srcpath: str, blk_start: int, nblocks: int,
                     first_extent: bool, last_extent: bool) -> None:
        assert self.stream is not None
        out = self.stream
        if first_extent:
            fspath = self.config.fspath(srcpath)
            out.write(f"/{self.config.mount_point}")
            if not fspath.startswith("/"):
                out.write("/")
            out.write(fspath)
        if nblocks == 1:
            out.write(f" {blk_start}")
        else:
            out.write(f" {blk_start}-{blk_start + nblocks - 1}")
        if last_extent:
            out.write("\n")

    def write_extent(self, srcpath: str, blk_start: int, nblocks: int,
                     first_extent: bool, last_extent: bool) -> None:
        """Write one extent of a file that may span several extents."""
        if not self._active():
            return
        if not nblocks:
            if last_extent:
                self.stream.write("\n")
            return
        self._write_range(srcpath, blk_start, nblocks, first_extent, last_extent)

    def write(self, srcpath: str, blk_start: int, nblocks: int,
              has_inline_data: bool) -> None:
        """Write a file's single extent; the line stays open for inline data."""
        if not self._active() or not nblocks:
            return
        self._write_range(srcpath, blk_start, nblocks, True, not has_inline_data)

    def write_tail_end(self, srcpath: str, mode: int, size_blocks: int,
                       blkaddr: Optional[int]) -> None:
        """Finish a file's entry with its tail block (None means no block)."""
        if not self._active():
            return
        if stat.S_ISDIR(mode) or stat.S_ISLNK(mode):
            return
        if size_blocks:
            # the file's line was started by an earlier extent
            if blkaddr is None:
                self.stream.write("\n")
            else:
                self.stream.write(f" {blkaddr}\n")
            return
        if blkaddr is not None:
            self._write_range(srcpath, blkaddr, 1, True, True)