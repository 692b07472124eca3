"""Buffer manager laying out data and metadata buffers on image blocks."""

from __future__ import annotations

import errno
from dataclasses import dataclass, field
from enum import IntEnum
from typing import IO, Any, Callable, Hashable, Mapping, Optional

from erofskit.config import ErofsError


class BufferType(IntEnum):
    """Base kinds of buffer blocks."""

    DATA = 0
    META = 1


@dataclass(eq=False)
class BufferHead:
    """A region inside a buffer block.

    flush is called when the block is flushed; a head marked skip_write
    keeps its block from being written and released.
    """

    block: "BufferBlock"
    off: int = 0
    flush: Optional[Callable[["BufferHead"], Any]] = None
    skip_write: bool = False


@dataclass(eq=False)
class BufferBlock:
    """A run of image blocks holding buffers of one type."""

    type: BufferType
    blkaddr: Optional[int] = None
    off: int = 0
    buffers: list[BufferHead] = field(default_factory=list)
    _bucket: Optional[tuple[BufferType, int]] = field(default=None, init=False,
                                                      repr=False)


def _roundup(value: int, align: int) -> int:
    return -(-value // align) * align


def _rounddown(value: int, align: int) -> int:
    return value - value % align


def _cmpsgn(a: int, b: int) -> int:
    return (a > b) - (a < b)


class BufferManager:
    """Allocates buffers, maps them to block addresses and flushes them."""

    def __init__(self, blksiz: int = 4096, startblk: int = 0,
                 alignments: Optional[Mapping[Hashable,
                                              tuple[int, BufferType]]] = None,
                 device: Optional[IO[bytes]] = None) -> None:
        if blksiz <= 0 or blksiz & (blksiz - 1):
            raise ErofsError(errno.EINVAL, f"invalid block size {blksiz}")
        self.blksiz = blksiz
        self.tail_blkaddr = startblk
        self.blocks: list[BufferBlock] = []
        self.last_mapped_block: Optional[BufferBlock] = None
        self.metablkcnt = 0
        self.device = device
        self._alignments: dict[Hashable, tuple[int, BufferType]] = {
            BufferType.DATA: (blksiz, BufferType.DATA),
            BufferType.META: (1, BufferType.META),
        }
        self._alignments.update(alignments or {})
        self._buckets: dict[tuple[BufferType, int], list[BufferBlock]] = {}

    # -- helpers -------------------------------------------------------

    def _blocks_for(self, size: int) -> int:
        return -(-size // self.blksiz)

    def _resolve(self, btype: Hashable) -> tuple[int, BufferType]:
        try:
            alignsize, base = self._alignments[btype]
        except (KeyError, TypeError):
            raise ErofsError(errno.EINVAL, f"unknown buffer type {btype!r}") from None
        if alignsize <= 0:
            raise ErofsError(errno.EINVAL, f"invalid alignment {alignsize}")
        return alignsize, BufferType(base)

    def _next_blkaddr(self, bb: BufferBlock) -> Optional[int]:
        idx = self.blocks.index(bb) + 1
        return self.blocks[idx].blkaddr if idx < len(self.blocks) else None

    def _unbucket(self, bb: BufferBlock) -> None:
        if bb._bucket is not None:
            self._buckets[bb._bucket].remove(bb)
            bb._bucket = None

    def _update_mapped(self, bb: BufferBlock) -> None:
        if bb.blkaddr is None:
            return
        self._unbucket(bb)
        key = (bb.type, bb.off & (self.blksiz - 1))
        self._buckets.setdefault(key, []).append(bb)
        bb._bucket = key

    def _battach(self, bb: BufferBlock, bh: Optional[BufferHead], incr: int,
                 alignsize: int, extrasize: int, dryrun: bool) -> int:
        """Attach incr bytes to bb; return bytes used in its last block."""
        blkmask = self.blksiz - 1
        boff = bb.off
        alignedoffset = _roundup(boff, alignsize)
        oob = _cmpsgn(_roundup(((boff - 1) & blkmask) + 1, alignsize)
                      + incr + extrasize, self.blksiz)
        tailupdate = False
        blkaddr = bb.blkaddr

        if oob >= 0:
            # the next buffer block must still be unmapped to grow into it
            if oob and self._next_blkaddr(bb) is not None:
                raise ErofsError(errno.EINVAL, "buffer block cannot grow")
            if blkaddr is not None:
                tailupdate = (self.tail_blkaddr
                              == blkaddr + self._blocks_for(boff))
                if oob and not tailupdate:
                    raise ErofsError(errno.EINVAL, "buffer block cannot grow")

        if not dryrun:
            if bh is not None:
                bh.off = alignedoffset
                bh.block = bb
                bb.buffers.append(bh)
            boff = alignedoffset + incr
            bb.off = boff
            if tailupdate:
                assert blkaddr is not None
                self.tail_blkaddr = blkaddr + self._blocks_for(boff)
            self._update_mapped(bb)
        return ((alignedoffset + incr - 1) & blkmask) + 1

    def _find_for_attach(self, btype: BufferType, size: int, required_ext: int,
                         inline_ext: int, alignsize: int) -> Optional[BufferBlock]:
        blksiz = self.blksiz
        blkmask = blksiz - 1
        used0 = ((size + required_ext) & blkmask) + inline_ext
        # inline data should be in the same fs block
        if used0 > blksiz:
            raise ErofsError(errno.ENOSPC, "inline data exceeds a block")
        if not used0 or alignsize == blksiz:
            return None

        usedmax = 0
        found: Optional[BufferBlock] = None
        total = size + required_ext + inline_ext

        if total < blksiz:
            start = _rounddown(blksiz - total, alignsize)
            for used_before in range(start, 0, -1):
                bucket = self._buckets.get((btype, used_before))
                if not bucket:
                    continue
                cur = bucket[0]
                # the last mapped block can still grow; handled below
                if self._next_blkaddr(cur) is None:
                    continue
                try:
                    ret = self._battach(cur, None, size, alignsize,
                                        required_ext + inline_ext, True)
                except ErofsError:
                    continue
                found = cur
                usedmax = ret + required_ext + inline_ext
                break

        start = (0 if self.last_mapped_block is None
                 else self.blocks.index(self.last_mapped_block))
        for cur in self.blocks[start:]:
            used_before = cur.off & blkmask
            if not used_before or cur.type != btype:
                continue
            try:
                ret = self._battach(cur, None, size, alignsize,
                                    required_ext + inline_ext, True)
            except ErofsError:
                continue
            used = ((ret + required_ext) & blkmask) + inline_ext
            if used > blksiz:
                continue
            # keep only if the block fills up more than before or than a new one
            if used < used_before and used < used0:
                continue
            if usedmax < used:
                found = cur
                usedmax = used
        return found

    def _map(self, bb: BufferBlock) -> int:
        if bb.blkaddr is None:
            bb.blkaddr = self.tail_blkaddr
            self.last_mapped_block = bb
            self._update_mapped(bb)
        blkaddr = bb.blkaddr + self._blocks_for(bb.off)
        if blkaddr > self.tail_blkaddr:
            self.tail_blkaddr = blkaddr
        return blkaddr

    def _free(self, bb: BufferBlock) -> None:
        idx = self.blocks.index(bb)
        if bb is self.last_mapped_block:
            self.last_mapped_block = self.blocks[idx - 1] if idx else None
        self._unbucket(bb)
        del self.blocks[idx]

    def _fill_zero(self, offset: int, length: int) -> None:
        if self.device is None:
            return
        self.device.seek(offset)
        self.device.write(bytes(length))

    # -- public interface ----------------------------------------------

    def balloc(self, btype: Hashable, size: int, required_ext: int = 0,
               inline_ext: int = 0) -> BufferHead:
        """Allocate a buffer of size bytes, reusing a partly filled block if possible."""
        alignsize, base = self._resolve(btype)
        bb = self._find_for_attach(base, size, required_ext, inline_ext,
                                   alignsize)
        if bb is None:
            bb = BufferBlock(base)
            if base == BufferType.DATA:
                pos = (0 if self.last_mapped_block is None
                       else self.blocks.index(self.last_mapped_block) + 1)
                self.blocks.insert(pos, bb)
            else:
                self.blocks.append(bb)
        bh = BufferHead(bb)
        self._battach(bb, bh, size, alignsize, required_ext + inline_ext, False)
        return bh

    def battach(self, bh: BufferHead, btype: Hashable, size: int) -> BufferHead:
        """Append a new buffer right after bh, which must be its block's last."""
        alignsize, _ = self._resolve(btype)
        bb = bh.block
        if not bb.buffers or bb.buffers[-1] is not bh:
            raise ErofsError(errno.EINVAL, "not the tail buffer of its block")
        nbh = BufferHead(bb)
        self._battach(bb, nbh, size, alignsize, 0, False)
        return nbh

    def balloon(self, bh: BufferHead, incr: int) -> int:
        """Grow the tail buffer bh by incr bytes; return bytes used in the last block."""
        bb = bh.block
        if not bb.buffers or bb.buffers[-1] is not bh:
            raise ErofsError(errno.EINVAL, "not the tail buffer of its block")
        return self._battach(bb, None, incr, 1, 0, False)

    def mapbh(self, bb: Optional[BufferBlock] = None) -> int:
        """Assign block addresses up to bb (or to all blocks) and return the tail.

        An already mapped bb returns its own block address.
        """
        if bb is not None and bb.blkaddr is not None:
            return bb.blkaddr
        start = (0 if self.last_mapped_block is None
                 else self.blocks.index(self.last_mapped_block) + 1)
        for block in self.blocks[start:]:
            self._map(block)
            if block is bb:
                break
        return self.tail_blkaddr

    def bflush(self, bb: Optional[BufferBlock] = None) -> None:
        """Flush and release every block before bb (all blocks if None)."""
        for block in list(self.blocks):
            if block is bb:
                break
            blkaddr = self._map(block)
            skip = False
            for bh in list(block.buffers):
                if bh.skip_write:
                    skip = True
                    continue
                if bh.flush is not None:
                    bh.flush(bh)
                if bh in block.buffers:
                    block.buffers.remove(bh)
            if skip:
                continue
            padding = self.blksiz - (block.off & (self.blksiz - 1))
            if padding != self.blksiz:
                self._fill_zero(blkaddr * self.blksiz - padding, padding)
            if block.type != BufferType.DATA:
                self.metablkcnt += self._blocks_for(block.off)
            self._free(block)

    def bdrop(self, bh: BufferHead, tryrevoke: bool = False) -> None:
        """Drop bh; release its block once empty, rolling back the tail if asked."""
        bb = bh.block
        blkaddr = bb.blkaddr
        rollback = (tryrevoke and blkaddr is not None
                    and self.tail_blkaddr == blkaddr + self._blocks_for(bb.off))
        if bh in bb.buffers:
            bb.buffers.remove(bh)
        if bb.buffers:
            return
        if not rollback and bb.type != BufferType.DATA:
            self.metablkcnt += self._blocks_for(bb.off)
        self._free(bb)
        if rollback:
            assert blkaddr is not None
            self.tail_blkaddr = blkaddr

    def total_metablocks(self) -> int:
        """Number of metadata blocks flushed or dropped so far."""
        return self.metablkcnt