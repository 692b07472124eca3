"""Decompression of physical clusters for every supported algorithm."""

from __future__ import annotations

import errno
import lzma
import struct
import zlib
from dataclasses import dataclass
from typing import Optional

import lz4.block
import zstandard

from erofskit.compressor import AlgorithmId
from erofskit.compressor_backends import LZMA_MAX_DICT_SIZE
from erofskit.config import ErofsError

EFSCORRUPTED = getattr(errno, "EUCLEAN", 117)

COMPRESSION_SHIFTED = 4
COMPRESSION_INTERLACED = 5

_LZ4_CFGS_SIZE = 14
_LZMA_PROPS_MAX = 9 * 5 * 5


def fixup_insize(buf) -> int:
    """Number of leading zero (padding) bytes in buf."""
    data = bytes(buf)
    return len(data) - len(data.lstrip(b"\0"))


@dataclass
class DecompressRequest:
    """One pcluster to decode.

    data holds the compressed input; decodedlength bytes are decoded and
    the first decodedskip of them are dropped from the result.
    """

    data: bytes
    decodedlength: int
    alg: int
    decodedskip: int = 0
    interlaced_offset: int = 0
    partial_decoding: bool = False
    block_size: int = 4096
    lz4_0padding: bool = True

    @property
    def inputsize(self) -> int:
        return len(self.data)


def _corrupted(msg: str) -> ErofsError:
    return ErofsError(EFSCORRUPTED, msg)


def _strip_padding(src: bytes) -> bytes:
    margin = fixup_insize(src)
    if margin >= len(src):
        raise _corrupted("compressed data is all padding")
    return src[margin:]


def _read_len(src: bytes, i: int, n: int) -> tuple[int, int]:
    if n != 15:
        return n, i
    while True:
        if i >= len(src):
            raise ErofsError(errno.EIO, "truncated lz4 length")
        b = src[i]
        i += 1
        n += b
        if b != 255:
            return n, i


def _lz4_decode_partial(src: bytes, target: int) -> bytes:
    out = bytearray()
    i = 0
    while len(out) < target:
        if i >= len(src):
            raise ErofsError(errno.EIO, "truncated lz4 block")
        token = src[i]
        i += 1
        lit, i = _read_len(src, i, token >> 4)
        if i + lit > len(src):
            raise ErofsError(errno.EIO, "truncated lz4 literals")
        out += src[i:i + lit]
        i += lit
        if len(out) >= target:
            break
        if i + 2 > len(src):
            raise ErofsError(errno.EIO, "truncated lz4 block")
        offset = src[i] | (src[i + 1] << 8)
        i += 2
        if not offset or offset > len(out):
            raise ErofsError(errno.EIO, "invalid lz4 match offset")
        mlen, i = _read_len(src, i, token & 15)
        mlen += 4
        start = len(out) - offset
        if offset >= mlen:
            out += out[start:start + mlen]
        else:
            for k in range(mlen):
                out.append(out[start + k])
    return bytes(out[:target])


def _decompress_lz4(rq: DecompressRequest) -> bytes:
    src = bytes(rq.data)
    if rq.lz4_0padding:
        src = _strip_padding(src)
    if rq.partial_decoding or not rq.lz4_0padding:
        out = _lz4_decode_partial(src, rq.decodedlength)
    else:
        try:
            out = lz4.block.decompress(src, uncompressed_size=rq.decodedlength)
        except (lz4.block.LZ4BlockError, ValueError) as exc:
            raise ErofsError(errno.EIO, f"failed to full decompress: {exc}") from exc
    if len(out) != rq.decodedlength:
        raise ErofsError(errno.EIO, "lz4 decoded length mismatch")
    return out


def _decompress_lzma(rq: DecompressRequest) -> bytes:
    src = _strip_padding(bytes(rq.data))
    # MicroLZMA: the first byte holds the inverted lc/lp/pb properties
    props = ~src[0] & 0xFF
    if props >= _LZMA_PROPS_MAX:
        raise _corrupted("invalid microlzma properties")
    lc, rest = props % 9, props // 9
    lp, pb = rest % 5, rest // 5
    dict_size = min(LZMA_MAX_DICT_SIZE, max(4096, rq.decodedlength))
    filters = [{"id": lzma.FILTER_LZMA1, "dict_size": dict_size,
                "lc": lc, "lp": lp, "pb": pb}]
    try:
        dec = lzma.LZMADecompressor(lzma.FORMAT_RAW, filters=filters)
        out = dec.decompress(b"\0" + src[1:], max_length=rq.decodedlength)
    except lzma.LZMAError as exc:
        raise _corrupted(f"lzma decompression failed: {exc}") from exc
    if len(out) != rq.decodedlength:
        raise _corrupted("lzma decoded length mismatch")
    return out


def _decompress_deflate(rq: DecompressRequest) -> bytes:
    src = _strip_padding(bytes(rq.data))
    try:
        dec = zlib.decompressobj(-15)
        out = dec.decompress(src, rq.decodedlength)
    except zlib.error as exc:
        raise ErofsError(errno.EIO, f"deflate decompression failed: {exc}") from exc
    if len(out) != rq.decodedlength:
        raise ErofsError(errno.EIO, "deflate decoded length mismatch")
    if not rq.partial_decoding and not dec.eof:
        raise ErofsError(errno.EIO, "deflate stream does not end here")
    return out


def _decompress_zstd(rq: DecompressRequest) -> bytes:
    src = _strip_padding(bytes(rq.data))
    try:
        total = zstandard.frame_content_size(src)
    except zstandard.ZstdError as exc:
        raise _corrupted(f"invalid zstd frame: {exc}") from exc
    if total < 0:
        raise _corrupted("zstd frame has no content size")
    try:
        out = zstandard.ZstdDecompressor().decompress(src, max_output_size=total)
    except zstandard.ZstdError as exc:
        raise ErofsError(errno.EIO, f"ZSTD decompress failed: {exc}") from exc
    if len(out) != total:
        raise ErofsError(errno.EIO, "ZSTD decompress length mismatch")
    if total < rq.decodedlength:
        raise _corrupted("zstd frame shorter than requested")
    return out[:rq.decodedlength]


def decompress(req: DecompressRequest) -> bytes:
    """Decode req and return decodedlength - decodedskip bytes."""
    blksz = req.block_size
    src = bytes(req.data)
    if req.decodedlength < req.decodedskip:
        raise _corrupted("skip beyond decoded length")

    if req.alg == COMPRESSION_INTERLACED:
        if len(src) > blksz or req.decodedlength > blksz:
            raise _corrupted("interlaced pcluster larger than a block")
        count = req.decodedlength - req.decodedskip
        skip = (req.interlaced_offset + req.decodedskip) & (blksz - 1)
        rightpart = min(blksz - skip, count)
        out = src[skip:skip + rightpart] + src[:count - rightpart]
        if len(out) != count:
            raise _corrupted("interlaced pcluster too short")
        return out
    if req.alg == COMPRESSION_SHIFTED:
        if req.decodedlength > len(src):
            raise _corrupted("shifted pcluster too short")
        return src[req.decodedskip:req.decodedlength]

    decoders = {
        AlgorithmId.LZ4: _decompress_lz4,
        AlgorithmId.LZMA: _decompress_lzma,
        AlgorithmId.DEFLATE: _decompress_deflate,
        AlgorithmId.ZSTD: _decompress_zstd,
    }
    decoder = decoders.get(req.alg)
    if decoder is None:
        raise ErofsError(errno.EOPNOTSUPP, f"unsupported algorithm {req.alg}")
    return decoder(req)[req.decodedskip:]


@dataclass
class Lz4Config:
    """LZ4 settings recorded in the superblock."""

    max_distance: int
    max_pclusterblks: int


def load_lz4_config(data: Optional[bytes], default_distance: int = 0) -> Lz4Config:
    """Parse an LZ4 configuration record, or use defaults when there is none."""
    if data is None:
        return Lz4Config(default_distance, 1)
    if len(data) < _LZ4_CFGS_SIZE:
        raise ErofsError(errno.EINVAL, f"invalid lz4 cfgs, size={len(data)}")
    distance, pclusterblks = struct.unpack_from("<HH", data)
    return Lz4Config(distance, pclusterblks or 1)