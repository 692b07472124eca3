"""Compression back ends that fit as much input as possible into a size limit.

Every back end offers compress_destsize(src, dstsize), which returns the
compressed bytes and how many leading input bytes they hold. The output
never exceeds dstsize.

Output formats:
- LZ4 and LZ4HC: raw LZ4 blocks, without a size prefix.
- DEFLATE: raw deflate streams. A stream never starts with a zero byte,
  because leading zeros are taken as padding.
- LZMA: raw LZMA1 streams that end with an end-of-payload marker.
- Zstandard: zstd frames that record the content size.
"""

from __future__ import annotations

import errno
import lzma
import zlib
from abc import ABC, abstractmethod
from typing import Optional

import lz4.block
import zstandard

from erofskit.config import ErofsError

LZ4_DISTANCE_MAX = 65535
LZ4HC_CLEVEL_DEFAULT = 9
LZ4HC_CLEVEL_MAX = 12
ZSTD_CLEVEL_DEFAULT = 3
LZMA_PRESET_DEFAULT = 6

PCLUSTER_MAX_SIZE = 1024 * 1024
LZMA_MAX_DICT_SIZE = 8 * PCLUSTER_MAX_SIZE
ZSTD_MAX_DICT_SIZE = PCLUSTER_MAX_SIZE


def _ilog2(value: int) -> int:
    if value <= 0:
        raise ErofsError(errno.EINVAL, f"invalid size {value}")
    return value.bit_length() - 1


def _fix_leading_zero(out: bytes) -> bytes:
    # Set an unused padding bit in the stored-block header. The stream
    # stays valid deflate, and its first byte is no longer zero.
    if out and out[0] == 0:
        return bytes([1 << 3]) + out[1:]
    return out


class Compressor(ABC):
    """Base class for a compression back end.

    A back end without compression levels rejects any level >= 0. A back end
    without a dictionary size rejects any non-zero size.
    """

    name = ""
    default_level = 0
    best_level = 0
    default_dictsize = 0
    max_dictsize = 0
    _slack = 1

    def __init__(self, pclustersize_max: int = 4096) -> None:
        self.pclustersize_max = pclustersize_max
        self.compression_level = -1
        self.dict_size = 0
        self._ready = False

    def set_level(self, level: int) -> None:
        """Choose the compression level; a negative level means the default."""
        if level >= 0:
            raise ErofsError(errno.EINVAL,
                             f"compression level {level} is not supported "
                             f"for {self.name}")

    def set_dict_size(self, dict_size: int) -> None:
        """Choose the dictionary (window) size; 0 means the default."""
        if dict_size:
            raise ErofsError(errno.EINVAL,
                             f"dict size is not supported for {self.name}")

    def init(self) -> None:
        """Set up the compression state from the chosen level and dict size."""
        self._setup()
        self._ready = True

    def _setup(self) -> None:
        """Hook for back ends that need state prepared before compressing."""

    def reset(self) -> None:
        """Forget any state carried between calls."""

    @abstractmethod
    def _compress(self, data: bytes) -> bytes:
        """Compress data completely."""

    def _initial_guess(self, dstsize: int) -> int:
        return dstsize * 4

    def _finish(self, out: bytes) -> bytes:
        return out

    def _fit(self, data: bytes, dstsize: int) -> tuple[int, bytes]:
        best_len = 0          # longest input prefix that fits so far
        best_out = b""
        too_long = len(data) + 1  # shortest input prefix that does not fit
        m = self._initial_guess(dstsize)
        while True:
            m = max(m, best_len + 1)
            m = min(m, too_long - 1)
            out = self._compress(data[:m])
            if 0 < len(out) <= dstsize:
                best_len, best_out = m, out
                if too_long <= best_len + 1 or len(out) + self._slack >= dstsize:
                    break
                # estimate the prefix that fits from the current ratio
                m = dstsize * m // len(out)
            else:
                too_long = m
                if too_long <= best_len + 1:
                    break
                m = (best_len + too_long) // 2
        return best_len, best_out

    def compress_destsize(self, src, dstsize: int) -> tuple[bytes, int]:
        """Compress the longest prefix of src that fits in dstsize bytes.

        Returns (compressed bytes, number of input bytes consumed).
        """
        if not self._ready:
            self.init()
        data = bytes(src)
        if not data or dstsize <= 0:
            raise ErofsError(errno.EINVAL, "nothing to compress")
        consumed, out = self._fit(data, dstsize)
        if not out:
            raise ErofsError(errno.EFAULT,
                             f"{self.name}: no input fits in {dstsize} bytes")
        return self._finish(out), consumed


class Lz4Compressor(Compressor):
    """LZ4 at its fixed default speed."""

    name = "lz4"

    def __init__(self, pclustersize_max: int = 4096) -> None:
        super().__init__(pclustersize_max)
        self.max_distance = 0

    def _setup(self) -> None:
        self.max_distance = max(self.max_distance, LZ4_DISTANCE_MAX)

    def _compress(self, data: bytes) -> bytes:
        return lz4.block.compress(data, mode="default", store_size=False)


class Lz4HcCompressor(Compressor):
    """LZ4 high-compression mode."""

    name = "lz4hc"
    default_level = LZ4HC_CLEVEL_DEFAULT
    best_level = LZ4HC_CLEVEL_MAX

    def __init__(self, pclustersize_max: int = 4096) -> None:
        super().__init__(pclustersize_max)
        self.max_distance = 0

    def set_level(self, level: int) -> None:
        if level > self.best_level:
            raise ErofsError(errno.EINVAL, f"invalid compression level {level}")
        self.compression_level = LZ4HC_CLEVEL_DEFAULT if level < 0 else level

    def _setup(self) -> None:
        self.max_distance = max(self.max_distance, LZ4_DISTANCE_MAX)

    def _compress(self, data: bytes) -> bytes:
        level = (self.compression_level if self.compression_level >= 0
                 else LZ4HC_CLEVEL_DEFAULT)
        return lz4.block.compress(data, mode="high_compression",
                                  compression=level, store_size=False)


class DeflateCompressor(Compressor):
    """Raw DEFLATE with a window of up to 32 KiB."""

    name = "deflate"
    default_level = 1
    best_level = 9
    default_dictsize = 1 << 15
    max_dictsize = 1 << 15

    def __init__(self, pclustersize_max: int = 4096) -> None:
        super().__init__(pclustersize_max)
        self._wbits = 15

    def set_level(self, level: int) -> None:
        if level < 0:
            level = self.default_level
        if level > self.best_level:
            raise ErofsError(errno.EINVAL, f"invalid compression level {level}")
        self.compression_level = level

    def set_dict_size(self, dict_size: int) -> None:
        if not dict_size:
            dict_size = self.default_dictsize
        if dict_size > self.max_dictsize:
            raise ErofsError(errno.EINVAL,
                             f"dictionary size {dict_size} is too large")
        self.dict_size = dict_size

    def _level(self) -> int:
        return (self.compression_level if self.compression_level >= 0
                else self.default_level)

    def _setup(self) -> None:
        dict_size = self.dict_size or self.default_dictsize
        self._wbits = max(9, _ilog2(dict_size))

    def _compress(self, data: bytes) -> bytes:
        comp = zlib.compressobj(min(self._level(), 9), zlib.DEFLATED,
                                -self._wbits)
        return comp.compress(data) + comp.flush()

    def _finish(self, out: bytes) -> bytes:
        return _fix_leading_zero(out)


class LibDeflateCompressor(Compressor):
    """Raw DEFLATE that starts each search from the previous result."""

    name = "libdeflate"
    default_level = 1
    best_level = 12

    def __init__(self, pclustersize_max: int = 4096) -> None:
        super().__init__(pclustersize_max)
        self._last_uncompressed_size = 0

    def set_level(self, level: int) -> None:
        if level < 0:
            level = self.default_level
        if level > self.best_level:
            raise ErofsError(errno.EINVAL, f"invalid compression level {level}")
        self.compression_level = level

    def _level(self) -> int:
        return (self.compression_level if self.compression_level >= 0
                else self.default_level)

    @property
    def _slack(self) -> int:  # type: ignore[override]
        return 22 - 2 * self._level()

    def _setup(self) -> None:
        self._last_uncompressed_size = 0

    def reset(self) -> None:
        self._last_uncompressed_size = 0

    def _initial_guess(self, dstsize: int) -> int:
        if self._last_uncompressed_size:
            return self._last_uncompressed_size * 15 // 16
        return dstsize * 4

    def _compress(self, data: bytes) -> bytes:
        comp = zlib.compressobj(min(self._level(), 9), zlib.DEFLATED, -15)
        return comp.compress(data) + comp.flush()

    def _finish(self, out: bytes) -> bytes:
        return _fix_leading_zero(out)

    def compress_destsize(self, src, dstsize: int) -> tuple[bytes, int]:
        try:
            out, consumed = super().compress_destsize(src, dstsize)
        except ErofsError:
            self._last_uncompressed_size = 0
            raise
        self._last_uncompressed_size = consumed
        return out, consumed


class LzmaCompressor(Compressor):
    """Raw LZMA1. Levels 100-109 select the extreme presets 0-9."""

    name = "lzma"
    default_level = LZMA_PRESET_DEFAULT
    best_level = 109
    max_dictsize = LZMA_MAX_DICT_SIZE

    def __init__(self, pclustersize_max: int = 4096) -> None:
        super().__init__(pclustersize_max)
        self._filters: Optional[list[dict]] = None

    def set_level(self, level: int) -> None:
        if level < 0:
            level = self.default_level
        if level > self.best_level:
            raise ErofsError(errno.EINVAL, f"invalid compression level {level}")
        self.compression_level = level

    def set_dict_size(self, dict_size: int) -> None:
        if not dict_size:
            if self.default_dictsize:
                dict_size = self.default_dictsize
            else:
                dict_size = min(LZMA_MAX_DICT_SIZE, self.pclustersize_max << 3)
                dict_size = max(dict_size, 32768)
        if dict_size > LZMA_MAX_DICT_SIZE or dict_size < 4096:
            raise ErofsError(errno.EINVAL, f"invalid dictionary size {dict_size}")
        self.dict_size = dict_size

    def _setup(self) -> None:
        level = self.compression_level
        if level < 0:
            preset = LZMA_PRESET_DEFAULT
        elif level >= 100:
            preset = (level - 100) | lzma.PRESET_EXTREME
        else:
            preset = level
        if preset & ~lzma.PRESET_EXTREME > 9:
            raise ErofsError(errno.EINVAL, f"invalid lzma preset {level}")
        spec: dict = {"id": lzma.FILTER_LZMA1, "preset": preset}
        if self.dict_size:
            spec["dict_size"] = self.dict_size
        self._filters = [spec]

    def _compress(self, data: bytes) -> bytes:
        assert self._filters is not None
        return lzma.compress(data, format=lzma.FORMAT_RAW, filters=self._filters)


class ZstdCompressor(Compressor):
    """Zstandard with the window set to the dictionary size."""

    name = "zstd"
    default_level = ZSTD_CLEVEL_DEFAULT
    best_level = 22
    max_dictsize = ZSTD_MAX_DICT_SIZE

    def __init__(self, pclustersize_max: int = 4096) -> None:
        super().__init__(pclustersize_max)
        self._cctx: Optional[zstandard.ZstdCompressor] = None

    def set_level(self, level: int) -> None:
        if level > self.best_level:
            raise ErofsError(errno.EINVAL, f"invalid compression level {level}")
        self.compression_level = level

    def set_dict_size(self, dict_size: int) -> None:
        if not dict_size:
            if self.default_dictsize:
                dict_size = self.default_dictsize
            else:
                dict_size = min(ZSTD_MAX_DICT_SIZE, self.pclustersize_max << 3)
                dict_size = 1 << _ilog2(dict_size)
        if (dict_size <= 0 or dict_size != 1 << _ilog2(dict_size)
                or dict_size > ZSTD_MAX_DICT_SIZE):
            raise ErofsError(errno.EINVAL, f"invalid dictionary size {dict_size}")
        self.dict_size = dict_size

    def _setup(self) -> None:
        if not self.dict_size:
            self.set_dict_size(0)
        window_log = _ilog2(self.dict_size)
        try:
            params = zstandard.ZstdCompressionParameters.from_level(
                self.compression_level, window_log=window_log)
            self._cctx = zstandard.ZstdCompressor(compression_params=params,
                                                  write_content_size=True)
        except (zstandard.ZstdError, ValueError) as exc:
            raise ErofsError(errno.EINVAL,
                             f"failed to set zstd parameters: {exc}") from exc

    def _compress(self, data: bytes) -> bytes:
        assert self._cctx is not None
        try:
            return self._cctx.compress(data)
        except zstandard.ZstdError as exc:
            raise ErofsError(errno.EFAULT, f"zstd compression failed: {exc}") from exc