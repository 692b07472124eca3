"""Registry of compression algorithms and the per-configuration handle."""

from __future__ import annotations

import errno
from dataclasses import dataclass
from enum import IntEnum
from typing import Iterator, Optional

from erofskit.compressor_backends import (
    Compressor,
    DeflateCompressor,
    LibDeflateCompressor,
    Lz4Compressor,
    Lz4HcCompressor,
    LzmaCompressor,
    ZstdCompressor,
)
from erofskit.config import ErofsError


class AlgorithmId(IntEnum):
    """On-disk compression algorithm identifiers."""

    LZ4 = 0
    LZMA = 1
    DEFLATE = 2
    ZSTD = 3


@dataclass(frozen=True)
class Algorithm:
    """A named algorithm, its back end and its on-disk id.

    An optimisor produces the same on-disk format as another algorithm and
    is not listed among the supported algorithms.
    """

    name: str
    backend: Optional[type[Compressor]]
    id: AlgorithmId
    optimisor: bool = False


_ALGORITHMS: tuple[Algorithm, ...] = (
    Algorithm("lz4", Lz4Compressor, AlgorithmId.LZ4),
    Algorithm("lz4hc", Lz4HcCompressor, AlgorithmId.LZ4, True),
    Algorithm("lzma", LzmaCompressor, AlgorithmId.LZMA),
    Algorithm("deflate", DeflateCompressor, AlgorithmId.DEFLATE),
    Algorithm("libdeflate", LibDeflateCompressor, AlgorithmId.DEFLATE, True),
    Algorithm("zstd", ZstdCompressor, AlgorithmId.ZSTD),
)


def get_algorithm(name: str) -> Algorithm:
    """Return the usable algorithm called name; raise EINVAL if there is none."""
    for alg in _ALGORITHMS:
        if alg.name == name and alg.backend is not None:
            return alg
    raise ErofsError(errno.EINVAL, f"Cannot find a valid compressor {name}")


def list_supported_algorithms() -> Iterator[str]:
    """Yield the names of supported on-disk formats, one name per format."""
    seen: set[AlgorithmId] = set()
    for alg in _ALGORITHMS:
        if alg.optimisor or alg.id in seen:
            continue
        seen.add(alg.id)
        yield alg.name


def list_available_compressors() -> Iterator[Algorithm]:
    """Yield every algorithm that has a working back end."""
    return (alg for alg in _ALGORITHMS if alg.backend is not None)


class CompressHandle:
    """A configured compressor: algorithm, level and dictionary size.

    A handle created without a name has no algorithm and cannot compress.
    """

    def __init__(self, name: Optional[str] = None, level: int = -1,
                 dict_size: int = 0, pclustersize_max: int = 4096) -> None:
        # minimum compression ratio, times 100
        self.compress_threshold = 100
        self.algorithm: Optional[Algorithm] = None
        self.compressor: Optional[Compressor] = None
        if name is None:
            return
        alg = get_algorithm(name)
        assert alg.backend is not None
        backend = alg.backend(pclustersize_max)
        backend.set_level(level)
        backend.set_dict_size(dict_size)
        backend.init()
        self.algorithm = alg
        self.compressor = backend

    @property
    def algorithm_id(self) -> Optional[AlgorithmId]:
        """On-disk id of the algorithm, or None without one."""
        return self.algorithm.id if self.algorithm is not None else None

    @property
    def compression_level(self) -> int:
        """Chosen compression level, -1 when the algorithm has none."""
        return (self.compressor.compression_level
                if self.compressor is not None else -1)

    @property
    def dict_size(self) -> int:
        """Chosen dictionary size, 0 when the algorithm has none."""
        return self.compressor.dict_size if self.compressor is not None else 0

    def compress_destsize(self, src, dstsize: int) -> tuple[bytes, int]:
        """Compress the longest prefix of src fitting in dstsize bytes.

        Returns (compressed bytes, number of input bytes consumed).
        """
        if self.compressor is None:
            raise ErofsError(errno.EOPNOTSUPP, "no compression algorithm")
        return self.compressor.compress_destsize(src, dstsize)

    def reset(self) -> None:
        """Forget state the back end carries between calls."""
        if self.compressor is not None:
            self.compressor.reset()