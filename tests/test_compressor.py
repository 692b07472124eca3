import errno
import lzma
import zlib

import lz4.block
import pytest
import zstandard

from erofskit.compressor import (
    AlgorithmId,
    CompressHandle,
    get_algorithm,
    list_available_compressors,
    list_supported_algorithms,
)
from erofskit.config import ErofsError

SAMPLE = (b"the quick brown fox jumps over the lazy dog " * 400
          + bytes(range(256)) * 8)


def test_supported_algorithms_skip_optimisors():
    assert list(list_supported_algorithms()) == ["lz4", "lzma", "deflate", "zstd"]


def test_available_compressors():
    names = [alg.name for alg in list_available_compressors()]
    assert names == ["lz4", "lz4hc", "lzma", "deflate", "libdeflate", "zstd"]


def test_get_algorithm_optimisor_shares_id():
    alg = get_algorithm("lz4hc")
    assert alg.optimisor is True
    assert alg.id == AlgorithmId.LZ4
    assert get_algorithm("libdeflate").id == get_algorithm("deflate").id


def test_get_algorithm_unknown():
    with pytest.raises(ErofsError) as info:
        get_algorithm("nope")
    assert info.value.errno == errno.EINVAL


def test_handle_without_algorithm():
    handle = CompressHandle(None)
    assert handle.algorithm is None
    assert handle.compress_threshold == 100
    with pytest.raises(ErofsError) as info:
        handle.compress_destsize(SAMPLE, 4096)
    assert info.value.errno == errno.EOPNOTSUPP


def test_lz4_rejects_level_and_dict_size():
    with pytest.raises(ErofsError) as info:
        CompressHandle("lz4", level=3)
    assert info.value.errno == errno.EINVAL
    with pytest.raises(ErofsError) as info:
        CompressHandle("lz4", dict_size=4096)
    assert info.value.errno == errno.EINVAL


def test_deflate_defaults_and_bounds():
    handle = CompressHandle("deflate")
    assert handle.compression_level == 1
    assert handle.dict_size == 1 << 15
    assert handle.algorithm_id == AlgorithmId.DEFLATE
    with pytest.raises(ErofsError):
        CompressHandle("deflate", level=10)
    with pytest.raises(ErofsError):
        CompressHandle("deflate", dict_size=1 << 16)


def test_lz4_level_is_unset():
    handle = CompressHandle("lz4")
    assert handle.compression_level == -1
    assert handle.dict_size == 0


def test_lz4_round_trip():
    handle = CompressHandle("lz4")
    out, consumed = handle.compress_destsize(SAMPLE, 4096)
    assert 0 < consumed <= len(SAMPLE)
    assert len(out) <= 4096
    assert lz4.block.decompress(out, uncompressed_size=consumed) == SAMPLE[:consumed]


def test_deflate_round_trip():
    handle = CompressHandle("deflate", level=9)
    out, consumed = handle.compress_destsize(SAMPLE, 1024)
    assert len(out) <= 1024
    assert out[0] != 0
    assert zlib.decompressobj(-15).decompress(out) == SAMPLE[:consumed]


def test_zstd_round_trip():
    handle = CompressHandle("zstd", level=3)
    out, consumed = handle.compress_destsize(SAMPLE, 2048)
    assert len(out) <= 2048
    assert zstandard.ZstdDecompressor().decompress(out) == SAMPLE[:consumed]


def test_lzma_round_trip():
    handle = CompressHandle("lzma", level=6, pclustersize_max=65536)
    out, consumed = handle.compress_destsize(SAMPLE, 4096)
    assert len(out) <= 4096
    dec = lzma.LZMADecompressor(lzma.FORMAT_RAW, filters=[
        {"id": lzma.FILTER_LZMA1, "dict_size": handle.dict_size}])
    assert dec.decompress(out) == SAMPLE[:consumed]


def test_reset_keeps_results_consistent():
    handle = CompressHandle("libdeflate")
    first = handle.compress_destsize(SAMPLE, 1024)
    handle.reset()
    second = handle.compress_destsize(SAMPLE, 1024)
    assert first == second