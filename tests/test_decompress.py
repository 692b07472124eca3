import errno
import lzma
import struct
import zlib

import lz4.block
import pytest
import zstandard

from erofskit.compressor import AlgorithmId
from erofskit.compressor_backends import DeflateCompressor
from erofskit.config import ErofsError
from erofskit.decompress import (
    COMPRESSION_INTERLACED,
    COMPRESSION_SHIFTED,
    EFSCORRUPTED,
    DecompressRequest,
    Lz4Config,
    decompress,
    fixup_insize,
    load_lz4_config,
)

DATA = (b"erofs compressed payload, repeated for good measure. " * 200
        + bytes(range(256)) * 4)


def _raw_deflate(data):
    comp = zlib.compressobj(9, zlib.DEFLATED, -15)
    return comp.compress(data) + comp.flush()


def test_fixup_insize():
    assert fixup_insize(b"\0\0\x01\0") == 2
    assert fixup_insize(b"abc") == 0
    assert fixup_insize(b"\0" * 7) == 7


def test_shifted():
    src = b"abcdef"
    req = DecompressRequest(src, 4, COMPRESSION_SHIFTED, decodedskip=1)
    assert decompress(req) == src[1:4]


def test_shifted_too_short():
    req = DecompressRequest(b"abc", 4, COMPRESSION_SHIFTED)
    with pytest.raises(ErofsError) as info:
        decompress(req)
    assert info.value.errno == EFSCORRUPTED


def test_interlaced_rotates_block():
    src = b"ABCDEFGH"
    req = DecompressRequest(src, 8, COMPRESSION_INTERLACED,
                            interlaced_offset=3, block_size=8)
    assert decompress(req) == src[3:] + src[:3]


def test_interlaced_larger_than_block():
    req = DecompressRequest(b"x" * 16, 8, COMPRESSION_INTERLACED, block_size=8)
    with pytest.raises(ErofsError) as info:
        decompress(req)
    assert info.value.errno == EFSCORRUPTED


def test_lz4_full_with_padding():
    packed = b"\0" * 5 + lz4.block.compress(DATA, store_size=False)
    req = DecompressRequest(packed, len(DATA), AlgorithmId.LZ4)
    assert decompress(req) == DATA


def test_lz4_partial_with_skip():
    packed = lz4.block.compress(DATA, store_size=False)
    req = DecompressRequest(packed, 300, AlgorithmId.LZ4, decodedskip=40,
                            partial_decoding=True)
    assert decompress(req) == DATA[40:300]


def test_lz4_without_zero_padding_ignores_trailing_bytes():
    packed = lz4.block.compress(DATA, store_size=False) + b"\0\0\0"
    req = DecompressRequest(packed, len(DATA), AlgorithmId.LZ4,
                            lz4_0padding=False)
    assert decompress(req) == DATA


def test_lz4_all_padding():
    req = DecompressRequest(b"\0" * 16, 10, AlgorithmId.LZ4)
    with pytest.raises(ErofsError) as info:
        decompress(req)
    assert info.value.errno == EFSCORRUPTED


def test_lz4_length_mismatch():
    packed = lz4.block.compress(DATA, store_size=False)
    req = DecompressRequest(packed, len(DATA) + 10, AlgorithmId.LZ4)
    with pytest.raises(ErofsError) as info:
        decompress(req)
    assert info.value.errno == errno.EIO


def test_deflate_with_padding_and_skip():
    packed = b"\0" * 3 + _raw_deflate(DATA)
    req = DecompressRequest(packed, len(DATA), AlgorithmId.DEFLATE,
                            decodedskip=100)
    assert decompress(req) == DATA[100:]


def test_deflate_partial():
    req = DecompressRequest(_raw_deflate(DATA), 500, AlgorithmId.DEFLATE,
                            partial_decoding=True)
    assert decompress(req) == DATA[:500]


def test_deflate_backend_round_trip():
    backend = DeflateCompressor()
    out, consumed = backend.compress_destsize(DATA, 512)
    req = DecompressRequest(b"\0" * (512 - len(out)) + out, consumed,
                            AlgorithmId.DEFLATE)
    assert decompress(req) == DATA[:consumed]


def test_deflate_garbage():
    req = DecompressRequest(b"\xff\xff\xff\xff", 10, AlgorithmId.DEFLATE)
    with pytest.raises(ErofsError) as info:
        decompress(req)
    assert info.value.errno == errno.EIO


def test_zstd_round_trip():
    frame = zstandard.ZstdCompressor(write_content_size=True).compress(DATA)
    req = DecompressRequest(b"\0\0" + frame, 1000, AlgorithmId.ZSTD,
                            decodedskip=10)
    assert decompress(req) == DATA[10:1000]


def _microlzma(data):
    raw = lzma.compress(data, format=lzma.FORMAT_RAW,
                        filters=[{"id": lzma.FILTER_LZMA1, "preset": 6}])
    # default properties lc=3, lp=0, pb=2 encode as 93
    return bytes([~93 & 0xFF]) + raw[1:]


def test_lzma_full_and_partial():
    stream = b"\0" * 4 + _microlzma(DATA)
    full = DecompressRequest(stream, len(DATA), AlgorithmId.LZMA)
    assert decompress(full) == DATA
    part = DecompressRequest(stream, 777, AlgorithmId.LZMA,
                             partial_decoding=True, decodedskip=7)
    assert decompress(part) == DATA[7:777]


def test_lzma_bad_properties():
    req = DecompressRequest(b"\x01\x02\x03\x04", 10, AlgorithmId.LZMA)
    with pytest.raises(ErofsError) as info:
        decompress(req)
    assert info.value.errno == EFSCORRUPTED


def test_unsupported_algorithm():
    req = DecompressRequest(b"abc", 3, 99)
    with pytest.raises(ErofsError) as info:
        decompress(req)
    assert info.value.errno == errno.EOPNOTSUPP


def test_load_lz4_config_defaults():
    assert load_lz4_config(None, 4096) == Lz4Config(4096, 1)


def test_load_lz4_config_record():
    record = struct.pack("<HH", 65535, 0) + bytes(10)
    assert load_lz4_config(record) == Lz4Config(65535, 1)
    record = struct.pack("<HH", 4096, 16) + bytes(10)
    assert load_lz4_config(record).max_pclusterblks == 16


def test_load_lz4_config_too_short():
    with pytest.raises(ErofsError) as info:
        load_lz4_config(b"\x00\x10")
    assert info.value.errno == errno.EINVAL