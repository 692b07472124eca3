import io
import random

import pytest

from erofskit.config import ErofsError
from erofskit.fragments import Fragment, FragmentPacker, crc32c


def _data(n, seed=1):
    return random.Random(seed).randbytes(n)


def test_crc32c_check_value():
    assert crc32c(b"123456789") ^ 0xFFFFFFFF == 0xE3069283


def test_crc32c_chains():
    whole = crc32c(b"abcdef")
    assert crc32c(b"def", crc32c(b"abc")) == whole


def test_pack_offsets_accumulate():
    with FragmentPacker(io.BytesIO()) as packer:
        a = packer.pack(b"a" * 30, 0)
        b = packer.pack(b"b" * 40, 0)
        assert a == Fragment(30, 0)
        assert b == Fragment(40, 30)
        assert packer.packed_size() == 70


def test_dedupe_small_file():
    with FragmentPacker(io.BytesIO()) as packer:
        assert packer.dedupe(io.BytesIO(b"short"), 5) == (0, None)


def test_dedupe_no_match_returns_crc():
    data = _data(100)
    with FragmentPacker(io.BytesIO()) as packer:
        tofcrc, frag = packer.dedupe(io.BytesIO(data), len(data))
        assert frag is None
        assert tofcrc == crc32c(data[-16:])


def test_dedupe_finds_packed_tail():
    data = _data(100)
    with FragmentPacker(io.BytesIO()) as packer:
        packer.pack(data, crc32c(data[-16:]))
        src = io.BytesIO(b"X" * 50 + data)
        tofcrc, frag = packer.dedupe(src, 150)
        assert tofcrc == crc32c(data[-16:])
        assert frag == Fragment(100, 0)
        assert src.tell() == 0


def test_dedupe_extends_backwards():
    prefix = b"Y" * 20
    data = _data(100, seed=2)
    with FragmentPacker(io.BytesIO()) as packer:
        packer.pack(prefix, 0)
        packer.pack(data, crc32c(data[-16:]))
        src = io.BytesIO(prefix + data)
        _, frag = packer.dedupe(src, 120)
        assert frag == Fragment(120, 0)


def test_dedupe_partial_tail():
    data = _data(100, seed=3)
    with FragmentPacker(io.BytesIO()) as packer:
        packer.pack(data, crc32c(data[-16:]))
        src = io.BytesIO(data[40:])
        _, frag = packer.dedupe(src, 60)
        assert frag == Fragment(60, 40)


def test_pack_file_then_dedupe():
    data = _data(5000, seed=4)
    src = io.BytesIO(data)
    with FragmentPacker(io.BytesIO()) as packer:
        packer.pack(b"z" * 10, 0)
        tofcrc, frag = packer.dedupe(src, len(data))
        assert frag is None
        stored = packer.pack_file(src, len(data), tofcrc)
        assert stored == Fragment(len(data), 10)
        assert packer.packed_size() == len(data) + 10
        _, again = packer.dedupe(io.BytesIO(data), len(data))
        assert again == stored


def test_pack_file_short_read():
    with FragmentPacker(io.BytesIO()) as packer:
        with pytest.raises(ErofsError):
            packer.pack_file(io.BytesIO(b"abc"), 10, 0)