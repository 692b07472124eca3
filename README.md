# erofskit

A Python library of the parts that go into building an EROFS (Enhanced
Read-Only File System) image. It lays buffers out on blocks, compresses
data into fixed-size physical clusters, decodes those clusters again,
deduplicates extents and file tails, and handles hint and exclusion rules.
It is a library only and installs no command.

## Modules

- `erofskit.config`
  - `Config` holds the build settings: verbosity `dbg_lvl`, `mount_point`,
    `showprogress` and others. `Config.fspath()` strips the root set with
    `Config.set_fs_root()` and any leading `/`. `Config.message()` prints
    messages tagged `<E>`, `<W>`, `<I>` or `<D>`, and only at levels within
    `dbg_lvl`. `Config.update_progress()` shows progress lines, and
    `Config.show()` dumps the main settings to stderr.
  - `LogLevel` gives the verbosity levels.
  - `ErofsError` is an `OSError` that carries an errno code. Every module
    raises it when an operation fails.
  - `trim_for_progressinfo()` and `get_available_processors()` are helpers.
- `erofskit.hashmap`
  - `strhash`, `strihash`, `memhash` and `memihash` are 32-bit FNV-1
    hashes. The `i` variants fold ASCII letters to upper case first.
  - `HashMap` is a chained hash table that grows and shrinks by a factor
    of four. It stores `HashMapEntry` objects.
  - `memintern()` returns one shared `bytes` object for equal contents.
- `erofskit.block_list`
  - `BlockListWriter` writes tar source maps (`write_tar_extent`) and
    per-file block lists (`write`, `write_extent`, `write_tail_end`) to a
    text stream. It can be used as a context manager.
- `erofskit.exclude`
  - `ExcludeRules` holds exact-path and regular-expression exclusions.
    `match()` returns the first matching `ExcludeRule` or `None`.
- `erofskit.compress_hints`
  - `CompressHints.load()` reads a hints file. Each line reads
    `<pclustersize> [<config index>] <pattern>`. The method returns the
    maximum pcluster size, raised if a hint needs a larger one.
  - `CompressHints.apply()` returns `(pclusterblks, config index)` for a
    path. A `pclusterblks` of 0 means the file is not to be compressed.
- `erofskit.cache`
  - `BufferManager` allocates `BufferHead`s inside `BufferBlock`s of type
    `BufferType.DATA` or `BufferType.META`, through `balloc`, `battach`
    and `balloon`.
  - `mapbh` assigns block addresses. `bflush` flushes buffers and
    zero-pads blocks on an optional device file. `bdrop` drops a buffer,
    optionally rolling the tail back. `total_metablocks` counts the
    metadata blocks.
- `erofskit.diskbuf`
  - `DiskBufPool` is a set of anonymous temporary-file streams.
    `reserve()` hands out `DiskBuf` regions at an aligned stream tail,
    with `getfd`, `commit` and `close`.
  - `make_tmpfile()` creates one such unlinked temporary file.
- `erofskit.fragments`
  - `FragmentPacker` appends file tails (`pack`) or whole files
    (`pack_file`) to a packed file and returns `Fragment(size, offset)`.
    `dedupe()` looks for an existing tail to reuse.
  - `crc32c()` is a raw CRC-32C update.
- `erofskit.dedupe`
  - `DedupeTable` indexes written extents (`DedupeExtent`) by a rolling
    hash of their first bytes. `match()` finds a reusable extent and
    returns a `DedupeMatch`. `commit()` keeps or drops the entries
    inserted since the last commit.
  - `memcmp2()` returns the length of the common prefix of two buffers.
- `erofskit.compressor_backends`
  - These back ends fit the longest possible prefix of the input into a
    given number of bytes: `Lz4Compressor`, `Lz4HcCompressor`,
    `DeflateCompressor`, `LibDeflateCompressor`, `LzmaCompressor` and
    `ZstdCompressor`.
- `erofskit.compressor`
  - `CompressHandle(name, level, dict_size, pclustersize_max)` selects
    one of `lz4`, `lz4hc`, `lzma`, `deflate`, `libdeflate` or `zstd`.
    `compress_destsize(src, dstsize)` returns `(compressed, consumed)`.
  - `get_algorithm`, `list_supported_algorithms`,
    `list_available_compressors` and `AlgorithmId` describe the
    registered algorithms.
- `erofskit.decompress`
  - `decompress()` decodes a `DecompressRequest` for LZ4, LZMA
    (MicroLZMA input), DEFLATE and Zstandard, and for the interlaced and
    shifted uncompressed layouts.
  - `fixup_insize()` counts leading zero padding bytes.
  - `load_lz4_config()` parses an LZ4 configuration record into an
    `Lz4Config`.

## Installation

```
pip install erofskit
```

## Example

Compress as much as fits into one 4 KiB cluster and decode it again:

```python
from erofskit.compressor import AlgorithmId, CompressHandle
from erofskit.decompress import DecompressRequest, decompress

handle = CompressHandle("lz4", -1, 0, 4096)
data = b"hello erofs " * 1000
compressed, consumed = handle.compress_destsize(data, 4096)
print(f"{consumed} input bytes fit into {len(compressed)} compressed bytes")

restored = decompress(DecompressRequest(data=compressed,
                                        decodedlength=consumed,
                                        alg=AlgorithmId.LZ4))
assert restored == data[:consumed]
```

Hashing and interning:

```python
from erofskit.hashmap import memintern, strhash

print(hex(strhash("erofs")))
assert memintern(b"abc") is memintern(b"abc")
```

Laying out buffers:

```python
from erofskit.cache import BufferManager, BufferType

bm = BufferManager(blksiz=4096)
bh = bm.balloc(BufferType.META, 100)
tail = bm.mapbh(bh.block)
bm.bflush()
print(tail, bm.total_metablocks())
```

## What the package does not do

erofskit provides the parts, not the whole tool. It has no command-line
program. It does not walk a source directory or tar archive to build
inodes and directories. It does not write a superblock or a complete
image. It does not read files back out of an existing image. Callers
combine the modules above to do those things.

## Running the tests

```
pip install -e ".[test]"
pytest
```