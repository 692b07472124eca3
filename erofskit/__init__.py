"""Building blocks for EROFS images: buffer layout, compression, decompression, deduplication and fragment packing."""

__version__ = "0.1.0"