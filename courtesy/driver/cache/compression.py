"""Zstd compression for cached response bodies.

Compression is done with zstd (Zstandard), which offers good compression
ratios on HTML and very fast decompression, so cache hits stay cheap.
"""

from __future__ import annotations

import zstandard as zstd

# Default compression level (3 is a good balance of speed/ratio)
DEFAULT_COMPRESSION_LEVEL = 3


def compress(data: bytes, level: int = DEFAULT_COMPRESSION_LEVEL) -> bytes:
    """Compress data using zstd.

    Args:
        data: The data to compress.
        level: Compression level (1-22, default 3).

    Returns:
        Compressed data bytes.
    """
    return zstd.ZstdCompressor(level=level).compress(data)


def decompress(data: bytes) -> bytes:
    """Decompress zstd-compressed data.

    Raises:
        zstd.ZstdError: If the data is not a valid zstd frame.
    """
    return zstd.ZstdDecompressor().decompress(data)
