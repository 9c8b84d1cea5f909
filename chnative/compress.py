"""LZ4 block framing used by the native protocol."""

from __future__ import annotations

import enum
import struct
from typing import Protocol

import lz4.block

CHECKSUM_SIZE = 16
"""Size of the 128-bit block checksum that precedes each block header."""

COMPRESS_HEADER_SIZE = 1 + 4 + 4
"""Method byte, compressed size and uncompressed size."""

HEADER_SIZE = CHECKSUM_SIZE + COMPRESS_HEADER_SIZE
MAX_BLOCK_SIZE = 1 << 20

_SIZES = struct.Struct("<II")


class Method(enum.IntEnum):
    """Compression method marker stored in a block header."""

    NONE = 0x02
    LZ4 = 0x82
    ZSTD = 0x90


class CompressionError(Exception):
    """A compressed block is malformed or uses an unsupported method."""


class _Readable(Protocol):
    def read(self, size: int, /) -> bytes: ...


def read_exact(source: _Readable, size: int) -> bytes:
    """Read exactly ``size`` bytes from ``source`` or raise EOFError."""
    if size < 0:
        raise ValueError("size must not be negative")
    chunks = bytearray()
    while len(chunks) < size:
        chunk = source.read(size - len(chunks))
        if not chunk:
            raise EOFError(f"expected {size} bytes, got {len(chunks)}")
        chunks += chunk
    return bytes(chunks)


class Reader:
    """Reads a stream of LZ4 blocks and yields the decompressed bytes."""

    def __init__(self, source: _Readable) -> None:
        self._source = source
        self._data = b""
        self._pos = 0
        self._closed = False

    def read(self, size: int) -> bytes:
        """Return exactly ``size`` decompressed bytes, reading blocks as needed."""
        if self._closed:
            raise ValueError("read from a closed reader")
        if size < 0:
            raise ValueError("size must not be negative")
        out = bytearray()
        while len(out) < size:
            if self._pos >= len(self._data):
                self._read_block()
                continue
            chunk = self._data[self._pos : self._pos + size - len(out)]
            out += chunk
            self._pos += len(chunk)
        return bytes(out)

    def _read_block(self) -> None:
        header = read_exact(self._source, HEADER_SIZE)
        compressed_size, decompressed_size = _SIZES.unpack_from(header, CHECKSUM_SIZE + 1)
        compressed_size -= COMPRESS_HEADER_SIZE
        method = header[CHECKSUM_SIZE]
        if method != Method.LZ4:
            raise CompressionError(f"unknown compression method: 0x{method:02x}")
        if compressed_size < 0:
            raise CompressionError("invalid compressed block size")
        # The checksum is not verified.
        payload = read_exact(self._source, compressed_size)
        if decompressed_size == 0:
            data = b""
        else:
            try:
                data = lz4.block.decompress(payload, uncompressed_size=decompressed_size)
            except lz4.block.LZ4BlockError as exc:
                raise CompressionError(str(exc)) from exc
        self._data, self._pos = data, 0

    def close(self) -> None:
        """Release buffered data; further reads fail."""
        self._data = b""
        self._pos = 0
        self._closed = True

    def __enter__(self) -> Reader:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()