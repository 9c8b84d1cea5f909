"""Buffered duplex stream with optional LZ4 block compression, plus the wire codec."""

from __future__ import annotations

import struct
from typing import Protocol

import lz4.block

from chnative.compress import (
    CHECKSUM_SIZE,
    COMPRESS_HEADER_SIZE,
    MAX_BLOCK_SIZE,
    Method,
    Reader,
    read_exact,
)

MAX_WRITER_SIZE = 1 << 20

_SIZES = struct.Struct("<II")
_MAX_VARINT_LEN = 10


class _Duplex(Protocol):
    def read(self, size: int, /) -> bytes: ...

    def write(self, data: bytes, /) -> object: ...


class Stream:
    """Reads from and writes to a duplex byte channel, optionally compressed."""

    def __init__(self, raw: _Duplex) -> None:
        self._raw = raw
        self._out = bytearray()
        self._pending = bytearray()
        self._reader = Reader(raw)
        self._compress = False
        self._closed = False

    def compress(self, enabled: bool) -> None:
        """Switch compression of reads and writes on or off."""
        self._compress = enabled

    def read(self, size: int) -> bytes:
        """Return exactly ``size`` bytes or raise EOFError."""
        self._check_open()
        if self._compress:
            return self._reader.read(size)
        return read_exact(self._raw, size)

    def write(self, data: bytes) -> int:
        """Buffer ``data`` for sending; it reaches the channel on flush."""
        self._check_open()
        if self._compress:
            self._pending += data
            while len(self._pending) >= MAX_BLOCK_SIZE:
                self._emit_block(bytes(self._pending[:MAX_BLOCK_SIZE]))
                del self._pending[:MAX_BLOCK_SIZE]
        else:
            self._write_plain(data)
        return len(data)

    def flush(self) -> None:
        """Compress any pending block and send everything buffered."""
        self._check_open()
        if self._pending:
            self._emit_block(bytes(self._pending))
            self._pending.clear()
        if self._out:
            self._raw.write(bytes(self._out))
            self._out.clear()
        flush = getattr(self._raw, "flush", None)
        if flush is not None:
            flush()

    def close(self) -> None:
        """Drop buffers; the underlying channel is left to its owner."""
        self._reader.close()
        self._out.clear()
        self._pending.clear()
        self._closed = True

    def __enter__(self) -> Stream:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _check_open(self) -> None:
        if self._closed:
            raise ValueError("operation on a closed stream")

    def _write_plain(self, data: bytes) -> None:
        self._out += data
        if len(self._out) >= MAX_WRITER_SIZE:
            self._raw.write(bytes(self._out))
            self._out.clear()

    def _emit_block(self, chunk: bytes) -> None:
        packed = lz4.block.compress(chunk, store_size=False)
        # The checksum field is left zeroed; readers here do not verify it.
        header = (
            bytes(CHECKSUM_SIZE)
            + bytes([Method.LZ4])
            + _SIZES.pack(len(packed) + COMPRESS_HEADER_SIZE, len(chunk))
        )
        self._write_plain(header + packed)


class _Readable(Protocol):
    def read(self, size: int, /) -> bytes: ...


class _Writable(Protocol):
    def write(self, data: bytes, /) -> object: ...


class Decoder:
    """Reads native-protocol primitives from a byte source."""

    def __init__(self, source: _Readable) -> None:
        self._source = source

    def raw(self, size: int) -> bytes:
        return read_exact(self._source, size)

    def uvarint(self) -> int:
        result = 0
        for position in range(_MAX_VARINT_LEN):
            byte = self.byte()
            if position == _MAX_VARINT_LEN - 1 and byte > 1:
                break
            result |= (byte & 0x7F) << (7 * position)
            if byte < 0x80:
                return result
        raise ValueError("varint overflows a 64-bit integer")

    def string(self) -> str:
        return self.raw(self.uvarint()).decode("utf-8")

    def bool(self) -> bool:
        return self.byte() != 0

    def byte(self) -> int:
        return self.raw(1)[0]

    def int32(self) -> int:
        return int.from_bytes(self.raw(4), "little", signed=True)

    def int64(self) -> int:
        return int.from_bytes(self.raw(8), "little", signed=True)

    def uint64(self) -> int:
        return int.from_bytes(self.raw(8), "little", signed=False)


class Encoder:
    """Writes native-protocol primitives to a byte sink."""

    def __init__(self, sink: _Writable) -> None:
        self._sink = sink

    def raw(self, data: bytes) -> None:
        self._sink.write(bytes(data))

    def uvarint(self, value: int) -> None:
        if not 0 <= value < 1 << 64:
            raise ValueError(f"uvarint out of range: {value}")
        out = bytearray()
        while value >= 0x80:
            out.append((value & 0x7F) | 0x80)
            value >>= 7
        out.append(value)
        self.raw(out)

    def string(self, value: str) -> None:
        data = value.encode("utf-8")
        self.uvarint(len(data))
        self.raw(data)

    def bool(self, value: bool) -> None:
        self.byte(1 if value else 0)

    def byte(self, value: int) -> None:
        self.raw(value.to_bytes(1, "little"))

    def int32(self, value: int) -> None:
        self.raw(value.to_bytes(4, "little", signed=True))

    def int64(self, value: int) -> None:
        self.raw(value.to_bytes(8, "little", signed=True))

    def uint64(self, value: int) -> None:
        self.raw(value.to_bytes(8, "little", signed=False))