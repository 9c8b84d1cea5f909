"""Scalar column types of the native block format: String, UUID, Nothing and wrappers."""

from __future__ import annotations

import abc
import uuid
from collections.abc import Sequence
from typing import Any

from chnative.stream import Decoder, Encoder

UUID_SIZE = 16
_NOT_STORABLE = "data type values can't be stored in tables"


class ColumnError(Exception):
    """A column cannot carry out an operation."""

    def __init__(self, column_type: str, message: str) -> None:
        super().__init__(f"{column_type}: {message}")
        self.column_type = column_type
        self.message = message


class ColumnConverterError(ColumnError):
    """A value cannot be converted to or from a column's type."""

    def __init__(self, op: str, to: str, from_: str, hint: str = "") -> None:
        text = f"clickhouse [{op}]: converting {from_} to {to} is unsupported"
        if hint:
            text += f". {hint}"
        Exception.__init__(self, text)
        self.column_type = to
        self.message = text
        self.op = op
        self.to = to
        self.from_ = from_
        self.hint = hint


class UnsupportedColumnTypeError(ColumnError):
    """A type name does not describe a known column type."""

    def __init__(self, type_name: str) -> None:
        text = f"clickhouse: unsupported column type {type_name!r}"
        Exception.__init__(self, text)
        self.column_type = type_name
        self.message = text
        self.type_name = type_name


def type_params(type_name: str) -> str:
    """Return the text between the first '(' and the last ')' of a type name."""
    start, end = type_name.find("("), type_name.rfind(")")
    if start <= 0 or end <= 0 or end < start:
        return ""
    return type_name[start + 1 : end]


def swap_uuid_bytes(data: bytes) -> bytes:
    """Reverse each 8-byte half of a 16-byte UUID; the operation is its own inverse."""
    if len(data) != UUID_SIZE:
        raise ValueError(f"UUID must be {UUID_SIZE} bytes, got {len(data)}")
    return bytes(data[7::-1]) + bytes(data[15:7:-1])


def _label(value: object) -> str:
    return "None" if value is None else type(value).__name__


def _is_sequence(values: object) -> bool:
    return isinstance(values, Sequence) and not isinstance(values, (str, bytes, bytearray))


class Column(abc.ABC):
    """A column of values of one type, encodable in the native block format."""

    type_name: str = ""

    @abc.abstractmethod
    def rows(self) -> int:
        """Number of rows held."""

    @abc.abstractmethod
    def row(self, index: int) -> Any:
        """Value at row ``index``."""

    @abc.abstractmethod
    def append(self, values: Any) -> list[int]:
        """Append many values; return a null marker (0 or 1) for each."""

    @abc.abstractmethod
    def append_row(self, value: Any) -> None:
        """Append a single value."""

    @abc.abstractmethod
    def decode(self, decoder: Decoder, rows: int) -> None:
        """Read ``rows`` values from ``decoder``."""

    @abc.abstractmethod
    def encode(self, encoder: Encoder) -> None:
        """Write all values to ``encoder``."""

    def __len__(self) -> int:
        return self.rows()


class StringColumn(Column):
    """Column of ``String`` values."""

    type_name = "String"

    def __init__(self) -> None:
        self._values: list[str] = []

    def rows(self) -> int:
        return len(self._values)

    def row(self, index: int) -> str:
        return self._values[index]

    def append(self, values: Any) -> list[int]:
        if not _is_sequence(values) or not all(
            v is None or isinstance(v, str) for v in values
        ):
            raise ColumnConverterError("Append", "String", _label(values))
        nulls = [1 if v is None else 0 for v in values]
        self._values.extend("" if v is None else v for v in values)
        return nulls

    def append_row(self, value: Any) -> None:
        if value is None:
            self._values.append("")
        elif isinstance(value, str):
            self._values.append(value)
        else:
            raise ColumnConverterError("AppendRow", "String", _label(value))

    def decode(self, decoder: Decoder, rows: int) -> None:
        self._values.extend(decoder.string() for _ in range(rows))

    def encode(self, encoder: Encoder) -> None:
        for value in self._values:
            encoder.string(value)


class UUIDColumn(Column):
    """Column of ``UUID`` values, stored in the server's byte order."""

    type_name = "UUID"

    def __init__(self) -> None:
        self._data = bytearray()

    def rows(self) -> int:
        return len(self._data) // UUID_SIZE

    def row(self, index: int) -> uuid.UUID:
        if not 0 <= index < self.rows():
            raise IndexError("UUID column index out of range")
        chunk = self._data[index * UUID_SIZE : (index + 1) * UUID_SIZE]
        return uuid.UUID(bytes=swap_uuid_bytes(bytes(chunk)))

    def append(self, values: Any) -> list[int]:
        if not _is_sequence(values) or not all(
            v is None or isinstance(v, uuid.UUID) for v in values
        ):
            raise ColumnConverterError("Append", "UUID", _label(values))
        nulls = []
        for value in values:
            self._push(value)
            nulls.append(1 if value is None else 0)
        return nulls

    def append_row(self, value: Any) -> None:
        if value is not None and not isinstance(value, uuid.UUID):
            raise ColumnConverterError("AppendRow", "UUID", _label(value))
        self._push(value)

    def _push(self, value: uuid.UUID | None) -> None:
        if value is None:
            self._data += bytes(UUID_SIZE)
        else:
            self._data += swap_uuid_bytes(value.bytes)

    def decode(self, decoder: Decoder, rows: int) -> None:
        self._data = bytearray(decoder.raw(UUID_SIZE * rows))

    def encode(self, encoder: Encoder) -> None:
        encoder.raw(bytes(self._data))


class NothingColumn(Column):
    """Column of the ``Nothing`` type, which holds no storable values."""

    type_name = "Nothing"

    def rows(self) -> int:
        return 0

    def row(self, index: int) -> None:
        return None

    def append(self, values: Any) -> list[int]:
        raise ColumnError("Nothing", _NOT_STORABLE)

    def append_row(self, value: Any) -> None:
        raise ColumnError("Nothing", _NOT_STORABLE)

    def decode(self, decoder: Decoder, rows: int) -> None:
        decoder.raw(rows)

    def encode(self, encoder: Encoder) -> None:
        raise ColumnError("Nothing", _NOT_STORABLE)


class Nullable(Column):
    """Wraps a column with a null map; ``None`` marks a null row."""

    def __init__(self, base: Column) -> None:
        self.base = base
        self.enabled = True
        self._nulls = bytearray()

    @property
    def type_name(self) -> str:  # type: ignore[override]
        return f"Nullable({self.base.type_name})"

    def rows(self) -> int:
        if not self.enabled:
            return self.base.rows()
        return len(self._nulls)

    def row(self, index: int) -> Any:
        if self.enabled and self._nulls[index] == 1:
            return None
        return self.base.row(index)

    def append(self, values: Any) -> list[int]:
        nulls = self.base.append(values)
        self._nulls.extend(nulls)
        return nulls

    def append_row(self, value: Any) -> None:
        self._nulls.append(1 if value is None else 0)
        self.base.append_row(value)

    def decode(self, decoder: Decoder, rows: int) -> None:
        if self.enabled:
            self._nulls.extend(decoder.raw(rows))
        self.base.decode(decoder, rows)

    def encode(self, encoder: Encoder) -> None:
        if self.enabled:
            encoder.raw(bytes(self._nulls))
        self.base.encode(encoder)


class SimpleAggregateFunction(Column):
    """A ``SimpleAggregateFunction(f, T)`` column; stored exactly like its ``T``."""

    def __init__(self, type_name: str, base: Column) -> None:
        self.type_name = type_name
        self.base = base

    def rows(self) -> int:
        return self.base.rows()

    def row(self, index: int) -> Any:
        return self.base.row(index)

    def append(self, values: Any) -> list[int]:
        return self.base.append(values)

    def append_row(self, value: Any) -> None:
        self.base.append_row(value)

    def decode(self, decoder: Decoder, rows: int) -> None:
        self.base.decode(decoder, rows)

    def encode(self, encoder: Encoder) -> None:
        self.base.encode(encoder)