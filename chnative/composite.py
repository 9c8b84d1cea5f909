"""Composite column types: LowCardinality, Map and Tuple, and the type-name factory."""

from __future__ import annotations

import datetime
import struct
from collections.abc import Mapping, Sequence
from typing import Any, Protocol, runtime_checkable

from chnative.columns import (
    Column,
    ColumnConverterError,
    ColumnError,
    NothingColumn,
    Nullable,
    SimpleAggregateFunction,
    StringColumn,
    UnsupportedColumnTypeError,
    UUIDColumn,
    type_params,
)
from chnative.stream import Decoder, Encoder

INDEX_TYPE_MASK = 0b11111111

KEY_UINT8 = 0
KEY_UINT16 = 1
KEY_UINT32 = 2
KEY_UINT64 = 3

NEED_GLOBAL_DICTIONARY_BIT = 1 << 8
"""The dictionary must be read before the keys."""
HAS_ADDITIONAL_KEYS_BIT = 1 << 9
"""Additional keys are stored before the indexes."""
NEED_UPDATE_DICTIONARY = 1 << 10
"""The previous granule had a different dictionary."""
UPDATE_ALL = HAS_ADDITIONAL_KEYS_BIT | NEED_UPDATE_DICTIONARY

SHARED_DICTIONARIES_WITH_ADDITIONAL_KEYS = 1

_KEY_FORMATS = {KEY_UINT8: "B", KEY_UINT16: "H", KEY_UINT32: "I", KEY_UINT64: "Q"}


@runtime_checkable
class CustomSerialization(Protocol):
    """A column that carries a state prefix before its data."""

    def read_state_prefix(self, decoder: Decoder) -> None: ...

    def write_state_prefix(self, encoder: Encoder) -> None: ...


def _label(value: object) -> str:
    return "None" if value is None else type(value).__name__


def _is_sequence(values: object) -> bool:
    return isinstance(values, Sequence) and not isinstance(values, (str, bytes, bytearray))


def _read_prefixes(columns: Sequence[Column], decoder: Decoder) -> None:
    for column in columns:
        if isinstance(column, CustomSerialization):
            column.read_state_prefix(decoder)


def _write_prefixes(columns: Sequence[Column], encoder: Encoder) -> None:
    for column in columns:
        if isinstance(column, CustomSerialization):
            column.write_state_prefix(encoder)


class LowCardinality(Column):
    """Dictionary-encoded column: distinct values in an index, rows as keys into it."""

    def __init__(self, type_name: str, index: Column) -> None:
        self.type_name = type_name
        self.index = index
        self.nullable = isinstance(index, Nullable)
        if isinstance(index, Nullable):
            index.enabled = False
        self._key = KEY_UINT8
        self._keys: list[int] = []
        self._dictionary: dict[Any, int] = {}

    def rows(self) -> int:
        return len(self._keys)

    def row(self, index: int) -> Any:
        position = self._keys[index]
        if position == 0 and self.nullable:
            return None
        return self.index.row(position)

    def append(self, values: Any) -> list[int]:
        if not _is_sequence(values):
            raise ColumnConverterError("Append", self.type_name, _label(values))
        for value in values:
            self.append_row(value)
        return [1 if value is None else 0 for value in values]

    def append_row(self, value: Any) -> None:
        if self.index.rows() == 0:
            self.index.append_row(None)
            if self.nullable:
                self.index.append_row(None)
        if value is None:
            self._keys.append(0)
            return
        if isinstance(value, datetime.datetime):
            value = value.replace(microsecond=0)
        try:
            position = self._dictionary.get(value)
        except TypeError:
            raise ColumnConverterError("AppendRow", self.type_name, _label(value)) from None
        if position is None:
            self.index.append_row(value)
            position = self.index.rows() - 1
            self._dictionary[value] = position
        self._keys.append(position)

    def decode(self, decoder: Decoder, rows: int) -> None:
        if rows == 0:
            return
        serialization = decoder.uint64()
        key = serialization & INDEX_TYPE_MASK
        if key not in _KEY_FORMATS:
            raise ColumnError("LowCardinality", "invalid index serialization version value")
        if serialization & NEED_GLOBAL_DICTIONARY_BIT:
            raise ColumnError("LowCardinality", "global dictionary is not supported")
        if not serialization & HAS_ADDITIONAL_KEYS_BIT:
            raise ColumnError("LowCardinality", "additional keys bit is missing")
        self._key = key
        index_rows = decoder.int64()
        self.index.decode(decoder, index_rows)
        key_rows = decoder.int64()
        fmt = _KEY_FORMATS[key]
        raw = decoder.raw(key_rows * struct.calcsize(fmt))
        self._keys = list(struct.unpack(f"<{key_rows}{fmt}", raw))

    def encode(self, encoder: Encoder) -> None:
        if not self._keys:
            return
        distinct = len(self._dictionary)
        if distinct < 0xFF:
            self._key = KEY_UINT8
        elif distinct < 0xFFFF:
            self._key = KEY_UINT16
        elif distinct < 0xFFFFFFFF:
            self._key = KEY_UINT32
        else:
            self._key = KEY_UINT64
        encoder.uint64(UPDATE_ALL | self._key)
        encoder.int64(self.index.rows())
        self.index.encode(encoder)
        encoder.int64(len(self._keys))
        encoder.raw(struct.pack(f"<{len(self._keys)}{_KEY_FORMATS[self._key]}", *self._keys))

    def read_state_prefix(self, decoder: Decoder) -> None:
        if decoder.uint64() != SHARED_DICTIONARIES_WITH_ADDITIONAL_KEYS:
            raise ColumnError("LowCardinality", "invalid key serialization version value")

    def write_state_prefix(self, encoder: Encoder) -> None:
        encoder.uint64(SHARED_DICTIONARIES_WITH_ADDITIONAL_KEYS)


class MapColumn(Column):
    """``Map(K, V)`` column: flattened keys and values with per-row end offsets."""

    def __init__(self, type_name: str, keys: Column, values: Column) -> None:
        self.type_name = type_name
        self.keys = keys
        self.values = values
        self._offsets: list[int] = []

    def rows(self) -> int:
        return len(self._offsets)

    def row(self, index: int) -> dict[Any, Any]:
        start = self._offsets[index - 1] if index else 0
        end = self._offsets[index]
        return {self.keys.row(i): self.values.row(i) for i in range(start, end)}

    def append(self, values: Any) -> list[int]:
        if not _is_sequence(values):
            raise ColumnConverterError(
                "Append", self.type_name, _label(values), "try using a list of dict"
            )
        for value in values:
            self.append_row(value)
        return [0] * len(values)

    def append_row(self, value: Any) -> None:
        if not isinstance(value, Mapping):
            raise ColumnConverterError(
                "AppendRow", self.type_name, _label(value), "try using dict"
            )
        for key, item in value.items():
            self.keys.append_row(key)
            self.values.append_row(item)
        previous = self._offsets[-1] if self._offsets else 0
        self._offsets.append(previous + len(value))

    def decode(self, decoder: Decoder, rows: int) -> None:
        self._offsets = list(struct.unpack(f"<{rows}q", decoder.raw(8 * rows)))
        size = self._offsets[-1] if self._offsets else 0
        self.keys.decode(decoder, size)
        self.values.decode(decoder, size)

    def encode(self, encoder: Encoder) -> None:
        encoder.raw(struct.pack(f"<{len(self._offsets)}q", *self._offsets))
        self.keys.encode(encoder)
        self.values.encode(encoder)

    def read_state_prefix(self, decoder: Decoder) -> None:
        _read_prefixes((self.keys, self.values), decoder)

    def write_state_prefix(self, encoder: Encoder) -> None:
        _write_prefixes((self.keys, self.values), encoder)


class TupleColumn(Column):
    """``Tuple(T1, T2, ...)`` column: one child column per element."""

    def __init__(self, type_name: str, columns: Sequence[Column]) -> None:
        self.type_name = type_name
        self.columns = list(columns)

    def rows(self) -> int:
        return self.columns[0].rows() if self.columns else 0

    def row(self, index: int) -> tuple[Any, ...]:
        return tuple(column.row(index) for column in self.columns)

    def append(self, values: Any) -> list[int]:
        if not _is_sequence(values) or not all(_is_sequence(v) for v in values):
            raise ColumnConverterError("Append", self.type_name, _label(values))
        for value in values:
            self.append_row(value)
        return [0] * len(values)

    def append_row(self, value: Any) -> None:
        if not _is_sequence(value):
            raise ColumnConverterError("AppendRow", self.type_name, _label(value))
        if len(value) != len(self.columns):
            raise ColumnError(
                self.type_name,
                f"invalid size. expected {len(self.columns)} got {len(value)}",
            )
        for column, item in zip(self.columns, value):
            column.append_row(item)

    def decode(self, decoder: Decoder, rows: int) -> None:
        for column in self.columns:
            column.decode(decoder, rows)

    def encode(self, encoder: Encoder) -> None:
        for column in self.columns:
            column.encode(encoder)

    def read_state_prefix(self, decoder: Decoder) -> None:
        _read_prefixes(self.columns, decoder)

    def write_state_prefix(self, encoder: Encoder) -> None:
        _write_prefixes(self.columns, encoder)


def tuple_element_types(type_name: str) -> list[str]:
    """Split a ``Tuple(...)`` type into its element types, dropping element names."""
    elements: list[str] = []
    element: list[str] = []

    def flush() -> None:
        if not element:
            return
        name = "".join(element).strip()
        parts = name.split(" ", 1)
        if len(parts) == 2 and "(" not in parts[0]:
            name = parts[1]
        elements.append(name.strip())

    depth = 0
    for char in type_params(type_name):
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
        elif char == "," and depth == 0:
            flush()
            element.clear()
            continue
        element.append(char)
    flush()
    return elements


def nested_columns(raw: str) -> list[str]:
    """Return the column types of a ``Nested(...)`` parameter list, names dropped.

    Inner ``Nested(...)`` types become ``Array(Tuple(...))``.
    """
    columns: list[str] = []
    begin = depth = 0
    for position, char in enumerate(raw + ","):
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
        elif char == " " and depth == 0:
            begin = position + 1
        elif char == "," and depth == 0:
            columns.append(raw[begin:position])
            begin = position + 1
    return [
        f"Array(Tuple({', '.join(nested_columns(type_params(column)))}))"
        if column.startswith("Nested(")
        else column
        for column in columns
    ]


def column_for(type_name: str) -> Column:
    """Create an empty column for a type name."""
    type_name = type_name.strip()
    simple = {"String": StringColumn, "UUID": UUIDColumn, "Nothing": NothingColumn}
    if type_name in simple:
        return simple[type_name]()
    params = type_params(type_name)
    if type_name.startswith("Nullable("):
        return Nullable(column_for(params))
    if type_name.startswith("LowCardinality("):
        return LowCardinality(type_name, column_for(params))
    if type_name.startswith("SimpleAggregateFunction("):
        parts = params.split(",", 1)
        if len(parts) != 2:
            raise UnsupportedColumnTypeError(type_name)
        try:
            base = column_for(parts[1].strip())
        except ColumnError:
            raise UnsupportedColumnTypeError(type_name) from None
        return SimpleAggregateFunction(type_name, base)
    if type_name.startswith("Map("):
        parts = params.split(",")
        if len(parts) != 2:
            raise UnsupportedColumnTypeError(type_name)
        return MapColumn(type_name, column_for(parts[0].strip()), column_for(parts[1].strip()))
    if type_name.startswith("Tuple("):
        columns = [column_for(element) for element in tuple_element_types(type_name)]
        if not columns:
            raise UnsupportedColumnTypeError(type_name)
        return TupleColumn(type_name, columns)
    raise UnsupportedColumnTypeError(type_name)