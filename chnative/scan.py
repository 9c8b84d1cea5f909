"""Mapping of result columns onto dataclass fields, and row extraction from blocks."""

from __future__ import annotations

import dataclasses
from typing import Any

from chnative.block import Block
from chnative.columns import ColumnError

FieldPath = tuple[int, ...]


class OpError(Exception):
    """An operation on query results failed."""

    def __init__(self, op: str, err: Exception | str, column_name: str = "") -> None:
        self.op = op
        self.err = err
        self.column_name = column_name
        subject = f"{column_name} " if column_name else ""
        super().__init__(f"clickhouse [{op}]: {subject}{err}")


def _is_dataclass_type(candidate: Any) -> bool:
    return isinstance(candidate, type) and dataclasses.is_dataclass(candidate)


def _embedded_type(field: dataclasses.Field) -> type | None:
    """Return the dataclass embedded by ``field``, or None when it is optional or unknown."""
    if field.default is None:
        return None
    marker = field.metadata.get("embed")
    if _is_dataclass_type(marker):
        return marker
    if _is_dataclass_type(field.type):
        return field.type
    if _is_dataclass_type(field.default_factory):
        return field.default_factory
    return None


def struct_index(cls: type) -> dict[str, FieldPath]:
    """Map column names to field index paths of a dataclass.

    A field's column name is its ``"ch"`` metadata entry or else its own name;
    ``"-"`` and names starting with an underscore are skipped. A field marked
    with ``"embed"`` metadata whose type is a dataclass has its fields merged in;
    an embedded optional field is skipped.
    """
    if not _is_dataclass_type(cls):
        raise TypeError(f"{cls!r} is not a dataclass")
    index: dict[str, FieldPath] = {}
    for position, field in enumerate(dataclasses.fields(cls)):
        name = field.metadata.get("ch") or field.name
        embedded = bool(field.metadata.get("embed"))
        if name == "-" or (field.name.startswith("_") and not embedded):
            continue
        if embedded:
            inner = _embedded_type(field)
            if inner is not None:
                for key, path in struct_index(inner).items():
                    index[key] = (position, *path)
        else:
            index[name] = (position,)
    return index


def _parent_and_name(obj: Any, path: FieldPath) -> tuple[Any, str]:
    for position in path[:-1]:
        obj = getattr(obj, dataclasses.fields(obj)[position].name)
    return obj, dataclasses.fields(obj)[path[-1]].name


class StructMap:
    """Resolves column names to dataclass fields, caching the index per class."""

    def __init__(self) -> None:
        self.cache: dict[type, dict[str, FieldPath]] = {}

    def _paths(self, op: str, columns: list[str], obj: Any) -> list[FieldPath]:
        if obj is None:
            raise OpError(op, f"nil pointer passed to {op} destination")
        if isinstance(obj, type):
            raise OpError(op, f"must pass an instance, not a class, to {op} destination")
        if not dataclasses.is_dataclass(obj):
            raise OpError(op, f"{op} expects a struct dest")
        cls = type(obj)
        index = self.cache.get(cls)
        if index is None:
            index = self.cache[cls] = struct_index(cls)
        paths = []
        for name in columns:
            path = index.get(name)
            if path is None:
                raise OpError(op, f"missing destination name {name!r} in {cls.__name__}")
            paths.append(path)
        return paths

    def map(self, op: str, columns: list[str], obj: Any) -> list[Any]:
        """Return the values of the fields named by ``columns``."""
        values = []
        for path in self._paths(op, columns, obj):
            parent, name = _parent_and_name(obj, path)
            values.append(getattr(parent, name))
        return values

    def assign(self, op: str, columns: list[str], obj: Any, values: list[Any]) -> None:
        """Set the fields named by ``columns`` to ``values``."""
        paths = self._paths(op, columns, obj)
        if len(values) != len(paths):
            raise OpError(op, f"expected {len(paths)} values, not {len(values)}")
        for path, value in zip(paths, values):
            parent, name = _parent_and_name(obj, path)
            setattr(parent, name, value)


def scan(block: Block, row: int, count: int) -> list[Any]:
    """Return the values of the 1-based ``row`` of ``block``.

    ``count`` is the number of destinations and must match the column count.
    """
    columns = block.columns
    if len(columns) != count:
        raise OpError(
            "Scan",
            f"expected {len(columns)} destination arguments in Scan, not {count}",
        )
    values = []
    for name, column in zip(block.column_names(), columns):
        try:
            values.append(column.row(row - 1))
        except (ColumnError, IndexError) as exc:
            raise OpError("Scan", exc, name) from exc
    return values