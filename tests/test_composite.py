import datetime
import io
import uuid

import pytest

from chnative.columns import (
    ColumnConverterError,
    ColumnError,
    Nullable,
    SimpleAggregateFunction,
    StringColumn,
    UnsupportedColumnTypeError,
)
from chnative.composite import (
    LowCardinality,
    MapColumn,
    TupleColumn,
    column_for,
    nested_columns,
    tuple_element_types,
)
from chnative.stream import Decoder, Encoder


def encode(column, prefix=False):
    buf = io.BytesIO()
    encoder = Encoder(buf)
    if prefix:
        column.write_state_prefix(encoder)
    column.encode(encoder)
    return buf.getvalue()


def decode(type_name, data, rows, prefix=False):
    column = column_for(type_name)
    decoder = Decoder(io.BytesIO(data))
    if prefix:
        column.read_state_prefix(decoder)
    column.decode(decoder, rows)
    return column


def test_column_for_builds_expected_classes():
    ident = uuid.UUID(int=5)

    low = column_for("LowCardinality(String)")
    assert isinstance(low, LowCardinality)
    low.append_row("a")
    assert low.rows() == 1
    assert low.row(0) == "a"

    mapping = column_for("Map(String, UUID)")
    assert isinstance(mapping, MapColumn)
    mapping.append_row({"k": ident})
    assert mapping.rows() == 1
    assert mapping.row(0) == {"k": ident}

    tup = column_for("Tuple(String, UUID)")
    assert isinstance(tup, TupleColumn)
    tup.append_row(("x", ident))
    assert tup.row(0) == ("x", ident)

    agg = column_for("SimpleAggregateFunction(max, String)")
    assert isinstance(agg, SimpleAggregateFunction)
    assert isinstance(agg.base, StringColumn)
    agg.append_row("m")
    assert agg.rows() == 1
    assert agg.row(0) == "m"
    assert agg.base.row(0) == "m"


@pytest.mark.parametrize(
    "type_name",
    ["Array(String)", "Map(String)", "Tuple()", "SimpleAggregateFunction(max)", "Int128"],
)
def test_column_for_unsupported(type_name):
    with pytest.raises(UnsupportedColumnTypeError):
        column_for(type_name)


def test_tuple_element_types_drops_names():
    assert tuple_element_types("Tuple(a String, b Nullable(String))") == [
        "String",
        "Nullable(String)",
    ]
    assert tuple_element_types("Tuple(Map(String, String), UUID)") == [
        "Map(String, String)",
        "UUID",
    ]


def test_nested_columns_flattens_inner_nested():
    raw = (
        "duration UInt8, result Nested(duration UInt64, "
        "error_message Nullable(String), status UInt8), keyword String"
    )
    assert nested_columns(raw) == [
        "UInt8",
        "Array(Tuple(UInt64, Nullable(String), UInt8))",
        "String",
    ]


def test_nested_columns_simple():
    assert nested_columns("First UInt32, Second UInt32") == ["UInt32", "UInt32"]


def test_low_cardinality_rows_and_values():
    column = column_for("LowCardinality(String)")
    column.append(["a", "b", "a"])
    column.append_row(None)
    assert column.rows() == 4
    assert [column.row(i) for i in range(4)] == ["a", "b", "a", ""]


def test_low_cardinality_wire_bytes():
    column = column_for("LowCardinality(String)")
    column.append(["a", "b", "a"])
    expected = (
        (0x600).to_bytes(8, "little")
        + (3).to_bytes(8, "little")
        + b"\x00\x01a\x01b"
        + (3).to_bytes(8, "little")
        + bytes([1, 2, 1])
    )
    assert encode(column) == expected
    assert encode(column, prefix=True)[:8] == (1).to_bytes(8, "little")


def test_low_cardinality_round_trip():
    values = ["x", "y", "x", "z", "y"]
    column = column_for("LowCardinality(String)")
    column.append(values)
    decoded = decode("LowCardinality(String)", encode(column, True), len(values), True)
    assert [decoded.row(i) for i in range(decoded.rows())] == values


def test_low_cardinality_nullable_round_trip():
    values = ["x", None, "y", "x"]
    column = column_for("LowCardinality(Nullable(String))")
    assert column.nullable is True
    column.append(values)
    assert [column.row(i) for i in range(4)] == values
    decoded = decode("LowCardinality(Nullable(String))", encode(column, True), 4, True)
    assert [decoded.row(i) for i in range(decoded.rows())] == values


def test_low_cardinality_wide_keys_round_trip():
    values = [f"v{i}" for i in range(300)]
    column = column_for("LowCardinality(String)")
    column.append(values)
    data = encode(column)
    assert data[0] == 1  # UInt16 keys
    decoded = decode("LowCardinality(String)", data, len(values))
    assert [decoded.row(i) for i in range(decoded.rows())] == values


def test_low_cardinality_truncates_datetime_keys():
    column = LowCardinality("LowCardinality(X)", StringColumn())
    with pytest.raises(ColumnConverterError):
        column.append_row(datetime.datetime(2020, 1, 1, 0, 0, 0, 500))
    assert column.rows() == 0


def test_low_cardinality_empty_encodes_nothing():
    assert encode(column_for("LowCardinality(String)")) == b""


def test_low_cardinality_rejects_non_sequence():
    with pytest.raises(ColumnConverterError):
        column_for("LowCardinality(String)").append("abc")


def test_low_cardinality_rejects_unhashable():
    with pytest.raises(ColumnConverterError):
        column_for("LowCardinality(String)").append_row(["a"])


def test_low_cardinality_bad_state_prefix():
    column = column_for("LowCardinality(String)")
    with pytest.raises(ColumnError):
        column.read_state_prefix(Decoder(io.BytesIO((2).to_bytes(8, "little"))))


def test_low_cardinality_bad_key_type():
    column = column_for("LowCardinality(String)")
    data = (0x600 | 7).to_bytes(8, "little")
    with pytest.raises(ColumnError):
        column.decode(Decoder(io.BytesIO(data)), 1)


def test_low_cardinality_missing_additional_keys():
    column = column_for("LowCardinality(String)")
    data = (0).to_bytes(8, "little")
    with pytest.raises(ColumnError):
        column.decode(Decoder(io.BytesIO(data)), 1)


def test_map_round_trip():
    rows = [{"a": "1", "b": "2"}, {}, {"c": "3"}]
    column = column_for("Map(String, String)")
    column.append(rows)
    assert column.rows() == 3
    assert [column.row(i) for i in range(3)] == rows
    decoded = decode("Map(String, String)", encode(column), 3)
    assert [decoded.row(i) for i in range(3)] == rows


def test_map_with_low_cardinality_values_round_trip():
    rows = [{"k1": "v"}, {"k2": "v", "k3": "w"}]
    column = column_for("Map(String, LowCardinality(String))")
    column.append(rows)
    decoded = decode("Map(String, LowCardinality(String))", encode(column, True), 2, True)
    assert [decoded.row(i) for i in range(2)] == rows


def test_map_rejects_non_mapping():
    column = column_for("Map(String, String)")
    with pytest.raises(ColumnConverterError):
        column.append_row(["a", "b"])
    with pytest.raises(ColumnConverterError):
        column.append({"a": "b"})


def test_tuple_round_trip():
    ident = uuid.UUID("12345678-1234-5678-1234-567812345678")
    column = column_for("Tuple(name String, id UUID)")
    column.append([("a", ident), ["b", None]])
    assert column.rows() == 2
    assert column.row(0) == ("a", ident)
    decoded = decode("Tuple(name String, id UUID)", encode(column), 2)
    assert [decoded.row(i) for i in range(2)] == [
        ("a", ident),
        ("b", uuid.UUID(int=0)),
    ]


def test_tuple_with_low_cardinality_round_trip():
    column = column_for("Tuple(LowCardinality(String), String)")
    column.append([("x", "1"), ("x", "2")])
    decoded = decode("Tuple(LowCardinality(String), String)", encode(column, True), 2, True)
    assert [decoded.row(i) for i in range(2)] == [("x", "1"), ("x", "2")]


def test_tuple_size_mismatch():
    column = column_for("Tuple(String, String)")
    with pytest.raises(ColumnError, match="invalid size. expected 2 got 1"):
        column.append_row(["a"])


def test_tuple_rejects_string_row():
    column = column_for("Tuple(String, String)")
    with pytest.raises(ColumnConverterError):
        column.append_row("ab")
    with pytest.raises(ColumnConverterError):
        column.append(["ab"])


def test_nullable_index_is_disabled():
    column = column_for("LowCardinality(Nullable(String))")
    assert isinstance(column.index, Nullable)
    assert column.index.enabled is False