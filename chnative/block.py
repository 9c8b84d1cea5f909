"""Data blocks of the native protocol and the protocol's packet and revision numbers."""

from __future__ import annotations

import enum
from typing import Any

from chnative.columns import (
    Column,
    ColumnConverterError,
    ColumnError,
    UnsupportedColumnTypeError,
)
from chnative.composite import CustomSerialization, column_for
from chnative.stream import Decoder, Encoder

DBMS_MIN_REVISION_WITH_CLIENT_INFO = 54032
DBMS_MIN_REVISION_WITH_SERVER_TIMEZONE = 54058
DBMS_MIN_REVISION_WITH_QUOTA_KEY_IN_CLIENT_INFO = 54060
DBMS_MIN_REVISION_WITH_SERVER_DISPLAY_NAME = 54372
DBMS_MIN_REVISION_WITH_VERSION_PATCH = 54401
DBMS_MIN_REVISION_WITH_CLIENT_WRITE_INFO = 54420
DBMS_MIN_REVISION_WITH_SETTINGS_SERIALIZED_AS_STRINGS = 54429
DBMS_MIN_REVISION_WITH_INTERSERVER_SECRET = 54441
DBMS_MIN_REVISION_WITH_OPENTELEMETRY = 54442
DBMS_MIN_PROTOCOL_VERSION_WITH_DISTRIBUTED_DEPTH = 54448
DBMS_MIN_PROTOCOL_VERSION_WITH_INITIAL_QUERY_START_TIME = 54449
DBMS_MIN_PROTOCOL_VERSION_WITH_INCREMENTAL_PROFILE_EVENTS = 54451
DBMS_MIN_REVISION_WITH_PARALLEL_REPLICAS = 54453
DBMS_TCP_PROTOCOL_VERSION = DBMS_MIN_REVISION_WITH_PARALLEL_REPLICAS

CLIENT_QUERY_NONE = 0
CLIENT_QUERY_INITIAL = 1
CLIENT_QUERY_SECONDARY = 2

COMPRESS_ENABLE = 1
COMPRESS_DISABLE = 0

STATE_COMPLETE = 2

MAX_BLOCK_ROWS = 1_000_000


class ClientPacket(enum.IntEnum):
    """Packet types sent by the client."""

    HELLO = 0
    QUERY = 1
    DATA = 2
    CANCEL = 3
    PING = 4


class ServerPacket(enum.IntEnum):
    """Packet types sent by the server."""

    HELLO = 0
    DATA = 1
    EXCEPTION = 2
    PROGRESS = 3
    PONG = 4
    END_OF_STREAM = 5
    PROFILE_INFO = 6
    TOTALS = 7
    EXTREMES = 8
    TABLES_STATUS = 9
    LOG = 10
    TABLE_COLUMNS = 11
    PART_UUIDS = 12
    READ_TASK_REQUEST = 13
    PROFILE_EVENTS = 14
    TREE_READ_TASK_REQUEST = 15


class BlockError(Exception):
    """An operation on a block failed, possibly in one named column."""

    def __init__(self, op: str, err: Exception, column_name: str = "") -> None:
        self.op = op
        self.err = err
        self.column_name = column_name
        super().__init__(self._describe())

    def _describe(self) -> str:
        err = self.err
        if isinstance(err, ColumnError) and not isinstance(
            err, (ColumnConverterError, UnsupportedColumnTypeError)
        ):
            return (
                f"clickhouse [{self.op}]: ({self.column_name} {err.column_type}) "
                f"{err.message}"
            )
        subject = f"{self.column_name} " if self.column_name else ""
        return f"clickhouse [{self.op}]: {subject}{err}"


def _encode_block_info(encoder: Encoder) -> None:
    encoder.uvarint(1)
    encoder.bool(False)
    encoder.uvarint(2)
    encoder.int32(-1)
    encoder.uvarint(0)


def _decode_block_info(decoder: Decoder) -> None:
    decoder.uvarint()
    decoder.bool()
    decoder.uvarint()
    decoder.int32()
    decoder.uvarint()


class Block:
    """A set of named columns of equal length."""

    def __init__(self) -> None:
        self._names: list[str] = []
        self.packet = 0
        self.columns: list[Column] = []

    def rows(self) -> int:
        """Number of rows, taken from the first column."""
        return self.columns[0].rows() if self.columns else 0

    def add_column(self, name: str, type_name: str) -> None:
        """Add an empty column of the given type."""
        column = column_for(type_name)
        self._names.append(name)
        self.columns.append(column)

    def append(self, *args: Any) -> None:
        """Append one row, one value per column."""
        if len(args) != len(self.columns):
            raise BlockError(
                "Append",
                ValueError(
                    f"clickhouse: expected {len(self.columns)} arguments, got {len(args)}"
                ),
            )
        for name, column, value in zip(self._names, self.columns, args):
            try:
                column.append_row(value)
            except ColumnError as exc:
                raise BlockError("AppendRow", exc, name) from exc

    def column_names(self) -> list[str]:
        """Names of the columns, in order."""
        return list(self._names)

    def encode(self, encoder: Encoder, revision: int) -> None:
        """Write the block; block info is included when ``revision`` is positive."""
        if revision > 0:
            _encode_block_info(encoder)
        rows = 0
        if self.columns:
            rows = self.columns[0].rows()
            if any(column.rows() != rows for column in self.columns[1:]):
                raise BlockError("Encode", ValueError("mismatched len of columns"))
        encoder.uvarint(len(self.columns))
        encoder.uvarint(rows)
        for name, column in zip(self._names, self.columns):
            encoder.string(name)
            encoder.string(column.type_name)
            try:
                if isinstance(column, CustomSerialization):
                    column.write_state_prefix(encoder)
                column.encode(encoder)
            except (ColumnError, ValueError) as exc:
                raise BlockError("Encode", exc, name) from exc

    def decode(self, decoder: Decoder, revision: int) -> None:
        """Read a block, replacing any columns held."""
        if revision > 0:
            _decode_block_info(decoder)
        num_columns = decoder.uvarint()
        num_rows = decoder.uvarint()
        if num_rows > MAX_BLOCK_ROWS:
            raise BlockError("Decode", ValueError("more then 1 000 000 rows in block"))
        self._names = []
        self.columns = []
        for _ in range(num_columns):
            name = decoder.string()
            column = column_for(decoder.string())
            if num_rows:
                try:
                    if isinstance(column, CustomSerialization):
                        column.read_state_prefix(decoder)
                    column.decode(decoder, num_rows)
                except (ColumnError, ValueError) as exc:
                    raise BlockError("Decode", exc, name) from exc
            self._names.append(name)
            self.columns.append(column)