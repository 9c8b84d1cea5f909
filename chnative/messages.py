"""Server and client messages of the native protocol other than data blocks."""

from __future__ import annotations

import dataclasses
import os
import socket
from collections.abc import Iterable, Sequence
from datetime import tzinfo
from typing import Any

from chnative import timezone
from chnative.block import (
    CLIENT_QUERY_INITIAL,
    DBMS_MIN_PROTOCOL_VERSION_WITH_DISTRIBUTED_DEPTH,
    DBMS_MIN_PROTOCOL_VERSION_WITH_INITIAL_QUERY_START_TIME,
    DBMS_MIN_REVISION_WITH_CLIENT_WRITE_INFO,
    DBMS_MIN_REVISION_WITH_INTERSERVER_SECRET,
    DBMS_MIN_REVISION_WITH_OPENTELEMETRY,
    DBMS_MIN_REVISION_WITH_PARALLEL_REPLICAS,
    DBMS_MIN_REVISION_WITH_QUOTA_KEY_IN_CLIENT_INFO,
    DBMS_MIN_REVISION_WITH_SERVER_DISPLAY_NAME,
    DBMS_MIN_REVISION_WITH_SERVER_TIMEZONE,
    DBMS_MIN_REVISION_WITH_SETTINGS_SERIALIZED_AS_STRINGS,
    DBMS_MIN_REVISION_WITH_VERSION_PATCH,
    DBMS_TCP_PROTOCOL_VERSION,
    STATE_COMPLETE,
)
from chnative.stream import Decoder, Encoder

CLIENT_NAME = "chnative"
CLIENT_VERSION_MAJOR = 1
CLIENT_VERSION_MINOR = 1
CLIENT_TCP_PROTOCOL_VERSION = DBMS_TCP_PROTOCOL_VERSION

INTERFACE_TCP = 1

OS_USER = os.environ.get("USER", "")
HOSTNAME = socket.gethostname()

_UINT64_MASK = (1 << 64) - 1


def _fmt_bool(value: bool) -> str:
    return "true" if value else "false"


class ServerException(Exception):
    """An exception reported by the server, possibly with nested causes."""

    def __init__(
        self,
        code: int,
        name: str,
        message: str,
        stack_trace: str = "",
        nested: Sequence[ServerException] = (),
    ) -> None:
        super().__init__(f"code: {code}, message: {message}")
        self.code = code
        self.name = name
        self.message = message
        self.stack_trace = stack_trace
        self.nested = list(nested)

    @classmethod
    def _decode_one(cls, decoder: Decoder) -> tuple[ServerException, bool]:
        code = decoder.int32()
        name = decoder.string()
        message = decoder.string()
        prefix = name + ":"
        if message.startswith(prefix):
            message = message[len(prefix):]
        message = message.strip()
        stack_trace = decoder.string()
        has_nested = decoder.bool()
        return cls(code, name, message, stack_trace), has_nested

    @classmethod
    def decode(cls, decoder: Decoder) -> ServerException:
        """Read an exception and the chain of nested exceptions that follows it."""
        chain: list[ServerException] = []
        while True:
            exc, has_nested = cls._decode_one(decoder)
            chain.append(exc)
            if not has_nested:
                break
        first = chain[0]
        first.nested = chain[1:]
        return first


class ClientHandshake:
    """The hello packet body sent by the client."""

    def encode(self, encoder: Encoder) -> None:
        encoder.string(CLIENT_NAME)
        encoder.uvarint(CLIENT_VERSION_MAJOR)
        encoder.uvarint(CLIENT_VERSION_MINOR)
        encoder.uvarint(CLIENT_TCP_PROTOCOL_VERSION)

    def __str__(self) -> str:
        return (
            f"{CLIENT_NAME} {CLIENT_VERSION_MAJOR}.{CLIENT_VERSION_MINOR}."
            f"{CLIENT_TCP_PROTOCOL_VERSION}"
        )


@dataclasses.dataclass
class ServerVersion:
    """Major, minor and patch version of the server."""

    major: int = 0
    minor: int = 0
    patch: int = 0


@dataclasses.dataclass
class ServerHandshake:
    """The hello packet body sent by the server."""

    name: str = ""
    display_name: str = ""
    revision: int = 0
    version: ServerVersion = dataclasses.field(default_factory=ServerVersion)
    timezone: tzinfo | None = None

    @classmethod
    def decode(cls, decoder: Decoder) -> ServerHandshake:
        """Read a server hello; fields present depend on the server revision."""

        def read(what: str, reader: Any) -> Any:
            try:
                return reader()
            except (EOFError, ValueError, UnicodeDecodeError) as exc:
                raise ValueError(f"could not read server {what}: {exc}") from exc

        srv = cls()
        srv.name = read("name", decoder.string)
        srv.version.major = read("major version", decoder.uvarint)
        srv.version.minor = read("minor version", decoder.uvarint)
        srv.revision = read("revision", decoder.uvarint)
        if srv.revision >= DBMS_MIN_REVISION_WITH_SERVER_TIMEZONE:
            zone_name = read("timezone", decoder.string)
            try:
                srv.timezone = timezone.load(zone_name)
            except (KeyError, ValueError, OSError) as exc:
                raise ValueError(f"could not load time location: {exc}") from exc
        if srv.revision >= DBMS_MIN_REVISION_WITH_SERVER_DISPLAY_NAME:
            srv.display_name = read("display name", decoder.string)
        if srv.revision >= DBMS_MIN_REVISION_WITH_VERSION_PATCH:
            srv.version.patch = read("patch", decoder.uvarint)
        else:
            srv.version.patch = srv.revision
        return srv

    def __str__(self) -> str:
        zone = "UTC" if self.timezone is None else str(self.timezone)
        v = self.version
        return (
            f"{self.name} ({self.display_name}) server version "
            f"{v.major}.{v.minor}.{v.patch} revision {self.revision} (timezone {zone})"
        )


@dataclasses.dataclass
class ProfileInfo:
    """Execution statistics sent by the server at the end of a query."""

    rows: int = 0
    bytes: int = 0
    blocks: int = 0
    applied_limit: bool = False
    rows_before_limit: int = 0
    calculated_rows_before_limit: bool = False

    @classmethod
    def decode(cls, decoder: Decoder, revision: int) -> ProfileInfo:
        rows = decoder.uvarint()
        blocks = decoder.uvarint()
        size = decoder.uvarint()
        applied_limit = decoder.bool()
        rows_before_limit = decoder.uvarint()
        calculated = decoder.bool()
        return cls(rows, size, blocks, applied_limit, rows_before_limit, calculated)

    def __str__(self) -> str:
        return (
            f"rows={self.rows}, bytes={self.bytes}, blocks={self.blocks}, "
            f"rows before limit={self.rows_before_limit}, "
            f"applied limit={_fmt_bool(self.applied_limit)}, "
            f"calculated rows before limit={_fmt_bool(self.calculated_rows_before_limit)}"
        )


@dataclasses.dataclass
class Progress:
    """Progress of a running query."""

    rows: int = 0
    bytes: int = 0
    total_rows: int = 0
    wrote_rows: int = 0
    wrote_bytes: int = 0
    with_client: bool = False

    @classmethod
    def decode(cls, decoder: Decoder, revision: int) -> Progress:
        progress = cls(decoder.uvarint(), decoder.uvarint(), decoder.uvarint())
        if revision >= DBMS_MIN_REVISION_WITH_CLIENT_WRITE_INFO:
            progress.with_client = True
            progress.wrote_rows = decoder.uvarint()
            progress.wrote_bytes = decoder.uvarint()
        return progress

    def __str__(self) -> str:
        text = f"rows={self.rows}, bytes={self.bytes}, total rows={self.total_rows}"
        if not self.with_client:
            return text
        return f"{text}, wrote rows={self.wrote_rows} wrote bytes={self.wrote_bytes}"


@dataclasses.dataclass
class TableColumns:
    """Table column description sent by the server before an insert."""

    first: str = ""
    second: str = ""

    @classmethod
    def decode(cls, decoder: Decoder, revision: int) -> TableColumns:
        return cls(decoder.string(), decoder.string())

    def __str__(self) -> str:
        return f"first={self.first}, second={self.second}"


@dataclasses.dataclass
class SpanContext:
    """Tracing context passed along with a query."""

    trace_id: bytes = bytes(16)
    span_id: bytes = bytes(8)
    trace_state: str = ""
    trace_flags: int = 0

    def is_valid(self) -> bool:
        """True when both the trace id and the span id are set."""
        return (
            len(self.trace_id) == 16
            and len(self.span_id) == 8
            and any(self.trace_id)
            and any(self.span_id)
        )


@dataclasses.dataclass
class Setting:
    """A query setting sent to the server."""

    key: str
    value: Any

    def encode(self, encoder: Encoder, revision: int) -> None:
        encoder.string(self.key)
        if revision <= DBMS_MIN_REVISION_WITH_SETTINGS_SERIALIZED_AS_STRINGS:
            if isinstance(self.value, bool):
                number = 1 if self.value else 0
            elif isinstance(self.value, int):
                number = self.value & _UINT64_MASK
            else:
                raise TypeError(f"query setting {self.key} has unsupported data type")
            encoder.uvarint(number)
            return
        encoder.bool(True)  # is_important
        value = _fmt_bool(self.value) if isinstance(self.value, bool) else str(self.value)
        encoder.string(value)


def encode_settings(settings: Iterable[Setting], encoder: Encoder, revision: int) -> None:
    """Write each setting in turn; the end marker is left to the caller."""
    for setting in settings:
        setting.encode(encoder, revision)


@dataclasses.dataclass
class Query:
    """A query packet body."""

    id: str = ""
    span: SpanContext = dataclasses.field(default_factory=SpanContext)
    body: str = ""
    quota_key: str = ""
    settings: list[Setting] = dataclasses.field(default_factory=list)
    compression: bool = False
    initial_user: str = ""
    initial_address: str = ""

    def encode(self, encoder: Encoder, revision: int) -> None:
        encoder.string(self.id)
        self._encode_client_info(encoder, revision)
        encode_settings(self.settings, encoder, revision)
        encoder.string("")  # end of settings
        if revision >= DBMS_MIN_REVISION_WITH_INTERSERVER_SECRET:
            encoder.string("")
        encoder.byte(STATE_COMPLETE)
        encoder.bool(self.compression)
        encoder.string(self.body)

    def _encode_client_info(self, encoder: Encoder, revision: int) -> None:
        encoder.byte(CLIENT_QUERY_INITIAL)
        encoder.string(self.initial_user)
        encoder.string("")  # initial_query_id
        encoder.string(self.initial_address)
        if revision >= DBMS_MIN_PROTOCOL_VERSION_WITH_INITIAL_QUERY_START_TIME:
            encoder.int64(0)
        encoder.byte(INTERFACE_TCP)
        encoder.string(OS_USER)
        encoder.string(HOSTNAME)
        encoder.string(CLIENT_NAME)
        encoder.uvarint(CLIENT_VERSION_MAJOR)
        encoder.uvarint(CLIENT_VERSION_MINOR)
        encoder.uvarint(CLIENT_TCP_PROTOCOL_VERSION)
        if revision >= DBMS_MIN_REVISION_WITH_QUOTA_KEY_IN_CLIENT_INFO:
            encoder.string(self.quota_key)
        if revision >= DBMS_MIN_PROTOCOL_VERSION_WITH_DISTRIBUTED_DEPTH:
            encoder.uvarint(0)
        if revision >= DBMS_MIN_REVISION_WITH_VERSION_PATCH:
            encoder.uvarint(0)
        if revision >= DBMS_MIN_REVISION_WITH_OPENTELEMETRY:
            if self.span.is_valid():
                encoder.byte(1)
                encoder.raw(self.span.trace_id)
                encoder.raw(self.span.span_id)
                encoder.string(self.span.trace_state)
                encoder.byte(self.span.trace_flags & 0xFF)
            else:
                encoder.byte(0)
        if revision >= DBMS_MIN_REVISION_WITH_PARALLEL_REPLICAS:
            encoder.uvarint(0)  # collaborate_with_initiator
            encoder.uvarint(0)  # count_participating_replicas
            encoder.uvarint(0)  # number_of_current_replica