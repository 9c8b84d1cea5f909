# chnative

Pieces of the ClickHouse native TCP protocol as a Python library: typed
columns, data blocks, client and server messages, and the LZ4 framed
stream used when compression is on.

## Install

```
pip install chnative
```

For running the test suite:

```
pip install "chnative[test]"
pytest
```

## What is in it

- `chnative.stream`
  - `Stream` wraps any object with `read(size)` and `write(data)` methods,
    for example `socket.makefile("rwb")`. Writes are buffered until
    `flush()`. `compress(True)` switches reads and writes to LZ4 frames.
  - `Encoder` and `Decoder` write and read the protocol's primitive values:
    unsigned varints, length-prefixed UTF-8 strings, booleans, single bytes,
    `int32`, `int64` and `uint64` (little-endian), and raw bytes.
- `chnative.compress`
  - `Reader` unpacks LZ4 compressed frames from a byte source.
  - `Method` lists the method markers `NONE`, `LZ4` and `ZSTD`.
  - `CompressionError` is raised for a bad frame or a method other than LZ4.
- `chnative.timezone`: `load(name)` returns a `tzinfo` and caches it.
  `""` and `"UTC"` give UTC, `"Local"` gives the local zone, and any other
  name is looked up with `zoneinfo`.
- `chnative.columns`
  - `StringColumn`, `UUIDColumn`, `NothingColumn`, `Nullable` and
    `SimpleAggregateFunction`, all built on the `Column` base class.
    A column has `rows()`, `row(i)`, `append(values)`, `append_row(value)`,
    `decode(decoder, rows)` and `encode(encoder)`.
  - Helpers: `type_params(type_name)` and `swap_uuid_bytes(data)`.
- `chnative.composite`
  - `LowCardinality`, `MapColumn` and `TupleColumn`.
  - `column_for(type_name)` builds an empty column from a type name such as
    `"Map(String, UUID)"`, `"Tuple(a String, b Nullable(UUID))"` or
    `"LowCardinality(Nullable(String))"`.
  - `tuple_element_types(type_name)` splits a tuple type into its element
    types. `nested_columns(raw)` turns the parameters of a `Nested(...)`
    type into the element types of the equivalent `Array(Tuple(...))`.
- `chnative.block`
  - `Block` holds named columns. It encodes or decodes a whole data packet
    body, and writes the block info header when `revision > 0`.
  - `ClientPacket` and `ServerPacket` list the packet codes. The module also
    defines the protocol revision constants (`DBMS_*`).
- `chnative.scan`
  - `StructMap.map` reads values from the fields of a dataclass by column
    name, and `StructMap.assign` writes them.
  - A field can take another column name through its `"ch"` metadata key.
    `"-"` skips the field, and `"embed"` merges in the fields of a nested
    dataclass.
  - `scan(block, row, count)` returns the values of a 1-based row.
- `chnative.messages`: `ClientHandshake`, `ServerHandshake`,
  `ServerVersion`, `Query`, `Setting`, `encode_settings`, `SpanContext`,
  `ServerException`, `Progress`, `ProfileInfo` and `TableColumns`.

## Example

```python
import io

from chnative.block import Block
from chnative.stream import Decoder, Encoder

block = Block()
block.add_column("name", "String")
block.add_column("tag", "LowCardinality(String)")
block.append("alpha", "x")
block.append("beta", "x")

buffer = io.BytesIO()
block.encode(Encoder(buffer), revision=0)

buffer.seek(0)
decoded = Block()
decoded.decode(Decoder(buffer), revision=0)
print(decoded.column_names(), decoded.rows())  # ['name', 'tag'] 2
```

Errors are raised as exceptions:

- `ColumnError`, `ColumnConverterError` and `UnsupportedColumnTypeError`
  for column problems.
- `BlockError` for block problems.
- `OpError` for scanning.
- `CompressionError` for bad frames.
- `ServerException` for an error sent by the server, once decoded.

## What it does not do

- **No connections.** There is no client: nothing opens a socket, runs the
  hello exchange, or sends queries and reads their results. The messages
  and blocks are there to encode and decode; driving a connection is left
  to the caller.
- **Few column types.** `column_for` knows only `String`, `UUID`,
  `Nothing`, `Nullable`, `LowCardinality`, `SimpleAggregateFunction`,
  `Map` and `Tuple`. Numeric, date and time, decimal, enum, array and
  `Nested` columns are not provided. A block that contains one of them
  raises `UnsupportedColumnTypeError`.
- **LZ4 only.** Compressed frames must use LZ4; ZSTD frames are rejected.
- **No block checksums.** Incoming frames are not checked, and frames
  written by `Stream` carry a zeroed checksum field.