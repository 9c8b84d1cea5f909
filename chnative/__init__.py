"""ClickHouse native protocol: columns, blocks, messages and compressed streams."""

__version__ = "0.1.0"

__all__ = ["block", "columns", "composite", "compress", "messages", "scan", "stream", "timezone"]