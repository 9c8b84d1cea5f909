"""Cached lookup of time zones by name."""

from __future__ import annotations

import threading
from datetime import datetime, timezone, tzinfo
from zoneinfo import ZoneInfo

_lock = threading.Lock()
_cache: dict[str, tzinfo] = {}


def _resolve(name: str) -> tzinfo:
    if name in ("", "UTC"):
        return timezone.utc
    if name == "Local":
        local = datetime.now().astimezone().tzinfo
        return local if local is not None else timezone.utc
    return ZoneInfo(name)


def load(name: str) -> tzinfo:
    """Return the time zone called ``name``, loading it once and caching it.

    Unknown names raise ``zoneinfo.ZoneInfoNotFoundError`` and are not cached.
    """
    with _lock:
        zone = _cache.get(name)
        if zone is None:
            zone = _resolve(name)
            _cache[name] = zone
        return zone