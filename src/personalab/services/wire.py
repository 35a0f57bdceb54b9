"""Framing for the chat stream and the state-sync stream."""

from __future__ import annotations

import json
from typing import Any, Mapping, Protocol, Union

from ..utils.file_io import json_default

__all__ = ["SSE_KEEPALIVE", "encode_sse", "encode_ndjson", "to_record"]

SSE_KEEPALIVE = b": keepalive\n\n"


class _SupportsDict(Protocol):
    def to_dict(self) -> dict[str, Any]:
        ...


class _SupportsRecord(Protocol):
    def to_record(self) -> dict[str, Any]:
        ...


Recordable = Union[Mapping[str, Any], _SupportsDict, _SupportsRecord]


def to_record(item: Recordable) -> dict[str, Any]:
    """Return the JSON-ready mapping for an event or a plain mapping."""

    if isinstance(item, Mapping):
        return dict(item)
    to_record_method = getattr(item, "to_record", None)
    if callable(to_record_method):
        return to_record_method()
    to_dict_method = getattr(item, "to_dict", None)
    if callable(to_dict_method):
        return to_dict_method()
    raise TypeError(f"Cannot encode {type(item).__name__} as a stream record")


def _dumps(item: Recordable) -> str:
    return json.dumps(
        to_record(item), separators=(",", ":"), ensure_ascii=False, default=json_default
    )


def encode_sse(item: Recordable) -> bytes:
    """Frame one record as a server-sent event: ``data: <json>\\n\\n``."""

    return f"data: {_dumps(item)}\n\n".encode("utf-8")


def encode_ndjson(item: Recordable) -> bytes:
    """Frame one record as a newline-delimited JSON line."""

    return f"{_dumps(item)}\n".encode("utf-8")
