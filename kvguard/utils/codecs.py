"""Payload codecs for cached values.

A codec turns a loader result into bytes for the store and back. Decoding a
corrupt or incompatible payload raises ``DecodeFailedError``, which the cache
coordinator treats as a miss.
"""

from __future__ import annotations

import json
from typing import Any, Generic, Protocol, TypeVar

from pydantic import TypeAdapter, ValidationError

from kvguard.core.errors import DecodeFailedError

T = TypeVar("T")


class Codec(Protocol[T]):
    """Encode/decode pair for cached payloads."""

    def encode(self, value: T) -> bytes: ...

    def decode(self, payload: bytes) -> T: ...


class JsonCodec:
    """JSON codec for plain dicts, lists and scalars."""

    def encode(self, value: Any) -> bytes:
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False).encode("utf-8")

    def decode(self, payload: bytes) -> Any:
        try:
            return json.loads(payload)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise DecodeFailedError(
                code="decode_failed",
                message=f"Cached payload is not valid JSON: {exc}",
            ) from exc


class ModelCodec(Generic[T]):
    """Codec validating payloads against a type via pydantic.

    Works for BaseModel subclasses as well as any type pydantic can adapt
    (e.g. ``list[Post]``), so a schema change turns old entries into misses
    instead of errors.
    """

    def __init__(self, type_: type[T]) -> None:
        self._adapter: TypeAdapter[T] = TypeAdapter(type_)

    def encode(self, value: T) -> bytes:
        return self._adapter.dump_json(value)

    def decode(self, payload: bytes) -> T:
        try:
            return self._adapter.validate_json(payload)
        except ValidationError as exc:
            raise DecodeFailedError(
                code="decode_failed",
                message=f"Cached payload failed validation: {exc.error_count()} error(s)",
            ) from exc
