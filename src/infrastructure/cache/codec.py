"""
Cache Value Codecs

L1 holds live Python objects; only L2 sees serialized text. A codec turns a
value into the string stored in Redis and back.

Author: System Architect
Date: 2025-12-13
"""

from typing import Any, Generic, Protocol, TypeVar

import orjson
from pydantic import BaseModel

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)


class Codec(Protocol[T]):
    def encode(self, value: T) -> str: ...

    def decode(self, raw: str) -> T: ...


class JsonCodec:
    """orjson encoding for plain JSON-compatible values."""

    def encode(self, value: Any) -> str:
        return orjson.dumps(value).decode("utf-8")

    def decode(self, raw: str) -> Any:
        return orjson.loads(raw)


class PydanticCodec(Generic[M]):
    """Encode a pydantic model with its own JSON serializer."""

    def __init__(self, model: type[M]):
        self._model = model

    def encode(self, value: M) -> str:
        return value.model_dump_json()

    def decode(self, raw: str) -> M:
        return self._model.model_validate_json(raw)
