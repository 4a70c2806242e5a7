from __future__ import annotations

from typing import Any, Type, TypeVar

from pydantic import BaseModel

T = TypeVar("T", bound=BaseModel)


def encode_message(msg: BaseModel) -> bytes:
    """
    Encode a wire model as UTF-8 JSON bytes.
    """
    return msg.model_dump_json().encode("utf-8")


def decode_message(model: Type[T], raw: bytes | str) -> T:
    """
    Decode and validate JSON into the given wire model.
    """
    raw_in: Any = raw if isinstance(raw, bytes) else raw.encode("utf-8")
    return model.model_validate_json(raw_in)
