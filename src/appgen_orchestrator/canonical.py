from __future__ import annotations

import logging
from enum import Enum
from pathlib import PurePath
from typing import Any

import rfc8785
from pydantic import BaseModel

logger = logging.getLogger(__name__)

_PASSTHROUGH_TYPES = (bool, int, float, str, type(None))


def _normalize_for_jcs(value: Any) -> bool | int | float | str | None | list[Any] | dict[str, Any]:
    """Convert pydantic models, enums and paths into JSON primitives for rfc8785.

    Raises:
        TypeError: If ``value`` holds a type with no JSON representation.
    """
    if isinstance(value, _PASSTHROUGH_TYPES):
        return value
    if isinstance(value, BaseModel):
        return _normalize_for_jcs(value.model_dump(mode="json", by_alias=True))
    if isinstance(value, dict):
        return {str(key): _normalize_for_jcs(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize_for_jcs(item) for item in value]
    if isinstance(value, Enum):
        return _normalize_for_jcs(value.value)
    if isinstance(value, PurePath):
        return value.as_posix()
    raise TypeError(f"Cannot serialize type {type(value).__name__} to canonical JSON")


def to_canonical_json(value: Any) -> str:
    """Serialize ``value`` to RFC 8785 canonical JSON.

    Object keys are ordered by UTF-16 code units and non-ASCII text is emitted
    as-is, so equal codebases always produce byte-identical artifacts.
    """
    return rfc8785.dumps(_normalize_for_jcs(value)).decode("utf-8")

