from __future__ import annotations

import json
from collections.abc import Mapping
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel


def _json_default(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    return str(value)


def encode_jsonb(value: Any) -> str:
    """Serialize plan data into a JSON string suitable for jsonb columns."""
    try:
        return json.dumps(value)
    except TypeError:
        return json.dumps(value, default=_json_default)


def decode_jsonb(value: Any) -> Any:
    """Decode a jsonb column value into native Python structures."""
    if value is None:
        return None
    if isinstance(value, Mapping):
        return dict(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        value = bytes(value).decode("utf-8")
    if isinstance(value, str):
        return json.loads(value)
    return value


def extract_json_object(text: str) -> dict[str, Any] | None:
    """Return the first balanced JSON object embedded in ``text``.

    Chat models often wrap the requested JSON in prose or code fences, so the
    scan tracks brace depth outside string literals instead of parsing the
    whole payload.
    """
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    candidate = text[start : index + 1]
                    try:
                        decoded = json.loads(candidate)
                    except json.JSONDecodeError:
                        break
                    if isinstance(decoded, dict):
                        return decoded
                    break
        start = text.find("{", start + 1)
    return None
