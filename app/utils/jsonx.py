"""JSON serialisation helpers tolerant of LLM style output."""

from __future__ import annotations

from collections.abc import Set as AbstractSet
import json
import re
from typing import Any

_BUFFER_TYPES = (bytes, bytearray, memoryview)
_FENCE_PATTERN = re.compile(r"^```(?:json|JSON)?\s*|\s*```$")

__all__ = [
    "extract_json_block",
    "safe_dumps",
    "safe_loads",
    "strip_code_fences",
]


def _default(value: Any) -> Any:
    if isinstance(value, AbstractSet):
        try:
            return sorted(value)
        except TypeError:
            return sorted(value, key=repr)
    return str(value)


def safe_dumps(obj: Any) -> str:
    """Serialise ``obj`` to JSON using deterministic formatting."""

    return json.dumps(
        obj,
        ensure_ascii=False,
        separators=(",", ":"),
        sort_keys=True,
        default=_default,
    )


def safe_loads(data: str | bytes | bytearray | memoryview) -> Any:
    """Parse JSON data strictly, rejecting blank inputs."""

    if isinstance(data, _BUFFER_TYPES):
        buffer = data if isinstance(data, bytes) else bytes(data)
        if not buffer.strip():
            raise ValueError("data must not be empty")
        return json.loads(buffer)
    if isinstance(data, str):
        stripped = data.strip()
        if not stripped:
            raise ValueError("data must not be empty")
        return json.loads(stripped)
    raise TypeError("data must be str or bytes")


def strip_code_fences(text: str) -> str:
    """Remove a surrounding markdown code fence (```json ... ```)."""

    return _FENCE_PATTERN.sub("", text.strip()).strip()


def extract_json_block(text: str) -> str:
    """Trim prose around the JSON document embedded in ``text``.

    Everything before the first ``[``/``{`` and after the last ``]``/``}`` is
    dropped; unbalanced documents are left for the repair pass.
    """

    cleaned = strip_code_fences(text)
    starts = [index for index in (cleaned.find("["), cleaned.find("{")) if index >= 0]
    if not starts:
        return cleaned
    start = min(starts)
    end = max(cleaned.rfind("]"), cleaned.rfind("}"))
    if end < start:
        return cleaned[start:]
    return cleaned[start : end + 1]
