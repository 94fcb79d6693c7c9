"""Turn OS identifiers into segments docker accepts in names and references."""

from __future__ import annotations

import hashlib
import re
from typing import Pattern

# Repository path components must be lowercase; container names may keep case.
_REFERENCE_INVALID: Pattern[str] = re.compile(r"[^a-z0-9_.-]+")
_CONTAINER_INVALID: Pattern[str] = re.compile(r"[^A-Za-z0-9_.-]+")
_REPEATED_HYPHENS = re.compile(r"-{2,}")

MAX_SEGMENT_LENGTH = 63


def slugify(value: str | None, *, lowercase: bool = True, max_length: int = MAX_SEGMENT_LENGTH) -> str:
    """Return ``value`` reduced to characters valid in a docker name segment.

    Over-long segments keep a prefix plus a short digest of the full value so
    two long identifiers sharing a prefix still map to distinct names.
    """
    text = (value or "").strip()
    if lowercase:
        text = text.lower()
    invalid = _REFERENCE_INVALID if lowercase else _CONTAINER_INVALID
    segment = _REPEATED_HYPHENS.sub("-", invalid.sub("-", text)).strip("-.")
    if not segment:
        raise ValueError(f"Cannot derive a docker name segment from {value!r}")
    if len(segment) <= max_length:
        return segment
    digest = hashlib.sha256(segment.encode("utf-8")).hexdigest()[:8]
    return f"{segment[: max_length - len(digest) - 1].rstrip('-.')}-{digest}"
