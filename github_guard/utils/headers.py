"""Helpers for reading HTTP headers regardless of their casing."""

from typing import Any, Dict, Mapping, Optional


def normalize_headers(headers: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    """Return a copy of ``headers`` with lower-cased names.

    List values (as some frameworks produce for repeated headers) collapse to
    their first element; ``None`` values are dropped.
    """
    normalized: Dict[str, str] = {}
    if not headers:
        return normalized
    for name, value in headers.items():
        if value is None:
            continue
        if isinstance(value, (list, tuple)):
            if not value:
                continue
            value = value[0]
        normalized[str(name).lower()] = str(value)
    return normalized


def parse_int_header(headers: Mapping[str, str], name: str) -> Optional[int]:
    """Parse an integer header from already-normalized headers, None if absent or malformed."""
    raw = headers.get(name)
    if raw is None:
        return None
    try:
        return int(str(raw).strip())
    except ValueError:
        try:
            return int(float(str(raw).strip()))
        except (ValueError, OverflowError):
            return None
