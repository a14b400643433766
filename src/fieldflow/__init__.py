"""fieldflow kernel utilities."""

from .jsonutil import JsonTypeError, canonical_dumps, json_safe
from .timestamps import now_iso, parse_iso, to_iso, utcnow

__all__ = [
    "JsonTypeError",
    "canonical_dumps",
    "json_safe",
    "now_iso",
    "parse_iso",
    "to_iso",
    "utcnow",
]
