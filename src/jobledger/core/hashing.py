from __future__ import annotations

import hashlib
import re
import unicodedata

_WHITESPACE = re.compile(r"\s+")
_TOKEN = re.compile(r"\w+")


def normalize_text(value: str) -> str:
    value = unicodedata.normalize("NFKC", value)
    return _WHITESPACE.sub(" ", value).strip().lower()


def content_hash(value: str) -> str:
    return hashlib.sha256(normalize_text(value).encode("utf-8")).hexdigest()


def file_checksum(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def tokenize(value: str | None) -> frozenset[str]:
    if not value:
        return frozenset()
    return frozenset(_TOKEN.findall(normalize_text(value)))


def jaccard(left: frozenset[str] | set[str], right: frozenset[str] | set[str]) -> float:
    if not left or not right:
        return 0.0
    return len(left & right) / len(left | right)


def same_field(left: str | None, right: str | None) -> bool:
    """True when both values are present and equal after normalization."""
    if not left or not right:
        return False
    left_norm = normalize_text(left)
    return bool(left_norm) and left_norm == normalize_text(right)
