"""Slug helpers for branch names and generated file names."""

from __future__ import annotations

import hashlib
import re
import unicodedata
from typing import Pattern

_NON_WORD: Pattern[str] = re.compile(r"[^a-z0-9]+")


def slugify(
    value: str | None,
    *,
    fallback: str = "item",
    max_length: int = 80,
    separator: str = "-",
    digest: bool = True,
) -> str:
    """Return an ASCII, lowercase slug of ``value`` joined by ``separator``.

    Slugs longer than ``max_length`` get a short digest suffix, or are simply
    cut when ``digest`` is false.
    """
    ascii_text = unicodedata.normalize("NFKD", value or "").encode("ascii", "ignore").decode("ascii")
    slug = _NON_WORD.sub(separator, ascii_text.lower()).strip(separator)
    if not slug:
        slug = _NON_WORD.sub(separator, fallback.lower()).strip(separator) or "item"
    if len(slug) > max_length and not digest:
        slug = slug[:max_length].strip(separator) or fallback
    elif len(slug) > max_length:
        slug = abbreviate_slug(slug, max_length=max_length, separator=separator)
    return slug


def abbreviate_slug(segment: str, *, max_length: int = 80, separator: str = "-") -> str:
    """Trim ``segment`` to ``max_length`` keeping it unique with a short digest."""
    slug = segment.strip(separator)
    if len(slug) <= max_length:
        return slug
    digest = hashlib.sha256(slug.encode("utf-8")).hexdigest()[:8]
    prefix_length = max(max_length - len(digest) - 1, 1)
    prefix = slug[:prefix_length].rstrip(separator) or slug[:prefix_length]
    return f"{prefix}{separator}{digest}"


__all__ = ["abbreviate_slug", "slugify"]
