"""Helpers for deriving git-safe partition and branch names."""

from __future__ import annotations

import hashlib
import re
from typing import Pattern

_UNSAFE_PATTERN: Pattern[str] = re.compile(r"[^a-z0-9_.-]+")
_HYPHEN_COLLAPSE = re.compile(r"-{2,}")
_DOT_COLLAPSE = re.compile(r"\.{2,}")


def slugify(value: str | None, *, fallback: str = "item", max_length: int = 48) -> str:
    """Normalize ``value`` into a lowercase slug usable inside a git ref."""
    source = (value or "").strip().lower() or fallback.lower()
    slug = _normalize(source)
    if not slug:
        slug = _normalize(fallback.lower()) or "item"
    if len(slug) > max_length:
        slug = abbreviate_slug(slug, max_length=max_length)
    return slug


def abbreviate_slug(segment: str, *, max_length: int = 48) -> str:
    """Trim ``segment`` to ``max_length`` while preserving uniqueness via hashing."""
    slug = segment.strip("-.")
    if len(slug) <= max_length:
        return slug
    digest = hashlib.sha256(slug.encode("utf-8")).hexdigest()[:8]
    prefix = slug[: max(max_length - len(digest) - 1, 1)].rstrip("-.")
    return f"{prefix}-{digest}"


def partition_name(index: int, label: str) -> str:
    """Return the stack position-prefixed name, e.g. ``02-data-access``."""
    return f"{index + 1:02d}-{slugify(label, fallback='partition')}"


def branch_name(prefix: str, name: str) -> str:
    """Join ``prefix`` and ``name`` into a branch, keeping each component safe."""
    parts = [slugify(part, fallback="stack") for part in prefix.split("/") if part.strip()]
    parts.append(slugify(name, fallback="partition", max_length=64))
    return "/".join(parts)


def _normalize(value: str) -> str:
    slug = _UNSAFE_PATTERN.sub("-", value)
    slug = _DOT_COLLAPSE.sub(".", slug)
    slug = _HYPHEN_COLLAPSE.sub("-", slug)
    slug = slug.strip("-.")
    if slug.endswith(".lock"):
        slug = slug[: -len(".lock")]
    return slug


__all__ = ["abbreviate_slug", "branch_name", "partition_name", "slugify"]
