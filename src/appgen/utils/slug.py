"""Helpers for turning free text into slugs and human project names."""

from __future__ import annotations

import hashlib
import re
from datetime import datetime
from typing import Pattern

_SLUG_PATTERN: Pattern[str] = re.compile(r"[^a-z0-9_.-]+")
_HYPHEN_COLLAPSE = re.compile(r"-{2,}")
_NON_WORD = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")

_APP_TERMS = (
    "app",
    "application",
    "miniapp",
    "mini app",
    "dashboard",
    "platform",
    "tool",
    "game",
    "player",
    "gallery",
    "blog",
    "store",
    "shop",
)

__all__ = ["fallback_project_name", "generate_project_name", "slugify"]


def slugify(value: str | None, *, fallback: str = "item", max_length: int = 80) -> str:
    """Normalize ``value`` into a lowercase, filesystem-friendly slug."""
    slug = _normalize((value or "").strip().lower()) or _normalize(fallback.lower()) or "item"
    if len(slug) <= max_length:
        return slug
    digest = hashlib.sha256(slug.encode("utf-8")).hexdigest()[:8]
    prefix = slug[: max(max_length - len(digest) - 1, 1)].rstrip("-")
    return f"{prefix}-{digest}"


def _normalize(value: str) -> str:
    slug = _SLUG_PATTERN.sub("-", value)
    slug = _HYPHEN_COLLAPSE.sub("-", slug)
    return slug.strip("-")


def fallback_project_name(prefix: str = "Project", *, now: datetime | None = None) -> str:
    """``Project Jan 5`` style name used when no feature is known."""
    moment = now or datetime.now()
    return f"{prefix} {moment.strftime('%b')} {moment.day}"


def generate_project_name(feature: str, *, now: datetime | None = None) -> str:
    """Title-case the intent feature and make sure it reads like an app name."""
    words = _WHITESPACE.sub(" ", _NON_WORD.sub(" ", feature.lower())).strip()
    if not words:
        return fallback_project_name(now=now)
    name = " ".join(word[:1].upper() + word[1:] for word in words.split(" "))
    lowered = name.lower()
    if not any(term in lowered for term in _APP_TERMS):
        name += " App"
    if "bootstrap" in lowered or "template" in lowered:
        return fallback_project_name("Miniapp", now=now)
    return name
