"""Provide timestamp and naming helpers."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Optional

_SLUG_RE = re.compile(r"[^A-Za-z0-9._-]+")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _utc_date(now: Optional[datetime] = None) -> str:
    """Return the UTC calendar date (``YYYY-MM-DD``) for *now*."""
    stamp = now or datetime.now(timezone.utc)
    if stamp.tzinfo is not None:
        stamp = stamp.astimezone(timezone.utc)
    return stamp.strftime("%Y-%m-%d")


def _file_timestamp(now: Optional[datetime] = None) -> str:
    stamp = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    return stamp.strftime("%Y-%m-%dT%H-%M-%S-%fZ")


def _slugify(value: str) -> str:
    slug = _SLUG_RE.sub("-", value.strip()).strip("-")
    return slug or "unnamed"
