"""Compute the queue fingerprint used as an optimistic-concurrency token."""

from __future__ import annotations

import hashlib
import json
from typing import Any, Iterable


def _identity_pairs(subtasks: Iterable[Any]) -> list[list[Any]]:
    pairs: list[list[Any]] = []
    for subtask in subtasks:
        if isinstance(subtask, dict):
            pairs.append([str(subtask.get("id") or ""), subtask.get("done") is True])
        else:
            pairs.append([subtask.id, bool(subtask.done)])
    return pairs


def compute_fingerprint(subtasks: Iterable[Any]) -> str:
    """Return the sha256 hex digest over the ordered ``(id, done)`` pairs.

    Titles, descriptions, criteria and every other field are ignored, so two
    queues with the same identity/completion shape share a fingerprint.

    Args:
        subtasks: ``Subtask`` objects or raw subtask mappings, in queue order.

    Returns:
        A 64-character lowercase hex string.
    """
    encoded = json.dumps(_identity_pairs(subtasks), separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()
