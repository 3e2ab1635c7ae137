"""Parse untyped JSON payloads into queue operations, drafts and proposals.

Reviewer replies are parsed leniently (invalid entries return ``None`` and are
dropped by the caller with a warning). Proposal files and CLI payloads come
from humans or disk and are parsed strictly, raising ``ProposalFormatError``.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from ..models import (
    CreateOperation,
    ProposalFormatError,
    QueueOperation,
    QueueProposal,
    RemoveOperation,
    ReorderOperation,
    SplitOperation,
    SubtaskDraft,
    UpdateOperation,
)


def _is_string_list(value: Any) -> bool:
    return isinstance(value, list) and all(isinstance(item, str) for item in value)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _non_empty_str(value: Any) -> bool:
    return isinstance(value, str) and value.strip() != ""


def parse_subtask_draft(value: Any) -> Optional[SubtaskDraft]:
    if not isinstance(value, dict):
        return None
    if not (
        _is_string_list(value.get("acceptanceCriteria"))
        and value["acceptanceCriteria"]
        and isinstance(value.get("description"), str)
        and _is_string_list(value.get("filesToRead"))
        and isinstance(value.get("taskRef"), str)
        and isinstance(value.get("title"), str)
    ):
        return None
    return SubtaskDraft.from_dict(value)


def parse_update_changes(value: Any) -> Optional[dict[str, Any]]:
    if not isinstance(value, dict):
        return None
    changes: dict[str, Any] = {}
    for key in ("title", "description"):
        if isinstance(value.get(key), str):
            changes[key] = value[key]
    for key in ("acceptanceCriteria", "filesToRead"):
        if _is_string_list(value.get(key)):
            changes[key] = list(value[key])
    if changes.get("acceptanceCriteria") == []:
        return None
    if "storyRef" in value:
        story_ref = value["storyRef"]
        if story_ref is None or _non_empty_str(story_ref):
            changes["storyRef"] = story_ref
    return changes


def parse_queue_operation(value: Any) -> Optional[QueueOperation]:
    """Return a typed operation for *value*, or ``None`` when it is malformed."""
    if not isinstance(value, dict) or not isinstance(value.get("type"), str):
        return None
    kind = value["type"]
    target = value.get("id")

    if kind == "create":
        draft = parse_subtask_draft(value.get("subtask"))
        if not _is_int(value.get("atIndex")) or draft is None:
            return None
        return CreateOperation(at_index=value["atIndex"], subtask=draft)

    if not _non_empty_str(target):
        return None

    if kind == "remove":
        return RemoveOperation(id=target)
    if kind == "reorder":
        if not _is_int(value.get("toIndex")):
            return None
        return ReorderOperation(id=target, to_index=value["toIndex"])
    if kind == "update":
        changes = parse_update_changes(value.get("changes"))
        if changes is None:
            return None
        return UpdateOperation(id=target, changes=changes)
    if kind == "split":
        raw_children = value.get("subtasks")
        if not isinstance(raw_children, list) or not raw_children:
            return None
        drafts = [parse_subtask_draft(child) for child in raw_children]
        if any(draft is None for draft in drafts):
            return None
        return SplitOperation(id=target, subtasks=tuple(drafts))  # type: ignore[arg-type]
    return None


def parse_queue_operations(value: Any, context: str) -> list[QueueOperation]:
    """Parse a reviewer-supplied operations list, dropping invalid entries."""
    if value is None:
        return []
    if not isinstance(value, list):
        logger.warning("[{}] Ignoring invalid operations payload (must be an array)", context)
        return []
    operations: list[QueueOperation] = []
    for index, raw in enumerate(value):
        parsed = parse_queue_operation(raw)
        if parsed is None:
            logger.warning("[{}] Ignoring invalid queue operation at index {}", context, index)
            continue
        operations.append(parsed)
    return operations


# ---------------------------------------------------------------------------
# Proposal artifacts
# ---------------------------------------------------------------------------

def proposal_from_dict(data: Any) -> QueueProposal:
    if not isinstance(data, dict):
        raise ProposalFormatError("Proposal must be a JSON object")
    fingerprint = data.get("fingerprint")
    if not isinstance(fingerprint, dict) or not _non_empty_str(fingerprint.get("hash")):
        raise ProposalFormatError("Proposal requires fingerprint.hash")
    raw_operations = data.get("operations")
    if not isinstance(raw_operations, list):
        raise ProposalFormatError("Proposal requires operations array")
    if not _non_empty_str(data.get("source")):
        raise ProposalFormatError("Proposal requires source string")
    if not _non_empty_str(data.get("timestamp")):
        raise ProposalFormatError("Proposal requires timestamp string")

    operations: list[QueueOperation] = []
    for index, raw in enumerate(raw_operations):
        parsed = parse_queue_operation(raw)
        if parsed is None:
            raise ProposalFormatError(f"Proposal operation at index {index} is invalid")
        operations.append(parsed)

    return QueueProposal(
        fingerprint=fingerprint["hash"],
        operations=tuple(operations),
        source=data["source"],
        timestamp=data["timestamp"],
    )


def read_queue_proposal_from_file(path: Path) -> QueueProposal:
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ProposalFormatError(f"Failed to read proposal {path}: {exc}") from exc
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ProposalFormatError(f"Failed to parse proposal JSON: {exc}") from None
    return proposal_from_dict(data)


# ---------------------------------------------------------------------------
# CLI draft payloads
# ---------------------------------------------------------------------------

def _require_string_list(name: str, value: Any) -> list[str]:
    if not _is_string_list(value):
        raise ProposalFormatError(f"Subtask payload requires {name} as array of strings")
    return list(value)


def parse_cli_subtask_draft(candidate: Any) -> SubtaskDraft:
    if not isinstance(candidate, dict):
        raise ProposalFormatError("Subtask payload entries must be JSON objects")
    for name in ("title", "description"):
        if not _non_empty_str(candidate.get(name)):
            raise ProposalFormatError(f"Subtask payload requires non-empty string field: {name}")
    criteria = _require_string_list("acceptanceCriteria", candidate.get("acceptanceCriteria"))
    if not criteria:
        raise ProposalFormatError("Subtask payload requires at least one acceptance criterion")
    files = _require_string_list("filesToRead", candidate.get("filesToRead"))
    if not _non_empty_str(candidate.get("taskRef")):
        raise ProposalFormatError("Subtask payload requires non-empty string field: taskRef")
    story_ref = candidate.get("storyRef")
    if story_ref is not None and not isinstance(story_ref, str):
        raise ProposalFormatError("Subtask payload field storyRef must be string or null")
    return SubtaskDraft(
        title=candidate["title"],
        description=candidate["description"],
        acceptance_criteria=criteria,
        files_to_read=files,
        task_ref=candidate["taskRef"],
        story_ref=story_ref or None,
    )


def parse_cli_subtask_drafts(text: str) -> list[SubtaskDraft]:
    """Parse one draft, a list of drafts, or ``{"subtasks": [...]}``."""
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ProposalFormatError(f"Failed to parse subtask JSON: {exc}") from None
    payload = parsed
    if isinstance(parsed, dict) and isinstance(parsed.get("subtasks"), list):
        payload = parsed["subtasks"]
    entries = payload if isinstance(payload, list) else [payload]
    if not entries:
        raise ProposalFormatError("Subtask payload must include at least one subtask entry")
    return [parse_cli_subtask_draft(entry) for entry in entries]
