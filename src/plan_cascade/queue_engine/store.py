"""Queue file persistence and the load → apply → save → audit protocol.

The queue lives in ``<milestone>/subtasks.json`` as ``{"subtasks": [...]}``
with optional ``metadata``/``$schema`` keys. The fingerprint is always derived
from the loaded subtasks; a ``fingerprint`` key found in the file is ignored
and never written back.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from ..audit import write_queue_apply_entry
from ..constants import DERIVED_QUEUE_KEYS, FEEDBACK_DIR
from ..io_utils import _atomic_write_json
from ..models import Queue, QueueFileError, QueueProposal, Subtask
from ..utils import _file_timestamp, _slugify
from .engine import QueueDiffSummary, apply_proposal, build_queue_diff_summary, detect_mismatch
from .fingerprint import compute_fingerprint

_CANONICAL_FIX = (
    'Fix: Wrap entries as { "subtasks": [ ... ] } (optionally include "$schema" and "metadata")'
)


def _format_error(path: Path, found: str) -> QueueFileError:
    return QueueFileError(
        f"Invalid subtasks file format at {path}\n"
        'Expected: JSON object with top-level "subtasks" array\n'
        f"Found: {found}\n"
        f"{_CANONICAL_FIX}"
    )


def load_queue(path: Path) -> Queue:
    """Load and validate a queue file.

    Raises:
        QueueFileError: If the file is missing, is not JSON, or is not in the
            canonical ``{"subtasks": [...]}`` shape.
    """
    if not path.exists():
        raise QueueFileError(f"Subtasks file not found: {path}")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise QueueFileError(f"Failed to parse subtasks file {path}: {exc}") from None

    if isinstance(data, list):
        raise _format_error(path, "top-level array (legacy format)")
    if not isinstance(data, dict):
        kind = "null" if data is None else f"top-level {type(data).__name__}"
        raise _format_error(path, kind)
    if "subtasks" not in data:
        raise _format_error(path, 'object without required "subtasks" key')
    raw_subtasks = data["subtasks"]
    if not isinstance(raw_subtasks, list):
        kind = "null" if raw_subtasks is None else type(raw_subtasks).__name__
        raise _format_error(path, f'object with non-array "subtasks" ({kind})')

    subtasks: list[Subtask] = []
    for index, raw in enumerate(raw_subtasks):
        if not isinstance(raw, dict):
            raise QueueFileError(f"Invalid subtask at index {index} in {path}: expected object")
        subtasks.append(Subtask.from_dict(raw))

    metadata = {
        key: value
        for key, value in data.items()
        if key != "subtasks" and key not in DERIVED_QUEUE_KEYS
    }
    return Queue(subtasks=subtasks, metadata=metadata)


def save_queue(path: Path, queue: Queue) -> None:
    """Write *queue* back to disk without derived or legacy fields."""
    payload = queue.to_dict()
    for key in DERIVED_QUEUE_KEYS:
        payload.pop(key, None)
    _atomic_write_json(path, payload)


@dataclass
class ProposalApplyResult:
    applied: bool
    source: str
    operation_count: int
    before_count: int
    after_count: int
    before_fingerprint: str
    after_fingerprint: str
    summary: str
    diff: QueueDiffSummary = field(default_factory=QueueDiffSummary)

    def to_dict(self) -> dict[str, Any]:
        return {
            "applied": self.applied,
            "source": self.source,
            "operationCount": self.operation_count,
            "beforeCount": self.before_count,
            "afterCount": self.after_count,
            "beforeFingerprint": self.before_fingerprint,
            "afterFingerprint": self.after_fingerprint,
            "summary": self.summary,
        }


def apply_proposal_to_file(
    queue_path: Path,
    proposal: QueueProposal,
    milestone_path: Optional[Path] = None,
) -> ProposalApplyResult:
    """Apply *proposal* to the queue file and record the outcome.

    A stale proposal leaves the file untouched and is recorded as
    ``applied: false``. Invariant violations propagate unchanged and nothing
    is written.

    Args:
        queue_path: Path to ``subtasks.json``.
        proposal: Proposal to apply.
        milestone_path: Directory holding the daily audit log. Defaults to the
            queue file's directory.

    Returns:
        Counts and fingerprints before/after and whether the queue changed.
    """
    audit_root = milestone_path or queue_path.parent
    queue = load_queue(queue_path)
    before_fingerprint = compute_fingerprint(queue.subtasks)
    mismatch = detect_mismatch(proposal, queue.subtasks)

    if mismatch.mismatched:
        summary = (
            f"Stale proposal from {proposal.source}: queue changed since it was generated "
            f"({mismatch.proposal[:12]} != {mismatch.current[:12]}); regenerate it"
        )
        logger.warning(summary)
        write_queue_apply_entry(
            audit_root,
            applied=False,
            source=proposal.source,
            operation_count=len(proposal.operations),
            summary=summary,
            before_fingerprint=before_fingerprint,
            after_fingerprint=before_fingerprint,
        )
        return ProposalApplyResult(
            applied=False,
            source=proposal.source,
            operation_count=len(proposal.operations),
            before_count=len(queue.subtasks),
            after_count=len(queue.subtasks),
            before_fingerprint=before_fingerprint,
            after_fingerprint=before_fingerprint,
            summary=summary,
        )

    updated = apply_proposal(queue, proposal)
    save_queue(queue_path, updated)
    after_fingerprint = compute_fingerprint(updated.subtasks)
    diff = build_queue_diff_summary(queue.subtasks, updated.subtasks)
    summary = f"Applied {len(proposal.operations)} operation(s) from {proposal.source}: {diff.describe()}"
    logger.info(summary)
    write_queue_apply_entry(
        audit_root,
        applied=True,
        source=proposal.source,
        operation_count=len(proposal.operations),
        summary=summary,
        before_fingerprint=before_fingerprint,
        after_fingerprint=after_fingerprint,
    )
    return ProposalApplyResult(
        applied=True,
        source=proposal.source,
        operation_count=len(proposal.operations),
        before_count=len(queue.subtasks),
        after_count=len(updated.subtasks),
        before_fingerprint=before_fingerprint,
        after_fingerprint=after_fingerprint,
        summary=summary,
        diff=diff,
    )


def write_proposal_artifact(milestone_path: Path, proposal: QueueProposal) -> Path:
    """Persist *proposal* as JSON under ``<milestone>/feedback/`` and return the path."""
    name = f"{_file_timestamp()}_{_slugify(proposal.source)}_proposal.json"
    path = milestone_path / FEEDBACK_DIR / name
    _atomic_write_json(path, proposal.to_dict())
    logger.info("Wrote proposal artifact: {}", path)
    return path
