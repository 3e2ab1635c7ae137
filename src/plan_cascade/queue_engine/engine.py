"""Apply fingerprint-gated operation batches to queue snapshots.

``apply_proposal`` never mutates its input. A proposal whose fingerprint no
longer matches the queue is a stale or already-applied proposal and is
returned unchanged; an invariant violation raises ``QueueOperationError``
before any result escapes, so the caller's queue stays intact either way.
"""

from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence

from loguru import logger

from ..constants import SUBTASK_ID_PREFIX, SUBTASK_ID_WIDTH
from ..models import (
    UPDATABLE_FIELDS,
    CreateOperation,
    Queue,
    QueueOperation,
    QueueOperationError,
    QueueProposal,
    RemoveOperation,
    ReorderOperation,
    SplitOperation,
    Subtask,
    UpdateOperation,
)
from ..utils import _now_iso
from .fingerprint import compute_fingerprint

_SUBTASK_ID_RE = re.compile(r"^SUB-(?P<num>\d+)$")


@dataclass(frozen=True)
class FingerprintMismatch:
    mismatched: bool
    current: str
    proposal: str


@dataclass
class QueueDiffSummary:
    added: list[Subtask] = field(default_factory=list)
    removed: list[Subtask] = field(default_factory=list)
    updated: list[tuple[Subtask, Subtask]] = field(default_factory=list)
    reordered: list[tuple[str, int, int]] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.removed or self.updated or self.reordered)

    def describe(self) -> str:
        return (
            f"{len(self.added)} added, {len(self.removed)} removed, "
            f"{len(self.updated)} updated, {len(self.reordered)} reordered"
        )


# ---------------------------------------------------------------------------
# Id allocation
# ---------------------------------------------------------------------------

def max_subtask_number(subtasks: Iterable[Subtask]) -> int:
    highest = 0
    for subtask in subtasks:
        match = _SUBTASK_ID_RE.match(subtask.id)
        if match:
            highest = max(highest, int(match.group("num")))
    return highest


def format_subtask_id(number: int) -> str:
    return f"{SUBTASK_ID_PREFIX}{number:0{SUBTASK_ID_WIDTH}d}"


def next_subtask_id(subtasks: Iterable[Subtask]) -> str:
    """Return the id after the highest numeric suffix, skipping any gaps."""
    return format_subtask_id(max_subtask_number(subtasks) + 1)


# ---------------------------------------------------------------------------
# Fingerprint checks
# ---------------------------------------------------------------------------

def detect_mismatch(proposal: QueueProposal, subtasks: Sequence[Subtask]) -> FingerprintMismatch:
    current = compute_fingerprint(subtasks)
    return FingerprintMismatch(
        mismatched=current != proposal.fingerprint,
        current=current,
        proposal=proposal.fingerprint,
    )


def has_fingerprint_mismatch(proposal: QueueProposal, subtasks: Sequence[Subtask]) -> bool:
    return detect_mismatch(proposal, subtasks).mismatched


def build_proposal(
    queue: Queue,
    operations: Sequence[QueueOperation],
    source: str,
    timestamp: Optional[str] = None,
) -> QueueProposal:
    """Stamp *operations* with the fingerprint of the snapshot they were computed from."""
    return QueueProposal(
        fingerprint=compute_fingerprint(queue.subtasks),
        operations=tuple(operations),
        source=source,
        timestamp=timestamp or _now_iso(),
    )


# ---------------------------------------------------------------------------
# Apply
# ---------------------------------------------------------------------------

def _require_pending(subtasks: list[Subtask], subtask_id: str, operation: str) -> int:
    for index, subtask in enumerate(subtasks):
        if subtask.id != subtask_id:
            continue
        if subtask.done:
            raise QueueOperationError(
                operation,
                subtask_id,
                f"Cannot {operation} {subtask_id}: completed subtasks are immutable",
            )
        return index
    raise QueueOperationError(
        operation, subtask_id, f"Cannot {operation} {subtask_id}: subtask not found"
    )


class _Allocator:
    def __init__(self, subtasks: Iterable[Subtask]):
        self._next = max_subtask_number(subtasks) + 1

    def allocate(self) -> str:
        subtask_id = format_subtask_id(self._next)
        self._next += 1
        return subtask_id


def apply_proposal(queue: Queue, proposal: QueueProposal) -> Queue:
    """Apply *proposal* to a copy of *queue*.

    Consecutive ``create`` operations that request the same index are placed
    one after another, so a batch of prepends keeps the order it was proposed
    in. Every other ``atIndex`` is a position in the queue as it stands when
    the operation runs.

    Args:
        queue: Current queue snapshot; never modified.
        proposal: Operations plus the fingerprint they were computed against.

    Returns:
        A new queue, or *queue* itself when the proposal is stale.

    Raises:
        QueueOperationError: If an operation targets a missing or completed
            subtask, or an index is out of range.
    """
    current = compute_fingerprint(queue.subtasks)
    if current != proposal.fingerprint:
        logger.warning(
            "Skipping stale proposal from {} (proposal fingerprint {}, queue fingerprint {})",
            proposal.source,
            proposal.fingerprint[:12],
            current[:12],
        )
        return queue

    working = copy.deepcopy(queue)
    subtasks = working.subtasks
    allocator = _Allocator(subtasks)
    # (requested index, placed index) of the create that ran just before.
    last_create: Optional[tuple[int, int]] = None

    for operation in proposal.operations:
        if isinstance(operation, CreateOperation):
            requested = operation.at_index
            if requested < 0 or requested > len(subtasks):
                raise QueueOperationError(
                    "create",
                    None,
                    f"Cannot create subtask: atIndex {requested} is out of range (0-{len(subtasks)})",
                )
            placed = requested
            if last_create is not None and last_create[0] == requested:
                placed = last_create[1] + 1
            subtasks.insert(placed, operation.subtask.to_subtask(allocator.allocate()))
            last_create = (requested, placed)
            continue

        last_create = None
        if isinstance(operation, UpdateOperation):
            index = _require_pending(subtasks, operation.id, "update")
            target = subtasks[index]
            for key, value in operation.changes.items():
                attribute = UPDATABLE_FIELDS.get(key)
                if attribute is None:
                    raise QueueOperationError(
                        "update", operation.id, f"Cannot update {operation.id}: unknown field '{key}'"
                    )
                setattr(target, attribute, list(value) if isinstance(value, list) else value)
            if not target.acceptance_criteria:
                raise QueueOperationError(
                    "update",
                    operation.id,
                    f"Cannot update {operation.id}: acceptanceCriteria must not be empty",
                )
        elif isinstance(operation, RemoveOperation):
            index = _require_pending(subtasks, operation.id, "remove")
            del subtasks[index]
        elif isinstance(operation, ReorderOperation):
            index = _require_pending(subtasks, operation.id, "reorder")
            if operation.to_index < 0 or operation.to_index >= len(subtasks):
                raise QueueOperationError(
                    "reorder",
                    operation.id,
                    f"Cannot reorder {operation.id}: toIndex {operation.to_index} is out of range",
                )
            moved = subtasks.pop(index)
            subtasks.insert(operation.to_index, moved)
        elif isinstance(operation, SplitOperation):
            index = _require_pending(subtasks, operation.id, "split")
            if not operation.subtasks:
                raise QueueOperationError(
                    "split",
                    operation.id,
                    f"Cannot split {operation.id}: split requires at least one subtask",
                )
            children = [draft.to_subtask(allocator.allocate()) for draft in operation.subtasks]
            subtasks[index : index + 1] = children
        else:
            raise QueueOperationError(
                getattr(operation, "type", "unknown"),
                None,
                f"Unsupported queue operation: {operation!r}",
            )

    return working


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def get_pending_subtasks(subtasks: Iterable[Subtask]) -> list[Subtask]:
    return [subtask for subtask in subtasks if not subtask.done]


def get_completed_subtasks(subtasks: Iterable[Subtask]) -> list[Subtask]:
    return [subtask for subtask in subtasks if subtask.done]


def count_remaining(subtasks: Iterable[Subtask]) -> int:
    return len(get_pending_subtasks(subtasks))


def get_next_subtask(subtasks: Sequence[Subtask]) -> Optional[Subtask]:
    """Return the first pending subtask whose ``blockedBy`` dependencies are all done."""
    done_by_id = {subtask.id: subtask.done for subtask in subtasks}
    for subtask in subtasks:
        if subtask.done:
            continue
        if all(done_by_id.get(dep) is True for dep in subtask.blocked_by):
            return subtask
    return None


def _same_content(left: Subtask, right: Subtask) -> bool:
    return (
        left.title == right.title
        and left.description == right.description
        and left.task_ref == right.task_ref
        and left.story_ref == right.story_ref
        and left.done == right.done
        and left.acceptance_criteria == right.acceptance_criteria
        and left.files_to_read == right.files_to_read
    )


def build_queue_diff_summary(
    before: Sequence[Subtask], after: Sequence[Subtask]
) -> QueueDiffSummary:
    before_by_id = {subtask.id: subtask for subtask in before}
    after_by_id = {subtask.id: subtask for subtask in after}
    after_index = {subtask.id: index for index, subtask in enumerate(after)}

    summary = QueueDiffSummary()
    summary.added = [subtask for subtask in after if subtask.id not in before_by_id]
    summary.removed = [subtask for subtask in before if subtask.id not in after_by_id]
    for subtask in after:
        previous = before_by_id.get(subtask.id)
        if previous is not None and not _same_content(previous, subtask):
            summary.updated.append((previous, subtask))
    for index, subtask in enumerate(before):
        moved_to = after_index.get(subtask.id)
        if moved_to is not None and moved_to != index:
            summary.reordered.append((subtask.id, index, moved_to))
    return summary
