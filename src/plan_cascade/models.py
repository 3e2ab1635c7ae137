"""Queue data model: subtasks, drafts, operations and proposals.

Subtasks are stored on disk with camelCase keys (``acceptanceCriteria``,
``filesToRead``, ``taskRef``, ``storyRef``). The dataclasses below keep
snake_case attributes and convert at the ``from_dict``/``to_dict`` boundary.
Unknown keys (execution metadata such as ``commitHash`` or ``sessionId``)
round-trip untouched through ``Subtask.extra``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Optional, Union

from .constants import LEGACY_SUBTASK_KEYS
from .queue_engine.fingerprint import compute_fingerprint


class QueueOperationError(ValueError):
    """A queue operation violated a queue invariant."""

    def __init__(self, operation: str, subtask_id: Optional[str], message: str):
        super().__init__(message)
        self.operation = operation
        self.subtask_id = subtask_id


class QueueFileError(ValueError):
    pass


class ProposalFormatError(ValueError):
    pass


_KNOWN_SUBTASK_KEYS = {
    "id",
    "title",
    "description",
    "acceptanceCriteria",
    "filesToRead",
    "taskRef",
    "storyRef",
    "done",
}

# Fields an ``update`` operation may touch, keyed by their on-disk name.
UPDATABLE_FIELDS = {
    "title": "title",
    "description": "description",
    "acceptanceCriteria": "acceptance_criteria",
    "filesToRead": "files_to_read",
    "storyRef": "story_ref",
}


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value]


@dataclass
class Subtask:
    """An atomic unit of planned work tracked in the queue."""

    id: str
    title: str = ""
    description: str = ""
    acceptance_criteria: list[str] = field(default_factory=list)
    files_to_read: list[str] = field(default_factory=list)
    task_ref: str = ""
    story_ref: Optional[str] = None
    done: bool = False
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Subtask":
        extra = {
            key: value
            for key, value in data.items()
            if key not in _KNOWN_SUBTASK_KEYS and key not in LEGACY_SUBTASK_KEYS
        }
        story_ref = data.get("storyRef")
        return cls(
            id=str(data.get("id") or ""),
            title=str(data.get("title") or ""),
            description=str(data.get("description") or ""),
            acceptance_criteria=_string_list(data.get("acceptanceCriteria")),
            files_to_read=_string_list(data.get("filesToRead")),
            task_ref=str(data.get("taskRef") or ""),
            story_ref=story_ref if isinstance(story_ref, str) else None,
            done=data.get("done") is True,
            extra=extra,
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "acceptanceCriteria": list(self.acceptance_criteria),
            "filesToRead": list(self.files_to_read),
            "taskRef": self.task_ref,
        }
        if self.story_ref is not None:
            payload["storyRef"] = self.story_ref
        payload["done"] = self.done
        payload.update(self.extra)
        return payload

    @property
    def commit_hash(self) -> Optional[str]:
        value = self.extra.get("commitHash")
        return value if isinstance(value, str) and value else None

    @property
    def session_id(self) -> Optional[str]:
        value = self.extra.get("sessionId")
        return value if isinstance(value, str) and value else None

    @property
    def blocked_by(self) -> list[str]:
        return _string_list(self.extra.get("blockedBy"))


@dataclass
class SubtaskDraft:
    """A subtask proposed for creation; it has no id or completion flag yet."""

    title: str
    description: str
    acceptance_criteria: list[str]
    files_to_read: list[str]
    task_ref: str
    story_ref: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SubtaskDraft":
        story_ref = data.get("storyRef")
        return cls(
            title=str(data.get("title") or ""),
            description=str(data.get("description") or ""),
            acceptance_criteria=_string_list(data.get("acceptanceCriteria")),
            files_to_read=_string_list(data.get("filesToRead")),
            task_ref=str(data.get("taskRef") or ""),
            story_ref=story_ref if isinstance(story_ref, str) and story_ref.strip() else None,
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "title": self.title,
            "description": self.description,
            "acceptanceCriteria": list(self.acceptance_criteria),
            "filesToRead": list(self.files_to_read),
            "taskRef": self.task_ref,
        }
        if self.story_ref is not None:
            payload["storyRef"] = self.story_ref
        return payload

    def to_subtask(self, subtask_id: str) -> Subtask:
        return Subtask(
            id=subtask_id,
            title=self.title,
            description=self.description,
            acceptance_criteria=list(self.acceptance_criteria),
            files_to_read=list(self.files_to_read),
            task_ref=self.task_ref,
            story_ref=self.story_ref,
            done=False,
        )


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CreateOperation:
    type: ClassVar[str] = "create"

    at_index: int
    subtask: SubtaskDraft

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "atIndex": self.at_index, "subtask": self.subtask.to_dict()}


@dataclass(frozen=True)
class UpdateOperation:
    type: ClassVar[str] = "update"

    id: str
    changes: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "id": self.id, "changes": dict(self.changes)}


@dataclass(frozen=True)
class RemoveOperation:
    type: ClassVar[str] = "remove"

    id: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "id": self.id}


@dataclass(frozen=True)
class ReorderOperation:
    type: ClassVar[str] = "reorder"

    id: str
    to_index: int

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "id": self.id, "toIndex": self.to_index}


@dataclass(frozen=True)
class SplitOperation:
    type: ClassVar[str] = "split"

    id: str
    subtasks: tuple[SubtaskDraft, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "id": self.id,
            "subtasks": [draft.to_dict() for draft in self.subtasks],
        }


QueueOperation = Union[
    CreateOperation, UpdateOperation, RemoveOperation, ReorderOperation, SplitOperation
]


@dataclass(frozen=True)
class QueueProposal:
    """A fingerprint-stamped batch of queue operations from one producer."""

    fingerprint: str
    operations: tuple[QueueOperation, ...]
    source: str
    timestamp: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "fingerprint": {"hash": self.fingerprint},
            "operations": [op.to_dict() for op in self.operations],
            "source": self.source,
            "timestamp": self.timestamp,
        }


@dataclass
class Queue:
    """Ordered subtasks plus the untouched non-subtask keys of the queue file."""

    subtasks: list[Subtask] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def fingerprint(self) -> str:
        return compute_fingerprint(self.subtasks)

    def to_dict(self) -> dict[str, Any]:
        payload = dict(self.metadata)
        payload["subtasks"] = [subtask.to_dict() for subtask in self.subtasks]
        return payload


# ---------------------------------------------------------------------------
# Validation results
# ---------------------------------------------------------------------------

class IssueType(str, Enum):
    """Classification of a misaligned subtask."""

    SCOPE_CREEP = "scope_creep"
    TOO_BROAD = "too_broad"
    TOO_NARROW = "too_narrow"
    UNFAITHFUL = "unfaithful"


@dataclass
class SkippedSubtask:
    subtask_id: str
    issue_type: Optional[IssueType]
    reason: str
    feedback_path: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "subtaskId": self.subtask_id,
            "issueType": self.issue_type.value if self.issue_type else None,
            "reason": self.reason,
            "feedbackPath": self.feedback_path,
        }
