"""Append-only daily audit log kept inside each milestone directory.

One JSON object per line in ``<milestone>/logs/YYYY-MM-DD.jsonl`` (UTC date).
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from .constants import LOGS_DIR
from .io_utils import _append_event, _read_jsonl
from .models import QueueProposal
from .utils import _now_iso, _utc_date


class AuditEventType(str, Enum):
    VALIDATION = "validation"
    CALIBRATION = "calibration"
    QUEUE_PROPOSAL = "queue-proposal"
    QUEUE_APPLY = "queue-apply"


def daily_log_path(milestone_path: Path, now: Optional[datetime] = None) -> Path:
    return milestone_path / LOGS_DIR / f"{_utc_date(now)}.jsonl"


def append_audit_entry(
    milestone_path: Path,
    event_type: AuditEventType,
    **fields: Any,
) -> Path:
    """Append one entry and return the log file it went to.

    ``None`` values are dropped so optional fields stay absent instead of null.
    """
    entry: dict[str, Any] = {
        "type": event_type.value,
        "timestamp": _now_iso(),
        "milestone": milestone_path.name,
    }
    entry.update({key: value for key, value in fields.items() if value is not None})
    path = daily_log_path(milestone_path)
    _append_event(path, entry)
    return path


def write_queue_proposal_entry(
    milestone_path: Path, proposal: QueueProposal, summary: str
) -> Path:
    return append_audit_entry(
        milestone_path,
        AuditEventType.QUEUE_PROPOSAL,
        source=proposal.source,
        operationCount=len(proposal.operations),
        proposal=proposal.to_dict(),
        summary=summary,
    )


def write_queue_apply_entry(
    milestone_path: Path,
    *,
    applied: bool,
    source: str,
    operation_count: int,
    summary: str,
    before_fingerprint: Optional[str] = None,
    after_fingerprint: Optional[str] = None,
) -> Path:
    return append_audit_entry(
        milestone_path,
        AuditEventType.QUEUE_APPLY,
        applied=applied,
        source=source,
        operationCount=operation_count,
        summary=summary,
        beforeFingerprint={"hash": before_fingerprint} if before_fingerprint else None,
        afterFingerprint={"hash": after_fingerprint} if after_fingerprint else None,
    )


def read_audit_entries(
    milestone_path: Path,
    now: Optional[datetime] = None,
    event_type: Optional[AuditEventType] = None,
) -> list[dict[str, Any]]:
    entries = _read_jsonl(daily_log_path(milestone_path, now))
    if event_type is None:
        return entries
    return [entry for entry in entries if entry.get("type") == event_type.value]
