"""Provide the public `plan_cascade` package exports."""

from __future__ import annotations

from .approvals import ApprovalAction, ApprovalContext, evaluate_approval
from .cascade import CascadeResult, CascadeRunner, CascadeStatus
from .queue_engine.engine import apply_proposal, detect_mismatch
from .queue_engine.fingerprint import compute_fingerprint
from .queue_engine.store import apply_proposal_to_file

__all__ = [
    "ApprovalAction",
    "ApprovalContext",
    "CascadeResult",
    "CascadeRunner",
    "CascadeStatus",
    "apply_proposal",
    "apply_proposal_to_file",
    "compute_fingerprint",
    "detect_mismatch",
    "evaluate_approval",
]
