"""Approval gates for human-in-the-loop control of the cascade.

``evaluate_approval`` is a pure decision function: it maps a gate, the
per-gate policy table and the invocation flags to an ``ApprovalAction``. The
rest of this module carries out those actions (prompting, notifying, writing
the approval feedback file and the exit banner) and wraps proposal
application in a gate for the validation and calibration producers.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Mapping, Optional

from loguru import logger
from rich.console import Console
from rich.prompt import Confirm
from rich.table import Table

from .audit import write_queue_apply_entry
from .constants import BANNER_WIDTH, CLI_NAME, FEEDBACK_DIR
from .io_utils import _atomic_write_text
from .models import QueueProposal
from .notifications import NotificationManager
from .queue_engine.engine import apply_proposal, build_queue_diff_summary
from .queue_engine.store import ProposalApplyResult, apply_proposal_to_file, load_queue
from .utils import _file_timestamp, _now_iso

console = Console()


class GateName(str, Enum):
    """Named approval checkpoints."""

    CREATE_ROADMAP = "createRoadmap"
    CREATE_STORIES = "createStories"
    CREATE_TASKS = "createTasks"
    CREATE_SUBTASKS = "createSubtasks"
    CREATE_ATOMIC_DOCS = "createAtomicDocs"
    ON_DRIFT_DETECTED = "onDriftDetected"
    CORRECTION_TASKS = "correctionTasks"
    PROMPT_CHANGES = "promptChanges"
    APPLY_VALIDATION = "applyValidation"


class GatePolicy(str, Enum):
    ALWAYS = "always"
    MANUAL = "manual"
    NOTIFY = "notify"


class ApprovalAction(str, Enum):
    AUTO_CONTINUE = "auto-continue"
    PROMPT = "prompt"
    NOTIFY_CONTINUE = "notify-and-continue"
    CHECKPOINT_EXIT = "checkpoint-and-exit"


DEFAULT_GATE_POLICY = GatePolicy.NOTIFY

DEFAULT_GATE_POLICIES: dict[str, GatePolicy] = {
    GateName.CREATE_STORIES.value: GatePolicy.MANUAL,
    GateName.CREATE_SUBTASKS.value: GatePolicy.ALWAYS,
    GateName.ON_DRIFT_DETECTED.value: GatePolicy.MANUAL,
}

_GATE_LABEL_OVERRIDES = {
    GateName.ON_DRIFT_DETECTED.value: "Drift Detected",
}


@dataclass(frozen=True)
class ApprovalContext:
    """Invocation state that influences a gate decision."""

    force: bool = False
    review: bool = False
    is_tty: bool = False


def evaluate_approval(
    gate: Optional[str],
    policies: Mapping[str, GatePolicy | str],
    context: ApprovalContext,
) -> ApprovalAction:
    """Decide what to do at *gate*.

    Args:
        gate: Gate name, or None for levels without a gate.
        policies: Policy per gate name. Missing gates use ``DEFAULT_GATE_POLICY``.
        context: Force/review flags and whether a terminal is attached.

    Returns:
        The action the caller should carry out.
    """
    if gate is None:
        return ApprovalAction.AUTO_CONTINUE
    if context.force:
        return ApprovalAction.AUTO_CONTINUE

    policy = GatePolicy(policies.get(gate, DEFAULT_GATE_POLICY))
    if policy is GatePolicy.ALWAYS:
        return ApprovalAction.PROMPT if context.review else ApprovalAction.AUTO_CONTINUE
    if policy is GatePolicy.NOTIFY:
        return ApprovalAction.NOTIFY_CONTINUE
    if context.is_tty:
        return ApprovalAction.PROMPT
    return ApprovalAction.CHECKPOINT_EXIT


def format_gate_name(gate: str) -> str:
    """Turn ``createStories`` into ``Create Stories``."""
    if gate in _GATE_LABEL_OVERRIDES:
        return _GATE_LABEL_OVERRIDES[gate]
    words: list[str] = []
    current = ""
    for char in gate:
        if char.isupper() and current:
            words.append(current)
            current = char
        else:
            current += char
    if current:
        words.append(current)
    return " ".join(word[:1].upper() + word[1:] for word in words)


def prompt_approval(question: str) -> bool:
    """Ask a yes/no question; Enter accepts, an interrupt rejects."""
    try:
        return Confirm.ask(question, default=True, console=console)
    except (KeyboardInterrupt, EOFError):
        console.print("\n[yellow]Interrupted - treating as rejected[/yellow]")
        return False


# ---------------------------------------------------------------------------
# Checkpoint-and-exit artifacts
# ---------------------------------------------------------------------------

def build_resume_command(milestone: str, target: str, next_level: str) -> str:
    return f"{CLI_NAME} run --milestone {milestone} --cascade {target} --from {next_level}"


def write_gate_feedback_file(
    milestone_path: Path,
    *,
    gate: str,
    level: str,
    milestone: str,
    resume_command: Optional[str],
    summary: Optional[str] = None,
) -> Path:
    """Write the approval feedback file for a checkpoint-and-exit pause."""
    label = format_gate_name(gate)
    lines = [
        f"# Approval Required: {label}",
        "",
        f"**Generated:** {_now_iso()}",
        f"**Level:** {level}",
        f"**Milestone:** {milestone}",
        "",
    ]
    if summary:
        lines += ["## Summary", "", summary, ""]
    lines += [
        "## Review the changes",
        "",
        f"The output of the `{level}` level is left as uncommitted changes.",
        "Inspect them with `git diff` and `git status`.",
        "",
        "### Approve",
        "",
    ]
    if resume_command:
        lines += ["Keep the changes and continue the cascade:", "", "```bash", resume_command, "```", ""]
    else:
        lines += ["Keep the changes. This was the final level of the cascade.", ""]
    lines += [
        "### Reject",
        "",
        "Discard the generated changes:",
        "",
        "```bash",
        "git checkout -- . && git clean -fd",
        "```",
        "",
        "### Modify",
        "",
        "Edit the generated files by hand, then continue as in Approve.",
        "",
    ]
    path = milestone_path / FEEDBACK_DIR / f"{_file_timestamp()}_{gate}_approval.md"
    _atomic_write_text(path, "\n".join(lines))
    return path


def print_exit_instructions(
    *,
    gate: str,
    level: str,
    feedback_path: Path,
    resume_command: Optional[str],
) -> None:
    border = "=" * BANNER_WIDTH
    console.print()
    console.print(border)
    console.print(f"[bold yellow]APPROVAL REQUIRED: {format_gate_name(gate)}[/bold yellow]")
    console.print(border)
    console.print(f"Level '{level}' finished; its changes are left unstaged for review.")
    console.print()
    if resume_command:
        console.print(f"  Approve: {resume_command}", soft_wrap=True)
    else:
        console.print("  Approve: keep the changes (final level)")
    console.print("  Reject:  git checkout -- . && git clean -fd")
    console.print("  Modify:  edit the files, then approve")
    console.print()
    console.print(f"Feedback: {feedback_path}", soft_wrap=True)
    console.print(border)


# ---------------------------------------------------------------------------
# Gated proposal application
# ---------------------------------------------------------------------------

class ProposalDecision(str, Enum):
    APPLIED = "applied"
    STALE = "stale"
    REJECTED = "rejected"
    STAGED = "staged"


@dataclass
class GatedApplyOutcome:
    decision: ProposalDecision
    action: ApprovalAction
    result: Optional[ProposalApplyResult] = None

    @property
    def applied(self) -> bool:
        return self.decision is ProposalDecision.APPLIED


def _render_proposal_preview(queue_path: Path, proposal: QueueProposal) -> None:
    queue = load_queue(queue_path)
    preview = apply_proposal(queue, proposal)
    diff = build_queue_diff_summary(queue.subtasks, preview.subtasks)
    table = Table(title=f"Proposed queue changes ({proposal.source})")
    table.add_column("Change")
    table.add_column("Subtask")
    table.add_column("Title")
    for subtask in diff.added:
        table.add_row("[green]add[/green]", subtask.id, subtask.title)
    for subtask in diff.removed:
        table.add_row("[red]remove[/red]", subtask.id, subtask.title)
    for _, after in diff.updated:
        table.add_row("[yellow]update[/yellow]", after.id, after.title)
    for subtask_id, was, to in diff.reordered:
        table.add_row("[cyan]move[/cyan]", subtask_id, f"{was} -> {to}")
    console.print(table)


def apply_proposal_with_gate(
    queue_path: Path,
    proposal: QueueProposal,
    *,
    gate: str,
    policies: Mapping[str, GatePolicy | str],
    context: ApprovalContext,
    milestone_path: Optional[Path] = None,
    artifact_path: Optional[Path] = None,
    notifier: Optional[NotificationManager] = None,
    prompt: Callable[[str], bool] = prompt_approval,
) -> GatedApplyOutcome:
    """Run *proposal* through *gate* and apply it when the gate allows.

    ``checkpoint-and-exit`` cannot wait for a human here, so the proposal is
    only staged: it is already persisted as an artifact and can be applied
    later with ``queue apply``.
    """
    audit_root = milestone_path or queue_path.parent
    action = evaluate_approval(gate, policies, context)
    label = format_gate_name(gate)
    logger.debug("Gate {} evaluated to {}", gate, action.value)

    if action is ApprovalAction.NOTIFY_CONTINUE and notifier is not None:
        notifier.notify_gate(
            gate=label,
            message=f"Applying {len(proposal.operations)} queue operation(s) from {proposal.source}",
            milestone=audit_root.name,
        )

    if action is ApprovalAction.PROMPT:
        _render_proposal_preview(queue_path, proposal)
        if not prompt(f"{label}: apply {len(proposal.operations)} operation(s)?"):
            write_queue_apply_entry(
                audit_root,
                applied=False,
                source=proposal.source,
                operation_count=len(proposal.operations),
                summary=f"{label}: proposal rejected by operator",
            )
            return GatedApplyOutcome(ProposalDecision.REJECTED, action)

    if action is ApprovalAction.CHECKPOINT_EXIT:
        write_queue_apply_entry(
            audit_root,
            applied=False,
            source=proposal.source,
            operation_count=len(proposal.operations),
            summary=f"{label}: proposal staged for manual approval",
        )
        staged_at = artifact_path or "<proposal file>"
        console.print(
            f"[yellow]{label} requires approval; proposal staged. "
            f"Apply it with: {CLI_NAME} queue apply --milestone {audit_root.name} --proposal {staged_at}[/yellow]",
            soft_wrap=True,
        )
        return GatedApplyOutcome(ProposalDecision.STAGED, action)

    result = apply_proposal_to_file(queue_path, proposal, milestone_path=audit_root)
    decision = ProposalDecision.APPLIED if result.applied else ProposalDecision.STALE
    return GatedApplyOutcome(decision, action, result)
