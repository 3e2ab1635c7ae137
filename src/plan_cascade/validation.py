"""Pre-build alignment checks of pending subtasks against their planning chain.

Each pending subtask is sent to the reviewer together with its parent task
(and parent story, when the task links one). Misaligned subtasks are skipped
and turned into ``remove`` operations that go through the normal proposal
protocol. Every reviewer failure resolves to aligned so a flaky reviewer never
blocks the queue.
"""

from __future__ import annotations

import json
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Sequence, Union

from loguru import logger
from rich.console import Console
from rich.panel import Panel

from .approvals import (
    ApprovalContext,
    GatedApplyOutcome,
    GateName,
    GatePolicy,
    apply_proposal_with_gate,
)
from .audit import AuditEventType, append_audit_entry, write_queue_proposal_entry
from .constants import (
    FEEDBACK_DIR,
    STORIES_DIR,
    TASKS_DIR,
    TIMEOUT_WARNING_THRESHOLD_SECONDS,
    VALIDATION_TIMEOUT_SECONDS,
)
from .hooks import HookEvent, run_hook
from .io_utils import _atomic_write_text
from .models import (
    IssueType,
    Queue,
    QueueOperation,
    QueueOperationError,
    RemoveOperation,
    SkippedSubtask,
    Subtask,
)
from .notifications import NotificationManager
from .queue_engine.engine import apply_proposal, build_proposal, get_pending_subtasks
from .queue_engine.parse import parse_queue_operations
from .queue_engine.store import load_queue, write_proposal_artifact
from .reviewer import Reviewer, ReviewerOutputError, extract_json_object
from .utils import _now_iso, _utc_date

console = Console()

STORY_REF_RE = re.compile(r"\*\*Story:\*\*\s*\[(?P<ref>[^\]]+)\]\([^)]+\)")
MISSING_PARENT_TASK_RE = re.compile(
    r"(?:missing parent task|missing task file|unable to validate against parent task"
    r"|parent task[^\n]*not found)",
    re.IGNORECASE,
)

ISSUE_LABELS = {
    IssueType.SCOPE_CREEP: "Scope Creep",
    IssueType.TOO_BROAD: "Too Broad",
    IssueType.TOO_NARROW: "Too Narrow",
    IssueType.UNFAITHFUL: "Unfaithful to Parent",
}

VALIDATION_SOURCE = "validation"


class ValidationMode(str, Enum):
    HEADLESS = "headless"
    SUPERVISED = "supervised"


# ---------------------------------------------------------------------------
# Reviewer verdicts
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Aligned:
    operations: tuple[QueueOperation, ...] = ()


@dataclass(frozen=True)
class Misaligned:
    reason: str
    issue_type: Optional[IssueType] = None
    suggestion: Optional[str] = None
    operations: tuple[QueueOperation, ...] = ()


@dataclass(frozen=True)
class ParseFailure:
    message: str


ValidationVerdict = Union[Aligned, Misaligned]


def format_issue_type(issue_type: Optional[IssueType]) -> str:
    if issue_type is None:
        return "Unknown"
    return ISSUE_LABELS.get(issue_type, issue_type.value)


def parse_issue_type(value: object) -> Optional[IssueType]:
    if not isinstance(value, str):
        return None
    try:
        return IssueType(value)
    except ValueError:
        return None


def _non_blank(value: object) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value
    return None


def parse_validation_response(
    raw: str, subtask_id: str
) -> Union[Aligned, Misaligned, ParseFailure]:
    """Turn a reviewer reply into a tagged verdict without failing open yet."""
    try:
        data = extract_json_object(raw)
    except ReviewerOutputError as exc:
        return ParseFailure(str(exc))

    operations = tuple(parse_queue_operations(data.get("operations"), subtask_id))
    aligned = data.get("aligned")
    if not isinstance(aligned, bool):
        return ParseFailure("aligned must be boolean")
    if aligned:
        return Aligned(operations=operations)
    return Misaligned(
        reason=_non_blank(data.get("reason")) or "Unknown alignment issue",
        issue_type=parse_issue_type(data.get("issue_type")),
        suggestion=_non_blank(data.get("suggestion")),
        operations=operations,
    )


def resolve_verdict(
    parsed: Union[Aligned, Misaligned, ParseFailure], subtask_id: str
) -> ValidationVerdict:
    if isinstance(parsed, ParseFailure):
        logger.warning(
            "[Validation:{}] Unparseable reviewer reply ({}), treating as aligned",
            subtask_id,
            parsed.message,
        )
        return Aligned()
    return parsed


def normalize_missing_parent_task(
    verdict: ValidationVerdict, *, has_parent_task: bool, subtask_id: str
) -> ValidationVerdict:
    """Treat "parent task is missing" complaints as aligned when no task file exists."""
    if isinstance(verdict, Aligned) or has_parent_task:
        return verdict
    if not MISSING_PARENT_TASK_RE.search(verdict.reason):
        return verdict
    logger.warning(
        "[Validation:{}] Parent task missing; treating validation result as aligned", subtask_id
    )
    return Aligned()


# ---------------------------------------------------------------------------
# Planning chain
# ---------------------------------------------------------------------------

def _find_by_prefix(directory: Path, prefix: str) -> Optional[Path]:
    if not prefix.strip() or not directory.is_dir():
        return None
    for entry in sorted(directory.iterdir()):
        if entry.is_file() and entry.name.startswith(prefix):
            return entry
    return None


@dataclass
class ParentTask:
    content: Optional[str] = None
    story_ref: Optional[str] = None


def resolve_parent_task(task_ref: str, milestone_path: Path) -> ParentTask:
    path = _find_by_prefix(milestone_path / TASKS_DIR, task_ref)
    if path is None:
        return ParentTask()
    try:
        content = path.read_text(encoding="utf-8")
    except OSError:
        return ParentTask()
    match = STORY_REF_RE.search(content)
    return ParentTask(content=content, story_ref=match.group("ref") if match else None)


def resolve_parent_story(story_ref: str, milestone_path: Path) -> Optional[str]:
    path = _find_by_prefix(milestone_path / STORIES_DIR, story_ref)
    if path is None:
        return None
    try:
        return path.read_text(encoding="utf-8")
    except OSError:
        return None


def build_validation_prompt(subtask: Subtask, milestone_path: Path, base_prompt: str) -> str:
    parent = resolve_parent_task(subtask.task_ref, milestone_path)
    sections = [
        "## Subtask Definition",
        "",
        "```json",
        json.dumps(subtask.to_dict(), indent=2),
        "```",
        "",
        "## Parent Task",
        "",
        parent.content if parent.content is not None else f"*Not found: {subtask.task_ref}*",
    ]
    if parent.story_ref is not None:
        story = resolve_parent_story(parent.story_ref, milestone_path)
        sections += ["", "## Parent Story", "", story if story is not None else f"*Not found: {parent.story_ref}*"]
    return f"{base_prompt}\n\n---\n\n# Validation Input\n\n" + "\n".join(sections)


# ---------------------------------------------------------------------------
# Single subtask
# ---------------------------------------------------------------------------

def validate_subtask(
    subtask: Subtask,
    milestone_path: Path,
    reviewer: Reviewer,
    base_prompt: str,
    timeout_seconds: int = VALIDATION_TIMEOUT_SECONDS,
) -> ValidationVerdict:
    """Ask the reviewer whether *subtask* matches its planning chain.

    Timeouts, failed invocations and unparseable replies all return ``Aligned``.
    """
    has_parent_task = resolve_parent_task(subtask.task_ref, milestone_path).content is not None
    logger.info("[Validation] Validating {}: {}", subtask.id, subtask.title)
    prompt = build_validation_prompt(subtask, milestone_path, base_prompt)

    started = time.monotonic()
    reply = reviewer.review(prompt, timeout_seconds=timeout_seconds)
    elapsed = time.monotonic() - started
    if reply is None:
        if elapsed >= timeout_seconds - TIMEOUT_WARNING_THRESHOLD_SECONDS:
            logger.warning(
                "[Validation:{}] Timed out after {}s, proceeding as aligned", subtask.id, round(elapsed)
            )
        else:
            logger.warning("[Validation:{}] Invocation failed, proceeding as aligned", subtask.id)
        return Aligned()

    verdict = resolve_verdict(parse_validation_response(reply.text, subtask.id), subtask.id)
    return normalize_missing_parent_task(
        verdict, has_parent_task=has_parent_task, subtask_id=subtask.id
    )


# ---------------------------------------------------------------------------
# Failure handling
# ---------------------------------------------------------------------------

def generate_validation_feedback(subtask: Subtask, verdict: Misaligned) -> str:
    lines = [
        f"# Validation Feedback: {subtask.id}",
        "",
        f"**Generated:** {_now_iso()}",
        f"**Subtask:** {subtask.id} - {subtask.title}",
        f"**Issue Type:** {format_issue_type(verdict.issue_type)}",
        f"**Task Reference:** {subtask.task_ref}",
    ]
    if subtask.story_ref:
        lines.append(f"**Story Reference:** {subtask.story_ref}")
    lines += ["", "## Validation Failure", "", verdict.reason, ""]
    if verdict.suggestion:
        lines += ["## Suggested Fix", "", verdict.suggestion, ""]
    lines += [
        "## Subtask Definition",
        "",
        "```json",
        json.dumps(subtask.to_dict(), indent=2),
        "```",
        "",
        "## How to Resolve",
        "",
        "1. **Fix subtask:** update the subtask to align with its parent task/story intent.",
        "2. **Skip validation:** proceed without `--validate-first` when this misalignment is acceptable.",
        "3. **Remove subtask:** delete this subtask from the queue if it should not be implemented.",
        "",
    ]
    return "\n".join(lines)


def write_validation_feedback(subtask: Subtask, verdict: Misaligned, milestone_path: Path) -> Path:
    path = milestone_path / FEEDBACK_DIR / f"{_utc_date()}_validation_{subtask.id}.md"
    _atomic_write_text(path, generate_validation_feedback(subtask, verdict))
    logger.info("[Validation:{}] Wrote feedback: {}", subtask.id, path)
    return path


def render_validation_failure(subtask: Subtask, verdict: Misaligned) -> None:
    body = [f"Subtask: {subtask.id}", f"  {subtask.title}"]
    body.append(f"Issue: {format_issue_type(verdict.issue_type)}")
    body += ["[bold]Reason:[/bold]", f"  {verdict.reason}"]
    if verdict.suggestion:
        body += ["[bold]Suggestion:[/bold]", f"  {verdict.suggestion}"]
    console.print(
        Panel("\n".join(body), title="[bold red]VALIDATION FAILED[/bold red]", border_style="yellow", width=64)
    )


def prompt_skip_or_continue(subtask_id: str, is_tty: bool) -> bool:
    """Return True to skip. Enter, yes, an interrupt and a missing TTY all skip."""
    if not is_tty:
        return True
    try:
        answer = console.input(f"Skip {subtask_id}? [Y/n] ")
    except (KeyboardInterrupt, EOFError):
        console.print()
        return True
    return answer.strip().lower() not in {"n", "no"}


# ---------------------------------------------------------------------------
# Batch
# ---------------------------------------------------------------------------

@dataclass
class BatchValidationResult:
    total: int
    aligned: int
    skipped: list[SkippedSubtask] = field(default_factory=list)
    operations: list[QueueOperation] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.skipped

    @property
    def summary(self) -> str:
        if not self.skipped:
            return f"Validated {self.total}/{self.total} subtasks. All aligned."
        return (
            f"Validated {self.aligned}/{self.total} subtasks. "
            f"{len(self.skipped)} skipped due to misalignment."
        )


def print_validation_summary(result: BatchValidationResult) -> None:
    if result.success:
        console.print(f"[green]{result.summary}[/green]")
        return
    console.print(f"[yellow]{result.summary}[/yellow]")
    for skipped in result.skipped:
        console.print(
            f"  - {skipped.subtask_id} ({format_issue_type(skipped.issue_type)}) -> {skipped.feedback_path}",
            soft_wrap=True,
        )


def _collect_operation(
    result: BatchValidationResult, working: Queue, operation: QueueOperation
) -> Queue:
    try:
        updated = apply_proposal(working, build_proposal(working, [operation], source=VALIDATION_SOURCE))
    except QueueOperationError as exc:
        logger.warning("Dropping {} operation from validation: {}", operation.type, exc)
        return working
    result.operations.append(operation)
    return updated


def _collect_reviewer_operations(
    result: BatchValidationResult,
    working: Queue,
    operations: Sequence[QueueOperation],
    protected_ids: set[str],
) -> Queue:
    for operation in operations:
        target = getattr(operation, "id", None)
        if target in protected_ids:
            logger.warning(
                "Dropping reviewer {} operation for {}: subtask is handled by validation",
                operation.type,
                target,
            )
            continue
        working = _collect_operation(result, working, operation)
    return working


def validate_all_subtasks(
    pending: Sequence[Subtask],
    *,
    milestone_path: Path,
    reviewer: Reviewer,
    base_prompt: str,
    mode: str = ValidationMode.HEADLESS,
    timeout_seconds: int = VALIDATION_TIMEOUT_SECONDS,
    is_tty: bool = False,
    hook_actions: Sequence[str] = (),
    notifier: Optional[NotificationManager] = None,
    ask_skip: Callable[[str, bool], bool] = prompt_skip_or_continue,
    queue: Optional[Queue] = None,
) -> BatchValidationResult:
    """Validate *pending* in order and collect skips plus queue operations.

    In supervised mode with a terminal the operator decides per failure;
    otherwise every misaligned subtask is skipped, the ``onValidationFail``
    hook runs and a ``remove`` operation is queued.

    Operations suggested by the reviewer are only kept when they apply
    cleanly to *queue* after the operations collected so far, and never
    touch a subtask the batch removes or the operator chose to keep.
    """
    result = BatchValidationResult(total=len(pending), aligned=0)
    working = queue if queue is not None else Queue(subtasks=list(pending))
    kept_ids: set[str] = set()
    interactive = mode == ValidationMode.SUPERVISED and is_tty
    console.print("=== Pre-build Validation ===")

    for subtask in pending:
        verdict = validate_subtask(subtask, milestone_path, reviewer, base_prompt, timeout_seconds)

        if isinstance(verdict, Aligned):
            result.aligned += 1
            working = _collect_reviewer_operations(result, working, verdict.operations, kept_ids)
            console.print(f"  {subtask.id}: [green]aligned[/green]")
            continue

        feedback_path = write_validation_feedback(subtask, verdict, milestone_path)
        console.print(f"  {subtask.id}: [red]misaligned[/red] - {verdict.reason}", soft_wrap=True)

        if interactive:
            render_validation_failure(subtask, verdict)
            if not ask_skip(subtask.id, is_tty):
                result.aligned += 1
                kept_ids.add(subtask.id)
                continue
        else:
            run_hook(
                HookEvent.ON_VALIDATION_FAIL,
                f"Subtask {subtask.id} failed validation: {verdict.reason}",
                hook_actions,
                notifier=notifier,
                is_tty=is_tty,
                context={"subtask_id": subtask.id, "milestone": milestone_path.name},
            )

        working = _collect_reviewer_operations(result, working, verdict.operations, kept_ids | {subtask.id})
        working = _collect_operation(result, working, RemoveOperation(id=subtask.id))
        result.skipped.append(
            SkippedSubtask(
                subtask_id=subtask.id,
                issue_type=verdict.issue_type,
                reason=verdict.reason,
                feedback_path=str(feedback_path),
            )
        )

    print_validation_summary(result)
    append_audit_entry(
        milestone_path,
        AuditEventType.VALIDATION,
        aligned=result.success,
        operationCount=len(result.operations),
        source=VALIDATION_SOURCE,
        summary=(
            f"Validated {result.aligned}/{result.total} subtasks; {len(result.skipped)} misaligned"
        ),
    )
    return result


@dataclass
class ValidationRunResult:
    batch: BatchValidationResult
    proposal_path: Optional[Path] = None
    outcome: Optional[GatedApplyOutcome] = None

    @property
    def success(self) -> bool:
        return self.batch.success

    @property
    def skipped_ids(self) -> set[str]:
        return {skipped.subtask_id for skipped in self.batch.skipped}


def run_validation(
    queue_path: Path,
    milestone_path: Path,
    *,
    reviewer: Reviewer,
    base_prompt: str,
    policies: dict[str, GatePolicy],
    context: ApprovalContext,
    mode: str = ValidationMode.HEADLESS,
    timeout_seconds: int = VALIDATION_TIMEOUT_SECONDS,
    hook_actions: Sequence[str] = (),
    notifier: Optional[NotificationManager] = None,
) -> ValidationRunResult:
    """Validate every pending subtask and route the resulting proposal.

    The proposal is stamped with the fingerprint of the queue as it was read
    before the reviewer calls, so edits made meanwhile turn it stale.
    """
    queue = load_queue(queue_path)
    pending = get_pending_subtasks(queue.subtasks)
    if not pending:
        logger.info("No pending subtasks to validate")
        return ValidationRunResult(batch=BatchValidationResult(total=0, aligned=0))

    batch = validate_all_subtasks(
        pending,
        milestone_path=milestone_path,
        reviewer=reviewer,
        base_prompt=base_prompt,
        mode=mode,
        timeout_seconds=timeout_seconds,
        is_tty=context.is_tty,
        hook_actions=hook_actions,
        notifier=notifier,
        queue=queue,
    )
    if not batch.operations:
        return ValidationRunResult(batch=batch)

    proposal = build_proposal(queue, batch.operations, source=VALIDATION_SOURCE)
    proposal_path = write_proposal_artifact(milestone_path, proposal)
    write_queue_proposal_entry(
        milestone_path,
        proposal,
        summary=(
            f"Validation proposal generated ({batch.aligned}/{batch.total} aligned, "
            f"{len(batch.skipped)} skipped)"
        ),
    )
    outcome = apply_proposal_with_gate(
        queue_path,
        proposal,
        gate=GateName.APPLY_VALIDATION.value,
        policies=policies,
        context=context,
        milestone_path=milestone_path,
        artifact_path=proposal_path,
        notifier=notifier,
    )
    return ValidationRunResult(batch=batch, proposal_path=proposal_path, outcome=outcome)
