"""Drift detection over completed work, producing corrective subtasks.

Three checks share one shape: gather evidence for completed subtasks, ask the
reviewer in small batches, merge the batch results and turn the corrective
drafts into ``create`` operations routed through an approval gate.

- ``intention``: commit diff plus planning chain (task, story, milestone section)
- ``technical``: commit diff plus the inlined ``filesToRead`` of each subtask
- ``improve``: session logs of completed subtasks, gated by ``promptChanges``
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence

from loguru import logger
from rich.console import Console

from .approvals import (
    ApprovalContext,
    GatedApplyOutcome,
    GateName,
    GatePolicy,
    apply_proposal_with_gate,
)
from .audit import AuditEventType, append_audit_entry, write_queue_proposal_entry
from .config import SelfImprovementMode
from .constants import CALIBRATION_BATCH_SIZE, CALIBRATION_TIMEOUT_SECONDS, CHARS_PER_TOKEN
from .git_utils import DiffSummary, extract_diff_summary
from .io_utils import _read_text_for_prompt
from .models import CreateOperation, Subtask, SubtaskDraft
from .notifications import NotificationManager
from .prompts import CALIBRATION_OUTPUT_CONTRACT, load_prompt
from .queue_engine.engine import build_proposal, get_completed_subtasks
from .queue_engine.parse import parse_subtask_draft
from .queue_engine.store import load_queue, write_proposal_artifact
from .reviewer import Reviewer, ReviewerOutputError, extract_json_object
from .validation import resolve_parent_story, resolve_parent_task

console = Console()

MILESTONE_FILE = "MILESTONE.md"

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")
_WORKSTREAM_KEY_RE = re.compile(r"^[A-Za-z]+-\d+")
_HEADING_RE = re.compile(r"^(?P<hashes>#{1,6})\s+(?P<title>.*)$")


class CalibrationCheck(str, Enum):
    INTENTION = "intention"
    TECHNICAL = "technical"
    IMPROVE = "improve"
    ALL = "all"


class InsertionMode(str, Enum):
    PREPEND = "prepend"
    APPEND = "append"


@dataclass
class CalibrationResult:
    summary: str = ""
    insertion_mode: InsertionMode = InsertionMode.PREPEND
    corrective_subtasks: list[SubtaskDraft] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": self.summary,
            "insertionMode": self.insertion_mode.value,
            "correctiveSubtasks": [draft.to_dict() for draft in self.corrective_subtasks],
        }


# ---------------------------------------------------------------------------
# Reviewer replies
# ---------------------------------------------------------------------------

def parse_calibration_result(raw: str) -> CalibrationResult:
    """Parse a reviewer reply; anything unusable yields an empty result."""
    try:
        data = extract_json_object(raw)
    except ReviewerOutputError as exc:
        logger.warning("Calibration reply unparseable ({}); treating as no drift", exc)
        return CalibrationResult()

    try:
        mode = InsertionMode(data.get("insertionMode", InsertionMode.PREPEND.value))
    except ValueError:
        mode = InsertionMode.PREPEND

    drafts: list[SubtaskDraft] = []
    raw_drafts = data.get("correctiveSubtasks")
    if isinstance(raw_drafts, list):
        for index, raw_draft in enumerate(raw_drafts):
            draft = parse_subtask_draft(raw_draft)
            if draft is None:
                logger.warning("Ignoring invalid corrective subtask at index {}", index)
                continue
            drafts.append(draft)

    summary = data.get("summary")
    return CalibrationResult(
        summary=summary if isinstance(summary, str) else "",
        insertion_mode=mode,
        corrective_subtasks=drafts,
    )


def normalize_title(title: str) -> str:
    return _NON_ALNUM_RE.sub("", title.lower())


def merge_calibration_results(results: Sequence[CalibrationResult]) -> CalibrationResult:
    """Concatenate batch results, dropping drafts whose normalized title repeats."""
    merged = CalibrationResult()
    if results:
        merged.insertion_mode = results[0].insertion_mode
    seen: set[str] = set()
    summaries: list[str] = []
    for result in results:
        if result.summary.strip():
            summaries.append(result.summary.strip())
        for draft in result.corrective_subtasks:
            key = normalize_title(draft.title)
            if key in seen:
                continue
            seen.add(key)
            merged.corrective_subtasks.append(draft)
    merged.summary = "\n\n".join(summaries)
    return merged


def build_calibration_create_operations(
    drafts: Sequence[SubtaskDraft],
    mode: InsertionMode,
    subtasks: Sequence[Subtask],
) -> list[CreateOperation]:
    """Place drafts at the front of the pending work, or at the end for ``append``."""
    if mode is InsertionMode.APPEND:
        start = len(subtasks)
    else:
        start = next(
            (index for index, subtask in enumerate(subtasks) if not subtask.done),
            len(subtasks),
        )
    return [CreateOperation(at_index=start + offset, subtask=draft) for offset, draft in enumerate(drafts)]


# ---------------------------------------------------------------------------
# Evidence
# ---------------------------------------------------------------------------

@dataclass
class PlanningChain:
    task_content: Optional[str] = None
    story_content: Optional[str] = None
    milestone_section: Optional[str] = None

    def render(self) -> str:
        parts: list[str] = []
        if self.task_content:
            parts += ["#### Parent Task", "", self.task_content.strip(), ""]
        if self.story_content:
            parts += ["#### Parent Story", "", self.story_content.strip(), ""]
        if self.milestone_section:
            parts += ["#### Milestone Section", "", self.milestone_section.strip(), ""]
        return "\n".join(parts)


def _extract_milestone_section(milestone_path: Path, task_ref: str) -> Optional[str]:
    match = _WORKSTREAM_KEY_RE.match(task_ref.strip())
    milestone_file = milestone_path / MILESTONE_FILE
    if match is None or not milestone_file.is_file():
        return None
    key = match.group(0)
    lines = milestone_file.read_text(encoding="utf-8").splitlines()
    start: Optional[int] = None
    level = 0
    for index, line in enumerate(lines):
        heading = _HEADING_RE.match(line)
        if heading is None:
            continue
        depth = len(heading.group("hashes"))
        if start is None:
            if key in heading.group("title"):
                start, level = index, depth
        elif depth <= level:
            return "\n".join(lines[start:index]).strip()
    if start is None:
        return None
    return "\n".join(lines[start:]).strip()


def resolve_planning_chain(subtask: Subtask, milestone_path: Path) -> Optional[PlanningChain]:
    """Resolve task/story files, falling back to the matching MILESTONE.md section.

    Returns None when nothing about the subtask's origin can be found.
    """
    parent = resolve_parent_task(subtask.task_ref, milestone_path)
    if parent.content is not None:
        story_ref = parent.story_ref or subtask.story_ref
        story = resolve_parent_story(story_ref, milestone_path) if story_ref else None
        return PlanningChain(task_content=parent.content, story_content=story)
    section = _extract_milestone_section(milestone_path, subtask.task_ref)
    if section:
        return PlanningChain(milestone_section=section)
    return None


@dataclass
class ReferencedFile:
    path: Path
    content: str
    token_estimate: int


def resolve_files_to_read(files: Iterable[str], project_dir: Path) -> list[ReferencedFile]:
    """Read each referenced file; ``@``-prefixed paths are relative to *project_dir*."""
    resolved: list[ReferencedFile] = []
    for raw in files:
        candidate = Path(raw[1:] if raw.startswith("@") else raw)
        path = candidate if candidate.is_absolute() else (project_dir / candidate).resolve()
        if not path.is_file():
            logger.warning("Skipping missing file referenced by subtask: {}", raw)
            continue
        content, truncated = _read_text_for_prompt(path)
        if truncated:
            logger.debug("Truncated {} for calibration prompt", path)
        resolved.append(
            ReferencedFile(path=path, content=content, token_estimate=len(content) // CHARS_PER_TOKEN)
        )
    return resolved


def _completed_with_commit(subtasks: Sequence[Subtask]) -> list[Subtask]:
    return [subtask for subtask in get_completed_subtasks(subtasks) if subtask.commit_hash]


def _batched(items: Sequence[Any], size: int) -> list[list[Any]]:
    return [list(items[start : start + size]) for start in range(0, len(items), size)]


def _render_subtask_header(subtask: Subtask, diff: DiffSummary) -> list[str]:
    return [
        f"### {subtask.id}: {subtask.title}",
        "",
        "```json",
        json.dumps(subtask.to_dict(), indent=2),
        "```",
        "",
        f"#### Diff ({diff.commit_hash})",
        "",
        "```diff",
        diff.patch or diff.stat_summary or "(diff unavailable)",
        "```",
        "",
    ]


def build_intention_batch_prompt(
    base_prompt: str, entries: Sequence[tuple[Subtask, DiffSummary, PlanningChain]]
) -> str:
    lines = [base_prompt.rstrip(), "", f"## Subtasks ({len(entries)})", ""]
    for subtask, diff, chain in entries:
        lines += _render_subtask_header(subtask, diff)
        lines.append(chain.render())
    lines += ["", CALIBRATION_OUTPUT_CONTRACT]
    return "\n".join(lines)


def build_technical_batch_prompt(
    base_prompt: str, entries: Sequence[tuple[Subtask, DiffSummary, list[ReferencedFile]]]
) -> str:
    lines = [base_prompt.rstrip(), "", f"## Subtasks ({len(entries)})", ""]
    for subtask, diff, files in entries:
        lines += _render_subtask_header(subtask, diff)
        for referenced in files:
            lines += [
                f"#### File: {referenced.path} (~{referenced.token_estimate} tokens)",
                "",
                "```",
                referenced.content,
                "```",
                "",
            ]
    lines += ["", CALIBRATION_OUTPUT_CONTRACT]
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Running checks
# ---------------------------------------------------------------------------

@dataclass
class CalibrationSettings:
    """Everything a check needs besides the milestone itself."""

    project_dir: Path
    reviewer: Reviewer
    policies: dict[str, GatePolicy]
    context: ApprovalContext
    prompt_overrides: dict[str, str] = field(default_factory=dict)
    timeout_seconds: int = CALIBRATION_TIMEOUT_SECONDS
    self_improvement_mode: SelfImprovementMode = SelfImprovementMode.SUGGEST
    notifier: Optional[NotificationManager] = None


@dataclass
class CalibrationOutcome:
    check: CalibrationCheck
    result: CalibrationResult
    proposal_path: Optional[Path] = None
    gated: Optional[GatedApplyOutcome] = None

    @property
    def applied(self) -> bool:
        return self.gated is not None and self.gated.applied


def _ask(settings: CalibrationSettings, prompt: str, label: str) -> CalibrationResult:
    reply = settings.reviewer.review(prompt, timeout_seconds=settings.timeout_seconds)
    if reply is None:
        logger.warning("{} analysis failed or timed out; treating as no drift", label)
        return CalibrationResult()
    return parse_calibration_result(reply.text)


def apply_calibration_result(
    check: CalibrationCheck,
    result: CalibrationResult,
    *,
    queue_path: Path,
    milestone_path: Path,
    settings: CalibrationSettings,
    gate: GateName = GateName.CORRECTION_TASKS,
    context: Optional[ApprovalContext] = None,
) -> CalibrationOutcome:
    """Record *result* and route its corrective drafts through *gate*."""
    source = f"calibration:{check.value}"
    append_audit_entry(
        milestone_path,
        AuditEventType.CALIBRATION,
        source=source,
        summary=result.summary or "No drift detected",
        insertionMode=result.insertion_mode.value,
        correctiveCount=len(result.corrective_subtasks),
    )
    if not result.corrective_subtasks:
        console.print(f"[green]{check.value}: no corrective subtasks proposed[/green]")
        return CalibrationOutcome(check=check, result=result)

    queue = load_queue(queue_path)
    operations = build_calibration_create_operations(
        result.corrective_subtasks, result.insertion_mode, queue.subtasks
    )
    proposal = build_proposal(queue, operations, source=source)
    proposal_path = write_proposal_artifact(milestone_path, proposal)
    write_queue_proposal_entry(
        milestone_path,
        proposal,
        summary=f"Calibration proposal generated ({len(operations)} corrective subtask(s))",
    )
    gated = apply_proposal_with_gate(
        queue_path,
        proposal,
        gate=gate.value,
        policies=settings.policies,
        context=context or settings.context,
        milestone_path=milestone_path,
        artifact_path=proposal_path,
        notifier=settings.notifier,
    )
    return CalibrationOutcome(check=check, result=result, proposal_path=proposal_path, gated=gated)


def run_intention_check(
    queue_path: Path, milestone_path: Path, settings: CalibrationSettings
) -> CalibrationOutcome:
    console.print("=== Running Intention Drift Check ===")
    queue = load_queue(queue_path)
    completed = _completed_with_commit(queue.subtasks)
    if not completed:
        logger.info("No completed subtasks with commitHash found. Nothing to analyze.")
        return CalibrationOutcome(check=CalibrationCheck.INTENTION, result=CalibrationResult())

    entries: list[tuple[Subtask, DiffSummary, PlanningChain]] = []
    for subtask in completed:
        chain = resolve_planning_chain(subtask, milestone_path)
        if chain is None:
            logger.info("Skipping {}: no planning chain could be resolved", subtask.id)
            continue
        diff = extract_diff_summary(settings.project_dir, subtask.commit_hash or "", subtask.id)
        entries.append((subtask, diff, chain))

    base = load_prompt("intention", settings.prompt_overrides, settings.project_dir)
    results = [
        _ask(settings, build_intention_batch_prompt(base, batch), "Intention drift")
        for batch in _batched(entries, CALIBRATION_BATCH_SIZE)
    ]
    return apply_calibration_result(
        CalibrationCheck.INTENTION,
        merge_calibration_results(results),
        queue_path=queue_path,
        milestone_path=milestone_path,
        settings=settings,
    )


def run_technical_check(
    queue_path: Path, milestone_path: Path, settings: CalibrationSettings
) -> CalibrationOutcome:
    console.print("=== Running Technical Drift Check ===")
    queue = load_queue(queue_path)
    completed = _completed_with_commit(queue.subtasks)
    if not completed:
        logger.info("No completed subtasks with commitHash found. Nothing to analyze.")
        return CalibrationOutcome(check=CalibrationCheck.TECHNICAL, result=CalibrationResult())

    entries = [
        (
            subtask,
            extract_diff_summary(settings.project_dir, subtask.commit_hash or "", subtask.id),
            resolve_files_to_read(subtask.files_to_read, settings.project_dir),
        )
        for subtask in completed
    ]
    base = load_prompt("technical", settings.prompt_overrides, settings.project_dir)
    results = [
        _ask(settings, build_technical_batch_prompt(base, batch), "Technical drift")
        for batch in _batched(entries, CALIBRATION_BATCH_SIZE)
    ]
    return apply_calibration_result(
        CalibrationCheck.TECHNICAL,
        merge_calibration_results(results),
        queue_path=queue_path,
        milestone_path=milestone_path,
        settings=settings,
    )


@dataclass
class SessionLogPreflight:
    available: list[tuple[Subtask, Path]] = field(default_factory=list)
    missing: list[Subtask] = field(default_factory=list)


def build_session_log_preflight(subtasks: Sequence[Subtask], project_dir: Path) -> SessionLogPreflight:
    """Split completed subtasks with a ``sessionId`` by whether their log exists."""
    preflight = SessionLogPreflight()
    for subtask in get_completed_subtasks(subtasks):
        if not subtask.session_id:
            continue
        raw_path = subtask.extra.get("sessionLogPath")
        log_path = Path(raw_path) if isinstance(raw_path, str) and raw_path else None
        if log_path is not None and not log_path.is_absolute():
            log_path = project_dir / log_path
        if log_path is not None and log_path.is_file():
            preflight.available.append((subtask, log_path))
        else:
            preflight.missing.append(subtask)
    return preflight


def build_improve_prompt(
    base_prompt: str, subtask: Subtask, log_path: Path, mode: SelfImprovementMode
) -> str:
    return "\n".join(
        [
            base_prompt.rstrip(),
            "",
            f"## Session {subtask.session_id}",
            "",
            f"Subtask: {subtask.id} - {subtask.title}",
            f"Session log: {log_path}",
            f"Self-improvement mode: {mode.value}",
            "",
            CALIBRATION_OUTPUT_CONTRACT,
        ]
    )


def run_improve_check(
    queue_path: Path, milestone_path: Path, settings: CalibrationSettings
) -> CalibrationOutcome:
    console.print("=== Running Self-Improvement Analysis ===")
    if settings.self_improvement_mode is SelfImprovementMode.OFF:
        logger.info("Self-improvement analysis is disabled in config")
        return CalibrationOutcome(check=CalibrationCheck.IMPROVE, result=CalibrationResult())

    queue = load_queue(queue_path)
    preflight = build_session_log_preflight(queue.subtasks, settings.project_dir)
    if not preflight.available and not preflight.missing:
        logger.info("No completed subtasks with sessionId found. Nothing to analyze.")
        return CalibrationOutcome(check=CalibrationCheck.IMPROVE, result=CalibrationResult())
    for subtask in preflight.missing:
        logger.warning("Session log for {} ({}) not found", subtask.id, subtask.session_id)

    if not preflight.available:
        missing = ", ".join(f"{subtask.id}:{subtask.session_id}" for subtask in preflight.missing)
        result = CalibrationResult(summary=f"Self-improvement skipped: no available session logs ({missing})")
    else:
        base = load_prompt("improve", settings.prompt_overrides, settings.project_dir)
        result = merge_calibration_results(
            [
                _ask(
                    settings,
                    build_improve_prompt(base, subtask, log_path, settings.self_improvement_mode),
                    "Self-improvement",
                )
                for subtask, log_path in preflight.available
            ]
        )

    context = settings.context
    if settings.self_improvement_mode is SelfImprovementMode.AUTOFIX:
        context = replace(context, force=True)
    return apply_calibration_result(
        CalibrationCheck.IMPROVE,
        result,
        queue_path=queue_path,
        milestone_path=milestone_path,
        settings=settings,
        gate=GateName.PROMPT_CHANGES,
        context=context,
    )


_CHECK_RUNNERS = {
    CalibrationCheck.INTENTION: run_intention_check,
    CalibrationCheck.TECHNICAL: run_technical_check,
    CalibrationCheck.IMPROVE: run_improve_check,
}


def run_calibration(
    check: CalibrationCheck,
    queue_path: Path,
    milestone_path: Path,
    settings: CalibrationSettings,
) -> list[CalibrationOutcome]:
    """Run one check, or intention, technical and improve in turn for ``all``."""
    if check is CalibrationCheck.ALL:
        checks = [CalibrationCheck.INTENTION, CalibrationCheck.TECHNICAL, CalibrationCheck.IMPROVE]
    else:
        checks = [check]
    outcomes: list[CalibrationOutcome] = []
    for current in checks:
        outcome = _CHECK_RUNNERS[current](queue_path, milestone_path, settings)
        if outcome.result.summary:
            console.print(outcome.result.summary, soft_wrap=True)
        outcomes.append(outcome)
    return outcomes
