"""Walk the planning pipeline level by level under approval gates.

Levels run in a fixed order: roadmap, stories, tasks, subtasks, build,
calibrate. Before each level its gate (if any) is evaluated; the result of a
run is a ``CascadeResult`` value. A checkpoint-and-exit pause is one of its
statuses and the caller decides how to end the process.
"""

from __future__ import annotations

import shlex
import subprocess
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Mapping, Optional, Protocol

from loguru import logger
from rich.console import Console

from .approvals import (
    ApprovalAction,
    ApprovalContext,
    GateName,
    GatePolicy,
    build_resume_command,
    evaluate_approval,
    format_gate_name,
    print_exit_instructions,
    prompt_approval,
    write_gate_feedback_file,
)
from .config import ExecutorsConfig
from .git_utils import git_checkpoint
from .hooks import HookEvent, run_hook
from .notifications import NotificationManager

console = Console()


@dataclass(frozen=True)
class CascadeLevel:
    name: str
    order: int
    requires_milestone: bool


LEVELS: tuple[CascadeLevel, ...] = (
    CascadeLevel("roadmap", 0, False),
    CascadeLevel("stories", 1, True),
    CascadeLevel("tasks", 2, True),
    CascadeLevel("subtasks", 3, True),
    CascadeLevel("build", 4, True),
    CascadeLevel("calibrate", 5, True),
)

_LEVELS_BY_NAME = {level.name: level for level in LEVELS}

_LEVEL_GATES = {
    "roadmap": GateName.CREATE_ROADMAP.value,
    "stories": GateName.CREATE_STORIES.value,
    "tasks": GateName.CREATE_TASKS.value,
    "subtasks": GateName.CREATE_SUBTASKS.value,
}


def is_valid_level_name(name: str) -> bool:
    return name in _LEVELS_BY_NAME


def get_valid_level_names() -> str:
    return ", ".join(level.name for level in LEVELS)


def get_levels_in_range(start: str, target: str) -> list[str]:
    """Levels after *start* up to and including *target*; empty if not forward."""
    start_level = _LEVELS_BY_NAME.get(start)
    target_level = _LEVELS_BY_NAME.get(target)
    if start_level is None or target_level is None:
        return []
    if target_level.order <= start_level.order:
        return []
    return [
        level.name
        for level in LEVELS
        if start_level.order < level.order <= target_level.order
    ]


def validate_cascade_target(start: str, target: str) -> Optional[str]:
    """Return an error message for an invalid or backward cascade, else None."""
    if not is_valid_level_name(start):
        return f"Invalid starting level '{start}'. Valid levels: {get_valid_level_names()}"
    if not is_valid_level_name(target):
        return f"Invalid target level '{target}'. Valid levels: {get_valid_level_names()}"
    if _LEVELS_BY_NAME[target].order <= _LEVELS_BY_NAME[start].order:
        return (
            f"Cannot cascade backward from '{start}' to '{target}'. "
            f"Cascade must flow forward through: {get_valid_level_names()}"
        )
    return None


def get_next_level(level: str) -> Optional[str]:
    current = _LEVELS_BY_NAME.get(level)
    if current is None or current.order + 1 >= len(LEVELS):
        return None
    return LEVELS[current.order + 1].name


def level_gate(level: str) -> Optional[str]:
    """Gate guarding *level*; build and calibrate have none."""
    return _LEVEL_GATES.get(level)


def plan_cascade_levels(start: str, target: str) -> tuple[list[str], Optional[str]]:
    """Levels to run for ``--from start --cascade target`` (both inclusive)."""
    if start == target and is_valid_level_name(start):
        return [start], None
    error = validate_cascade_target(start, target)
    if error:
        return [], error
    return [start, *get_levels_in_range(start, target)], None


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------

@dataclass
class LevelContext:
    project_dir: Path
    milestone: Optional[str] = None
    milestone_path: Optional[Path] = None
    provider: Optional[str] = None
    model: Optional[str] = None
    validate_first: bool = False


@dataclass
class LevelOutcome:
    success: bool
    message: str = ""


class LevelExecutor(Protocol):
    def run(self, level: str, context: LevelContext) -> LevelOutcome:
        ...


class CommandLevelExecutor:
    """Run the shell command configured for a level under ``executors:``."""

    def __init__(self, executors: ExecutorsConfig):
        self.executors = executors

    def run(self, level: str, context: LevelContext) -> LevelOutcome:
        template = self.executors.command_for(level)
        if template is None:
            return LevelOutcome(False, f"No executor command configured for level '{level}'")
        try:
            command = template.format(
                level=level,
                milestone=context.milestone or "",
                provider=context.provider or "",
                model=context.model or "",
            )
        except KeyError as exc:
            raise ValueError(f"Unknown placeholder in executor command for '{level}': {exc}") from exc

        timeout_seconds = self.executors.timeout_minutes * 60
        logger.info("Running {} executor: {}", level, command)
        try:
            completed = subprocess.run(
                shlex.split(command),
                cwd=context.project_dir,
                timeout=timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired:
            return LevelOutcome(False, f"{level} executor timed out after {self.executors.timeout_minutes}m")
        except OSError as exc:
            return LevelOutcome(False, f"{level} executor failed to start: {exc}")
        if completed.returncode != 0:
            return LevelOutcome(False, f"{level} executor exited with code {completed.returncode}")
        return LevelOutcome(True)


class BuildLevelExecutor:
    """Build level: optional pre-build validation, then the build command."""

    def __init__(
        self,
        command: LevelExecutor,
        validator: Optional[Callable[[LevelContext], bool]] = None,
    ):
        self.command = command
        self.validator = validator

    def run(self, level: str, context: LevelContext) -> LevelOutcome:
        if context.validate_first and self.validator is not None:
            if not self.validator(context):
                logger.warning("Validation skipped misaligned subtasks; building the rest")
        return self.command.run(level, context)


class CalibrationLevelExecutor:
    def __init__(self, calibrate: Callable[[LevelContext], None]):
        self.calibrate = calibrate

    def run(self, level: str, context: LevelContext) -> LevelOutcome:
        self.calibrate(context)
        return LevelOutcome(True)


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

class CascadeStatus(str, Enum):
    COMPLETED = "completed"
    CHECKPOINT_EXIT = "checkpoint-exit"
    ABORTED = "aborted"
    FAILED = "failed"


@dataclass
class CascadeResult:
    status: CascadeStatus
    completed_levels: list[str] = field(default_factory=list)
    stopped_at: Optional[str] = None
    error: Optional[str] = None
    resume_command: Optional[str] = None
    feedback_path: Optional[Path] = None

    @property
    def success(self) -> bool:
        return self.status in (CascadeStatus.COMPLETED, CascadeStatus.CHECKPOINT_EXIT)


class CascadeRunner:
    """Sequence levels from a start level to a target level.

    Args:
        executors: Executor per level name.
        policies: Resolved gate policy table.
        approval_context: Force/review flags and TTY state.
        hook_actions: Actions for the ``onCascadeCheckpoint`` hook.
        notifier: Optional desktop notifier.
        prompt: Yes/no prompt used by ``prompt`` gate outcomes.
        checkpoint: Commits outstanding changes before a checkpoint-and-exit level.
    """

    def __init__(
        self,
        executors: Mapping[str, LevelExecutor],
        policies: Mapping[str, GatePolicy],
        approval_context: ApprovalContext,
        *,
        hook_actions: tuple[str, ...] | list[str] = (),
        notifier: Optional[NotificationManager] = None,
        prompt: Callable[[str], bool] = prompt_approval,
        checkpoint: Callable[[Path, str], bool] = git_checkpoint,
    ):
        self.executors = executors
        self.policies = policies
        self.approval_context = approval_context
        self.hook_actions = list(hook_actions)
        self.notifier = notifier
        self.prompt = prompt
        self.checkpoint = checkpoint

    def _execute(self, level: str, context: LevelContext) -> Optional[str]:
        """Run the level; return an error message on failure."""
        definition = _LEVELS_BY_NAME[level]
        if definition.requires_milestone and context.milestone_path is None:
            return f"Level '{level}' requires a milestone"
        executor = self.executors.get(level)
        if executor is None:
            return f"No executor registered for level '{level}'"
        console.print(f"[bold cyan]=== Cascade: {level} ===[/bold cyan]")
        try:
            outcome = executor.run(level, context)
        except Exception as exc:
            logger.exception("Level {} raised", level)
            return str(exc) or exc.__class__.__name__
        if not outcome.success:
            return outcome.message or f"Level '{level}' failed"
        return None

    def _checkpoint_and_exit(
        self,
        level: str,
        gate: str,
        target: str,
        context: LevelContext,
        completed: list[str],
    ) -> CascadeResult:
        self.checkpoint(context.project_dir, gate)
        error = self._execute(level, context)
        if error:
            return CascadeResult(CascadeStatus.FAILED, completed, stopped_at=level, error=error)
        completed.append(level)

        next_level = get_next_level(level)
        resume = None
        if level != target and next_level is not None:
            resume = build_resume_command(context.milestone or "", target, next_level)
        feedback_root = context.milestone_path or context.project_dir
        feedback_path = write_gate_feedback_file(
            feedback_root,
            gate=gate,
            level=level,
            milestone=context.milestone or "",
            resume_command=resume,
        )
        print_exit_instructions(gate=gate, level=level, feedback_path=feedback_path, resume_command=resume)
        run_hook(
            HookEvent.ON_CASCADE_CHECKPOINT,
            f"Cascade paused after '{level}' for approval ({format_gate_name(gate)})",
            self.hook_actions,
            notifier=self.notifier,
            is_tty=self.approval_context.is_tty,
            context={"gate": format_gate_name(gate), "level": level, "milestone": context.milestone},
        )
        return CascadeResult(
            CascadeStatus.CHECKPOINT_EXIT,
            completed,
            stopped_at=level,
            resume_command=resume,
            feedback_path=feedback_path,
        )

    def run(self, start: str, target: str, context: LevelContext) -> CascadeResult:
        """Run *start* through *target* inclusive."""
        levels, error = plan_cascade_levels(start, target)
        if error:
            return CascadeResult(CascadeStatus.FAILED, error=error)

        completed: list[str] = []
        for level in levels:
            gate = level_gate(level)
            action = evaluate_approval(gate, self.policies, self.approval_context)
            logger.debug("Level {} gate {} -> {}", level, gate, action.value)

            if gate is not None and action is ApprovalAction.NOTIFY_CONTINUE and self.notifier:
                self.notifier.notify_gate(
                    gate=format_gate_name(gate),
                    message=f"Running level '{level}'",
                    milestone=context.milestone,
                )
            elif gate is not None and action is ApprovalAction.PROMPT:
                if not self.prompt(f"{format_gate_name(gate)}: run level '{level}'?"):
                    console.print(f"[yellow]Cascade aborted at '{level}'[/yellow]")
                    return CascadeResult(CascadeStatus.ABORTED, completed, stopped_at=level)
            elif gate is not None and action is ApprovalAction.CHECKPOINT_EXIT:
                return self._checkpoint_and_exit(level, gate, target, context, completed)

            error = self._execute(level, context)
            if error:
                logger.error("Cascade stopped at {}: {}", level, error)
                return CascadeResult(CascadeStatus.FAILED, completed, stopped_at=level, error=error)
            completed.append(level)

        if self.notifier:
            self.notifier.notify_cascade_complete(True, f"Completed: {', '.join(completed)}")
        return CascadeResult(CascadeStatus.COMPLETED, completed)
