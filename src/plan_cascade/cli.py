"""Command line entry point for plan-cascade."""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from loguru import logger
from rich.console import Console
from rich.table import Table

from .approvals import ApprovalContext, GatePolicy, format_gate_name
from .calibration import CalibrationCheck, CalibrationSettings, run_calibration
from .cascade import (
    LEVELS,
    BuildLevelExecutor,
    CalibrationLevelExecutor,
    CascadeRunner,
    CascadeStatus,
    CommandLevelExecutor,
    LevelContext,
    LevelExecutor,
    level_gate,
    plan_cascade_levels,
)
from .config import CascadeConfig, ConfigError, load_cascade_config
from .constants import CLI_NAME, EXIT_FAILURE, EXIT_OK
from .milestones import queue_path_for, resolve_milestone_path
from .models import CreateOperation
from .notifications import NotificationManager, create_notification_manager
from .prompts import load_prompt
from .queue_engine.engine import build_proposal, count_remaining, get_next_subtask
from .queue_engine.parse import parse_cli_subtask_drafts, read_queue_proposal_from_file
from .queue_engine.store import apply_proposal_to_file, load_queue
from .reviewer import CommandReviewer
from .validation import ValidationMode, run_validation

console = Console()
err_console = Console(stderr=True)


def _configure_logging(level: str = "INFO") -> None:
    """Configure loguru logger with the specified level."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{module}</cyan>:<cyan>{line}</cyan>\n"
            "{message}"
        ),
    )


# Initialize with default level; reconfigured in main() from --log-level
_configure_logging()


def _is_tty() -> bool:
    return sys.stdin.isatty() and sys.stdout.isatty()


@dataclass
class _Session:
    project_dir: Path
    config: CascadeConfig
    policies: dict[str, GatePolicy]
    approval_context: ApprovalContext
    notifier: Optional[NotificationManager]
    milestone_path: Optional[Path] = None

    @property
    def milestone_dir(self) -> Path:
        if self.milestone_path is None:
            raise ValueError("A milestone is required for this command")
        return self.milestone_path

    @property
    def queue_path(self) -> Path:
        return queue_path_for(self.milestone_dir)

    def reviewer(self) -> CommandReviewer:
        return CommandReviewer(self.config.reviewer.command, self.project_dir)

    def calibration_settings(self) -> CalibrationSettings:
        return CalibrationSettings(
            project_dir=self.project_dir,
            reviewer=self.reviewer(),
            policies=self.policies,
            context=self.approval_context,
            prompt_overrides=dict(self.config.prompts),
            self_improvement_mode=self.config.self_improvement.mode,
            notifier=self.notifier,
        )


def _open_session(args: argparse.Namespace, milestone: Optional[str]) -> _Session:
    project_dir = Path(args.project_dir or Path.cwd()).resolve()
    config, err = load_cascade_config(project_dir)
    if err:
        raise ConfigError(err)
    milestone_path = None
    if milestone:
        milestone_path = resolve_milestone_path(project_dir, milestone, config.milestones_dir)
    return _Session(
        project_dir=project_dir,
        config=config,
        policies=config.gate_policies(),
        approval_context=ApprovalContext(
            force=getattr(args, "force", False),
            review=getattr(args, "review", False),
            is_tty=_is_tty(),
        ),
        notifier=create_notification_manager(config.notifications.enabled),
        milestone_path=milestone_path,
    )


def _validate(session: _Session, mode: ValidationMode) -> bool:
    result = run_validation(
        session.queue_path,
        session.milestone_dir,
        reviewer=session.reviewer(),
        base_prompt=load_prompt("validation", session.config.prompts, session.project_dir),
        policies=session.policies,
        context=session.approval_context,
        mode=mode,
        timeout_seconds=session.config.reviewer.timeout_seconds,
        hook_actions=session.config.hooks.on_validation_fail,
        notifier=session.notifier,
    )
    return result.success


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def _cmd_run(args: argparse.Namespace) -> int:
    levels, error = plan_cascade_levels(args.from_level, args.cascade)
    if error:
        raise ValueError(error)
    needs_milestone = any(level != "roadmap" for level in levels)
    if needs_milestone and not args.milestone:
        raise ValueError(f"--milestone is required to run: {', '.join(levels)}")

    session = _open_session(args, args.milestone)
    command_executor = CommandLevelExecutor(session.config.executors)

    def calibrate(_: LevelContext) -> None:
        run_calibration(
            CalibrationCheck.ALL,
            session.queue_path,
            session.milestone_dir,
            session.calibration_settings(),
        )

    executors: dict[str, LevelExecutor] = {
        "roadmap": command_executor,
        "stories": command_executor,
        "tasks": command_executor,
        "subtasks": command_executor,
        "build": BuildLevelExecutor(
            command_executor,
            validator=lambda _: _validate(session, ValidationMode.HEADLESS),
        ),
        "calibrate": CalibrationLevelExecutor(calibrate),
    }
    runner = CascadeRunner(
        executors,
        session.policies,
        session.approval_context,
        hook_actions=session.config.hooks.on_cascade_checkpoint,
        notifier=session.notifier,
    )
    context = LevelContext(
        project_dir=session.project_dir,
        milestone=args.milestone,
        milestone_path=session.milestone_path,
        provider=args.provider,
        model=args.model,
        validate_first=args.validate_first,
    )
    result = runner.run(args.from_level, args.cascade, context)

    completed = ", ".join(result.completed_levels) or "(none)"
    if result.status is CascadeStatus.COMPLETED:
        console.print(f"[green]Cascade complete: {completed}[/green]")
        return EXIT_OK
    if result.status is CascadeStatus.CHECKPOINT_EXIT:
        console.print(f"[yellow]Cascade paused after '{result.stopped_at}' for approval[/yellow]")
        return EXIT_OK
    if result.status is CascadeStatus.ABORTED:
        console.print(f"[yellow]Cascade aborted at '{result.stopped_at}'. Completed: {completed}[/yellow]")
        return EXIT_FAILURE
    err_console.print(f"[red]Cascade failed at '{result.stopped_at}': {result.error}[/red]")
    if session.notifier:
        session.notifier.notify_cascade_complete(False, result.error)
    return EXIT_FAILURE


def _cmd_validate(args: argparse.Namespace) -> int:
    session = _open_session(args, args.milestone)
    aligned = _validate(session, ValidationMode(args.mode))
    return EXIT_OK if aligned else EXIT_FAILURE


def _cmd_calibrate(args: argparse.Namespace) -> int:
    session = _open_session(args, args.milestone)
    outcomes = run_calibration(
        CalibrationCheck(args.check),
        session.queue_path,
        session.milestone_dir,
        session.calibration_settings(),
    )
    for outcome in outcomes:
        drafts = len(outcome.result.corrective_subtasks)
        decision = outcome.gated.decision.value if outcome.gated else "none"
        console.print(f"{outcome.check.value}: {drafts} corrective subtask(s), proposal {decision}")
    return EXIT_OK


def _cmd_queue_show(args: argparse.Namespace) -> int:
    session = _open_session(args, args.milestone)
    queue = load_queue(session.queue_path)
    table = Table(title=f"Queue: {session.queue_path}")
    table.add_column("#", justify="right")
    table.add_column("ID")
    table.add_column("Title")
    table.add_column("Task")
    table.add_column("Done")
    for index, subtask in enumerate(queue.subtasks):
        table.add_row(
            str(index),
            subtask.id,
            subtask.title,
            subtask.task_ref,
            "[green]yes[/green]" if subtask.done else "no",
        )
    console.print(table)
    next_subtask = get_next_subtask(queue.subtasks)
    console.print(f"Fingerprint: {queue.fingerprint}")
    console.print(f"Remaining: {count_remaining(queue.subtasks)}")
    console.print(f"Next: {next_subtask.id if next_subtask else '(none)'}")
    return EXIT_OK


def _cmd_queue_apply(args: argparse.Namespace) -> int:
    session = _open_session(args, args.milestone)
    proposal = read_queue_proposal_from_file(Path(args.proposal))
    result = apply_proposal_to_file(session.queue_path, proposal, milestone_path=session.milestone_dir)
    if not result.applied:
        console.print(f"[yellow]{result.summary}[/yellow]", soft_wrap=True)
        return EXIT_FAILURE
    console.print(f"[green]{result.summary}[/green]", soft_wrap=True)
    return EXIT_OK


def _cmd_queue_append(args: argparse.Namespace) -> int:
    session = _open_session(args, args.milestone)
    drafts = parse_cli_subtask_drafts(Path(args.file).read_text(encoding="utf-8"))
    queue = load_queue(session.queue_path)
    operations = [
        CreateOperation(at_index=len(queue.subtasks) + offset, subtask=draft)
        for offset, draft in enumerate(drafts)
    ]
    proposal = build_proposal(queue, operations, source="cli:append")
    result = apply_proposal_to_file(session.queue_path, proposal, milestone_path=session.milestone_dir)
    console.print(f"[green]{result.summary}[/green]", soft_wrap=True)
    return EXIT_OK if result.applied else EXIT_FAILURE


def _cmd_levels(args: argparse.Namespace) -> int:
    table = Table(title="Cascade levels")
    table.add_column("Order", justify="right")
    table.add_column("Level")
    table.add_column("Milestone")
    table.add_column("Gate")
    for level in LEVELS:
        gate = level_gate(level.name)
        table.add_row(
            str(level.order),
            level.name,
            "required" if level.requires_milestone else "-",
            format_gate_name(gate) if gate else "-",
        )
    console.print(table)
    return EXIT_OK


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

def _add_gate_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--force", action="store_true", help="Skip every approval gate")
    parser.add_argument(
        "--review", action="store_true", help="Prompt even at gates whose policy is 'always'"
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=CLI_NAME,
        description="Run the planning cascade and manage its subtask queue.",
    )
    parser.add_argument(
        "--project-dir", default=None, help="Project directory (default: current working directory)"
    )
    parser.add_argument("--log-level", default="INFO", help="Log level (DEBUG, INFO, WARNING, ...)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Run levels from --from through --cascade")
    run.add_argument("--milestone", default=None)
    run.add_argument("--from", dest="from_level", required=True, help="First level to run")
    run.add_argument("--cascade", required=True, help="Last level to run")
    run.add_argument("--provider", default=None)
    run.add_argument("--model", default=None)
    run.add_argument(
        "--validate-first", action="store_true", help="Validate pending subtasks before building"
    )
    _add_gate_flags(run)
    run.set_defaults(func=_cmd_run)

    validate = subparsers.add_parser("validate", help="Validate pending subtasks")
    validate.add_argument("--milestone", required=True)
    validate.add_argument(
        "--mode",
        choices=[mode.value for mode in ValidationMode],
        default=ValidationMode.HEADLESS.value,
    )
    _add_gate_flags(validate)
    validate.set_defaults(func=_cmd_validate)

    calibrate = subparsers.add_parser("calibrate", help="Check completed work for drift")
    calibrate.add_argument("check", choices=[check.value for check in CalibrationCheck])
    calibrate.add_argument("--milestone", required=True)
    _add_gate_flags(calibrate)
    calibrate.set_defaults(func=_cmd_calibrate)

    queue = subparsers.add_parser("queue", help="Inspect or change the subtask queue")
    queue_sub = queue.add_subparsers(dest="queue_cmd", required=True)
    qshow = queue_sub.add_parser("show", help="Show the queue")
    qshow.add_argument("--milestone", required=True)
    qshow.set_defaults(func=_cmd_queue_show)
    qapply = queue_sub.add_parser("apply", help="Apply a staged proposal file")
    qapply.add_argument("--milestone", required=True)
    qapply.add_argument("--proposal", required=True)
    qapply.set_defaults(func=_cmd_queue_apply)
    qappend = queue_sub.add_parser("append", help="Append subtasks from a JSON file")
    qappend.add_argument("--milestone", required=True)
    qappend.add_argument("--file", required=True)
    qappend.set_defaults(func=_cmd_queue_append)

    levels = subparsers.add_parser("levels", help="List cascade levels and their gates")
    levels.set_defaults(func=_cmd_levels)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.log_level)
    handler = getattr(args, "func", None)
    if handler is None:
        parser.print_help()
        return EXIT_FAILURE
    try:
        return int(handler(args) or 0)
    except (ValueError, OSError) as exc:
        err_console.print(f"Error: {exc}", markup=False, soft_wrap=True)
        return EXIT_FAILURE


if __name__ == "__main__":
    raise SystemExit(main())
