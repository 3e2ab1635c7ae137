"""Lifecycle hooks configured under ``hooks:`` in the config file."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Sequence

from loguru import logger
from rich.console import Console

from .notifications import NotificationManager

console = Console()


class HookEvent(str, Enum):
    ON_VALIDATION_FAIL = "onValidationFail"
    ON_CASCADE_CHECKPOINT = "onCascadeCheckpoint"


class HookAction(str, Enum):
    LOG = "log"
    NOTIFY = "notify"
    PAUSE = "pause"


@dataclass
class HookResult:
    actions_executed: list[HookAction] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


def _pause(event: HookEvent, is_tty: bool) -> None:
    if not is_tty:
        logger.info("[Hook:{}] pause skipped (no TTY)", event.value)
        return
    try:
        console.input(f"[Hook:{event.value}] Paused. Press Enter to continue...")
    except (KeyboardInterrupt, EOFError):
        console.print()


def run_hook(
    event: HookEvent,
    message: str,
    actions: Sequence[str],
    *,
    notifier: Optional[NotificationManager] = None,
    is_tty: bool = False,
    context: Optional[dict[str, Any]] = None,
) -> HookResult:
    """Run every configured action for *event* in order.

    An empty action list runs ``log``. Failures are collected and logged;
    they never stop the caller.
    """
    result = HookResult()
    context = context or {}
    for raw_action in actions or [HookAction.LOG.value]:
        try:
            action = HookAction(raw_action)
        except ValueError:
            logger.warning("[Hook:{}] Unknown action: {}", event.value, raw_action)
            result.errors.append(f"Unknown action: {raw_action}")
            continue
        try:
            if action is HookAction.LOG:
                logger.info("[Hook:{}] {}", event.value, message)
            elif action is HookAction.NOTIFY:
                if notifier is None:
                    logger.debug("[Hook:{}] notifications disabled", event.value)
                elif event is HookEvent.ON_VALIDATION_FAIL:
                    notifier.notify_validation_failed(
                        str(context.get("subtask_id", "")), message
                    )
                else:
                    notifier.notify_approval_required(
                        gate=str(context.get("gate", event.value)),
                        level=str(context.get("level", "")),
                        milestone=context.get("milestone"),
                    )
            else:
                _pause(event, is_tty)
            result.actions_executed.append(action)
        except Exception as exc:
            logger.warning("[Hook:{}] Action {} failed: {}", event.value, action.value, exc)
            result.errors.append(f"Action {action.value} failed: {exc}")
    return result
