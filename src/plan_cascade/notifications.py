"""Desktop notifications for gates, validation failures and cascade results."""

from __future__ import annotations

from typing import Optional

from loguru import logger
from plyer import notification

APP_NAME = "Plan Cascade"


class NotificationManager:
    """Send desktop notifications through plyer."""

    def __init__(self, enabled: bool = True):
        """Initialize notification manager.

        Args:
            enabled: Whether notifications are enabled.
        """
        self.enabled = enabled
        self._notifier = notification if enabled else None

    def notify_gate(self, gate: str, message: str, milestone: Optional[str] = None) -> None:
        """Announce a gate that continues without waiting (``notify`` policy).

        Args:
            gate: Human-readable gate label.
            message: What is about to happen.
            milestone: Optional milestone name.
        """
        if not self.enabled or not self._notifier:
            return
        body = f"Milestone: {milestone}\n{message}" if milestone else message
        self._send_notification(f"Gate passed: {gate}", body)

    def notify_approval_required(
        self,
        gate: str,
        level: str,
        milestone: Optional[str] = None,
    ) -> None:
        """Send notification that the cascade paused for approval.

        Args:
            gate: Human-readable gate label.
            level: Level whose output awaits review.
            milestone: Optional milestone name.
        """
        if not self.enabled or not self._notifier:
            return
        body = f"Review the '{level}' output before resuming"
        if milestone:
            body = f"Milestone: {milestone}\n{body}"
        self._send_notification(f"Approval Required: {gate}", body, timeout=0)

    def notify_validation_failed(self, subtask_id: str, reason: str) -> None:
        if not self.enabled or not self._notifier:
            return
        self._send_notification(f"Validation failed: {subtask_id}", reason[:200])

    def notify_cascade_complete(self, success: bool, summary: Optional[str] = None) -> None:
        if not self.enabled or not self._notifier:
            return
        if success:
            title = "Cascade Complete"
            body = summary or "All levels completed"
        else:
            title = "Cascade Stopped"
            body = summary or "The cascade stopped before reaching its target"
        self._send_notification(title, body)

    def _send_notification(
        self,
        title: str,
        message: str,
        timeout: int = 10,
    ) -> None:
        if not self._notifier:
            return

        try:
            self._notifier.notify(
                title=title,
                message=message,
                app_name=APP_NAME,
                timeout=timeout,
            )
            logger.debug("Notification sent: {}", title)
        except Exception as e:
            logger.warning("Failed to send notification: {}", e)


def create_notification_manager(enabled: bool) -> Optional[NotificationManager]:
    """Return a manager when notifications are enabled in config, else None."""
    if enabled:
        return NotificationManager(enabled=True)
    return None
