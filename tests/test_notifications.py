"""Tests for notifications module."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

from plan_cascade.notifications import (
    NotificationManager,
    create_notification_manager,
)


class TestNotificationManager:
    """Test NotificationManager class."""

    @patch("plan_cascade.notifications.notification")
    def test_init_enabled(self, mock_notification: MagicMock):
        """Test initialization with notifications enabled."""
        manager = NotificationManager(enabled=True)
        assert manager.enabled is True
        assert manager._notifier == mock_notification

    def test_init_disabled(self):
        """Test initialization with notifications disabled."""
        manager = NotificationManager(enabled=False)
        assert manager.enabled is False
        assert manager._notifier is None

    @patch("plan_cascade.notifications.notification")
    def test_notify_gate(self, mock_notification: MagicMock):
        """Test sending a gate-passed notification."""
        manager = NotificationManager(enabled=True)
        manager.notify_gate(gate="Create Tasks", message="Running level 'tasks'", milestone="M1")

        mock_notification.notify.assert_called_once()
        call_args = mock_notification.notify.call_args[1]

        assert "Create Tasks" in call_args["title"]
        assert "M1" in call_args["message"]
        assert "Running level 'tasks'" in call_args["message"]
        assert call_args["app_name"] == "Plan Cascade"

    @patch("plan_cascade.notifications.notification")
    def test_notify_approval_required(self, mock_notification: MagicMock):
        """Test sending approval required notification."""
        manager = NotificationManager(enabled=True)
        manager.notify_approval_required(gate="Create Stories", level="stories", milestone="M1")

        mock_notification.notify.assert_called_once()
        call_args = mock_notification.notify.call_args[1]

        assert "Create Stories" in call_args["title"]
        assert "stories" in call_args["message"]
        assert call_args["timeout"] == 0  # No timeout for approval required

    @patch("plan_cascade.notifications.notification")
    def test_notify_approval_required_no_milestone(self, mock_notification: MagicMock):
        """Test approval required notification without a milestone."""
        manager = NotificationManager(enabled=True)
        manager.notify_approval_required(gate="Create Roadmap", level="roadmap")

        call_args = mock_notification.notify.call_args[1]
        assert "Milestone" not in call_args["message"]

    def test_notify_approval_required_disabled(self):
        """Test that notification is not sent when disabled."""
        manager = NotificationManager(enabled=False)
        manager.notify_approval_required(gate="Create Stories", level="stories")
        # Should not raise, just silently skip

    @patch("plan_cascade.notifications.notification")
    def test_notify_validation_failed_truncates(self, mock_notification: MagicMock):
        """Test that long validation reasons are truncated."""
        manager = NotificationManager(enabled=True)
        manager.notify_validation_failed("SUB-010", "x" * 300)

        call_args = mock_notification.notify.call_args[1]
        assert "SUB-010" in call_args["title"]
        assert len(call_args["message"]) <= 200

    @patch("plan_cascade.notifications.notification")
    def test_notify_cascade_complete(self, mock_notification: MagicMock):
        """Test cascade completion titles and default messages."""
        manager = NotificationManager(enabled=True)

        manager.notify_cascade_complete(success=True, summary="Completed: roadmap, stories")
        call_args = mock_notification.notify.call_args[1]
        assert call_args["title"] == "Cascade Complete"
        assert "roadmap, stories" in call_args["message"]

        manager.notify_cascade_complete(success=False)
        call_args = mock_notification.notify.call_args[1]
        assert call_args["title"] == "Cascade Stopped"
        assert "stopped" in call_args["message"]

    @patch("plan_cascade.notifications.notification")
    def test_send_failure_is_logged_not_raised(self, mock_notification: MagicMock):
        """Test that backend failures do not propagate."""
        mock_notification.notify.side_effect = NotImplementedError("no backend")
        manager = NotificationManager(enabled=True)
        manager.notify_gate(gate="Create Tasks", message="x")
        mock_notification.notify.assert_called_once()


class TestCreateNotificationManager:
    """Test create_notification_manager."""

    def test_enabled(self):
        """Test an enabled config yields a manager."""
        manager = create_notification_manager(True)
        assert isinstance(manager, NotificationManager)
        assert manager.enabled is True

    def test_disabled(self):
        """Test a disabled config yields None."""
        assert create_notification_manager(False) is None
