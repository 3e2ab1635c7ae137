"""Tests for lifecycle hooks."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

from plan_cascade.hooks import HookAction, HookEvent, run_hook


class TestRunHook:
    """Test run_hook."""

    def test_empty_actions_log(self):
        """Test an empty action list falls back to log."""
        result = run_hook(HookEvent.ON_VALIDATION_FAIL, "SUB-001 misaligned", [])
        assert result.actions_executed == [HookAction.LOG]
        assert result.success is True

    def test_unknown_action_recorded(self):
        """Test unknown actions are reported and the rest still run."""
        result = run_hook(HookEvent.ON_CASCADE_CHECKPOINT, "paused", ["explode", "log"])
        assert result.actions_executed == [HookAction.LOG]
        assert result.errors == ["Unknown action: explode"]
        assert result.success is False

    def test_notify_validation_failure(self):
        """Test notify on validation failure names the subtask."""
        notifier = MagicMock()
        run_hook(
            HookEvent.ON_VALIDATION_FAIL,
            "scope creep",
            ["notify"],
            notifier=notifier,
            context={"subtask_id": "SUB-010"},
        )
        notifier.notify_validation_failed.assert_called_once_with("SUB-010", "scope creep")

    def test_notify_checkpoint(self):
        """Test notify on checkpoint asks for approval."""
        notifier = MagicMock()
        run_hook(
            HookEvent.ON_CASCADE_CHECKPOINT,
            "paused",
            ["notify"],
            notifier=notifier,
            context={"gate": "Create Stories", "level": "stories", "milestone": "M1"},
        )
        notifier.notify_approval_required.assert_called_once_with(
            gate="Create Stories", level="stories", milestone="M1"
        )

    def test_notify_without_notifier(self):
        """Test notify is a no-op when notifications are disabled."""
        result = run_hook(HookEvent.ON_CASCADE_CHECKPOINT, "paused", ["notify"])
        assert result.actions_executed == [HookAction.NOTIFY]

    def test_notifier_failure_collected(self):
        """Test an action failure is collected rather than raised."""
        notifier = MagicMock()
        notifier.notify_validation_failed.side_effect = RuntimeError("dbus down")
        result = run_hook(HookEvent.ON_VALIDATION_FAIL, "x", ["notify", "log"], notifier=notifier)
        assert result.actions_executed == [HookAction.LOG]
        assert "dbus down" in result.errors[0]

    @patch("plan_cascade.hooks.console")
    def test_pause_requires_tty(self, mock_console: MagicMock):
        """Test pause waits for Enter only with a terminal."""
        run_hook(HookEvent.ON_CASCADE_CHECKPOINT, "paused", ["pause"], is_tty=False)
        mock_console.input.assert_not_called()
        run_hook(HookEvent.ON_CASCADE_CHECKPOINT, "paused", ["pause"], is_tty=True)
        mock_console.input.assert_called_once()
