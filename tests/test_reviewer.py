"""Tests for the reviewer contract and command reviewer."""

from __future__ import annotations

import json
import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from plan_cascade.reviewer import CommandReviewer, ReviewerOutputError, extract_json_object


class TestExtractJsonObject:
    """Test extract_json_object."""

    def test_fenced_block_preferred(self):
        """Test a fenced json block wins over surrounding text."""
        text = 'Here you go {"ignored": 1}\n```json\n{"aligned": true}\n```\n'
        assert extract_json_object(text) == {"aligned": True}

    def test_bare_object(self):
        """Test a bare object embedded in prose."""
        assert extract_json_object('Result: {"aligned": false, "reason": "x"} done') == {
            "aligned": False,
            "reason": "x",
        }

    def test_no_object(self):
        """Test text without an object raises."""
        with pytest.raises(ReviewerOutputError, match="No JSON object"):
            extract_json_object("looks fine to me")

    def test_invalid_json(self):
        """Test a malformed object raises."""
        with pytest.raises(ReviewerOutputError, match="not valid JSON"):
            extract_json_object("{aligned: yes}")


class TestCommandReviewer:
    """Test CommandReviewer."""

    @patch("plan_cascade.reviewer.subprocess.run")
    def test_stdin_and_envelope(self, mock_run: MagicMock, tmp_path: Path):
        """Test the prompt goes to stdin and the CLI envelope is unwrapped."""
        mock_run.return_value = MagicMock(
            returncode=0,
            stdout=json.dumps({"result": '{"aligned": true}', "total_cost_usd": 0.25}),
            stderr="",
        )
        reply = CommandReviewer("claude -p --output-format json", tmp_path).review("check this", timeout_seconds=60)

        assert reply is not None
        assert reply.text == '{"aligned": true}'
        assert reply.cost_usd == 0.25
        args, kwargs = mock_run.call_args
        assert args[0] == ["claude", "-p", "--output-format", "json"]
        assert kwargs["input"] == "check this"
        assert kwargs["timeout"] == 60

    @patch("plan_cascade.reviewer.subprocess.run")
    def test_prompt_file_placeholder(self, mock_run: MagicMock, tmp_path: Path):
        """Test a prompt-file placeholder disables stdin."""
        mock_run.return_value = MagicMock(returncode=0, stdout="plain text", stderr="")
        reply = CommandReviewer("review --file {prompt_file}", tmp_path).review("p", timeout_seconds=5)

        assert reply.text == "plain text"
        args, kwargs = mock_run.call_args
        assert args[0][0:2] == ["review", "--file"]
        assert args[0][2].endswith("prompt.md")
        assert kwargs["input"] is None

    @patch("plan_cascade.reviewer.subprocess.run")
    def test_timeout_returns_none(self, mock_run: MagicMock, tmp_path: Path):
        """Test a timeout yields None."""
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="review", timeout=5)
        assert CommandReviewer("review", tmp_path).review("p", timeout_seconds=5) is None

    @patch("plan_cascade.reviewer.subprocess.run")
    def test_nonzero_exit_returns_none(self, mock_run: MagicMock, tmp_path: Path):
        """Test a failing command yields None."""
        mock_run.return_value = MagicMock(returncode=1, stdout="", stderr="boom")
        assert CommandReviewer("review", tmp_path).review("p", timeout_seconds=5) is None

    @patch("plan_cascade.reviewer.subprocess.run")
    def test_missing_binary_returns_none(self, mock_run: MagicMock, tmp_path: Path):
        """Test a command that cannot start yields None."""
        mock_run.side_effect = FileNotFoundError("review")
        assert CommandReviewer("review", tmp_path).review("p", timeout_seconds=5) is None

    def test_unknown_placeholder(self, tmp_path: Path):
        """Test an unknown placeholder is a configuration error."""
        with pytest.raises(ValueError, match="Unknown placeholder"):
            CommandReviewer("review {nope}", tmp_path).review("p", timeout_seconds=5)
