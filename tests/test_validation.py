"""Tests for pre-build subtask validation."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional
from unittest.mock import MagicMock

import pytest

from plan_cascade.approvals import ApprovalContext, GatePolicy, ProposalDecision
from plan_cascade.audit import AuditEventType, read_audit_entries
from plan_cascade.models import IssueType, RemoveOperation, Subtask, UpdateOperation
from plan_cascade.queue_engine.store import load_queue
from plan_cascade.reviewer import ReviewerReply
from plan_cascade.validation import (
    Aligned,
    Misaligned,
    ParseFailure,
    ValidationMode,
    build_validation_prompt,
    normalize_missing_parent_task,
    parse_validation_response,
    prompt_skip_or_continue,
    resolve_verdict,
    run_validation,
    validate_all_subtasks,
    validate_subtask,
)

MISALIGNED_WITH_REMOVE_REPLY = json.dumps(
    {
        "aligned": False,
        "issue_type": "too_broad",
        "reason": "Covers two features",
        "operations": [{"type": "remove", "id": "SUB-010"}],
    }
)
MISALIGNED_REPLY = json.dumps(
    {
        "aligned": False,
        "issue_type": "scope_creep",
        "reason": "Adds OAuth which the task never mentions",
        "suggestion": "Drop the OAuth work",
    }
)
ALIGNED_REPLY = '```json\n{"aligned": true}\n```'


class FakeReviewer:
    """Reviewer returning canned replies keyed by subtask id."""

    def __init__(self, replies: dict[str, Optional[str]], default: Optional[str] = ALIGNED_REPLY):
        self.replies = replies
        self.default = default
        self.prompts: list[str] = []

    def review(self, prompt: str, *, timeout_seconds: int) -> Optional[ReviewerReply]:
        self.prompts.append(prompt)
        text = self.default
        for subtask_id, reply in self.replies.items():
            if f'"id": "{subtask_id}"' in prompt:
                text = reply
        return ReviewerReply(text=text) if text is not None else None


def _subtask(subtask_id: str, done: bool = False) -> dict:
    return {
        "id": subtask_id,
        "title": f"Work {subtask_id}",
        "description": "d",
        "acceptanceCriteria": ["a"],
        "filesToRead": [],
        "taskRef": "TASK-001",
        "done": done,
    }


@pytest.fixture
def milestone(tmp_path: Path) -> Path:
    """Create a milestone with a task, a story and a queue."""
    path = tmp_path / "M1-core"
    (path / "tasks").mkdir(parents=True)
    (path / "stories").mkdir()
    (path / "tasks" / "TASK-001-login.md").write_text(
        "# TASK-001: Login form\n\n**Story:** [STORY-001](../stories/STORY-001-auth.md)\n\nBuild the login form.\n",
        encoding="utf-8",
    )
    (path / "stories" / "STORY-001-auth.md").write_text("# STORY-001: Authentication\n", encoding="utf-8")
    queue = {"subtasks": [_subtask("SUB-001", done=True), _subtask("SUB-009"), _subtask("SUB-010")]}
    (path / "subtasks.json").write_text(json.dumps(queue), encoding="utf-8")
    return path


class TestParseValidationResponse:
    """Test reply parsing and fail-open resolution."""

    def test_aligned(self):
        """Test a fenced aligned reply."""
        assert parse_validation_response(ALIGNED_REPLY, "SUB-001") == Aligned()

    def test_misaligned(self):
        """Test a misaligned reply keeps reason, issue type and suggestion."""
        verdict = parse_validation_response(MISALIGNED_REPLY, "SUB-010")
        assert isinstance(verdict, Misaligned)
        assert verdict.issue_type is IssueType.SCOPE_CREEP
        assert verdict.suggestion == "Drop the OAuth work"

    def test_misaligned_defaults(self):
        """Test missing reason and unknown issue type get defaults."""
        verdict = parse_validation_response('{"aligned": false, "issue_type": "weird"}', "SUB-010")
        assert verdict.reason == "Unknown alignment issue"
        assert verdict.issue_type is None

    def test_operations_parsed(self):
        """Test valid operations are kept and invalid ones dropped."""
        reply = json.dumps({"aligned": True, "operations": [{"type": "remove", "id": "SUB-002"}, {"type": "?"}]})
        assert parse_validation_response(reply, "SUB-001").operations == (RemoveOperation("SUB-002"),)

    @pytest.mark.parametrize("reply", ["no json here", '{"aligned": "yes"}'])
    def test_parse_failure_resolves_aligned(self, reply):
        """Test unparseable replies fail open."""
        parsed = parse_validation_response(reply, "SUB-001")
        assert isinstance(parsed, ParseFailure)
        assert resolve_verdict(parsed, "SUB-001") == Aligned()

    def test_missing_parent_normalized(self):
        """Test a missing-parent complaint is aligned when no task file exists."""
        verdict = Misaligned(reason="Unable to validate against parent task: file missing")
        assert normalize_missing_parent_task(verdict, has_parent_task=False, subtask_id="SUB-1") == Aligned()
        assert normalize_missing_parent_task(verdict, has_parent_task=True, subtask_id="SUB-1") is verdict

    def test_other_reasons_not_normalized(self):
        """Test unrelated reasons stay misaligned without a parent."""
        verdict = Misaligned(reason="Too broad")
        assert normalize_missing_parent_task(verdict, has_parent_task=False, subtask_id="SUB-1") is verdict


class TestPromptAndSingleValidation:
    """Test prompt building and validate_subtask."""

    def test_prompt_includes_chain(self, milestone: Path):
        """Test the prompt carries subtask, task and linked story."""
        subtask = Subtask.from_dict(_subtask("SUB-009"))
        prompt = build_validation_prompt(subtask, milestone, "BASE")
        assert prompt.startswith("BASE")
        assert "## Subtask Definition" in prompt
        assert "Build the login form." in prompt
        assert "# STORY-001: Authentication" in prompt

    def test_prompt_missing_task(self, milestone: Path):
        """Test a missing task file is marked in the prompt."""
        subtask = Subtask.from_dict({**_subtask("SUB-009"), "taskRef": "TASK-404"})
        prompt = build_validation_prompt(subtask, milestone, "BASE")
        assert "*Not found: TASK-404*" in prompt
        assert "## Parent Story" not in prompt

    def test_failed_invocation_is_aligned(self, milestone: Path):
        """Test a reviewer that returns nothing fails open."""
        subtask = Subtask.from_dict(_subtask("SUB-009"))
        reviewer = FakeReviewer({}, default=None)
        assert validate_subtask(subtask, milestone, reviewer, "BASE", timeout_seconds=5) == Aligned()

    def test_missing_parent_task_reply(self, milestone: Path):
        """Test missing-parent complaints pass when the task file is absent."""
        subtask = Subtask.from_dict({**_subtask("SUB-009"), "taskRef": "TASK-404"})
        reviewer = FakeReviewer({}, default='{"aligned": false, "reason": "Missing parent task file"}')
        assert validate_subtask(subtask, milestone, reviewer, "BASE") == Aligned()


class TestValidateAllSubtasks:
    """Test batch validation."""

    def test_headless_skips_and_runs_hook(self, milestone: Path):
        """Test headless mode skips misaligned subtasks and notifies."""
        queue = load_queue(milestone / "subtasks.json")
        notifier = MagicMock()
        result = validate_all_subtasks(
            queue.subtasks[1:],
            milestone_path=milestone,
            reviewer=FakeReviewer({"SUB-010": MISALIGNED_REPLY}),
            base_prompt="BASE",
            hook_actions=["notify"],
            notifier=notifier,
        )
        assert result.total == 2
        assert result.aligned == 1
        assert result.success is False
        assert result.operations == [RemoveOperation("SUB-010")]
        assert result.summary == "Validated 1/2 subtasks. 1 skipped due to misalignment."
        notifier.notify_validation_failed.assert_called_once()
        skipped = result.skipped[0]
        assert skipped.issue_type is IssueType.SCOPE_CREEP
        assert Path(skipped.feedback_path).name.endswith("_validation_SUB-010.md")
        assert "Scope Creep" in Path(skipped.feedback_path).read_text(encoding="utf-8")

    def test_supervised_continue(self, milestone: Path):
        """Test declining the skip keeps the subtask."""
        queue = load_queue(milestone / "subtasks.json")
        ask = MagicMock(return_value=False)
        result = validate_all_subtasks(
            queue.subtasks[1:],
            milestone_path=milestone,
            reviewer=FakeReviewer({"SUB-010": MISALIGNED_REPLY}),
            base_prompt="BASE",
            mode=ValidationMode.SUPERVISED,
            is_tty=True,
            ask_skip=ask,
        )
        ask.assert_called_once_with("SUB-010", True)
        assert result.skipped == []
        assert result.aligned == 2
        assert result.operations == []

    def test_reviewer_remove_of_skipped_subtask_not_duplicated(self, milestone: Path):
        """Test a reviewer remove for the skipped subtask yields a single remove."""
        queue = load_queue(milestone / "subtasks.json")
        result = validate_all_subtasks(
            queue.subtasks[1:],
            milestone_path=milestone,
            reviewer=FakeReviewer({"SUB-010": MISALIGNED_WITH_REMOVE_REPLY}),
            base_prompt="BASE",
            queue=queue,
        )
        assert result.operations == [RemoveOperation("SUB-010")]

    def test_supervised_continue_drops_reviewer_operations(self, milestone: Path):
        """Test keeping a subtask also drops the reviewer's operations for it."""
        queue = load_queue(milestone / "subtasks.json")
        reply = json.dumps(
            {
                "aligned": False,
                "reason": "Too broad",
                "operations": [{"type": "update", "id": "SUB-010", "changes": {"title": "Narrower"}}],
            }
        )
        result = validate_all_subtasks(
            queue.subtasks[1:],
            milestone_path=milestone,
            reviewer=FakeReviewer({"SUB-010": reply}),
            base_prompt="BASE",
            mode=ValidationMode.SUPERVISED,
            is_tty=True,
            ask_skip=MagicMock(return_value=False),
            queue=queue,
        )
        assert result.skipped == []
        assert result.operations == []

    def test_inapplicable_reviewer_operations_dropped(self, milestone: Path):
        """Test reviewer operations that would fail to apply are dropped."""
        queue = load_queue(milestone / "subtasks.json")
        reply = json.dumps(
            {
                "aligned": True,
                "operations": [
                    {"type": "remove", "id": "SUB-404"},
                    {"type": "remove", "id": "SUB-001"},
                    {"type": "update", "id": "SUB-010", "changes": {"title": "Sharper title"}},
                ],
            }
        )
        result = validate_all_subtasks(
            queue.subtasks[1:],
            milestone_path=milestone,
            reviewer=FakeReviewer({"SUB-009": reply}),
            base_prompt="BASE",
            queue=queue,
        )
        assert result.operations == [UpdateOperation("SUB-010", {"title": "Sharper title"})]

    def test_supervised_without_tty_skips(self, milestone: Path):
        """Test supervised mode without a terminal behaves like headless."""
        queue = load_queue(milestone / "subtasks.json")
        ask = MagicMock()
        result = validate_all_subtasks(
            queue.subtasks[1:],
            milestone_path=milestone,
            reviewer=FakeReviewer({"SUB-010": MISALIGNED_REPLY}),
            base_prompt="BASE",
            mode=ValidationMode.SUPERVISED,
            is_tty=False,
            ask_skip=ask,
        )
        ask.assert_not_called()
        assert [s.subtask_id for s in result.skipped] == ["SUB-010"]

    def test_audit_entry_written(self, milestone: Path):
        """Test a validation audit entry records the outcome."""
        queue = load_queue(milestone / "subtasks.json")
        validate_all_subtasks(queue.subtasks[1:], milestone_path=milestone, reviewer=FakeReviewer({}), base_prompt="B")
        entries = read_audit_entries(milestone, event_type=AuditEventType.VALIDATION)
        assert entries[-1]["aligned"] is True
        assert entries[-1]["operationCount"] == 0


class TestPromptSkipOrContinue:
    """Test the skip prompt."""

    def test_no_tty_skips(self):
        """Test no terminal means skip."""
        assert prompt_skip_or_continue("SUB-1", is_tty=False) is True

    @pytest.mark.parametrize("answer, expected", [("", True), ("y", True), ("n", False), ("No", False)])
    def test_answers(self, monkeypatch, answer, expected):
        """Test Enter and yes skip; no continues."""
        monkeypatch.setattr("plan_cascade.validation.console.input", lambda _prompt: answer)
        assert prompt_skip_or_continue("SUB-1", is_tty=True) is expected


class TestRunValidation:
    """Test the end-to-end validation flow."""

    def test_headless_removes_misaligned(self, milestone: Path):
        """Test the misaligned subtask is removed through a gated proposal."""
        result = run_validation(
            milestone / "subtasks.json",
            milestone,
            reviewer=FakeReviewer({"SUB-010": MISALIGNED_REPLY}),
            base_prompt="BASE",
            policies={},
            context=ApprovalContext(),
        )
        assert result.skipped_ids == {"SUB-010"}
        assert result.outcome.decision is ProposalDecision.APPLIED
        assert result.proposal_path.exists()
        assert [s.id for s in load_queue(milestone / "subtasks.json").subtasks] == ["SUB-001", "SUB-009"]
        types = [entry["type"] for entry in read_audit_entries(milestone)]
        assert types == ["validation", "queue-proposal", "queue-apply"]

    def test_reviewer_remove_still_applies(self, milestone: Path):
        """Test a misaligned reply that also proposes removing itself still removes the subtask."""
        result = run_validation(
            milestone / "subtasks.json",
            milestone,
            reviewer=FakeReviewer({"SUB-010": MISALIGNED_WITH_REMOVE_REPLY}),
            base_prompt="BASE",
            policies={"applyValidation": GatePolicy.ALWAYS},
            context=ApprovalContext(),
        )
        assert result.outcome.decision is ProposalDecision.APPLIED
        assert [s.id for s in load_queue(milestone / "subtasks.json").subtasks] == ["SUB-001", "SUB-009"]

    def test_manual_gate_stages(self, milestone: Path):
        """Test a manual applyValidation gate without a terminal stages the proposal."""
        result = run_validation(
            milestone / "subtasks.json",
            milestone,
            reviewer=FakeReviewer({"SUB-010": MISALIGNED_REPLY}),
            base_prompt="BASE",
            policies={"applyValidation": GatePolicy.MANUAL},
            context=ApprovalContext(is_tty=False),
        )
        assert result.outcome.decision is ProposalDecision.STAGED
        assert len(load_queue(milestone / "subtasks.json").subtasks) == 3

    def test_all_aligned_no_proposal(self, milestone: Path):
        """Test no proposal is written when nothing changes."""
        result = run_validation(
            milestone / "subtasks.json",
            milestone,
            reviewer=FakeReviewer({}),
            base_prompt="BASE",
            policies={},
            context=ApprovalContext(),
        )
        assert result.success is True
        assert result.proposal_path is None
        assert not (milestone / "feedback").exists()

    def test_no_pending(self, tmp_path: Path):
        """Test a fully completed queue does not call the reviewer."""
        (tmp_path / "subtasks.json").write_text(json.dumps({"subtasks": [_subtask("SUB-001", True)]}), encoding="utf-8")
        reviewer = FakeReviewer({})
        result = run_validation(
            tmp_path / "subtasks.json",
            tmp_path,
            reviewer=reviewer,
            base_prompt="BASE",
            policies={},
            context=ApprovalContext(),
        )
        assert result.batch.total == 0
        assert reviewer.prompts == []
