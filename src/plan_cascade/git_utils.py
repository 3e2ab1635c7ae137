"""Provide small git helpers used by the cascade and calibration."""

from __future__ import annotations

import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from loguru import logger

from .constants import CLI_NAME


def _git(project_dir: Path, *args: str) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        ["git", *args],
        cwd=project_dir,
        capture_output=True,
        text=True,
        check=False,
    )


def _git_has_changes(project_dir: Path) -> bool:
    result = _git(project_dir, "status", "--porcelain")
    if result.returncode != 0:
        return False
    return bool(result.stdout.strip())


def git_checkpoint(project_dir: Path, gate: str) -> bool:
    """Commit every outstanding change so the next level's output stands alone.

    Args:
        project_dir: Repository root.
        gate: Gate name used in the commit message.

    Returns:
        True if a checkpoint commit was created, False if the tree was clean
        or git failed.
    """
    try:
        added = _git(project_dir, "add", "-A")
        if added.returncode != 0:
            raise RuntimeError(added.stderr.strip() or "git add failed")
        if not _git_has_changes(project_dir):
            logger.debug("Working tree clean; no checkpoint needed before {}", gate)
            return False
        committed = _git(
            project_dir, "commit", "-m", f"chore({CLI_NAME}): checkpoint before {gate}"
        )
        if committed.returncode != 0:
            raise RuntimeError(committed.stderr.strip() or "git commit failed")
    except (OSError, RuntimeError) as exc:
        logger.warning("Failed to create checkpoint before {}: {}", gate, exc)
        return False
    logger.info("Created checkpoint commit before {}", gate)
    return True


@dataclass
class DiffSummary:
    commit_hash: str
    subtask_id: str
    stat_summary: str = ""
    patch: str = ""
    files_changed: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "commitHash": self.commit_hash,
            "subtaskId": self.subtask_id,
            "statSummary": self.stat_summary,
            "patch": self.patch,
            "filesChanged": list(self.files_changed),
        }


def extract_diff_summary(
    project_dir: Path, commit_hash: str, subtask_id: str, max_patch_chars: int = 40000
) -> DiffSummary:
    """Collect ``git show`` stat, patch and file list for a subtask's commit."""
    summary = DiffSummary(commit_hash=commit_hash, subtask_id=subtask_id)
    stat = _git(project_dir, "show", "--stat", commit_hash)
    if stat.returncode != 0:
        logger.warning("Unable to read commit {} for {}: {}", commit_hash, subtask_id, stat.stderr.strip())
        return summary
    summary.stat_summary = stat.stdout.strip()
    patch = _git(project_dir, "show", commit_hash)
    if patch.returncode == 0:
        summary.patch = patch.stdout[:max_patch_chars]
    names = _git(project_dir, "show", "--name-only", "--pretty=format:", commit_hash)
    if names.returncode == 0:
        summary.files_changed = [line.strip() for line in names.stdout.splitlines() if line.strip()]
    return summary
