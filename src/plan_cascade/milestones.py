"""Resolve milestone directories by name or path."""

from __future__ import annotations

from pathlib import Path

from .constants import QUEUE_FILE


class MilestoneNotFoundError(ValueError):
    pass


def milestones_root(project_dir: Path, milestones_dir: str) -> Path:
    root = Path(milestones_dir)
    return root if root.is_absolute() else project_dir / root


def list_available_milestones(project_dir: Path, milestones_dir: str) -> list[str]:
    root = milestones_root(project_dir, milestones_dir)
    if not root.is_dir():
        return []
    return sorted(entry.name for entry in root.iterdir() if entry.is_dir())


def resolve_milestone_path(project_dir: Path, milestone: str, milestones_dir: str) -> Path:
    """Return the milestone directory for *milestone*.

    Accepts an absolute path, a path relative to *project_dir*, or a bare name
    looked up under *milestones_dir*.

    Raises:
        MilestoneNotFoundError: If none of those exist.
    """
    candidate = Path(milestone)
    if candidate.is_absolute():
        if candidate.is_dir():
            return candidate
        raise MilestoneNotFoundError(f"Milestone path does not exist: {candidate}")

    relative = project_dir / candidate
    if len(candidate.parts) > 1 and relative.is_dir():
        return relative

    named = milestones_root(project_dir, milestones_dir) / milestone
    if named.is_dir():
        return named
    if relative.is_dir():
        return relative

    available = list_available_milestones(project_dir, milestones_dir)
    listing = ", ".join(available) if available else "(none)"
    raise MilestoneNotFoundError(
        f"Milestone not found: {milestone}\nAvailable milestones: {listing}"
    )


def queue_path_for(milestone_path: Path) -> Path:
    return milestone_path / QUEUE_FILE
