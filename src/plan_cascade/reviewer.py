"""External reviewer contract and the command-backed implementation.

A reviewer takes a prompt and returns free text (usually containing JSON), or
``None`` when the call failed or timed out. Callers fail open on ``None``.
"""

from __future__ import annotations

import json
import re
import shlex
import subprocess
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Protocol

from loguru import logger

_FENCED_JSON_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")
_BARE_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


class ReviewerOutputError(ValueError):
    pass


@dataclass
class ReviewerReply:
    text: str
    cost_usd: float = 0.0
    duration_seconds: float = 0.0


class Reviewer(Protocol):
    def review(self, prompt: str, *, timeout_seconds: int) -> Optional[ReviewerReply]:
        ...


def extract_json_object(text: str) -> dict[str, Any]:
    """Return the JSON object in *text*, preferring a fenced code block.

    Raises:
        ReviewerOutputError: If no JSON object can be found or decoded.
    """
    fenced = _FENCED_JSON_RE.search(text)
    candidate = fenced.group(1) if fenced else text
    match = _BARE_OBJECT_RE.search(candidate)
    if match is None:
        raise ReviewerOutputError("No JSON object found in reviewer reply")
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise ReviewerOutputError(f"Reviewer reply is not valid JSON: {exc}") from None
    if not isinstance(data, dict):
        raise ReviewerOutputError(f"Expected JSON object, got {type(data).__name__}")
    return data


def _unwrap_cli_envelope(stdout: str) -> tuple[str, float]:
    """Pull ``result`` and ``total_cost_usd`` out of a JSON-output CLI envelope."""
    try:
        envelope = json.loads(stdout)
    except json.JSONDecodeError:
        return stdout, 0.0
    if isinstance(envelope, dict) and isinstance(envelope.get("result"), str):
        cost = envelope.get("total_cost_usd")
        return envelope["result"], float(cost) if isinstance(cost, (int, float)) else 0.0
    return stdout, 0.0


class CommandReviewer:
    """Run a configured shell command as the reviewer.

    The command receives the prompt through ``{prompt_file}``, ``{prompt}`` or
    stdin (a bare ``-`` argument).
    """

    def __init__(self, command: str, project_dir: Path):
        self.command = command
        self.project_dir = project_dir

    def _build_command(self, prompt: str, prompt_path: Path) -> tuple[list[str], bool]:
        try:
            formatted = self.command.format(
                prompt_file=str(prompt_path),
                project_dir=str(self.project_dir),
                prompt=prompt,
            )
        except KeyError as exc:
            raise ValueError(f"Unknown placeholder in reviewer command: {exc}") from exc
        parts = shlex.split(formatted)
        uses_placeholder = "{prompt_file}" in self.command or "{prompt}" in self.command
        return parts, not uses_placeholder

    def review(self, prompt: str, *, timeout_seconds: int) -> Optional[ReviewerReply]:
        with tempfile.TemporaryDirectory(prefix="plan-cascade-") as tmp:
            prompt_path = Path(tmp) / "prompt.md"
            prompt_path.write_text(prompt, encoding="utf-8")
            command_parts, via_stdin = self._build_command(prompt, prompt_path)

            start = time.monotonic()
            try:
                completed = subprocess.run(
                    command_parts,
                    cwd=self.project_dir,
                    input=prompt if via_stdin else None,
                    capture_output=True,
                    text=True,
                    timeout=timeout_seconds,
                    check=False,
                )
            except subprocess.TimeoutExpired:
                logger.warning("Reviewer timed out after {}s", timeout_seconds)
                return None
            except OSError as exc:
                logger.warning("Reviewer command failed to start: {}", exc)
                return None
            duration = time.monotonic() - start

        if completed.returncode != 0:
            logger.warning(
                "Reviewer exited with code {}: {}",
                completed.returncode,
                (completed.stderr or "").strip()[:500],
            )
            return None
        text, cost = _unwrap_cli_envelope(completed.stdout)
        logger.debug("Reviewer finished in {:.1f}s (cost ${:.4f})", duration, cost)
        return ReviewerReply(text=text, cost_usd=cost, duration_seconds=duration)
