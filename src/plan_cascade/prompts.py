from __future__ import annotations

from pathlib import Path
from typing import Mapping

from loguru import logger

VALIDATION_PROMPT = """\
# Pre-Build Subtask Validation

You are reviewing one planned subtask before it is built. Decide whether it is
aligned with its parent task (and parent story, when one is given).

Check for:
- scope_creep: the subtask does work the parent task never asked for
- too_broad: the subtask bundles several independent changes
- too_narrow: the subtask is too small to be worth a separate build iteration
- unfaithful: the subtask contradicts or misreads the parent task

Respond with a single JSON object and nothing else:

```json
{
  "aligned": true,
  "issue_type": "scope_creep | too_broad | too_narrow | unfaithful",
  "reason": "why the subtask is misaligned",
  "suggestion": "how to fix it (optional)",
  "operations": []
}
```

`issue_type` and `reason` are required only when `aligned` is false.
`operations` is optional: queue operations (create, update, remove, reorder,
split) you recommend in addition to the verdict.
"""

INTENTION_PROMPT = """\
# Intention Drift Analysis

You are given completed subtasks together with their commit diffs and the
planning documents they were derived from. For each subtask, decide whether the
code does what the planning chain intended. Report only real drift: behavior
that is missing, different, or beyond what was planned.

DO NOT read additional files beyond what is provided.
"""

TECHNICAL_PROMPT = """\
# Technical Drift Analysis

You are given completed subtasks, their commit diffs, and the full content of
the files each subtask was told to read. Look for technical drift: code that
contradicts the documentation it references, inconsistent conventions between
related modules, missing error handling, and tests that do not exercise the
acceptance criteria.

DO NOT read additional files beyond what is provided.
"""

IMPROVE_PROMPT = """\
# Self-Improvement Analysis

You are given the session ids (and session log paths when available) of
completed subtasks. Look for inefficient agent behavior: tool misuse, wasted
reads, backtracking and excessive iterations. Propose corrective subtasks that
change prompts, skills or project guidance so the same inefficiency does not
recur.
"""

CALIBRATION_OUTPUT_CONTRACT = """\
Respond with a single JSON object:

```json
{
  "summary": "one paragraph describing what you found",
  "insertionMode": "prepend | append",
  "correctiveSubtasks": [
    {
      "title": "...",
      "description": "...",
      "taskRef": "...",
      "filesToRead": ["..."],
      "acceptanceCriteria": ["..."]
    }
  ]
}
```

Return an empty `correctiveSubtasks` array when no drift was found.
"""

DEFAULT_PROMPTS: dict[str, str] = {
    "validation": VALIDATION_PROMPT,
    "intention": INTENTION_PROMPT,
    "technical": TECHNICAL_PROMPT,
    "improve": IMPROVE_PROMPT,
}


def load_prompt(name: str, overrides: Mapping[str, str], project_dir: Path) -> str:
    """Return the prompt template *name*, preferring a configured override file."""
    override = overrides.get(name)
    if override:
        path = Path(override)
        if not path.is_absolute():
            path = project_dir / path
        try:
            return path.read_text(encoding="utf-8")
        except OSError as exc:
            logger.warning("Prompt override for '{}' unreadable ({}); using built-in", name, exc)
    return DEFAULT_PROMPTS[name]
