"""Load optional cascade configuration from `.plan_cascade/config.yaml`."""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .approvals import DEFAULT_GATE_POLICY, DEFAULT_GATE_POLICIES, GateName, GatePolicy
from .constants import (
    CONFIG_FILE,
    DEFAULT_EXECUTOR_TIMEOUT_MINUTES,
    DEFAULT_MILESTONES_DIR,
    DEFAULT_REVIEWER_COMMAND,
    STATE_DIR_NAME,
    VALIDATION_TIMEOUT_SECONDS,
)
from .io_utils import _load_data_with_error


class ConfigError(ValueError):
    pass


class SelfImprovementMode(str, Enum):
    SUGGEST = "suggest"
    AUTOFIX = "autofix"
    OFF = "off"


class _ConfigModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ReviewerConfig(_ConfigModel):
    """External reviewer command."""

    command: str = DEFAULT_REVIEWER_COMMAND
    timeout_seconds: int = Field(default=VALIDATION_TIMEOUT_SECONDS, alias="timeoutSeconds", gt=0)


class ExecutorsConfig(_ConfigModel):
    """Shell command per level; a level without a command cannot run."""

    roadmap: Optional[str] = None
    stories: Optional[str] = None
    tasks: Optional[str] = None
    subtasks: Optional[str] = None
    build: Optional[str] = None
    timeout_minutes: int = Field(
        default=DEFAULT_EXECUTOR_TIMEOUT_MINUTES, alias="timeoutMinutes", gt=0
    )

    def command_for(self, level: str) -> Optional[str]:
        value = getattr(self, level, None)
        return value if isinstance(value, str) and value.strip() else None


class HooksConfig(_ConfigModel):
    on_validation_fail: list[str] = Field(default_factory=lambda: ["log"], alias="onValidationFail")
    on_cascade_checkpoint: list[str] = Field(
        default_factory=lambda: ["log"], alias="onCascadeCheckpoint"
    )


class SelfImprovementConfig(_ConfigModel):
    mode: SelfImprovementMode = SelfImprovementMode.SUGGEST


class NotificationsConfig(_ConfigModel):
    enabled: bool = False


class CascadeConfig(_ConfigModel):
    """Validated contents of ``.plan_cascade/config.yaml``."""

    approvals: dict[str, GatePolicy] = Field(default_factory=dict)
    reviewer: ReviewerConfig = Field(default_factory=ReviewerConfig)
    executors: ExecutorsConfig = Field(default_factory=ExecutorsConfig)
    hooks: HooksConfig = Field(default_factory=HooksConfig)
    self_improvement: SelfImprovementConfig = Field(
        default_factory=SelfImprovementConfig, alias="selfImprovement"
    )
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)
    milestones_dir: str = Field(default=DEFAULT_MILESTONES_DIR, alias="milestonesDir")
    prompts: dict[str, str] = Field(default_factory=dict)

    @field_validator("approvals")
    @classmethod
    def _known_gates(cls, value: dict[str, GatePolicy]) -> dict[str, GatePolicy]:
        known = {gate.value for gate in GateName}
        unknown = sorted(set(value) - known)
        if unknown:
            raise ValueError(f"unknown gate(s): {', '.join(unknown)}")
        return value

    def gate_policies(self) -> dict[str, GatePolicy]:
        """Policy for every gate: configured value, else the built-in default."""
        resolved = {
            gate.value: DEFAULT_GATE_POLICIES.get(gate.value, DEFAULT_GATE_POLICY)
            for gate in GateName
        }
        resolved.update(self.approvals)
        return resolved


def parse_cascade_config(data: dict[str, Any]) -> CascadeConfig:
    try:
        return CascadeConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc


def load_cascade_config(project_dir: Path) -> tuple[CascadeConfig, str | None]:
    """Load the optional config file.

    Args:
        project_dir: Repository root directory.

    Returns:
        A tuple of `(config, error_message)`. A missing file yields defaults and
        no error; a parse or validation failure yields defaults plus the error.
    """
    path = project_dir.resolve() / STATE_DIR_NAME / CONFIG_FILE
    data, err = _load_data_with_error(path, {})
    if err:
        return CascadeConfig(), err
    try:
        return parse_cascade_config(data), None
    except ConfigError as exc:
        return CascadeConfig(), f"{path.name}: {exc}"
