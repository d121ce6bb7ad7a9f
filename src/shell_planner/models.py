# models.py
# Data contracts for the plan execution engine.
# No business logic lives here — schema, validation and transcript rendering.

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


def _as_text(value: Any) -> str:
    return value if isinstance(value, str) else str(value)


class Step(BaseModel):
    """A single node in an LLM-generated plan."""

    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)

    step: int = Field(..., description="1-based step number.")
    action_type: str = Field(..., description='Only "command" is executed.')
    command: str | None = Field(default=None, description="Command template, may hold {placeholders}.")
    purpose: str | None = Field(default=None, description="Human-readable intent of this step.")

    # Common offensive-tooling parameters. Context for the next turn only.
    payload: str | None = Field(default=None, alias="PAYLOAD:")
    lhost: str | None = Field(default=None, alias="LHOST:")
    rhost: str | None = Field(default=None, alias="RHOST:")
    lport: str | None = Field(default=None, alias="LPORT:")
    rport: str | None = Field(default=None, alias="RPORT:")
    exitfunc: str | None = Field(default=None, alias="EXITFUNC:")
    targeturi: str | None = Field(default=None, alias="TARGETURI:")

    options: dict[str, str] = Field(default_factory=dict, description="Any other named options.")

    @model_validator(mode="before")
    @classmethod
    def _collect_unknown_options(cls, data: Any) -> Any:
        """Fold unrecognised keys into ``options`` instead of dropping them."""
        if not isinstance(data, dict):
            return data

        known: set[str] = set()
        for name, field in cls.model_fields.items():
            known.add(name)
            if field.alias:
                known.add(field.alias)

        declared = data.get("options")
        if declared is not None and not isinstance(declared, dict):
            # Left for field validation to reject.
            return data

        cleaned = {k: v for k, v in data.items() if k in known}
        options = {str(k): _as_text(v) for k, v in (declared or {}).items()}
        for key, value in data.items():
            if key not in known:
                options.setdefault(key, _as_text(value))
        cleaned["options"] = options
        return cleaned


class Plan(BaseModel):
    """A complete plan emitted by the language model for one query."""

    explanation: str | None = None
    steps: list[Step] = Field(default_factory=list)


class StepStatus(str, Enum):
    SKIPPED_ACTION = "skipped_action"
    SKIPPED_NO_COMMAND = "skipped_no_command"
    SKIPPED_PLATFORM = "skipped_platform"
    EXECUTED = "executed"


class TranscriptEntry(BaseModel):
    """Append-only record produced for every step the runner visits."""

    step: int
    status: StepStatus
    command: str = Field(default="", description="Resolved, sanitized command text.")
    output: str = Field(default="", description="Captured stdout or a skip marker.")
    action_type: str = "command"

    def history_line(self) -> str:
        """Entry as fed back into the next prompt."""
        return f"Step {self.step}: {self.command} ->\n{self.output}"

    def report_block(self) -> str:
        """Entry as rendered in the final plan report."""
        if self.status is StepStatus.SKIPPED_ACTION:
            return f"Step {self.step}: Skipped (Action Type: {self.action_type})"
        return f"Output from Step {self.step}:\n{self.output}"
