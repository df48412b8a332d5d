# schemas/orchestration_schema.py
# Orchestration data model: steps, tool executions, results, run config

from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

StepKind = Literal["analysis", "tool_call", "evaluation", "synthesis"]

# Progress reporter: receives human readable milestones, return value ignored
ProgressCallback = Callable[[str], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChatMessage(BaseModel):
    """One prior chat turn handed to the orchestrator."""
    role: Literal["user", "assistant"]
    content: str
    timestamp: datetime = Field(default_factory=_utcnow)


class ToolResult(BaseModel):
    """
    Uniform envelope every tool execution returns.

    A failed result always carries ``error`` or ``message`` so the failure can
    be explained to the user.
    """
    model_config = ConfigDict(frozen=True)

    success: bool
    data: Any = None
    error: Optional[str] = None
    message: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _failure_is_explained(cls, data):
        if isinstance(data, dict) and not data.get("success") and not (data.get("error") or data.get("message")):
            data = {**data, "error": "Unknown error"}
        return data


class PlannedToolCall(BaseModel):
    """A tool call proposed by the model in a decision step."""
    name: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    reasoning: Optional[str] = None


class ToolExecution(BaseModel):
    """
    One tool invocation. ``start_time`` and ``end_time`` are epoch milliseconds.

    :ivar duration: elapsed milliseconds from a monotonic clock; derived from
        the two timestamps when not given. Never negative.
    """
    model_config = ConfigDict(frozen=True)

    tool: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    result: ToolResult
    start_time: int
    end_time: int
    duration: int = 0

    @model_validator(mode="before")
    @classmethod
    def _derive_duration(cls, data):
        if isinstance(data, dict) and "start_time" in data and "end_time" in data:
            start = int(data["start_time"])
            end = max(int(data["end_time"]), start)
            duration = data.get("duration")
            duration = end - start if duration is None else max(int(duration), 0)
            data = {**data, "start_time": start, "end_time": end, "duration": duration}
        return data


class OrchestrationStep(BaseModel):
    """One immutable record in the orchestration trace."""
    model_config = ConfigDict(frozen=True)

    id: int
    kind: StepKind
    timestamp: datetime = Field(default_factory=_utcnow)
    content: str
    tool_execution: Optional[ToolExecution] = None
    reasoning: Optional[str] = None


class OrchestratorConfig(BaseModel):
    """Per-run budgets; unset values fall back to the orchestrator settings."""
    model_config = ConfigDict(frozen=True)

    max_steps: Optional[int] = Field(None, ge=1)
    max_tool_calls: Optional[int] = Field(None, ge=0)
    development_mode: bool = False


class OrchestrationResult(BaseModel):
    success: bool
    final_answer: str
    steps: List[OrchestrationStep] = Field(default_factory=list)
    tool_calls: List[ToolExecution] = Field(default_factory=list)
    error: Optional[str] = None
