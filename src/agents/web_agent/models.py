"""
Data model for the web task runtime.

Decision and ParsedRequest are pydantic models because they are validated
from oracle JSON. Everything produced locally (page snapshots, tab listings,
step records) is a plain dataclass.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


# ── Oracle replies ────────────────────────────────────────────────────────

class Decision(BaseModel):
    """One action directive returned by the oracle."""
    model_config = ConfigDict(extra="ignore")

    action: str = Field(..., description="Action kind, e.g. navigate, click, fill, wait")
    selector: Optional[str] = Field(default=None, description="CSS selector for element actions")
    text: Optional[str] = Field(default=None, description="Text payload (fill/type/press/switch_tab)")
    url: Optional[str] = Field(default=None, description="Destination for navigate")
    reasoning: str = Field(default="", description="Human-readable rationale")
    is_complete: bool = Field(default=False)
    next_step: Optional[str] = Field(default=None, description="Informational only")
    needs_confirm: bool = Field(default=False)


@dataclass(frozen=True)
class UnparsedDecision:
    """Oracle output that did not match the Decision schema."""
    raw: str

    def as_decision(self) -> Decision:
        return Decision(action="error", reasoning=self.raw)


OracleReply = Union[Decision, UnparsedDecision]


def resolve_decision(reply: OracleReply) -> Decision:
    """Collapse an oracle reply into a Decision; unparsed output becomes action=error."""
    if isinstance(reply, UnparsedDecision):
        return reply.as_decision()
    return reply


class ParsedRequest(BaseModel):
    """A free-form user request split into a task and an optional start URL."""
    model_config = ConfigDict(extra="ignore")

    task: str = ""
    url: Optional[str] = None
    needs_url: bool = False
    reasoning: str = ""


# ── Task & page state ─────────────────────────────────────────────────────

@dataclass(frozen=True)
class Task:
    goal: str
    start_url: Optional[str] = None
    max_iterations: int = 20


@dataclass(frozen=True)
class ElementDescriptor:
    kind: str  # button, link, input, textarea, editable
    label: str
    selector: str
    href: Optional[str] = None


@dataclass(frozen=True)
class PageContent:
    title: str
    url: str
    elements: List[ElementDescriptor] = field(default_factory=list)
    body_excerpt: str = ""


@dataclass(frozen=True)
class TabInfo:
    index: int  # 1-based position in opening order
    title: str
    url: str
    active: bool


@dataclass
class ActionResult:
    """Result of a browser action."""
    success: bool
    action: str
    detail: str = ""
    warning: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class DestructiveActionRequest:
    kind: str
    description: str
    severity: str = "high"
    target: Optional[str] = None


# ── Execution records ─────────────────────────────────────────────────────

class TaskState(str, Enum):
    planning = "planning"
    executing_plan = "executing_plan"
    iterating = "iterating"
    waiting_challenge = "waiting_challenge"
    complete = "complete"
    failed = "failed"


@dataclass
class StepRecord:
    """Record of a single orchestrator step."""
    step_number: int
    mode: str
    action: str
    action_input: dict
    reasoning: str
    result: str
    success: bool
    timestamp: float = field(default_factory=time.time)
    duration_seconds: float = 0.0


@dataclass
class TaskResult:
    """Outcome of one task run."""
    task: Task
    success: bool = False
    reason: str = ""
    reason_code: str = ""
    mode: str = ""
    plan: List[str] = field(default_factory=list)
    steps: list = field(default_factory=list)
    started_at: float = 0.0
    completed_at: float = 0.0
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def duration_seconds(self) -> float:
        return self.completed_at - self.started_at if self.completed_at else 0.0

    @property
    def step_count(self) -> int:
        return len(self.steps)

    def to_tool_calls(self) -> list:
        return [
            {
                "name": step.action,
                "arguments": step.action_input,
                "result": step.result,
                "success": step.success,
                "reasoning": step.reasoning,
                "step_number": step.step_number,
                "mode": step.mode,
                "duration_seconds": step.duration_seconds,
            }
            for step in self.steps
        ]
