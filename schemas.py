"""
Pydantic schemas for Foreman.

WHY THIS FILE EXISTS:
--------------------
Every piece of data that crosses a module boundary is defined here: the
messages exchanged with the model, the tool calls it makes, the steps of a
plan and the results of shell commands. Keeping them in one place means the
scheduler, the interaction loop and the memory store all agree on shapes,
and pydantic validates anything that comes back from the model before we
act on it.

HOW THE PIECES FIT:
------------------
    Conversation ──contains──> Message ──may carry──> ToolCall / ToolResult
    Plan ──contains──> Step (typed, prioritized, with dependencies)
    ShellResult: what one command execution produced

Messages are frozen: once appended to a conversation they never change.
Steps are mutable: the scheduler updates status, timing and results in place.
"""

import time
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def new_id(prefix: str) -> str:
    """Generate an id like 'conv_1718000000000_a1b2c3d4'."""
    return f"{prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


# =============================================================================
# CONVERSATION SCHEMAS
# =============================================================================
# Messages, tool calls and the conversations that hold them.

class Role(str, Enum):
    """Who authored a message."""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


class ToolCall(BaseModel):
    """
    A tool invocation requested by the model.

    Example:
        ToolCall(id="call_1", name="shell", parameters={"command": "ls"})
    """
    id: str = Field(default_factory=lambda: new_id("call"), description="Call id, echoed by the ToolResult")
    name: str = Field(description="Name of the tool to call")
    parameters: dict[str, Any] = Field(
        default_factory=dict,
        description="Arguments for the tool"
    )


class ToolResult(BaseModel):
    """Outcome of one ToolCall, paired with it by id."""
    id: str = Field(description="Id of the ToolCall this answers")
    result: Any = Field(default=None, description="Tool output (JSON-serializable)")
    error: Optional[str] = Field(default=None, description="Error message if the call failed")


class Message(BaseModel):
    """
    A single conversation message.

    Frozen: conversations only ever grow by appending, and trimming removes
    whole messages, so a message is never edited after creation. Use
    model_copy(update=...) to derive a variant.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: new_id("msg"), description="Message id")
    role: Role = Field(description="Author of the message")
    content: str = Field(default="", description="Text content")
    timestamp: datetime = Field(default_factory=datetime.now)
    tool_calls: Optional[list[ToolCall]] = Field(
        default=None,
        description="Tool calls requested by an assistant message"
    )
    tool_results: Optional[list[ToolResult]] = Field(
        default=None,
        description="Results of the tool calls, once executed"
    )


class ConversationMetadata(BaseModel):
    created: datetime = Field(default_factory=datetime.now)
    updated: datetime = Field(default_factory=datetime.now)
    provider: str = Field(default="", description="Provider type used for this conversation")
    model: str = Field(default="", description="Model name used for this conversation")


class Conversation(BaseModel):
    """An ordered list of messages plus bookkeeping."""
    id: str = Field(default_factory=lambda: new_id("conv"))
    messages: list[Message] = Field(default_factory=list)
    metadata: ConversationMetadata = Field(default_factory=ConversationMetadata)


class StreamChunk(BaseModel):
    """One piece of a streamed completion."""
    content: Optional[str] = None
    tool_calls: Optional[list[ToolCall]] = None
    done: bool = False


# =============================================================================
# TOOL SCHEMAS
# =============================================================================

class ToolParameter(BaseModel):
    """Schema for a single tool parameter."""
    name: str = Field(description="Parameter name")
    type: Literal["string", "integer", "number", "boolean", "object", "array"] = Field(
        description="Parameter type"
    )
    description: str = Field(description="What this parameter does")
    required: bool = Field(default=True, description="Whether this parameter is required")
    enum: Optional[list[str]] = Field(default=None, description="Allowed values, if restricted")
    default: Optional[Any] = Field(default=None, description="Default value if not required")


class ToolDefinition(BaseModel):
    """
    Definition of an available tool.

    Providers turn this into their function-calling format, and the
    registry uses it to validate calls and describe tools in prompts.
    """
    name: str = Field(description="Tool name, e.g., 'shell'")
    description: str = Field(description="Description shown to the model")
    parameters: list[ToolParameter] = Field(
        default_factory=list,
        description="Parameters the tool accepts"
    )
    dangerous: bool = Field(
        default=False,
        description="Whether some uses of this tool need user approval"
    )

    def json_schema(self) -> dict:
        """JSON schema of the parameters, in the shape function-calling APIs expect."""
        properties = {}
        for param in self.parameters:
            prop: dict[str, Any] = {"type": param.type, "description": param.description}
            if param.enum:
                prop["enum"] = param.enum
            if param.default is not None:
                prop["default"] = param.default
            properties[param.name] = prop
        return {
            "type": "object",
            "properties": properties,
            "required": [p.name for p in self.parameters if p.required],
        }


# =============================================================================
# SHELL SCHEMAS
# =============================================================================

class ShellResult(BaseModel):
    """
    What one command execution produced.

    Failures are data here: a non-zero exit, a timeout or a kill signal all
    come back as a ShellResult with success=False rather than an exception.
    """
    success: bool = Field(description="True if the command exited with code 0")
    command: str = Field(description="The command that was run")
    cwd: str = Field(default="", description="Working directory it ran in")
    stdout: str = Field(default="")
    stderr: str = Field(default="")
    exit_code: Optional[int] = Field(default=None, description="None when killed by a signal")
    signal: Optional[str] = Field(default=None, description="Terminating signal name, e.g. 'SIGTERM'")
    aborted: bool = Field(default=False, description="Torn down by timeout or cancellation")
    timed_out: bool = Field(default=False, description="Aborted because the timeout elapsed")
    pid: Optional[int] = Field(default=None)
    error: Optional[str] = Field(default=None, description="Reason string for failures")
    duration_ms: int = Field(default=0)

    @property
    def output(self) -> str:
        """Human-readable combination of stdout, stderr and termination notes."""
        parts = []
        if self.stdout:
            parts.append(self.stdout)
        if self.stderr:
            parts.append(f"\n[STDERR]:\n{self.stderr}")
        if self.aborted:
            parts.append("\n[Command was aborted]")
        if self.signal:
            parts.append(f"\n[Terminated by signal: {self.signal}]")
        if self.error and not self.success and not parts:
            parts.append(self.error)
        return "".join(parts).strip() or "[No output]"

    def to_tool_output(self) -> dict:
        """Dict handed back to the model by the shell tool."""
        data = self.model_dump(exclude={"duration_ms"})
        data["output"] = self.output
        return data


# =============================================================================
# PLANNING SCHEMAS
# =============================================================================

class StepType(str, Enum):
    """What kind of work a step does. Drives its prompt and its validation."""
    DISCOVERY = "discovery"
    ANALYZE = "analyze"
    PLAN = "plan"
    SETUP = "setup"
    IMPLEMENT = "implement"
    INTEGRATE = "integrate"
    BUILD = "build"
    TEST = "test"
    OPTIMIZE = "optimize"
    VALIDATE = "validate"
    FIX = "fix"


class StepStatus(str, Enum):
    """Status of a plan step during execution."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED)


class Step(BaseModel):
    """
    A single unit of work in a plan.

    The scheduler mutates status, timing, result and error as the step runs.
    Priority ranges from 1 (nice to have) to 10 (the plan is pointless
    without it); failures at or above the repair threshold trigger a repair
    turn.
    """
    id: str = Field(description="Unique id within the plan")
    description: str = Field(description="What this step should accomplish")
    type: StepType = Field(default=StepType.IMPLEMENT)
    status: StepStatus = Field(default=StepStatus.PENDING)
    priority: int = Field(default=5, ge=1, le=10)
    dependencies: set[str] = Field(
        default_factory=set,
        description="Ids of steps that must finish before this one starts"
    )
    can_run_in_parallel: bool = Field(default=True)
    estimated_duration: int = Field(default=0, ge=0, description="Estimated seconds")
    tools: list[str] = Field(default_factory=list, description="Tools this step expects to use")
    retries: int = Field(default=0, ge=0)
    max_retries: int = Field(default=3, ge=0)
    error: Optional[str] = None
    result: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    wave: Optional[int] = Field(default=None, description="Index of the wave it ran in")
    conversation_id: Optional[str] = None
    exit_codes: list[int] = Field(
        default_factory=list,
        description="Shell exit codes observed while the step ran"
    )

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.start_time and self.end_time:
            return (self.end_time - self.start_time).total_seconds()
        return None


class ExecutionContext(BaseModel):
    """
    What discovery learned about the project.

    Passed to every step prompt so the model works with the right stack.
    """
    project_type: str = Field(default="generic", description="python, web, node or generic")
    technologies: list[str] = Field(default_factory=list)
    requirements: list[str] = Field(default_factory=list)
    constraints: list[str] = Field(default_factory=list)
    existing_files: list[str] = Field(default_factory=list)
    build_commands: list[str] = Field(default_factory=list)
    test_commands: list[str] = Field(default_factory=list)
    notes: str = Field(default="", description="Free-form discovery summary")


class ExecutionEvent(BaseModel):
    """
    A single event in the execution timeline.

    Used to build a complete audit trail of plan execution.
    """
    timestamp: datetime = Field(
        default_factory=datetime.now,
        description="When this event occurred"
    )
    event_type: str = Field(
        description="Type of event (wave_started, step_failed, repair_attempted, etc.)"
    )
    step_id: Optional[str] = Field(
        default=None,
        description="Associated step id if applicable"
    )
    details: str = Field(default="", description="Event details")


class PlanMetrics(BaseModel):
    total: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    parallel_runs: int = Field(default=0, description="Concurrent groups of more than one step")


class Plan(BaseModel):
    """
    An ordered list of steps toward a goal.

    Dependencies must name steps of the same plan; step ids must be unique.
    Cycles are allowed here and handled by the scheduler.
    """
    id: str = Field(default_factory=lambda: new_id("plan"))
    goal: str = Field(description="The user's goal")
    context: ExecutionContext = Field(default_factory=ExecutionContext)
    steps: list[Step] = Field(default_factory=list)
    completed: bool = False
    working_directory: str = Field(default=".")
    metrics: PlanMetrics = Field(default_factory=PlanMetrics)
    created_at: datetime = Field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    events: list[ExecutionEvent] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_step_references(self) -> "Plan":
        ids = [step.id for step in self.steps]
        duplicates = {step_id for step_id in ids if ids.count(step_id) > 1}
        if duplicates:
            raise ValueError(f"Duplicate step ids: {sorted(duplicates)}")
        known = set(ids)
        for step in self.steps:
            unknown = step.dependencies - known
            if unknown:
                raise ValueError(f"Step '{step.id}' depends on unknown steps: {sorted(unknown)}")
        return self

    def get_step(self, step_id: str) -> Optional[Step]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def refresh_metrics(self) -> PlanMetrics:
        """Recount step statuses into metrics (parallel_runs is kept as is)."""
        self.metrics.total = len(self.steps)
        self.metrics.completed = sum(1 for s in self.steps if s.status == StepStatus.COMPLETED)
        self.metrics.failed = sum(1 for s in self.steps if s.status == StepStatus.FAILED)
        self.metrics.skipped = sum(1 for s in self.steps if s.status == StepStatus.SKIPPED)
        return self.metrics

    @property
    def success_rate(self) -> float:
        """Percentage of steps that completed."""
        if not self.steps:
            return 0.0
        return 100.0 * self.metrics.completed / len(self.steps)

    @property
    def estimated_total_seconds(self) -> int:
        return sum(step.estimated_duration for step in self.steps)

    def first_error(self) -> Optional[Step]:
        """The failed step that finished earliest, if any."""
        failed = [s for s in self.steps if s.status == StepStatus.FAILED]
        if not failed:
            return None
        return min(failed, key=lambda s: s.end_time or datetime.max)


class PlannedStep(BaseModel):
    """One step as the model proposes it when decomposing a goal."""
    id: str = Field(description="Short unique id, e.g. 'setup_env'")
    description: str = Field(description="Concrete, actionable description")
    type: StepType = Field(description="Kind of work")
    priority: int = Field(default=5, ge=1, le=10, description="1 (optional) to 10 (critical)")
    dependencies: list[str] = Field(default_factory=list, description="Ids of prerequisite steps")
    can_run_in_parallel: bool = Field(default=True)
    estimated_duration: int = Field(default=60, ge=0, description="Estimated seconds")
    tools: list[str] = Field(default_factory=list)

    @field_validator("id")
    @classmethod
    def id_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("step id must not be blank")
        return v.strip()


class PlanDraft(BaseModel):
    """The JSON object the model must return when asked for a plan."""
    steps: list[PlannedStep] = Field(min_length=1, description="Steps in a sensible order")

    @field_validator("steps")
    @classmethod
    def unique_ids(cls, v: list[PlannedStep]) -> list[PlannedStep]:
        ids = [step.id for step in v]
        if len(ids) != len(set(ids)):
            raise ValueError("step ids must be unique")
        return v


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================

def get_json_schema(model: type[BaseModel]) -> dict:
    """
    Get the JSON schema for a Pydantic model.

    Included in prompts so the model knows exactly what structure we expect.
    """
    return model.model_json_schema()
