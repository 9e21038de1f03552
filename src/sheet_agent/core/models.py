"""Data models shared by the planner, the execution engine and the safety layer."""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator


def new_id(prefix: str) -> str:
    """Create a short, prefixed identifier."""
    return f"{prefix}_{uuid4().hex[:12]}"


class StepStatus(str, Enum):
    """Lifecycle of a single plan step."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class TaskStatus(str, Enum):
    """Lifecycle of a task."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PENDING_CONFIRMATION = "pending_confirmation"
    PENDING_CLARIFICATION = "pending_clarification"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)


class Severity(str, Enum):
    BLOCK = "block"
    WARN = "warn"


class RulePhase(str, Enum):
    PRE_EXECUTION = "pre_execution"
    POST_EXECUTION = "post_execution"
    DATA_QUALITY = "data_quality"


class ErrorKind(str, Enum):
    """Failure taxonomy surfaced on failed outcomes."""

    TOOL_NOT_FOUND = "tool_not_found"
    TOOL_EXECUTION_FAILURE = "tool_execution_failure"
    VALIDATION_BLOCK = "validation_block"
    VALIDATION_WARN = "validation_warn"
    PLANNER_PARSE_FAILURE = "planner_parse_failure"
    BUDGET_EXCEEDED = "budget_exceeded"
    REPLAN_EXHAUSTED = "replan_exhausted"
    ROLLBACK_PARTIAL_FAILURE = "rollback_partial_failure"
    ABORTED = "aborted"


# --- Tools ---


class ToolInvocationResult(BaseModel):
    """Normalized result of one tool invocation. Never mutated after return."""

    model_config = ConfigDict(frozen=True)

    success: bool
    output: str = ""
    data: Any = None
    error: str | None = None
    semantically_changed: bool = False  # Served by an alternate tool
    cached: bool = False

    @classmethod
    def failure(cls, error: str, output: str = "") -> "ToolInvocationResult":
        return cls(success=False, output=output or error, error=error)


# --- Plans ---


class PlanStep(BaseModel):
    """One planned tool invocation plus its declared success condition."""

    id: str = Field(default_factory=lambda: new_id("step"))
    order: int = 0
    action: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    description: str = ""
    is_write_operation: bool = False
    success_condition: str | None = None
    depends_on: list[str] = Field(default_factory=list)
    status: StepStatus = StepStatus.PENDING
    result: ToolInvocationResult | None = None
    # Overlays set after the fact
    rolled_back: bool = False
    substituted_action: str | None = None
    retries: int = 0
    synthetic: bool = False  # Inserted by the engine, not the planner

    @property
    def is_finished(self) -> bool:
        return self.status in (
            StepStatus.COMPLETED,
            StepStatus.FAILED,
            StepStatus.SKIPPED,
        )


class ExecutionPlan(BaseModel):
    """Ordered steps plus task-level success conditions and completion message."""

    id: str = Field(default_factory=lambda: new_id("plan"))
    intent: str = "operation"
    steps: list[PlanStep] = Field(default_factory=list)
    success_conditions: list[str] = Field(default_factory=list)
    completion_message: str = ""
    created_at: datetime = Field(default_factory=datetime.now)

    @model_validator(mode="after")
    def _check_unique_ids(self) -> "ExecutionPlan":
        seen: set[str] = set()
        for step in self.steps:
            if step.id in seen:
                raise ValueError(f"Duplicate step id in plan: {step.id}")
            seen.add(step.id)
        return self

    @property
    def has_writes(self) -> bool:
        return any(step.is_write_operation for step in self.steps)

    def index_of(self, step_id: str) -> int:
        for index, step in enumerate(self.steps):
            if step.id == step_id:
                return index
        raise KeyError(step_id)

    def insert_step(self, index: int, step: PlanStep) -> None:
        if any(existing.id == step.id for existing in self.steps):
            raise ValueError(f"Duplicate step id in plan: {step.id}")
        self.steps.insert(index, step)
        self.renumber()

    def remaining_steps(self, after_index: int) -> list[PlanStep]:
        return [s for s in self.steps[after_index + 1 :] if not s.is_finished]

    def replace_remaining(self, after_index: int, new_steps: list[PlanStep]) -> None:
        """Splice new steps in place of everything after ``after_index``."""
        kept = self.steps[: after_index + 1]
        kept_ids = {step.id for step in kept}
        for step in new_steps:
            if step.id in kept_ids:
                step.id = new_id("step")
            kept_ids.add(step.id)
        self.steps = kept + new_steps
        self.renumber()

    def renumber(self) -> None:
        for order, step in enumerate(self.steps, 1):
            step.order = order


# --- Validation ---


class ValidationContext(BaseModel):
    """What a validation rule sees about the step it inspects."""

    tool_name: str
    tool_input: dict[str, Any] = Field(default_factory=dict)
    tool_output: str | None = None
    sheet: str | None = None
    affected_range: str | None = None
    previous_values: list[list[Any]] | None = None
    previous_formulas: list[list[Any]] | None = None
    step_id: str | None = None
    step_description: str = ""
    success_condition: str | None = None
    is_write: bool = False


class ValidationCheckResult(BaseModel):
    passed: bool
    message: str = ""
    details: list[str] = Field(default_factory=list)
    suggested_fix: str | None = None
    suggested_patch: dict[str, Any] | None = None
    recommended: "DecisionAction | None" = None
    # Filled in by the rule engine
    rule_id: str | None = None
    rule_name: str | None = None
    severity: Severity = Severity.BLOCK
    phase: RulePhase = RulePhase.POST_EXECUTION


class SignalType(str, Enum):
    DATA_INTEGRITY = "data_integrity"
    SEMANTIC_ERROR = "semantic_error"
    STRUCTURAL_ISSUE = "structural_issue"
    REFERENCE_ERROR = "reference_error"
    QUALITY_WARNING = "quality_warning"


class ResolutionAction(str, Enum):
    """Per-signal handling choice, listed from strongest to weakest."""

    ABORT = "abort"
    ASK_USER = "ask_user"
    ROLLBACK = "rollback"
    FIX_AND_RETRY = "fix_and_retry"
    IGNORE_ONCE = "ignore_once"
    IGNORE_RULE = "ignore_rule"


class DecisionAction(str, Enum):
    """The five protocol actions the engine acts on."""

    CONTINUE = "continue"
    FIX_AND_RETRY = "fix_and_retry"
    ROLLBACK_AND_REPLAN = "rollback_and_replan"
    ASK_USER = "ask_user"
    ABORT = "abort"


ValidationCheckResult.model_rebuild()


class SuggestedAction(BaseModel):
    model_config = ConfigDict(frozen=True)

    action: ResolutionAction
    description: str
    requires_confirmation: bool = False
    impact: Literal["none", "low", "medium", "high"] = "low"


class SignalResolution(BaseModel):
    model_config = ConfigDict(frozen=True)

    action: ResolutionAction
    success: bool
    reasoning: str
    resolved_at: datetime = Field(default_factory=datetime.now)


class ValidationSignal(BaseModel):
    """A materialized rule failure. Resolution produces a new copy."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: new_id("sig"))
    type: SignalType
    rule_id: str
    rule_name: str
    severity: Severity
    check_result: ValidationCheckResult
    context: ValidationContext
    created_at: datetime = Field(default_factory=datetime.now)
    suggested_actions: tuple[SuggestedAction, ...] = ()
    resolution: SignalResolution | None = None

    @property
    def message(self) -> str:
        return self.check_result.message


class SignalDecision(BaseModel):
    """Resolved protocol action with its decision-specific payload."""

    action: DecisionAction
    reason: str = ""
    question: str | None = None
    patch: dict[str, Any] | None = None
    signals: list[ValidationSignal] = Field(default_factory=list)
    confidence: float = 1.0


# --- Ledger ---


class OperationResult(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class RollbackData(BaseModel):
    """Pre-state snapshot of the target region, or a compensating action."""

    sheet: str | None = None
    range: str | None = None
    previous_values: list[list[Any]] | None = None
    previous_formulas: list[list[Any]] | None = None
    sheet_existed: bool = True
    rollback_action: str | None = None
    rollback_params: dict[str, Any] | None = None


class OperationRecord(BaseModel):
    id: str = Field(default_factory=lambda: new_id("op"))
    timestamp: datetime = Field(default_factory=datetime.now)
    tool_name: str
    tool_input: dict[str, Any] = Field(default_factory=dict)
    result: OperationResult
    rollback_data: RollbackData | None = None
    step_id: str | None = None


class OperationLedger(BaseModel):
    """Append-only record of attempted operations for one task.

    Records are only ever appended; the one permitted mutation is a
    successful record transitioning to ``rolled_back``.
    """

    records: list[OperationRecord] = Field(default_factory=list)

    def append(self, record: OperationRecord) -> OperationRecord:
        self.records.append(record)
        return record

    def get(self, operation_id: str) -> OperationRecord | None:
        for record in self.records:
            if record.id == operation_id:
                return record
        return None

    def mark_rolled_back(self, operation_id: str) -> None:
        record = self.get(operation_id)
        if record is None:
            raise KeyError(operation_id)
        if record.result != OperationResult.SUCCESS:
            raise ValueError(
                f"Only successful operations can be rolled back, got {record.result.value}"
            )
        record.result = OperationResult.ROLLED_BACK

    def select_for_rollback(
        self, from_operation_id: str | None = None
    ) -> list[OperationRecord]:
        """Successful operations to reverse, newest first.

        Args:
            from_operation_id: Reverse this operation and everything after it.
                When omitted, every successful operation is selected.

        Returns:
            Records in reverse chronological order
        """
        start = 0
        if from_operation_id is not None:
            for index, record in enumerate(self.records):
                if record.id == from_operation_id:
                    start = index
                    break
            else:
                return []
        selected = [
            record
            for record in self.records[start:]
            if record.result == OperationResult.SUCCESS
        ]
        return list(reversed(selected))

    def successful(self) -> list[OperationRecord]:
        return [r for r in self.records if r.result == OperationResult.SUCCESS]

    def __len__(self) -> int:
        return len(self.records)


# --- Tasks ---


class TaskLogEntry(BaseModel):
    """One entry of the task's ordered step log."""

    id: str = Field(default_factory=lambda: new_id("log"))
    type: Literal["think", "act", "observe", "respond", "plan", "validate", "error"]
    thought: str | None = None
    tool_name: str | None = None
    tool_input: dict[str, Any] | None = None
    observation: str | None = None
    error: str | None = None
    timestamp: datetime = Field(default_factory=datetime.now)


class DiscoveredIssue(BaseModel):
    id: str = Field(default_factory=lambda: new_id("issue"))
    type: Literal[
        "hardcoded",
        "structural",
        "formula_error",
        "data_quality",
        "missing_reference",
        "other",
    ] = "other"
    severity: Literal["critical", "warning"] = "warning"
    description: str
    location: str | None = None
    discovered_at: datetime = Field(default_factory=datetime.now)
    resolved: bool = False


# --- Outcomes ---


class Completed(BaseModel):
    kind: Literal["completed"] = "completed"
    task_id: str
    message: str
    warnings: list[str] = Field(default_factory=list)


class Failed(BaseModel):
    kind: Literal["failed"] = "failed"
    task_id: str
    error_kind: ErrorKind
    reason: str
    attempted: list[str] = Field(default_factory=list)
    succeeded: list[str] = Field(default_factory=list)
    recommendation: str = ""
    rolled_back: bool = False

    def describe(self) -> str:
        """User-facing explanation: attempted, succeeded, recommended."""
        lines = [f"The task could not be completed: {self.reason}"]
        if self.attempted:
            lines.append("Attempted: " + "; ".join(self.attempted))
        lines.append(
            "Succeeded: " + ("; ".join(self.succeeded) if self.succeeded else "nothing")
        )
        if self.rolled_back:
            lines.append(
                "Changes were rolled back; the document may still need a manual check."
            )
        if self.recommendation:
            lines.append(f"Recommended next: {self.recommendation}")
        return "\n".join(lines)


class Cancelled(BaseModel):
    kind: Literal["cancelled"] = "cancelled"
    task_id: str
    reason: str = "Cancelled by user"
    succeeded: list[str] = Field(default_factory=list)


class PendingConfirmation(BaseModel):
    kind: Literal["pending_confirmation"] = "pending_confirmation"
    task_id: str
    preview: str


class PendingClarification(BaseModel):
    kind: Literal["pending_clarification"] = "pending_clarification"
    task_id: str
    question: str


Outcome = Annotated[
    Completed | Failed | Cancelled | PendingConfirmation | PendingClarification,
    Field(discriminator="kind"),
]


class Task(BaseModel):
    """One user request lifecycle, owned by the engine processing it."""

    id: str = Field(default_factory=lambda: new_id("task"))
    request: str
    status: TaskStatus = TaskStatus.PENDING
    log: list[TaskLogEntry] = Field(default_factory=list)
    ledger: OperationLedger = Field(default_factory=OperationLedger)
    issues: list[DiscoveredIssue] = Field(default_factory=list)
    plan: ExecutionPlan | None = None
    result: str | None = None
    error: str | None = None
    rolled_back: bool = False
    replan_count: int = 0
    confirmed: bool = False
    pending_question: str | None = None
    resume_index: int | None = None
    extra_context: list[str] = Field(default_factory=list)
    # Steps whose pre-execution warnings the user already answered
    acknowledged_steps: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.now)
    completed_at: datetime | None = None

    def add_log(self, type_: str, **fields: Any) -> TaskLogEntry:
        entry = TaskLogEntry(type=type_, **fields)  # type: ignore[arg-type]
        self.log.append(entry)
        return entry

    def finish(self, status: TaskStatus) -> None:
        self.status = status
        self.completed_at = datetime.now()

