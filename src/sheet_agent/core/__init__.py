"""Core planning, execution and safety functionality."""

# Import the engine and its collaborators
from sheet_agent.core.execution_engine import ExecutionEngine
from sheet_agent.core.ledger import LedgerStore
from sheet_agent.core.models import ExecutionPlan, PlanStep, Task
from sheet_agent.core.plan_validator import PlanValidator
from sheet_agent.core.reactive_loop import ReactiveLoop
from sheet_agent.core.signals import SignalDecisionResolver
from sheet_agent.core.tool_registry import ToolInvoker, ToolRegistry
from sheet_agent.core.validation_rules import ValidationRuleEngine
from sheet_agent.core.workbook import Workbook, WorkbookReader

# Export classes for clean API
__all__ = [
    "ExecutionEngine",
    "ReactiveLoop",
    "PlanValidator",
    "ValidationRuleEngine",
    "SignalDecisionResolver",
    "LedgerStore",
    "ToolRegistry",
    "ToolInvoker",
    "Workbook",
    "WorkbookReader",
    "Task",
    "ExecutionPlan",
    "PlanStep",
]
