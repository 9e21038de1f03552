"""Static and semantic checks of a plan before any step runs.

The quick pass is synchronous and covers dependency order and undeclared
high-risk operations. The full pass is authoritative and also inspects the
workbook for missing references, role violations and missing bulk fills.
"""

import logging
import re
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, Field

from sheet_agent.core.models import ExecutionPlan, PlanStep, Severity
from sheet_agent.core.tool_registry import ToolRegistry
from sheet_agent.core.workbook import (
    RangeError,
    ResourceReader,
    column_to_index,
    parse_cell,
    parse_range,
    split_address,
)
from sheet_agent.utils import constants

_SHEET_REF_RE = re.compile(r"(?:'([^']+)'|([A-Za-z_][A-Za-z0-9_]*))!")
_ROLE_SHEET_RE = re.compile(r"summary|report|total|dashboard|overview", re.IGNORECASE)
_FORMULA_INTENT_RE = re.compile(r"formula|calculat|comput|sum of|total of", re.IGNORECASE)
_WHOLE_SHEET_RE = re.compile(r"^\$?[A-Z]{1,3}:\$?[A-Z]{1,3}$|^\$?\d+:\$?\d+$", re.IGNORECASE)


class PlanIssue(BaseModel):
    rule_id: str
    rule_name: str
    severity: Severity
    message: str
    details: list[str] = Field(default_factory=list)
    affected_steps: list[str] = Field(default_factory=list)
    suggested_fix: str | None = None


class PlanValidationResult(BaseModel):
    issues: list[PlanIssue] = Field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.blocking

    @property
    def blocking(self) -> list[PlanIssue]:
        return [i for i in self.issues if i.severity == Severity.BLOCK]

    @property
    def warnings(self) -> list[PlanIssue]:
        return [i for i in self.issues if i.severity == Severity.WARN]

    @property
    def undeclared_high_risk(self) -> list[PlanIssue]:
        return [i for i in self.issues if i.rule_id == "high_risk_operation"]

    def pairs(self) -> list[tuple[str, str]]:
        return [(i.rule_name, i.message) for i in self.issues]


class WorkbookContext(BaseModel):
    sheets: list[str] = Field(default_factory=list)
    row_counts: dict[str, int] = Field(default_factory=dict)

    @classmethod
    async def from_reader(cls, reader: ResourceReader) -> "WorkbookContext":
        sheets = await reader.sheet_names()
        row_counts: dict[str, int] = {}
        for sheet in sheets:
            used = await reader.used_range(sheet)
            row_counts[sheet] = parse_range(used).bottom + 1 if used else 0
        return cls(sheets=sheets, row_counts=row_counts)


def _has_literal_numbers(values: Any) -> bool:
    if not isinstance(values, list):
        return False
    return any(
        isinstance(v, (int, float)) and not isinstance(v, bool)
        for row in values
        if isinstance(row, list)
        for v in row
    )


def _formulas_of(step: PlanStep) -> list[str]:
    formulas = []
    formula = step.parameters.get("formula")
    if isinstance(formula, str):
        formulas.append(formula)
    values = step.parameters.get("values")
    if isinstance(values, list):
        for row in values:
            if isinstance(row, list):
                formulas.extend(v for v in row if isinstance(v, str) and v.startswith("="))
    return formulas


def _sheet_references(formula: str) -> set[str]:
    return {quoted or bare for quoted, bare in _SHEET_REF_RE.findall(formula)}


def _target_sheet(step: PlanStep) -> str | None:
    sheet = step.parameters.get("sheet")
    address = step.parameters.get("range")
    if isinstance(address, str):
        qualified, _ = split_address(address)
        sheet = qualified or sheet
    return sheet if isinstance(sheet, str) else None


def _source_column(step: PlanStep) -> int | None:
    source = step.parameters.get("source")
    if not isinstance(source, str):
        return None
    try:
        return parse_cell(split_address(source)[1])[1]
    except RangeError:
        return None


class PlanValidator:
    """Validate plans against five rules, in priority order.

    Args:
        registry: Used to recognise destructive tools
        large_range_threshold: Cell count above which a write is bulk
    """

    def __init__(
        self, registry: ToolRegistry | None = None, large_range_threshold: int = 500
    ) -> None:
        self.registry = registry
        self.large_range_threshold = large_range_threshold
        self.logger = logging.getLogger(__name__)

    # --- entry points ---

    def quick_validate(self, plan: ExecutionPlan) -> PlanValidationResult:
        """Synchronous subset: dependency order and undeclared high-risk steps."""
        issues = self._check_dependencies(plan) + self._check_high_risk(plan)
        return PlanValidationResult(issues=issues)

    async def validate(
        self, plan: ExecutionPlan, reader: ResourceReader | None = None
    ) -> PlanValidationResult:
        """Full pass over all five rules.

        Args:
            plan: Plan to check
            reader: Optional workbook access for reference and row-count checks

        Returns:
            Every issue found, in rule priority order
        """
        context = await WorkbookContext.from_reader(reader) if reader else None
        checks: list[Callable[[ExecutionPlan, WorkbookContext | None], list[PlanIssue]]] = [
            lambda p, _: self._check_dependencies(p),
            self._check_references,
            lambda p, _: self._check_roles(p),
            self._check_batch_behavior,
            lambda p, _: self._check_high_risk(p),
        ]
        issues: list[PlanIssue] = []
        for check in checks:
            issues.extend(check(plan, context))
        if issues:
            self.logger.info(
                f"Plan {plan.id} has {len(issues)} issue(s): "
                + "; ".join(i.message for i in issues)
            )
        return PlanValidationResult(issues=issues)

    def is_high_risk(self, step: PlanStep) -> bool:
        """Destructive: deleting rows or sheets, clearing a whole sheet, bulk writes."""
        action = step.action.lower()
        params = step.parameters
        if self.registry is not None and self.registry.is_destructive(step.action):
            return True
        if "delete" in action and ("sheet" in action or "row" in action):
            return True
        if "clear" in action:
            address = params.get("range")
            if not isinstance(address, str) or not address:
                return True
            _, address = split_address(address)
            if _WHOLE_SHEET_RE.match(address.strip()):
                return True
        if action == constants.WRITE_RANGE or "clear" in action:
            address = params.get("range")
            if isinstance(address, str):
                try:
                    _, address = split_address(address)
                    if parse_range(address).cell_count > self.large_range_threshold:
                        return True
                except RangeError:
                    return False
        return False

    def destructive_steps(self, plan: ExecutionPlan) -> list[PlanStep]:
        return [s for s in plan.steps if self.is_high_risk(s)]

    # --- rules ---

    def _check_dependencies(self, plan: ExecutionPlan) -> list[PlanIssue]:
        positions = {step.id: index for index, step in enumerate(plan.steps)}
        issues = []
        for index, step in enumerate(plan.steps):
            for dependency in step.depends_on:
                position = positions.get(dependency)
                if position is None:
                    message = f'Step "{step.description or step.id}" depends on missing step {dependency}'
                elif position >= index:
                    message = f'Step "{step.description or step.id}" runs before its dependency {dependency}'
                else:
                    continue
                issues.append(
                    PlanIssue(
                        rule_id="dependency_order",
                        rule_name="Dependency order",
                        severity=Severity.BLOCK,
                        message=message,
                        affected_steps=[step.id],
                        suggested_fix="Reorder the steps so dependencies run first",
                    )
                )
        return issues

    def _check_references(
        self, plan: ExecutionPlan, context: WorkbookContext | None
    ) -> list[PlanIssue]:
        if context is None:
            return []
        known = set(context.sheets)
        issues = []
        for step in plan.steps:
            if step.action == constants.CREATE_SHEET:
                sheet = step.parameters.get("sheet")
                if isinstance(sheet, str):
                    known.add(sheet)
                continue
            missing: set[str] = set()
            target = _target_sheet(step)
            if target and target not in known:
                missing.add(target)
            for formula in _formulas_of(step):
                missing |= {ref for ref in _sheet_references(formula) if ref not in known}
            if step.action == constants.DELETE_SHEET and target:
                known.discard(target)
            for sheet in sorted(missing):
                issues.append(
                    PlanIssue(
                        rule_id="reference_exists",
                        rule_name="Reference exists",
                        severity=Severity.BLOCK,
                        message=f'Referenced sheet "{sheet}" does not exist',
                        details=[f"Neither in the workbook nor created earlier in the plan (step {step.id})"],
                        affected_steps=[step.id],
                        suggested_fix=f'Create sheet "{sheet}" first or fix the name',
                    )
                )
        return issues

    def _check_roles(self, plan: ExecutionPlan) -> list[PlanIssue]:
        issues = []
        for step in plan.steps:
            if step.action != constants.WRITE_RANGE:
                continue
            values = step.parameters.get("values")
            if not _has_literal_numbers(values):
                continue
            sheet = _target_sheet(step) or ""
            intent = f"{step.description} {step.success_condition or ''}"
            if _ROLE_SHEET_RE.search(sheet) or _FORMULA_INTENT_RE.search(intent):
                issues.append(
                    PlanIssue(
                        rule_id="role_violation",
                        rule_name="Role violation",
                        severity=Severity.BLOCK,
                        message=f'Step "{step.description or step.id}" writes literal numbers where formulas are required',
                        affected_steps=[step.id],
                        suggested_fix="Write a formula that derives the values instead",
                    )
                )
        return issues

    def _check_batch_behavior(
        self, plan: ExecutionPlan, context: WorkbookContext | None
    ) -> list[PlanIssue]:
        issues = []
        for index, step in enumerate(plan.steps):
            if step.action != constants.SET_FORMULA:
                continue
            address = step.parameters.get("range")
            if not isinstance(address, str):
                continue
            match = re.match(r"^\$?([A-Z]{1,3})\$?(\d+)$", split_address(address)[1].upper())
            if not match or int(match.group(2)) <= 1:
                continue
            sheet = _target_sheet(step)
            column = column_to_index(match.group(1))
            followed = any(
                later.action == constants.FILL_FORMULA
                and _target_sheet(later) == sheet
                and _source_column(later) == column
                for later in plan.steps[index + 1 :]
            )
            if followed:
                continue
            rows = context.row_counts.get(sheet or "", 0) if context else 0
            if rows > 2:
                issues.append(
                    PlanIssue(
                        rule_id="batch_behavior_missing",
                        rule_name="Missing bulk behaviour",
                        severity=Severity.WARN,
                        message=f"Formula set on single cell {address} but the sheet has {rows} rows",
                        affected_steps=[step.id],
                        suggested_fix="Fill the formula down to every data row",
                    )
                )
        return issues

    def _check_high_risk(self, plan: ExecutionPlan) -> list[PlanIssue]:
        issues = []
        for step in plan.steps:
            if step.is_write_operation or not self.is_high_risk(step):
                continue
            issues.append(
                PlanIssue(
                    rule_id="high_risk_operation",
                    rule_name="High-risk operation",
                    severity=Severity.BLOCK,
                    message=f'Undeclared high-risk operation: {step.action} in step "{step.description or step.id}"',
                    details=["Destructive steps must be declared as write operations and confirmed"],
                    affected_steps=[step.id],
                    suggested_fix="Confirm the operation explicitly before it runs",
                )
            )
        return issues
