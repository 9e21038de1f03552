"""Validation rule engine and the built-in rules.

Rules read the workbook through an injected ``ResourceReader`` so they verify
what actually landed in the document instead of trusting tool return values.
"""

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any

from sheet_agent.config import ValidationConfig
from sheet_agent.core.models import (
    DecisionAction,
    RulePhase,
    Severity,
    ValidationCheckResult,
    ValidationContext,
)
from sheet_agent.core.workbook import (
    ResourceReader,
    index_to_column,
    is_error_value,
    parse_range,
)
from sheet_agent.utils import constants

_FORMULA_HINT = re.compile(r"formula|calculat|comput|derive|=\s*[A-Z]+\(", re.IGNORECASE)


class ValidationRule(ABC):
    """A single pre/post-execution check."""

    id: str
    name: str
    description: str = ""
    phase: RulePhase = RulePhase.POST_EXECUTION
    severity: Severity = Severity.BLOCK
    # None means every tool
    tools: frozenset[str] | None = None

    def applies_to(self, context: ValidationContext) -> bool:
        return self.tools is None or context.tool_name in self.tools

    @abstractmethod
    async def check(
        self, context: ValidationContext, reader: ResourceReader | None = None
    ) -> ValidationCheckResult:
        """Inspect the context and return a pass/fail result."""


class FunctionRule(ValidationRule):
    """Rule backed by an async function, for ad-hoc registration."""

    def __init__(
        self,
        rule_id: str,
        name: str,
        check: Callable[
            [ValidationContext, ResourceReader | None], Awaitable[ValidationCheckResult]
        ],
        phase: RulePhase = RulePhase.POST_EXECUTION,
        severity: Severity = Severity.BLOCK,
        tools: frozenset[str] | None = None,
        description: str = "",
    ) -> None:
        self.id = rule_id
        self.name = name
        self._check = check
        self.phase = phase
        self.severity = severity
        self.tools = tools
        self.description = description

    async def check(
        self, context: ValidationContext, reader: ResourceReader | None = None
    ) -> ValidationCheckResult:
        return await self._check(context, reader)


class ValidationRuleEngine:
    """Registry of rules, run concurrently per phase."""

    def __init__(
        self,
        rules: list[ValidationRule] | None = None,
        reader: ResourceReader | None = None,
        config: ValidationConfig | None = None,
    ) -> None:
        self.logger = logging.getLogger(__name__)
        self.reader = reader
        self.config = config or ValidationConfig()
        self._rules: dict[str, ValidationRule] = {}
        for rule in rules or []:
            self.register(rule)

    def register(self, rule: ValidationRule) -> None:
        self._rules[rule.id] = rule

    def unregister(self, rule_id: str) -> None:
        self._rules.pop(rule_id, None)

    def get(self, rule_id: str) -> ValidationRule | None:
        return self._rules.get(rule_id)

    @property
    def rules(self) -> list[ValidationRule]:
        return list(self._rules.values())

    # --- runtime configuration ---

    def set_enabled(self, enabled: bool) -> None:
        self.config.enabled = enabled

    def enable_rule(self, rule_id: str) -> None:
        self.config.disabled_rules.discard(rule_id)

    def disable_rule(self, rule_id: str) -> None:
        self.config.disabled_rules.add(rule_id)

    def downgrade_rule(self, rule_id: str) -> None:
        """Report a block-severity rule as warn from now on."""
        self.config.downgraded_rules.add(rule_id)

    def is_enabled(self, rule_id: str) -> bool:
        return self.config.enabled and rule_id not in self.config.disabled_rules

    def effective_severity(self, rule: ValidationRule) -> Severity:
        if rule.severity == Severity.BLOCK and rule.id in self.config.downgraded_rules:
            return Severity.WARN
        return rule.severity

    # --- execution ---

    async def run(
        self, context: ValidationContext, phase: RulePhase
    ) -> list[ValidationCheckResult]:
        """Run every enabled rule for ``phase`` that applies to the context.

        Args:
            context: The step being inspected
            phase: Which rule phase to run

        Returns:
            One result per rule run, failing or not
        """
        if not self.config.enabled:
            return []
        selected = [
            rule
            for rule in self._rules.values()
            if rule.phase == phase and self.is_enabled(rule.id) and rule.applies_to(context)
        ]
        if not selected:
            return []
        return list(
            await asyncio.gather(*(self._run_rule(rule, context) for rule in selected))
        )

    async def _run_rule(
        self, rule: ValidationRule, context: ValidationContext
    ) -> ValidationCheckResult:
        try:
            result = await rule.check(context, self.reader)
        except Exception as e:
            self.logger.error(f"Rule {rule.id} raised {type(e).__name__}: {e}")
            result = ValidationCheckResult(
                passed=False,
                message=f"Validation rule {rule.name} failed to run: {e}",
                recommended=(
                    DecisionAction.ROLLBACK_AND_REPLAN
                    if self.effective_severity(rule) == Severity.BLOCK
                    else None
                ),
            )
        return result.model_copy(
            update={
                "rule_id": rule.id,
                "rule_name": rule.name,
                "severity": self.effective_severity(rule),
                "phase": rule.phase,
            }
        )

    @staticmethod
    def failures(results: list[ValidationCheckResult]) -> list[ValidationCheckResult]:
        return [r for r in results if not r.passed]


# --- Built-in rules ---

_WRITE_TOOLS = frozenset(
    {constants.WRITE_RANGE, constants.SET_FORMULA, constants.FILL_FORMULA}
)


def _is_literal_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_formula(value: Any) -> bool:
    return isinstance(value, str) and value.startswith("=")


class FormulaColumnLiteralsRule(ValidationRule):
    """A column meant to be computed must not receive typed-in numbers.

    A column counts as computed when the step declares a formula intent or
    when the cells around the written block already hold formulas.
    """

    id = "formula_column_literals"
    name = "No literal values in formula column"
    description = "Detects literal numbers written where formulas are expected"
    phase = RulePhase.POST_EXECUTION
    severity = Severity.BLOCK
    tools = frozenset({constants.WRITE_RANGE})

    async def check(
        self, context: ValidationContext, reader: ResourceReader | None = None
    ) -> ValidationCheckResult:
        if reader is None or not context.sheet or not context.affected_range:
            return ValidationCheckResult(passed=True)
        bounds = parse_range(context.affected_range)
        if bounds.rows < 2:
            return ValidationCheckResult(passed=True)

        written = await reader.read_range(context.sheet, bounds.to_a1())
        declared = bool(
            _FORMULA_HINT.search(
                f"{context.step_description} {context.success_condition or ''}"
            )
        )

        offenders: list[str] = []
        for offset in range(bounds.columns):
            column = index_to_column(bounds.left + offset)
            cells = [row[offset] for row in written.formulas]
            if not cells or not all(_is_literal_number(v) for v in cells):
                continue
            if declared or await self._neighbours_have_formulas(
                reader, context.sheet, column, bounds.top, bounds.bottom
            ):
                offenders.append(column)

        if not offenders:
            return ValidationCheckResult(passed=True)
        columns = ", ".join(offenders)
        return ValidationCheckResult(
            passed=False,
            message=f"Column {columns} holds literal numbers where formulas are expected",
            details=[
                f"{bounds.rows} rows in {context.sheet}!{bounds.to_a1()} were written as constants",
                "Hardcoded results will not update when the source data changes",
            ],
            suggested_fix="Write the formula in the first row and fill it down",
        )

    @staticmethod
    async def _neighbours_have_formulas(
        reader: ResourceReader, sheet: str, column: str, top: int, bottom: int
    ) -> bool:
        # 1-based rows just above and just below the zero-based block
        rows = [top, bottom + 2] if top >= 1 else [bottom + 2]
        for row in rows:
            formulas = await reader.get_column_formulas(sheet, column, row, 1)
            if formulas and formulas[0]:
                return True
        return False


class AggregateRowsIdenticalRule(ValidationRule):
    """An aggregate column whose rows all show the same value is suspicious."""

    id = "aggregate_rows_identical"
    name = "Aggregate rows identical"
    description = "Detects summary formulas that produce the same value for every category"
    phase = RulePhase.DATA_QUALITY
    severity = Severity.WARN
    tools = _WRITE_TOOLS

    async def check(
        self, context: ValidationContext, reader: ResourceReader | None = None
    ) -> ValidationCheckResult:
        if reader is None or not context.sheet or not context.affected_range:
            return ValidationCheckResult(passed=True)
        bounds = parse_range(context.affected_range)
        if bounds.rows < 2:
            return ValidationCheckResult(passed=True)

        data = await reader.read_range(context.sheet, bounds.to_a1())
        for offset in range(bounds.columns):
            formulas = [row[offset] for row in data.formulas]
            values = [row[offset] for row in data.values]
            if not all(_is_formula(f) for f in formulas):
                continue
            if len({str(v) for v in values}) != 1:
                continue
            if bounds.left + offset == 0:
                continue
            label_column = index_to_column(bounds.left + offset - 1)
            labels = await reader.read_range(
                context.sheet,
                f"{label_column}{bounds.top + 1}:{label_column}{bounds.bottom + 1}",
            )
            distinct = {str(row[0]) for row in labels.values if row[0] not in (None, "")}
            if len(distinct) > 1:
                column = index_to_column(bounds.left + offset)
                return ValidationCheckResult(
                    passed=False,
                    message=f"Aggregate column {column} shows {values[0]} for all {len(distinct)} categories",
                    details=["Each category should aggregate to its own total"],
                    suggested_fix="Check that the criteria reference points at the category cell of each row",
                )
        return ValidationCheckResult(passed=True)


class ErrorValuesRule(ValidationRule):
    """Written cells must not evaluate to spreadsheet error values."""

    id = "error_values"
    name = "No error values after write"
    phase = RulePhase.POST_EXECUTION
    severity = Severity.BLOCK
    tools = _WRITE_TOOLS

    async def check(
        self, context: ValidationContext, reader: ResourceReader | None = None
    ) -> ValidationCheckResult:
        if reader is None or not context.sheet or not context.affected_range:
            return ValidationCheckResult(passed=True)
        data = await reader.read_range(context.sheet, context.affected_range)
        bounds = parse_range(data.address)
        errors = [
            f"{index_to_column(bounds.left + j)}{bounds.top + i + 1}={value}"
            for i, row in enumerate(data.values)
            for j, value in enumerate(row)
            if is_error_value(value)
        ]
        if not errors:
            return ValidationCheckResult(passed=True)
        return ValidationCheckResult(
            passed=False,
            message=f"Formula produced error values in {len(errors)} cell(s)",
            details=errors[:10],
            suggested_fix="Fix the formula references before writing again",
            recommended=DecisionAction.ROLLBACK_AND_REPLAN,
        )


class EmptyWriteRule(ValidationRule):
    """A write must carry at least one non-empty value."""

    id = "write_not_empty"
    name = "Write payload not empty"
    phase = RulePhase.PRE_EXECUTION
    severity = Severity.BLOCK
    tools = frozenset({constants.WRITE_RANGE})

    async def check(
        self, context: ValidationContext, reader: ResourceReader | None = None
    ) -> ValidationCheckResult:
        values = context.tool_input.get("values")
        if isinstance(values, list) and any(
            v not in (None, "")
            for row in values
            if isinstance(row, list)
            for v in row
        ):
            return ValidationCheckResult(passed=True)
        return ValidationCheckResult(
            passed=False,
            message="Write would leave the target range empty",
            suggested_fix="Use excel_clear_range to clear cells on purpose",
            recommended=DecisionAction.ROLLBACK_AND_REPLAN,
        )


class FormulaPrefixRule(ValidationRule):
    """Formulas must start with "="; the patch adds it."""

    id = "formula_prefix"
    name = "Formula starts with ="
    phase = RulePhase.PRE_EXECUTION
    severity = Severity.WARN
    tools = frozenset({constants.SET_FORMULA})

    async def check(
        self, context: ValidationContext, reader: ResourceReader | None = None
    ) -> ValidationCheckResult:
        formula = context.tool_input.get("formula")
        if not isinstance(formula, str) or formula.startswith("="):
            return ValidationCheckResult(passed=True)
        return ValidationCheckResult(
            passed=False,
            message=f"Formula value is not a formula: {formula}",
            suggested_fix="Prefix the formula with =",
            suggested_patch={"formula": f"={formula}"},
            recommended=DecisionAction.FIX_AND_RETRY,
        )


def default_rules() -> list[ValidationRule]:
    return [
        EmptyWriteRule(),
        FormulaPrefixRule(),
        FormulaColumnLiteralsRule(),
        ErrorValuesRule(),
        AggregateRowsIdenticalRule(),
    ]
