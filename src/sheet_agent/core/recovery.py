"""Local diagnosis and repair of failed tool calls."""

import difflib
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from sheet_agent.core.tool_registry import ToolRegistry
from sheet_agent.core.workbook import ResourceReader, split_address
from sheet_agent.utils import constants

_SHEET_ALIASES = ("sheetName", "sheet_name", "worksheet", "sheetname", "tab")
_RANGE_ALIASES = ("address", "cell", "range_address", "rangeAddress", "target", "cells")


class FailureKind(str, Enum):
    RANGE_NOT_FOUND = "range_not_found"
    SHEET_NOT_FOUND = "sheet_not_found"
    TRANSIENT = "transient"
    PERMISSION = "permission"
    DATA_FORMAT = "data_format"
    INVALID_PARAMETERS = "invalid_parameters"
    UNKNOWN = "unknown"


_FAILURE_PATTERNS: tuple[tuple[FailureKind, re.Pattern[str]], ...] = (
    (FailureKind.SHEET_NOT_FOUND, re.compile(r"sheet not found|no such sheet|worksheet.*not", re.I)),
    (FailureKind.RANGE_NOT_FOUND, re.compile(r"invalid (cell|range) address|range not found|invalid column", re.I)),
    (FailureKind.TRANSIENT, re.compile(r"timeout|timed out|network|temporar|rate limit|busy", re.I)),
    (FailureKind.PERMISSION, re.compile(r"permission|protected|read-only|access denied", re.I)),
    (FailureKind.INVALID_PARAMETERS, re.compile(r"invalid parameters|extra inputs|field required", re.I)),
    (FailureKind.DATA_FORMAT, re.compile(r"values are \d+x\d+|2-d list|#VALUE|format", re.I)),
)


def classify_failure(error: str | None) -> FailureKind:
    for kind, pattern in _FAILURE_PATTERNS:
        if error and pattern.search(error):
            return kind
    return FailureKind.UNKNOWN


@dataclass
class Repair:
    """A corrected call, plus anything that must run before it."""

    tool_name: str
    params: dict[str, Any]
    changes: list[str] = field(default_factory=list)
    prerequisite: tuple[str, dict[str, Any]] | None = None


class RecoveryManager:
    """Repair common parameter mistakes and find alternate tools.

    Every repair is logged so a corrected call never looks like the
    planner's original one.
    """

    def __init__(self, registry: ToolRegistry, reader: ResourceReader) -> None:
        self.registry = registry
        self.reader = reader
        self.logger = logging.getLogger(__name__)

    async def repair(
        self, tool_name: str, params: dict[str, Any], error: str | None
    ) -> Repair | None:
        """Diagnose a failed call and propose a corrected one.

        Args:
            tool_name: Tool that failed
            params: Parameters it received
            error: The failure message

        Returns:
            A repair, or None when nothing obvious is wrong
        """
        kind = classify_failure(error)
        if kind == FailureKind.PERMISSION:
            return None

        repair = Repair(tool_name=tool_name, params=dict(params))
        self._fix_tool_name(repair)
        self._fix_aliases(repair)
        self._fix_range(repair)
        self._fix_formula(repair)
        await self._fix_sheet_name(repair)

        if not repair.changes and kind == FailureKind.SHEET_NOT_FOUND:
            sheet = repair.params.get("sheet")
            if sheet and self.registry.is_mutating(repair.tool_name) and constants.CREATE_SHEET in self.registry:
                repair.prerequisite = (constants.CREATE_SHEET, {"sheet": sheet})
                repair.changes.append(f"create missing sheet {sheet}")

        if not repair.changes and kind == FailureKind.TRANSIENT:
            repair.changes.append("retry after transient failure")

        if not repair.changes:
            return None
        self.logger.warning(f"Repaired {tool_name} call: {', '.join(repair.changes)}")
        return repair

    async def alternate(
        self, tool_name: str, params: dict[str, Any]
    ) -> tuple[str, dict[str, Any]] | None:
        """A degraded tool serving the same intent, with adapted parameters."""
        alternate = self.registry.alternate_for(tool_name)
        if alternate is None:
            return None

        if alternate == constants.READ_SELECTION:
            return alternate, {}
        if tool_name == constants.FILL_FORMULA and alternate == constants.SET_FORMULA:
            sheet = params.get("sheet") or await self.reader.active_sheet()
            source = params.get("source")
            if not source or not params.get("range"):
                return None
            data = await self.reader.read_range(sheet, source)
            formula = data.formulas[0][0] if data.formulas and data.formulas[0] else None
            if not isinstance(formula, str) or not formula.startswith("="):
                return None
            return alternate, {"sheet": sheet, "range": params["range"], "formula": formula}
        return alternate, dict(params)

    def should_skip(self, tool_name: str, error: str | None) -> bool:
        """A read-only step that failed on permissions or format is skipped."""
        if self.registry.is_mutating(tool_name):
            return False
        return classify_failure(error) in (FailureKind.PERMISSION, FailureKind.DATA_FORMAT)

    # --- individual repairs ---

    def _fix_tool_name(self, repair: Repair) -> None:
        if repair.tool_name in self.registry:
            return
        candidates = self.registry.names()
        guess = repair.tool_name.strip().lower().replace("-", "_").replace(" ", "_")
        if guess in candidates:
            match = [guess]
        else:
            match = difflib.get_close_matches(guess, candidates, n=1, cutoff=0.6)
            if not match:
                match = difflib.get_close_matches(f"excel_{guess}", candidates, n=1, cutoff=0.6)
        if match:
            repair.changes.append(f"tool {repair.tool_name} -> {match[0]}")
            repair.tool_name = match[0]

    def _fix_aliases(self, repair: Repair) -> None:
        for alias in _SHEET_ALIASES:
            if alias in repair.params and "sheet" not in repair.params:
                repair.params["sheet"] = repair.params.pop(alias)
                repair.changes.append(f"{alias} -> sheet")
        for alias in _RANGE_ALIASES:
            if alias in repair.params and "range" not in repair.params:
                repair.params["range"] = repair.params.pop(alias)
                repair.changes.append(f"{alias} -> range")

    def _fix_range(self, repair: Repair) -> None:
        address = repair.params.get("range")
        if not isinstance(address, str):
            return
        sheet, clean = split_address(address)
        if sheet is not None:
            repair.params.setdefault("sheet", sheet)
        clean = clean.replace("$", "").replace('"', "").replace("'", "").strip().upper()
        if clean != address:
            repair.params["range"] = clean
            repair.changes.append(f"range {address} -> {clean}")

    def _fix_formula(self, repair: Repair) -> None:
        formula = repair.params.get("formula")
        if isinstance(formula, str) and formula and not formula.startswith("="):
            repair.params["formula"] = f"={formula.strip()}"
            repair.changes.append("added leading = to formula")

    async def _fix_sheet_name(self, repair: Repair) -> None:
        sheet = repair.params.get("sheet")
        if not isinstance(sheet, str) or repair.tool_name == constants.CREATE_SHEET:
            return
        names = await self.reader.sheet_names()
        if sheet in names:
            return
        for name in names:
            if name.lower() == sheet.strip().lower():
                repair.params["sheet"] = name
                repair.changes.append(f"sheet {sheet} -> {name}")
                return
