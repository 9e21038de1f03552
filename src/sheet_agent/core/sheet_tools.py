"""Spreadsheet tools over the in-memory workbook."""

import functools
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from sheet_agent.core.models import ToolInvocationResult
from sheet_agent.core.tool_registry import FunctionTool, ToolRegistry
from sheet_agent.core.workbook import RangeError, Workbook
from sheet_agent.utils import constants

logger = logging.getLogger(__name__)


class _ToolInput(BaseModel):
    # Unknown keys fail loudly so parameter repair gets a chance to fix them
    model_config = ConfigDict(extra="forbid")


class RangeInput(_ToolInput):
    sheet: str | None = None
    range: str


class WriteRangeInput(RangeInput):
    values: list[list[Any]]


class SetFormulaInput(RangeInput):
    formula: str


class FillFormulaInput(RangeInput):
    source: str = Field(description="Cell holding the formula to copy, e.g. D2")


class DeleteRowsInput(_ToolInput):
    sheet: str | None = None
    start_row: int = Field(ge=1)
    end_row: int = Field(ge=1)


class SheetInput(_ToolInput):
    sheet: str


class SelectionInput(_ToolInput):
    pass


class RestoreRangeInput(RangeInput):
    values: list[list[Any]] = Field(default_factory=list)
    formulas: list[list[Any]] | None = None


def _guarded(
    func: Callable[..., Awaitable[ToolInvocationResult]],
) -> Callable[..., Awaitable[ToolInvocationResult]]:
    """Turn workbook errors into failing results."""

    @functools.wraps(func)
    async def wrapper(*args: Any) -> ToolInvocationResult:
        try:
            return await func(*args)
        except (RangeError, ValueError) as e:
            return ToolInvocationResult.failure(str(e))

    return wrapper


def _preview(values: list[list[Any]], limit: int = 5) -> str:
    lines = [" | ".join("" if v is None else str(v) for v in row) for row in values[:limit]]
    if len(values) > limit:
        lines.append(f"... ({len(values) - limit} more rows)")
    return "\n".join(lines)


class SheetTools:
    """Factory for the sheet tools bound to one workbook."""

    def __init__(self, workbook: Workbook) -> None:
        self.workbook = workbook

    def _sheet(self, name: str | None) -> str:
        if name is None:
            return self.workbook.active_sheet
        self.workbook.sheet(name)
        return name

    @_guarded
    async def read_range(self, params: RangeInput) -> ToolInvocationResult:
        sheet = self._sheet(params.sheet)
        data = self.workbook.read(sheet, params.range)
        return ToolInvocationResult(
            success=True,
            output=f"Read {sheet}!{data.address}:\n{_preview(data.values)}",
            data=data.model_dump(),
        )

    @_guarded
    async def read_selection(self, params: SelectionInput) -> ToolInvocationResult:
        sheet, address = self.workbook.selection
        used = self.workbook.used_range(sheet)
        if address == "A1" and used:
            address = used
        data = self.workbook.read(sheet, address)
        return ToolInvocationResult(
            success=True,
            output=f"Read selection {sheet}!{data.address}:\n{_preview(data.values)}",
            data=data.model_dump(),
        )

    @_guarded
    async def write_range(self, params: WriteRangeInput) -> ToolInvocationResult:
        sheet = self._sheet(params.sheet)
        bounds = self.workbook.write(sheet, params.range, params.values)
        return ToolInvocationResult(
            success=True,
            output=f"Wrote {bounds.cell_count} cells to {sheet}!{bounds.to_a1()}",
            data={"sheet": sheet, "range": bounds.to_a1()},
        )

    @_guarded
    async def set_formula(self, params: SetFormulaInput) -> ToolInvocationResult:
        sheet = self._sheet(params.sheet)
        bounds = self.workbook.set_formula(sheet, params.range, params.formula)
        return ToolInvocationResult(
            success=True,
            output=f"Set formula {params.formula} on {sheet}!{bounds.to_a1()}",
            data={"sheet": sheet, "range": bounds.to_a1()},
        )

    @_guarded
    async def fill_formula(self, params: FillFormulaInput) -> ToolInvocationResult:
        sheet = self._sheet(params.sheet)
        bounds = self.workbook.fill_formula(sheet, params.source, params.range)
        return ToolInvocationResult(
            success=True,
            output=f"Filled formula from {params.source} into {sheet}!{bounds.to_a1()}",
            data={"sheet": sheet, "range": bounds.to_a1()},
        )

    @_guarded
    async def clear_range(self, params: RangeInput) -> ToolInvocationResult:
        sheet = self._sheet(params.sheet)
        bounds = self.workbook.clear(sheet, params.range)
        return ToolInvocationResult(
            success=True,
            output=f"Cleared {sheet}!{bounds.to_a1()}",
            data={"sheet": sheet, "range": bounds.to_a1()},
        )

    @_guarded
    async def delete_rows(self, params: DeleteRowsInput) -> ToolInvocationResult:
        sheet = self._sheet(params.sheet)
        count = self.workbook.delete_rows(sheet, params.start_row, params.end_row)
        return ToolInvocationResult(
            success=True,
            output=f"Deleted {count} rows ({params.start_row}-{params.end_row}) from {sheet}",
            data={"sheet": sheet, "deleted": count},
        )

    @_guarded
    async def create_sheet(self, params: SheetInput) -> ToolInvocationResult:
        self.workbook.create_sheet(params.sheet)
        return ToolInvocationResult(
            success=True,
            output=f"Created sheet {params.sheet}",
            data={"sheet": params.sheet},
        )

    @_guarded
    async def delete_sheet(self, params: SheetInput) -> ToolInvocationResult:
        self.workbook.delete_sheet(params.sheet)
        return ToolInvocationResult(
            success=True,
            output=f"Deleted sheet {params.sheet}",
            data={"sheet": params.sheet},
        )

    @_guarded
    async def restore_range(self, params: RestoreRangeInput) -> ToolInvocationResult:
        sheet = params.sheet or self.workbook.active_sheet
        bounds = self.workbook.restore(sheet, params.range, params.values, params.formulas)
        return ToolInvocationResult(
            success=True,
            output=f"Restored {sheet}!{bounds.to_a1()}",
            data={"sheet": sheet, "range": bounds.to_a1()},
        )

    def build(self) -> list[FunctionTool]:
        return [
            FunctionTool(
                constants.READ_RANGE,
                self.read_range,
                "Read values and formulas of a range. Params: sheet, range",
                RangeInput,
                alternate=constants.READ_SELECTION,
            ),
            FunctionTool(
                constants.READ_SELECTION,
                self.read_selection,
                "Read the current selection (or the used range of the active sheet)",
                SelectionInput,
            ),
            FunctionTool(
                constants.WRITE_RANGE,
                self.write_range,
                "Write a 2-D array of values. Params: sheet, range, values",
                WriteRangeInput,
                is_write=True,
            ),
            FunctionTool(
                constants.SET_FORMULA,
                self.set_formula,
                "Set a formula on a range, adjusting relative references. Params: sheet, range, formula",
                SetFormulaInput,
                is_write=True,
            ),
            FunctionTool(
                constants.FILL_FORMULA,
                self.fill_formula,
                "Copy the formula in a source cell across a range. Params: sheet, source, range",
                FillFormulaInput,
                is_write=True,
                alternate=constants.SET_FORMULA,
            ),
            FunctionTool(
                constants.CLEAR_RANGE,
                self.clear_range,
                "Clear values and formulas in a range. Params: sheet, range",
                RangeInput,
                is_write=True,
            ),
            FunctionTool(
                constants.DELETE_ROWS,
                self.delete_rows,
                "Delete whole rows and shift the rest up. Params: sheet, start_row, end_row",
                DeleteRowsInput,
                is_write=True,
                destructive=True,
            ),
            FunctionTool(
                constants.CREATE_SHEET,
                self.create_sheet,
                "Create a new worksheet. Params: sheet",
                SheetInput,
                is_write=True,
            ),
            FunctionTool(
                constants.DELETE_SHEET,
                self.delete_sheet,
                "Delete a worksheet. Params: sheet",
                SheetInput,
                is_write=True,
                destructive=True,
            ),
            FunctionTool(
                constants.RESTORE_RANGE,
                self.restore_range,
                "Restore captured values and formulas into a range, creating the sheet if missing",
                RestoreRangeInput,
                is_write=True,
            ),
        ]


def create_sheet_registry(workbook: Workbook) -> ToolRegistry:
    """Registry holding every sheet tool bound to ``workbook``."""
    registry = ToolRegistry(SheetTools(workbook).build())
    logger.info(f"Registered {len(registry)} sheet tools")
    return registry
