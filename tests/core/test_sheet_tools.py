"""Tests for the spreadsheet tools over the in-memory workbook."""

import pytest

from sheet_agent.core.tool_registry import ToolInvoker, ToolRegistry
from sheet_agent.core.workbook import Workbook
from sheet_agent.utils import constants


@pytest.fixture
def invoker(registry: ToolRegistry) -> ToolInvoker:
    return ToolInvoker(registry)


class TestSheetRegistry:
    """Test suite for the registered sheet tools."""

    @pytest.mark.unit
    def test_capabilities(self, registry: ToolRegistry) -> None:
        """Test write and destructive flags on the built-in tools."""
        assert len(registry) == 10
        assert not registry.is_mutating(constants.READ_RANGE)
        assert registry.is_mutating(constants.WRITE_RANGE)
        assert registry.is_destructive(constants.DELETE_ROWS)
        assert registry.is_destructive(constants.DELETE_SHEET)
        assert not registry.is_destructive(constants.CLEAR_RANGE)
        assert registry.alternate_for(constants.READ_RANGE) == constants.READ_SELECTION


class TestSheetTools:
    """Test suite for individual sheet tool behaviour."""

    @pytest.mark.asyncio
    async def test_read_range(self, invoker: ToolInvoker) -> None:
        """Test reads return a preview and the full range data."""
        result = await invoker.invoke(
            constants.READ_RANGE, {"sheet": "Sheet1", "range": "A1:B2"}
        )
        assert result.success
        assert result.output.startswith("Read Sheet1!A1:B2:")
        assert result.data["values"] == [["Region", "Units"], ["North", 10]]

    @pytest.mark.asyncio
    async def test_read_defaults_to_active_sheet(self, invoker: ToolInvoker) -> None:
        result = await invoker.invoke(constants.READ_RANGE, {"range": "D2"})
        assert result.data["sheet"] == "Sheet1"
        assert result.data["values"] == [[25]]

    @pytest.mark.asyncio
    async def test_read_selection_falls_back_to_used_range(self, invoker: ToolInvoker) -> None:
        result = await invoker.invoke(constants.READ_SELECTION, {})
        assert result.data["address"] == "A1:D5"

    @pytest.mark.asyncio
    async def test_missing_sheet_is_a_failure(self, invoker: ToolInvoker) -> None:
        """Test workbook errors come back as failing results."""
        result = await invoker.invoke(constants.READ_RANGE, {"sheet": "Nope", "range": "A1"})
        assert not result.success
        assert result.error == "Sheet not found: Nope"

    @pytest.mark.asyncio
    async def test_unknown_parameter_is_rejected(self, invoker: ToolInvoker) -> None:
        """Test unexpected keys fail validation instead of being ignored."""
        result = await invoker.invoke(
            constants.READ_RANGE, {"sheetName": "Sheet1", "range": "A1"}
        )
        assert not result.success
        assert "sheetName" in result.error  # type: ignore[operator]

    @pytest.mark.asyncio
    async def test_write_and_formula_tools(self, invoker: ToolInvoker, workbook: Workbook) -> None:
        """Test writing literals, setting a formula and filling it down."""
        write = await invoker.invoke(
            constants.WRITE_RANGE,
            {"sheet": "Sheet1", "range": "F1:F2", "values": [["Tax"], [0.1]]},
        )
        assert write.output == "Wrote 2 cells to Sheet1!F1:F2"
        assert write.data == {"sheet": "Sheet1", "range": "F1:F2"}

        await invoker.invoke(
            constants.SET_FORMULA, {"sheet": "Sheet1", "range": "G2", "formula": "=D2*$F$2"}
        )
        fill = await invoker.invoke(
            constants.FILL_FORMULA, {"sheet": "Sheet1", "source": "G2", "range": "G3:G5"}
        )
        assert fill.success
        assert workbook.read("Sheet1", "G5").formulas == [["=D5*$F$2"]]
        assert workbook.read("Sheet1", "G5").values == [[5]]

    @pytest.mark.asyncio
    async def test_delete_rows(self, invoker: ToolInvoker, workbook: Workbook) -> None:
        result = await invoker.invoke(
            constants.DELETE_ROWS, {"sheet": "Sheet1", "start_row": 2, "end_row": 2}
        )
        assert result.data == {"sheet": "Sheet1", "deleted": 1}
        assert workbook.read("Sheet1", "A2").values == [["South"]]

    @pytest.mark.asyncio
    async def test_delete_rows_validates_row_numbers(self, invoker: ToolInvoker) -> None:
        result = await invoker.invoke(
            constants.DELETE_ROWS, {"sheet": "Sheet1", "start_row": 0, "end_row": 2}
        )
        assert not result.success
        assert result.error.startswith("Invalid parameters")  # type: ignore[union-attr]

    @pytest.mark.asyncio
    async def test_sheet_lifecycle(self, invoker: ToolInvoker, workbook: Workbook) -> None:
        """Test creating, duplicating and deleting sheets."""
        assert (await invoker.invoke(constants.CREATE_SHEET, {"sheet": "Summary"})).success
        duplicate = await invoker.invoke(constants.CREATE_SHEET, {"sheet": "Summary"})
        assert duplicate.error == "Sheet already exists: Summary"

        assert (await invoker.invoke(constants.DELETE_SHEET, {"sheet": "Summary"})).success
        assert not workbook.has_sheet("Summary")

    @pytest.mark.asyncio
    async def test_clear_and_restore(self, invoker: ToolInvoker, workbook: Workbook) -> None:
        """Test a cleared region can be put back from captured data."""
        captured = workbook.read("Calc", "A1:B2")
        await invoker.invoke(constants.CLEAR_RANGE, {"sheet": "Calc", "range": "A1:B2"})
        assert workbook.read("Calc", "A1").values == [[None]]

        await invoker.invoke(
            constants.RESTORE_RANGE,
            {
                "sheet": "Calc",
                "range": "A1:B2",
                "values": captured.values,
                "formulas": captured.formulas,
            },
        )
        assert workbook.read("Calc", "A1:B2").formulas == captured.formulas
