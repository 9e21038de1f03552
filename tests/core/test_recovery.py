"""Tests for local repair of failed tool calls."""

import pytest

from sheet_agent.core.recovery import FailureKind, RecoveryManager, classify_failure
from sheet_agent.core.tool_registry import ToolRegistry
from sheet_agent.core.workbook import WorkbookReader
from sheet_agent.utils import constants


@pytest.fixture
def recovery(registry: ToolRegistry, reader: WorkbookReader) -> RecoveryManager:
    return RecoveryManager(registry, reader)


class TestClassifyFailure:
    """Test suite for failure classification."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "error,kind",
        [
            ("Sheet not found: Data", FailureKind.SHEET_NOT_FOUND),
            ("Invalid cell address: A0", FailureKind.RANGE_NOT_FOUND),
            ("Request timed out", FailureKind.TRANSIENT),
            ("Range is protected", FailureKind.PERMISSION),
            ("Invalid parameters for excel_read_range: range: Field required", FailureKind.INVALID_PARAMETERS),
            ("values are 2x1 but range F1:F3 is 3x1", FailureKind.DATA_FORMAT),
            ("Something odd", FailureKind.UNKNOWN),
            (None, FailureKind.UNKNOWN),
        ],
    )
    def test_classify(self, error: str | None, kind: FailureKind) -> None:
        assert classify_failure(error) == kind


class TestRepair:
    """Test suite for RecoveryManager.repair."""

    @pytest.mark.asyncio
    async def test_tool_name_is_normalized(self, recovery: RecoveryManager) -> None:
        repair = await recovery.repair("Excel-Read-Range", {"range": "A1"}, "Tool not found: Excel-Read-Range")
        assert repair is not None
        assert repair.tool_name == constants.READ_RANGE

    @pytest.mark.asyncio
    async def test_aliases_and_absolute_range(self, recovery: RecoveryManager) -> None:
        """Test aliased keys are renamed and "$" markers removed."""
        repair = await recovery.repair(
            constants.READ_RANGE,
            {"sheetName": "Sheet1", "address": "$A$1:$B$2"},
            "Invalid parameters for excel_read_range: range: Field required",
        )
        assert repair is not None
        assert repair.params == {"sheet": "Sheet1", "range": "A1:B2"}
        assert repair.changes == ["sheetName -> sheet", "address -> range", "range $A$1:$B$2 -> A1:B2"]

    @pytest.mark.asyncio
    async def test_sheet_qualified_range(self, recovery: RecoveryManager) -> None:
        repair = await recovery.repair(constants.READ_RANGE, {"range": "Calc!a1"}, "Sheet not found: Sheet1")
        assert repair is not None
        assert repair.params == {"sheet": "Calc", "range": "A1"}

    @pytest.mark.asyncio
    async def test_sheet_name_case(self, recovery: RecoveryManager) -> None:
        repair = await recovery.repair(constants.READ_RANGE, {"sheet": "calc", "range": "A1"}, "Sheet not found: calc")
        assert repair is not None
        assert repair.params["sheet"] == "Calc"

    @pytest.mark.asyncio
    async def test_missing_sheet_is_created_before_a_write(self, recovery: RecoveryManager) -> None:
        repair = await recovery.repair(
            constants.WRITE_RANGE,
            {"sheet": "Summary", "range": "A1", "values": [["Total"]]},
            "Sheet not found: Summary",
        )
        assert repair is not None
        assert repair.prerequisite == (constants.CREATE_SHEET, {"sheet": "Summary"})

    @pytest.mark.asyncio
    async def test_missing_sheet_read_has_no_repair(self, recovery: RecoveryManager) -> None:
        assert await recovery.repair(constants.READ_RANGE, {"sheet": "Summary", "range": "A1"}, "Sheet not found: Summary") is None

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, recovery: RecoveryManager) -> None:
        repair = await recovery.repair(constants.READ_RANGE, {"sheet": "Sheet1", "range": "A1"}, "Request timed out")
        assert repair is not None
        assert repair.changes == ["retry after transient failure"]

    @pytest.mark.asyncio
    async def test_permission_failure_is_not_repaired(self, recovery: RecoveryManager) -> None:
        assert await recovery.repair(constants.SET_FORMULA, {"formula": "A1"}, "Range is protected") is None


class TestAlternate:
    """Test suite for alternate tool selection."""

    @pytest.mark.asyncio
    async def test_read_range_falls_back_to_selection(self, recovery: RecoveryManager) -> None:
        assert await recovery.alternate(constants.READ_RANGE, {"range": "A1"}) == (constants.READ_SELECTION, {})

    @pytest.mark.asyncio
    async def test_fill_falls_back_to_set_formula(self, recovery: RecoveryManager) -> None:
        """Test a failed fill becomes a range formula copied from the source cell."""
        alternate = await recovery.alternate(
            constants.FILL_FORMULA, {"sheet": "Sheet1", "source": "D2", "range": "D3:D5"}
        )
        assert alternate == (
            constants.SET_FORMULA,
            {"sheet": "Sheet1", "range": "D3:D5", "formula": "=B2*C2"},
        )

    @pytest.mark.asyncio
    async def test_fill_from_literal_has_no_alternate(self, recovery: RecoveryManager) -> None:
        assert await recovery.alternate(
            constants.FILL_FORMULA, {"sheet": "Sheet1", "source": "B2", "range": "B3:B5"}
        ) is None

    @pytest.mark.asyncio
    async def test_write_has_no_alternate(self, recovery: RecoveryManager) -> None:
        assert await recovery.alternate(constants.WRITE_RANGE, {}) is None


class TestShouldSkip:
    """Test suite for skipping failed read-only steps."""

    @pytest.mark.unit
    def test_reads_skip_on_format_errors(self, recovery: RecoveryManager) -> None:
        assert recovery.should_skip(constants.READ_RANGE, "Unsupported number format")
        assert not recovery.should_skip(constants.WRITE_RANGE, "Unsupported number format")
        assert not recovery.should_skip(constants.READ_RANGE, "Sheet not found: X")
