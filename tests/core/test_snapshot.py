"""Tests for snapshot capture and rollback."""

from typing import Any

import pytest

from sheet_agent.core.models import (
    OperationRecord,
    OperationResult,
    RollbackData,
    Task,
)
from sheet_agent.core.snapshot import SnapshotManager, affected_region
from sheet_agent.core.tool_registry import ToolInvoker, ToolRegistry
from sheet_agent.core.workbook import Workbook, WorkbookReader
from sheet_agent.utils import constants


@pytest.fixture
def invoker(registry: ToolRegistry) -> ToolInvoker:
    return ToolInvoker(registry)


@pytest.fixture
def snapshots(reader: WorkbookReader, invoker: ToolInvoker, registry: ToolRegistry) -> SnapshotManager:
    return SnapshotManager(reader, invoker, registry)


async def apply(
    task: Task, snapshots: SnapshotManager, invoker: ToolInvoker, tool: str, params: dict[str, Any]
) -> OperationRecord:
    """Snapshot, run and record one mutation the way the executor does."""
    rollback_data = await snapshots.snapshot(tool, params)
    result = await invoker.invoke(tool, params)
    return task.ledger.append(
        OperationRecord(
            tool_name=tool,
            tool_input=params,
            result=OperationResult.SUCCESS if result.success else OperationResult.FAILED,
            rollback_data=rollback_data,
        )
    )


class TestAffectedRegion:
    """Test suite for affected_region."""

    @pytest.mark.asyncio
    async def test_single_cell_anchor_covers_values(self, reader: WorkbookReader) -> None:
        region = await affected_region(
            constants.WRITE_RANGE, {"range": "F2", "values": [[1, 2, 3], [4, 5, 6]]}, reader
        )
        assert region == ("Sheet1", "F2:H3")

    @pytest.mark.asyncio
    async def test_sheet_qualified_range(self, reader: WorkbookReader) -> None:
        region = await affected_region(constants.CLEAR_RANGE, {"range": "Calc!A1:A3"}, reader)
        assert region == ("Calc", "A1:A3")


class TestSnapshot:
    """Test suite for SnapshotManager.snapshot."""

    @pytest.mark.asyncio
    async def test_reads_are_not_captured(self, snapshots: SnapshotManager) -> None:
        assert await snapshots.snapshot(constants.READ_RANGE, {"range": "A1"}) is None

    @pytest.mark.asyncio
    async def test_write_captures_formulas(self, snapshots: SnapshotManager) -> None:
        data = await snapshots.snapshot(
            constants.WRITE_RANGE, {"sheet": "Calc", "range": "A1:A2", "values": [[0], [0]]}
        )
        assert data is not None
        assert data.range == "A1:A2"
        assert data.previous_formulas == [["=B1*2"], ["=B2*2"]]
        assert data.previous_values == [[2], [4]]

    @pytest.mark.asyncio
    async def test_create_sheet_compensates_with_delete(self, snapshots: SnapshotManager) -> None:
        data = await snapshots.snapshot(constants.CREATE_SHEET, {"sheet": "Summary"})
        assert data == RollbackData(
            sheet="Summary",
            sheet_existed=False,
            rollback_action=constants.DELETE_SHEET,
            rollback_params={"sheet": "Summary"},
        )

    @pytest.mark.asyncio
    async def test_delete_rows_captures_from_a1(self, snapshots: SnapshotManager) -> None:
        data = await snapshots.snapshot(
            constants.DELETE_ROWS, {"sheet": "Sheet1", "start_row": 4, "end_row": 5}
        )
        assert data is not None
        assert data.range == "A1:D5"


class TestRollback:
    """Test suite for SnapshotManager.rollback."""

    @pytest.mark.asyncio
    async def test_restores_in_reverse_order(
        self, workbook: Workbook, snapshots: SnapshotManager, invoker: ToolInvoker
    ) -> None:
        """Test overlapping writes unwind to the original state."""
        task = Task(request="Overwrite twice")
        before = workbook.read("Calc", "A1:A3").formulas
        first = await apply(
            task, snapshots, invoker, constants.WRITE_RANGE,
            {"sheet": "Calc", "range": "A1:A3", "values": [[1], [2], [3]]},
        )
        await apply(
            task, snapshots, invoker, constants.WRITE_RANGE,
            {"sheet": "Calc", "range": "A2:A3", "values": [[9], [9]]},
        )

        report = await snapshots.rollback(task, first.id)

        assert report.complete
        assert len(report.reversed) == 2
        assert workbook.read("Calc", "A1:A3").formulas == before
        assert all(r.result == OperationResult.ROLLED_BACK for r in task.ledger.records)
        assert task.rolled_back

    @pytest.mark.asyncio
    async def test_rollback_from_later_operation_keeps_earlier(
        self, workbook: Workbook, snapshots: SnapshotManager, invoker: ToolInvoker
    ) -> None:
        task = Task(request="Two writes")
        await apply(
            task, snapshots, invoker, constants.WRITE_RANGE,
            {"sheet": "Sheet1", "range": "F1", "values": [["kept"]]},
        )
        second = await apply(
            task, snapshots, invoker, constants.WRITE_RANGE,
            {"sheet": "Sheet1", "range": "G1", "values": [["undone"]]},
        )

        await snapshots.rollback(task, second.id)

        assert workbook.read("Sheet1", "F1:G1").values == [["kept", None]]
        assert task.ledger.records[0].result == OperationResult.SUCCESS

    @pytest.mark.asyncio
    async def test_created_sheet_is_removed(
        self, workbook: Workbook, snapshots: SnapshotManager, invoker: ToolInvoker
    ) -> None:
        task = Task(request="Add a summary sheet")
        await apply(task, snapshots, invoker, constants.CREATE_SHEET, {"sheet": "Summary"})
        assert workbook.has_sheet("Summary")

        await snapshots.rollback(task)

        assert not workbook.has_sheet("Summary")

    @pytest.mark.asyncio
    async def test_deleted_rows_come_back(
        self, workbook: Workbook, snapshots: SnapshotManager, invoker: ToolInvoker
    ) -> None:
        """Test rows removed by a shifting delete are restored in place."""
        task = Task(request="Drop the middle rows")
        before = workbook.to_dict()
        await apply(
            task, snapshots, invoker, constants.DELETE_ROWS,
            {"sheet": "Sheet1", "start_row": 2, "end_row": 3},
        )
        assert workbook.used_range("Sheet1") == "A1:D3"

        await snapshots.rollback(task)

        assert workbook.to_dict() == before

    @pytest.mark.asyncio
    async def test_partial_failure_continues(
        self, workbook: Workbook, snapshots: SnapshotManager, invoker: ToolInvoker
    ) -> None:
        """Test a record without rollback data does not stop the sweep."""
        task = Task(request="Mixed")
        good = await apply(
            task, snapshots, invoker, constants.WRITE_RANGE,
            {"sheet": "Sheet1", "range": "F1", "values": [["x"]]},
        )
        bad = task.ledger.append(
            OperationRecord(
                tool_name="excel_external_sync",
                result=OperationResult.SUCCESS,
                rollback_data=None,
            )
        )

        report = await snapshots.rollback(task)

        assert not report.complete
        assert report.reversed == [good.id]
        assert bad.id in report.failures[0]
        assert task.ledger.get(bad.id).result == OperationResult.SUCCESS  # type: ignore[union-attr]
        assert workbook.read("Sheet1", "F1").values == [[None]]
        error = report.error()
        assert error is not None
        assert error.failures == report.failures
