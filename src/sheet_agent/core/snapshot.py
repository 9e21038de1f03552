"""Snapshot and rollback manager."""

import logging
from dataclasses import dataclass, field
from typing import Any

from sheet_agent.core.errors import RollbackPartialFailureError
from sheet_agent.core.models import RollbackData, Task
from sheet_agent.core.tool_registry import ToolInvoker, ToolRegistry
from sheet_agent.core.workbook import (
    RangeError,
    ResourceReader,
    cell_address,
    parse_range,
    split_address,
)
from sheet_agent.utils import constants

# Tools whose target is the "range" parameter
_RANGE_TOOLS = {
    constants.WRITE_RANGE,
    constants.SET_FORMULA,
    constants.FILL_FORMULA,
    constants.CLEAR_RANGE,
    constants.RESTORE_RANGE,
}
# Tools that can touch anything on the sheet
_WHOLE_SHEET_TOOLS = {constants.DELETE_ROWS, constants.DELETE_SHEET}


async def affected_region(
    tool_name: str, params: dict[str, Any], reader: ResourceReader
) -> tuple[str | None, str | None]:
    """Resolve the (sheet, range) a step reads or writes.

    A write anchored at a single cell covers the full shape of its values.
    """
    sheet = params.get("sheet")
    address = params.get("range")
    if isinstance(address, str):
        qualified_sheet, address = split_address(address)
        sheet = qualified_sheet or sheet
    if sheet is None and tool_name != constants.CREATE_SHEET:
        sheet = await reader.active_sheet()
    if not isinstance(address, str) or not address:
        return sheet, None

    values = params.get("values")
    if tool_name == constants.WRITE_RANGE and isinstance(values, list) and values:
        try:
            bounds = parse_range(address)
        except RangeError:
            return sheet, address
        if bounds.cell_count == 1:
            width = max((len(row) for row in values if isinstance(row, list)), default=1)
            end = cell_address(bounds.top + len(values) - 1, bounds.left + max(width, 1) - 1)
            start = cell_address(bounds.top, bounds.left)
            address = start if start == end else f"{start}:{end}"
    return sheet, address


@dataclass
class RollbackReport:
    """What a rollback sweep reversed and what it could not."""

    reversed: list[str] = field(default_factory=list)
    failures: list[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failures

    def error(self) -> RollbackPartialFailureError | None:
        return RollbackPartialFailureError(self.failures) if self.failures else None


class SnapshotManager:
    """Capture pre-state before mutations and reverse them from the ledger.

    Args:
        reader: Read access to the document
        invoker: Used to restore snapshots and run compensating actions
        registry: Tells mutating tools apart from read-only ones
    """

    def __init__(
        self, reader: ResourceReader, invoker: ToolInvoker, registry: ToolRegistry
    ) -> None:
        self.reader = reader
        self.invoker = invoker
        self.registry = registry
        self.logger = logging.getLogger(__name__)

    async def snapshot(self, tool_name: str, params: dict[str, Any]) -> RollbackData | None:
        """Capture what a mutating tool is about to change.

        Args:
            tool_name: Tool about to run
            params: Its parameters

        Returns:
            Rollback data, or None for read-only tools and targets that
            cannot be captured
        """
        if not self.registry.is_mutating(tool_name):
            return None

        if tool_name == constants.CREATE_SHEET:
            sheet = params.get("sheet")
            if not sheet or sheet in await self.reader.sheet_names():
                return None
            return RollbackData(
                sheet=sheet,
                sheet_existed=False,
                rollback_action=constants.DELETE_SHEET,
                rollback_params={"sheet": sheet},
            )

        sheet, address = await affected_region(tool_name, params, self.reader)
        if sheet is None:
            return None
        if sheet not in await self.reader.sheet_names():
            return RollbackData(sheet=sheet, range=address, sheet_existed=False)

        if tool_name in _WHOLE_SHEET_TOOLS:
            address = await self.reader.used_range(sheet)
            if address is None:
                if tool_name == constants.DELETE_SHEET:
                    return RollbackData(
                        sheet=sheet,
                        rollback_action=constants.CREATE_SHEET,
                        rollback_params={"sheet": sheet},
                    )
                return RollbackData(sheet=sheet, previous_values=[], previous_formulas=[])
            # Restore from A1 so shifted rows land back where they were
            address = f"A1:{address.split(':')[-1]}"
        elif tool_name not in _RANGE_TOOLS or address is None:
            self.logger.warning(f"No snapshot strategy for {tool_name}")
            return None

        try:
            data = await self.reader.read_range(sheet, address)
        except RangeError as e:
            self.logger.warning(f"Could not capture {sheet}!{address}: {e}")
            return None
        self.logger.debug(f"Captured {sheet}!{data.address} before {tool_name}")
        return RollbackData(
            sheet=sheet,
            range=data.address,
            previous_values=data.values,
            previous_formulas=data.formulas,
        )

    async def rollback(self, task: Task, from_operation_id: str | None = None) -> RollbackReport:
        """Reverse operations newest first, continuing past individual failures.

        Args:
            task: Task whose ledger is reversed
            from_operation_id: Reverse this operation and everything after it;
                when omitted, every successful operation

        Returns:
            Report of reversed and failed operations. ``task.rolled_back`` is
            set either way.
        """
        report = RollbackReport()
        records = task.ledger.select_for_rollback(from_operation_id)
        self.logger.info(f"Rolling back {len(records)} operation(s) for task {task.id}")

        for record in records:
            try:
                await self._reverse(record.tool_name, record.rollback_data)
            except RollbackPartialFailureError as e:
                message = f"{record.tool_name} ({record.id}): {e.failures[0]}"
                self.logger.warning(f"Rollback step failed: {message}")
                report.failures.append(message)
                continue
            task.ledger.mark_rolled_back(record.id)
            report.reversed.append(record.id)
            if task.plan is not None and record.step_id is not None:
                for step in task.plan.steps:
                    if step.id == record.step_id:
                        step.rolled_back = True

        task.rolled_back = True
        if report.failures:
            self.logger.warning(
                f"Rollback incomplete for task {task.id}: {len(report.failures)} failure(s)"
            )
        return report

    async def _reverse(self, tool_name: str, data: RollbackData | None) -> None:
        if data is None:
            raise RollbackPartialFailureError([f"no rollback data for {tool_name}"])

        if data.rollback_action:
            result = await self.invoker.invoke(data.rollback_action, data.rollback_params or {})
        elif not data.sheet_existed:
            # Target sheet was missing; the tool could not have changed anything
            return
        elif data.previous_values is not None and data.range:
            result = await self.invoker.invoke(
                constants.RESTORE_RANGE,
                {
                    "sheet": data.sheet,
                    "range": data.range,
                    "values": data.previous_values,
                    "formulas": data.previous_formulas,
                },
            )
        elif data.previous_values == []:
            # Sheet was empty before; clear whatever is there now
            used = await self.reader.used_range(data.sheet) if data.sheet else None
            if used is None:
                return
            result = await self.invoker.invoke(
                constants.CLEAR_RANGE, {"sheet": data.sheet, "range": f"A1:{used.split(':')[-1]}"}
            )
        else:
            raise RollbackPartialFailureError([f"no snapshot captured for {tool_name}"])

        if not result.success:
            raise RollbackPartialFailureError([result.error or "rollback action failed"])
