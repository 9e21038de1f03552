"""One guarded tool call: read cache, snapshot, invoke, ledger, verify.

Shared by the plan-driven engine and the reactive loop so both apply the
same safety net to every mutation.
"""

import logging
from typing import Any

from sheet_agent.core.models import (
    OperationRecord,
    OperationResult,
    RollbackData,
    Task,
    ToolInvocationResult,
    ValidationContext,
)
from sheet_agent.core.read_cache import ReadCache
from sheet_agent.core.snapshot import SnapshotManager, affected_region
from sheet_agent.core.tool_registry import ToolInvoker, ToolRegistry
from sheet_agent.core.workbook import RangeError, ResourceReader
from sheet_agent.utils import constants


def _same(expected: Any, found: Any) -> bool:
    if expected in (None, "") and found in (None, ""):
        return True
    if isinstance(expected, (int, float)) and isinstance(found, (int, float)):
        return float(expected) == float(found)
    return expected == found


class OperationExecutor:
    """Run tool calls for one task with the read cache and the write safety net.

    Args:
        registry: Tool registry
        invoker: Tool invoker
        reader: Document reader used for snapshots and verification
        snapshots: Snapshot manager
        verify_writes: Re-read written targets to confirm the change landed
    """

    def __init__(
        self,
        registry: ToolRegistry,
        invoker: ToolInvoker,
        reader: ResourceReader,
        snapshots: SnapshotManager,
        verify_writes: bool = True,
    ) -> None:
        self.registry = registry
        self.invoker = invoker
        self.reader = reader
        self.snapshots = snapshots
        self.verify_writes = verify_writes
        self.cache = ReadCache()
        self.logger = logging.getLogger(__name__)

    async def execute(
        self,
        task: Task,
        tool_name: str,
        params: dict[str, Any],
        step_id: str | None = None,
    ) -> tuple[ToolInvocationResult, OperationRecord | None]:
        """Run one tool call.

        Args:
            task: Owning task; mutations are appended to its ledger
            tool_name: Tool to run
            params: Its parameters
            step_id: Plan step the call belongs to, if any

        Returns:
            The result, and the ledger record for mutating calls
        """
        if not self.registry.is_mutating(tool_name):
            cached = self.cache.get(tool_name, params)
            if cached is not None:
                return cached, None
            result = await self.invoker.invoke(tool_name, params)
            if result.success:
                sheet, _ = await self._region(tool_name, params)
                self.cache.put(tool_name, params, result, sheet)
            return result, None

        rollback_data = await self.snapshots.snapshot(tool_name, params)
        result = await self.invoker.invoke(tool_name, params)
        record = task.ledger.append(
            OperationRecord(
                tool_name=tool_name,
                tool_input=dict(params),
                result=OperationResult.SUCCESS if result.success else OperationResult.FAILED,
                rollback_data=rollback_data,
                step_id=step_id,
            )
        )
        if tool_name in (constants.CREATE_SHEET, constants.DELETE_SHEET):
            self.cache.invalidate()
        else:
            sheet, _ = await self._region(tool_name, params)
            self.cache.invalidate(sheet)

        if result.success and self.verify_writes:
            problem = await self.verify(tool_name, params, result)
            if problem:
                self.logger.warning(f"Post-write verification failed for {tool_name}: {problem}")
                await self.snapshots.rollback(task, record.id)
                result = ToolInvocationResult.failure(
                    f"Post-write verification failed: {problem}"
                )
        return result, record

    async def verify(
        self, tool_name: str, params: dict[str, Any], result: ToolInvocationResult
    ) -> str | None:
        """Re-read the target and confirm the mutation is observable.

        Returns:
            A description of the mismatch, or None when the change is visible
        """
        names = await self.reader.sheet_names()
        if tool_name == constants.CREATE_SHEET:
            return None if params.get("sheet") in names else f"sheet {params.get('sheet')} missing"
        if tool_name == constants.DELETE_SHEET:
            return f"sheet {params.get('sheet')} still present" if params.get("sheet") in names else None
        if tool_name not in (
            constants.WRITE_RANGE,
            constants.SET_FORMULA,
            constants.FILL_FORMULA,
            constants.CLEAR_RANGE,
        ):
            return None

        sheet, address = await self._region(tool_name, params)
        data = result.data if isinstance(result.data, dict) else {}
        address = data.get("range") or address
        if not sheet or not address:
            return None
        try:
            found = await self.reader.read_range(sheet, address)
        except RangeError as e:
            return str(e)
        except Exception as e:
            self.logger.error(f"Could not read back {sheet}!{address}: {e}")
            return f"read-back failed: {type(e).__name__}: {e}"

        if tool_name == constants.CLEAR_RANGE:
            leftover = [v for row in found.formulas for v in row if v not in (None, "")]
            return f"{len(leftover)} cell(s) still hold data" if leftover else None
        if tool_name in (constants.SET_FORMULA, constants.FILL_FORMULA):
            missing = sum(
                1
                for row in found.formulas
                for v in row
                if not (isinstance(v, str) and v.startswith("="))
            )
            return f"{missing} cell(s) have no formula" if missing else None

        expected = params.get("values") or []
        for i, row in enumerate(expected):
            for j, value in enumerate(row if isinstance(row, list) else []):
                if i >= len(found.formulas) or j >= len(found.formulas[i]):
                    return f"cell {i},{j} outside the written range"
                if not _same(value, found.formulas[i][j]):
                    return (
                        f"{sheet}!{found.address} cell ({i + 1},{j + 1}) "
                        f"expected {value!r}, found {found.formulas[i][j]!r}"
                    )
        return None

    async def build_context(
        self,
        tool_name: str,
        params: dict[str, Any],
        result: ToolInvocationResult | None = None,
        rollback_data: RollbackData | None = None,
        step_id: str | None = None,
        description: str = "",
        success_condition: str | None = None,
    ) -> ValidationContext:
        sheet, address = await self._region(tool_name, params)
        if result is not None and isinstance(result.data, dict):
            address = result.data.get("range") or address
        return ValidationContext(
            tool_name=tool_name,
            tool_input=dict(params),
            tool_output=result.output if result else None,
            sheet=sheet,
            affected_range=address,
            previous_values=rollback_data.previous_values if rollback_data else None,
            previous_formulas=rollback_data.previous_formulas if rollback_data else None,
            step_id=step_id,
            step_description=description,
            success_condition=success_condition,
            is_write=self.registry.is_mutating(tool_name),
        )

    async def _region(
        self, tool_name: str, params: dict[str, Any]
    ) -> tuple[str | None, str | None]:
        return await affected_region(tool_name, params, self.reader)
