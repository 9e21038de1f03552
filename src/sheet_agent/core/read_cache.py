"""Per-task cache of read-only tool results."""

import json
import logging
from typing import Any

from sheet_agent.core.models import ToolInvocationResult


class ReadCache:
    """Reuse read-only results keyed by tool name and canonical parameters.

    Entries remember which sheet they read so a write to that sheet can
    invalidate them; a write to an unknown sheet clears everything.
    """

    def __init__(self) -> None:
        self.logger = logging.getLogger(__name__)
        self._entries: dict[str, tuple[str | None, ToolInvocationResult]] = {}
        self.hits = 0
        self.misses = 0

    @staticmethod
    def key(tool_name: str, params: dict[str, Any]) -> str:
        return f"{tool_name}:{json.dumps(params, sort_keys=True, default=str)}"

    def get(self, tool_name: str, params: dict[str, Any]) -> ToolInvocationResult | None:
        entry = self._entries.get(self.key(tool_name, params))
        if entry is None:
            self.misses += 1
            return None
        self.hits += 1
        self.logger.debug(f"Read cache hit for {tool_name}")
        return entry[1].model_copy(update={"cached": True})

    def put(
        self,
        tool_name: str,
        params: dict[str, Any],
        result: ToolInvocationResult,
        sheet: str | None = None,
    ) -> None:
        if not result.success:
            return
        self._entries[self.key(tool_name, params)] = (sheet, result)

    def invalidate(self, sheet: str | None = None) -> int:
        """Drop entries that may be stale after a write.

        Returns:
            Number of entries dropped
        """
        if sheet is None:
            dropped = len(self._entries)
            self._entries.clear()
            return dropped
        stale = [
            key
            for key, (entry_sheet, _) in self._entries.items()
            if entry_sheet is None or entry_sheet == sheet
        ]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
