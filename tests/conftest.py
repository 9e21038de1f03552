"""Global pytest configuration and fixtures."""

import pytest

from sheet_agent.config import EngineConfig
from sheet_agent.core.execution_engine import ExecutionEngine
from sheet_agent.core.ledger import LedgerStore, MemoryStore
from sheet_agent.core.tool_registry import ToolRegistry
from sheet_agent.core.workbook import WorkbookReader

# Import fixtures from other modules
from tests.fixtures.env_helpers import (
    empty_env,
    mock_env_vars,
    openai_api_key,
)
from tests.fixtures.planner_helpers import ScriptedGateway, gateway
from tests.fixtures.sample_data import (
    reader,
    registry,
    workbook,
    workbook_data,
)


@pytest.fixture
def engine_config() -> EngineConfig:
    """Default engine limits, independent of the environment."""
    return EngineConfig()


@pytest.fixture
def ledger_store() -> LedgerStore:
    """In-memory ledger persistence."""
    return LedgerStore(MemoryStore())


@pytest.fixture
def engine(
    registry: ToolRegistry,
    gateway: ScriptedGateway,
    reader: WorkbookReader,
    engine_config: EngineConfig,
    ledger_store: LedgerStore,
) -> ExecutionEngine:
    """Execution engine over the sample workbook, without a reactive fallback."""
    return ExecutionEngine(
        registry, gateway, reader, config=engine_config, ledger_store=ledger_store
    )
