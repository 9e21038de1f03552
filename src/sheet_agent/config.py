"""
Configuration for the Sheet Agent application.

This module provides centralized configuration: server host and port, the
planner backend settings, and the limits that bound the execution engine.
"""

import os
from pathlib import Path

from pydantic import BaseModel, Field

DEFAULT_HOST = os.getenv("SERVER_HOST", "127.0.0.1")
DEFAULT_PORT = int(os.getenv("SERVER_PORT", "8080"))

OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
PLANNER_BACKEND_URL = os.getenv("PLANNER_BACKEND_URL", "")
PLANNER_TIMEOUT = float(os.getenv("PLANNER_TIMEOUT", "60"))

WORKBOOK_PATH = os.getenv("WORKBOOK_PATH", "")

ENV_PREFIX = "SHEET_AGENT_"


class EngineConfig(BaseModel):
    """Limits and switches for the execution engine and the reactive loop."""

    max_step_retries: int = Field(default=3, ge=0)
    max_replan_attempts: int = Field(default=3, ge=0)
    max_iterations: int = Field(default=30, ge=1)
    max_tool_calls: int = Field(default=20, ge=1)
    context_window_size: int = Field(default=12, ge=1)
    non_actionable_threshold: int = Field(default=3, ge=1)
    tool_failure_threshold: int = Field(default=3, ge=1)
    repeated_error_limit: int = Field(default=2, ge=1)
    consecutive_validation_failure_limit: int = Field(default=3, ge=1)
    force_perception: bool = True
    verify_writes: bool = True
    confirm_destructive: bool = True
    completed_output_limit: int = Field(default=500, ge=50)
    large_range_threshold: int = Field(default=500, ge=1)

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Build a config, overriding defaults with SHEET_AGENT_* variables.

        Returns:
            EngineConfig with any environment overrides applied
        """
        overrides: dict[str, object] = {}
        for name, field in cls.model_fields.items():
            raw = os.getenv(f"{ENV_PREFIX}{name.upper()}")
            if raw is None:
                continue
            if field.annotation is bool:
                overrides[name] = raw.strip().lower() in ("1", "true", "yes", "on")
            else:
                overrides[name] = int(raw)
        return cls(**overrides)  # type: ignore[arg-type]


class ValidationConfig(BaseModel):
    """Runtime switches for the validation rule engine."""

    enabled: bool = True
    disabled_rules: set[str] = Field(default_factory=set)
    downgraded_rules: set[str] = Field(default_factory=set)


class LedgerConfig(BaseModel):
    """Where and how long persisted ledgers are kept."""

    namespace: str = "sheet_agent"
    max_records: int = Field(default=100, ge=1)
    retention_hours: float = Field(default=24, gt=0)
    storage_dir: Path | None = None
    encrypt: bool = False

    @classmethod
    def from_env(cls) -> "LedgerConfig":
        storage_dir = os.getenv(f"{ENV_PREFIX}LEDGER_DIR")
        return cls(
            namespace=os.getenv(f"{ENV_PREFIX}LEDGER_NAMESPACE", "sheet_agent"),
            max_records=int(os.getenv(f"{ENV_PREFIX}LEDGER_MAX_RECORDS", "100")),
            retention_hours=float(
                os.getenv(f"{ENV_PREFIX}LEDGER_RETENTION_HOURS", "24")
            ),
            storage_dir=Path(storage_dir).expanduser() if storage_dir else None,
            encrypt=os.getenv(f"{ENV_PREFIX}LEDGER_ENCRYPT", "").lower() in ("1", "true"),
        )
