"""Persisted operation ledger.

A ledger is saved as one JSON blob under ``"{namespace}:ledger:{task_id}"``
holding the task id, the save time and the most recent records. Records
older than the retention window are dropped on load.
"""

import json
import logging
import os
import re
from datetime import datetime, timedelta
from pathlib import Path
from typing import Protocol

from cryptography.fernet import Fernet, InvalidToken
from pydantic import BaseModel, Field, ValidationError

from sheet_agent.config import LedgerConfig
from sheet_agent.core.models import OperationLedger, OperationRecord


class KeyValueStore(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> bool: ...


class MemoryStore:
    """Process-local key-value store."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None


class FileStore:
    """One file per key in a private directory, optionally Fernet-encrypted."""

    def __init__(self, directory: Path, encrypt: bool = False):
        """Initialize file storage.

        Args:
            directory: Directory holding one file per key
            encrypt: Encrypt file contents with a per-directory key
        """
        self.directory = Path(directory)
        self.key_file = self.directory / ".encryption_key"
        self.encrypt = encrypt
        self.logger = logging.getLogger(__name__)
        self._ensure_directory()
        self._fernet = Fernet(self._get_encryption_key()) if encrypt else None

    def _ensure_directory(self) -> None:
        if not self.directory.exists():
            self.directory.mkdir(parents=True, exist_ok=True)
            try:
                os.chmod(self.directory, 0o700)
            except OSError as e:
                self.logger.warning(f"Could not set directory permissions: {e}")

    def _get_encryption_key(self) -> bytes:
        if self.key_file.exists():
            with open(self.key_file, "rb") as f:
                key = f.read()
            try:
                Fernet(key)
                return key
            except ValueError as e:
                self.logger.warning(f"Invalid encryption key found, generating new one: {e}")

        key = Fernet.generate_key()
        with open(self.key_file, "wb") as f:
            f.write(key)
        os.chmod(self.key_file, 0o600)
        self.logger.info("Generated new ledger encryption key")
        return key

    def _path(self, key: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9_.-]", "_", key)
        return self.directory / f"{safe}.json"

    def get(self, key: str) -> str | None:
        path = self._path(key)
        if not path.exists():
            return None
        raw = path.read_bytes()
        if self._fernet is None:
            return raw.decode("utf-8")
        try:
            return self._fernet.decrypt(raw).decode("utf-8")
        except InvalidToken:
            self.logger.error(f"Could not decrypt ledger file {path.name}")
            return None

    def set(self, key: str, value: str) -> None:
        data = value.encode("utf-8")
        if self._fernet is not None:
            data = self._fernet.encrypt(data)
        path = self._path(key)
        path.write_bytes(data)
        os.chmod(path, 0o600)

    def delete(self, key: str) -> bool:
        path = self._path(key)
        if not path.exists():
            return False
        path.unlink()
        return True


class PersistedLedger(BaseModel):
    task_id: str
    saved_at: datetime
    records: list[OperationRecord] = Field(default_factory=list)


class LedgerStore:
    """Save and load bounded, retention-filtered ledgers."""

    def __init__(
        self, store: KeyValueStore | None = None, config: LedgerConfig | None = None
    ) -> None:
        self.config = config or LedgerConfig()
        if store is None:
            store = (
                FileStore(self.config.storage_dir, encrypt=self.config.encrypt)
                if self.config.storage_dir is not None
                else MemoryStore()
            )
        self.store = store
        self.logger = logging.getLogger(__name__)

    def key(self, task_id: str) -> str:
        return f"{self.config.namespace}:ledger:{task_id}"

    def save(self, task_id: str, ledger: OperationLedger) -> PersistedLedger:
        """Persist the most recent records of a ledger.

        Args:
            task_id: Task the ledger belongs to
            ledger: Ledger to persist

        Returns:
            The blob that was written
        """
        blob = PersistedLedger(
            task_id=task_id,
            saved_at=datetime.now(),
            records=ledger.records[-self.config.max_records :],
        )
        self.store.set(self.key(task_id), blob.model_dump_json())
        self.logger.debug(f"Saved {len(blob.records)} ledger records for {task_id}")
        return blob

    def load(self, task_id: str) -> OperationLedger | None:
        raw = self.store.get(self.key(task_id))
        if raw is None:
            return None
        try:
            blob = PersistedLedger.model_validate_json(raw)
        except (ValidationError, json.JSONDecodeError) as e:
            self.logger.warning(f"Discarding unreadable ledger for {task_id}: {e}")
            return None

        cutoff = datetime.now() - timedelta(hours=self.config.retention_hours)
        kept = [r for r in blob.records if r.timestamp >= cutoff]
        dropped = len(blob.records) - len(kept)
        if dropped:
            self.logger.info(f"Dropped {dropped} expired ledger records for {task_id}")
        return OperationLedger(records=kept[-self.config.max_records :])

    def delete(self, task_id: str) -> bool:
        return self.store.delete(self.key(task_id))
