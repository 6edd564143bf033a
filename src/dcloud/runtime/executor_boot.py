# src/dcloud/runtime/executor_boot.py

from __future__ import annotations

from typing import Optional

from dcloud.ledger.store import MemoryRecordStore, RecordStore
from dcloud.runtime.executor import TransactionExecutor
from dcloud.runtime.registry_config import RegistryConfig, load_registry_config
from dcloud.runtime.sqlite_db import SqliteDB, SqliteRecordStore


def build_store(cfg: RegistryConfig) -> RecordStore:
    if cfg.backend == "memory":
        return MemoryRecordStore(lock_timeout_s=float(cfg.lock_timeout_ms) / 1000.0)
    db = SqliteDB(path=cfg.db_path, write_deadline_ms=int(cfg.lock_timeout_ms))
    return SqliteRecordStore(db=db)


def build_executor(cfg: Optional[RegistryConfig] = None) -> TransactionExecutor:
    """
    Build a TransactionExecutor from an explicit config or, if omitted,
    from DCLOUD_CONFIG_PATH / DCLOUD_* environment variables.
    """
    c = cfg or load_registry_config()
    return TransactionExecutor(store=build_store(c), config=c)
