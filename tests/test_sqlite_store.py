from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from dcloud.client import RegistryClient
from dcloud.ledger.address import storage_address
from dcloud.runtime.context import ApplyContext
from dcloud.runtime.errors import AlreadyExists, Conflict, Unknown
from dcloud.runtime.executor import TransactionExecutor
from dcloud.runtime.executor_boot import build_executor, build_store
from dcloud.runtime.registry_config import RegistryConfig
from dcloud.runtime.sqlite_db import SqliteDB, SqliteRecordStore
from dcloud.storage.blobstore import fingerprint

H1 = fingerprint(b"persisted one")
H2 = fingerprint(b"persisted two")


def _sqlite_cfg(cfg: RegistryConfig, tmp_path: Path) -> RegistryConfig:
    return cfg.with_overrides(backend="sqlite", db_path=str(tmp_path / "dcloud.db"))


def test_wal_and_pragmas_are_applied(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DCLOUD_MODE", "prod")
    monkeypatch.delenv("DCLOUD_SQLITE_SYNCHRONOUS", raising=False)
    monkeypatch.setenv("DCLOUD_SQLITE_BUSY_TIMEOUT_MS", "1234")

    db = SqliteDB(path=str(tmp_path / "dcloud.db"))
    db.init_schema()

    with db.connection() as con:
        assert str(con.execute("PRAGMA journal_mode;").fetchone()[0]).lower() == "wal"
        assert int(con.execute("PRAGMA synchronous;").fetchone()[0]) == 2
        assert int(con.execute("PRAGMA busy_timeout;").fetchone()[0]) == 1234


def test_schema_version_mismatch_refuses_to_start(tmp_path: Path) -> None:
    db = SqliteDB(path=str(tmp_path / "dcloud.db"))
    db.init_schema()
    with db.write_tx() as con:
        con.execute("UPDATE meta SET value='99' WHERE key='schema_version';")

    with pytest.raises(RuntimeError):
        db.init_schema()


def test_state_and_log_survive_restart(cfg, clock, tmp_path: Path, alice, bob) -> None:
    c1 = _sqlite_cfg(cfg, tmp_path)
    ex1 = TransactionExecutor(store=build_store(c1), config=c1, clock=clock)
    a = RegistryClient(ex1, alice)
    a.initialize_storage()
    a.upload_file(H1, "one.txt", 11, "loc1")
    a.upload_file(H2, "two.txt", 22, "loc2")
    a.share_file(H2, True)
    RegistryClient(ex1, bob).download_file(alice.identity, H2)
    a.delete_file(H1)

    acct_before = ex1.query_storage(alice.identity)
    files_before = list(ex1.list_files(alice.identity))
    hist_before = [r.to_json() for r in ex1.history()]

    ex2 = build_executor(c1)
    assert ex2.query_storage(alice.identity) == acct_before
    assert list(ex2.list_files(alice.identity)) == files_before
    assert [r.to_json() for r in ex2.history()] == hist_before
    assert ex2.get_file(alice.identity, H2).access_count == 1
    assert ex2.get_file(alice.identity, H1, include_deleted=True).alive is False

    # Duplicate detection also survives the restart.
    first = ex1.history()[0]
    assert ex2.status(first.tx_id) == "committed"


def test_stale_read_version_conflicts(tmp_path: Path, alice) -> None:
    store = SqliteRecordStore(db=SqliteDB(path=str(tmp_path / "dcloud.db")))
    addr = storage_address(alice.identity)
    rec = {"kind": "storage", "address": addr, "owner": alice.identity, "total_files": 0, "total_storage_used": 0}

    store.commit(reads={addr: 0}, writes={addr: rec}, receipt={"tx_id": "t1", "status": "committed"})

    stale = ApplyContext(store)
    stale.get(addr)
    fresh = ApplyContext(store)
    fresh.put(addr, dict(rec, total_files=1))
    store.commit(reads=fresh.reads, writes=fresh.writes, receipt={"tx_id": "t2", "status": "committed"})

    stale.put(addr, dict(rec, total_files=5))
    with pytest.raises(Conflict):
        store.commit(reads=stale.reads, writes=stale.writes, receipt={"tx_id": "t3", "status": "committed"})

    vr = store.get(addr)
    assert vr is not None and vr.version == 2
    assert vr.record["total_files"] == 1


def test_committed_tx_id_is_unique(tmp_path: Path) -> None:
    store = SqliteRecordStore(db=SqliteDB(path=str(tmp_path / "dcloud.db")))
    store.commit(reads={}, writes={}, receipt={"tx_id": "dup", "status": "committed"})
    store.append_receipt({"tx_id": "dup", "status": "rejected"})

    with pytest.raises(AlreadyExists):
        store.commit(reads={}, writes={}, receipt={"tx_id": "dup", "status": "committed"})

    assert store.has_committed("dup")
    got = store.get_receipt("dup")
    assert got is not None and got["status"] == "committed" and got["seq"] == 1


def test_blind_write_is_refused(tmp_path: Path) -> None:
    store = SqliteRecordStore(db=SqliteDB(path=str(tmp_path / "dcloud.db")))
    with pytest.raises(ValueError):
        store.commit(reads={}, writes={"x": {"kind": "storage"}}, receipt={"tx_id": "t"})


def test_log_is_visible_to_raw_sqlite(tmp_path: Path) -> None:
    path = tmp_path / "dcloud.db"
    store = SqliteRecordStore(db=SqliteDB(path=str(path)))
    store.append_receipt({"tx_id": "r1", "status": "rejected"})

    con = sqlite3.connect(str(path))
    try:
        assert con.execute("SELECT COUNT(*) FROM tx_log;").fetchone()[0] == 1
    finally:
        con.close()


def test_busy_database_surfaces_unknown_for_rejections(
    cfg, clock, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("DCLOUD_SQLITE_BUSY_TIMEOUT_MS", "20")
    path = tmp_path / "dcloud.db"
    store = SqliteRecordStore(db=SqliteDB(path=str(path), write_deadline_ms=250))
    ex = TransactionExecutor(store=store, config=cfg, clock=clock)

    holder = sqlite3.connect(str(path), timeout=0, isolation_level=None)
    holder.execute("BEGIN IMMEDIATE;")
    try:
        with pytest.raises(Unknown) as e:
            store.append_receipt({"tx_id": "r1", "status": "rejected"})
        assert e.value.reason == "store_busy"

        # A malformed envelope is rejected before any state read; recording it still needs the writer lock.
        with pytest.raises(Unknown):
            ex.submit({"nonce": 1})
    finally:
        holder.execute("ROLLBACK;")
        holder.close()

    assert ex.history() == []
    assert store.append_receipt({"tx_id": "r2", "status": "rejected"}) == 1
