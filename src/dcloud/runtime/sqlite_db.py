# src/dcloud/runtime/sqlite_db.py
from __future__ import annotations

import json
import os
import random
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional

from dcloud.ledger.store import STATUS_COMMITTED, VersionedRecord, check_commit_shape, record_sort_key
from dcloud.runtime.errors import AlreadyExists, Conflict, Unknown

Json = Dict[str, Any]


def _now_ms() -> int:
    return int(time.time() * 1000)


def _canon_json(obj: Any) -> str:
    """Canonical JSON encoding.

    Do not coerce unknown types (no default=str): non-JSON values leaking into
    records must fail fast.
    """
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _env_int(name: str, default: int) -> int:
    try:
        raw = str(os.environ.get(name, "")).strip()
        return int(raw) if raw else int(default)
    except ValueError:
        return int(default)


class SqliteDB:
    """SQLite manager for the registry.

    Design goals:
      - single durable DB file for records + transaction log
      - cross-process safe (SQLite locks)
      - cross-thread safe by never sharing connections

    SQLite allows only one writer at a time. Under multi-process workloads,
    BEGIN IMMEDIATE can transiently fail with "database is locked", so
    write_tx() retries with bounded backoff.
    """

    SCHEMA_VERSION = 1

    def __init__(self, *, path: str, write_deadline_ms: Optional[int] = None) -> None:
        self.path = str(path)
        self._write_deadline_ms = write_deadline_ms

    @staticmethod
    def _sqlite_synchronous_pragma() -> str:
        """PRAGMA synchronous: FULL in prod, NORMAL otherwise; DCLOUD_SQLITE_SYNCHRONOUS overrides."""
        mode = (os.environ.get("DCLOUD_MODE") or "prod").strip().lower()
        default = "FULL" if mode == "prod" else "NORMAL"
        raw = (os.environ.get("DCLOUD_SQLITE_SYNCHRONOUS") or default).strip().upper()
        if raw not in {"OFF", "NORMAL", "FULL", "EXTRA"}:
            raw = default
        return raw

    def ensure_parent_dir(self) -> None:
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)

    def _connect(self) -> sqlite3.Connection:
        self.ensure_parent_dir()

        connect_timeout_s = float(_env_int("DCLOUD_SQLITE_CONNECT_TIMEOUT_MS", 30_000)) / 1000.0

        con = sqlite3.connect(
            self.path,
            timeout=connect_timeout_s,
            isolation_level=None,  # we manage BEGIN/COMMIT ourselves
            check_same_thread=False,
        )
        con.row_factory = sqlite3.Row

        row = con.execute("PRAGMA journal_mode=WAL;").fetchone()
        mode = str(row[0]).strip().lower() if row is not None else ""
        if mode != "wal":
            con.close()
            raise RuntimeError(f"sqlite journal_mode is '{mode}', expected 'wal'")

        con.execute(f"PRAGMA synchronous={self._sqlite_synchronous_pragma()};")
        con.execute("PRAGMA foreign_keys=ON;")
        con.execute("PRAGMA temp_store=MEMORY;")

        busy_ms = max(0, _env_int("DCLOUD_SQLITE_BUSY_TIMEOUT_MS", int(connect_timeout_s * 1000)))
        con.execute(f"PRAGMA busy_timeout={busy_ms};")

        return con

    def init_schema(self) -> None:
        with self.write_tx() as con:
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS meta (
                  key TEXT PRIMARY KEY,
                  value TEXT NOT NULL
                );
                """
            )

            con.execute(
                """
                CREATE TABLE IF NOT EXISTS records (
                  address TEXT PRIMARY KEY,
                  kind TEXT NOT NULL,
                  owner TEXT NOT NULL,
                  version INTEGER NOT NULL,
                  sort_ts_ms INTEGER NOT NULL,
                  record_json TEXT NOT NULL,
                  updated_ts_ms INTEGER NOT NULL
                );
                """
            )
            con.execute("CREATE INDEX IF NOT EXISTS idx_records_owner ON records(owner, kind, sort_ts_ms, address);")

            con.execute(
                """
                CREATE TABLE IF NOT EXISTS tx_log (
                  seq INTEGER PRIMARY KEY AUTOINCREMENT,
                  tx_id TEXT NOT NULL,
                  status TEXT NOT NULL,
                  receipt_json TEXT NOT NULL,
                  created_ts_ms INTEGER NOT NULL
                );
                """
            )
            con.execute("CREATE INDEX IF NOT EXISTS idx_tx_log_tx_id ON tx_log(tx_id);")
            con.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS idx_tx_log_committed ON tx_log(tx_id) WHERE status='committed';"
            )

            row = con.execute("SELECT value FROM meta WHERE key='schema_version' LIMIT 1;").fetchone()
            if row is None:
                con.execute("INSERT INTO meta(key, value) VALUES('schema_version', ?);", (str(self.SCHEMA_VERSION),))
            else:
                try:
                    v = int(str(row["value"]))
                except ValueError:
                    v = 0
                if v != self.SCHEMA_VERSION:
                    raise RuntimeError(
                        f"sqlite schema_version mismatch: have={v} want={self.SCHEMA_VERSION}. "
                        "Refuse to start to avoid corrupting data."
                    )

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        con = self._connect()
        try:
            yield con
        finally:
            con.close()

    @staticmethod
    def _is_locked_error(e: Exception) -> bool:
        msg = str(e).lower()
        return ("database is locked" in msg) or ("database is busy" in msg) or ("locked" in msg and "database" in msg)

    def _backoff(self, attempt: int) -> None:
        base_sleep = max(0.001, float(_env_int("DCLOUD_SQLITE_WRITE_BACKOFF_BASE_MS", 5)) / 1000.0)
        max_sleep = max(base_sleep, float(_env_int("DCLOUD_SQLITE_WRITE_BACKOFF_MAX_MS", 250)) / 1000.0)
        sleep_s = min(max_sleep, base_sleep * (2.0 ** min(attempt, 8)))
        time.sleep(sleep_s * (0.5 + random.random()))  # jitter in [0.5x, 1.5x]

    @contextmanager
    def write_tx(self) -> Iterator[sqlite3.Connection]:
        """Open a write transaction with bounded retry on writer-lock contention.

        Policy:
          - retry BEGIN IMMEDIATE (and COMMIT) until a deadline
          - exponential backoff with jitter
          - then raise the original OperationalError
        """
        deadline_ms = self._write_deadline_ms
        if deadline_ms is None:
            deadline_ms = _env_int("DCLOUD_SQLITE_WRITE_DEADLINE_MS", 30_000)
        deadline_ts = _now_ms() + max(250, int(deadline_ms))

        with self.connection() as con:
            attempt = 0
            while True:
                try:
                    con.execute("BEGIN IMMEDIATE;")
                    break
                except sqlite3.OperationalError as e:
                    if not self._is_locked_error(e) or _now_ms() >= deadline_ts:
                        raise
                    self._backoff(attempt)
                    attempt += 1

            try:
                yield con

                c_attempt = 0
                while True:
                    try:
                        con.execute("COMMIT;")
                        break
                    except sqlite3.OperationalError as e:
                        if not self._is_locked_error(e) or _now_ms() >= deadline_ts:
                            raise
                        self._backoff(c_attempt)
                        c_attempt += 1
            except BaseException:
                try:
                    con.execute("ROLLBACK;")
                except sqlite3.Error:
                    pass
                raise


class SqliteRecordStore:
    """Record arena + transaction log persisted in SQLite.

    Optimistic concurrency: commit() re-reads every version it was handed inside
    a single BEGIN IMMEDIATE transaction and applies writes with
    `UPDATE ... WHERE version=?`, so two processes racing on the same address
    cannot both win.
    """

    def __init__(self, *, db: SqliteDB) -> None:
        self._db = db
        self._db.init_schema()

    @property
    def db(self) -> SqliteDB:
        return self._db

    # ----------------------------
    # Records
    # ----------------------------

    def get(self, address: str) -> Optional[VersionedRecord]:
        with self._db.connection() as con:
            row = con.execute(
                "SELECT address, version, record_json FROM records WHERE address=? LIMIT 1;", (str(address),)
            ).fetchone()
        if row is None:
            return None
        return VersionedRecord(str(row["address"]), int(row["version"]), json.loads(str(row["record_json"])))

    def iter_records(self, *, kind: Optional[str] = None, owner: Optional[str] = None) -> Iterator[VersionedRecord]:
        clauses: List[str] = []
        params: List[Any] = []
        if kind is not None:
            clauses.append("kind=?")
            params.append(str(kind))
        if owner is not None:
            clauses.append("owner=?")
            params.append(str(owner))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._db.connection() as con:
            rows = con.execute(
                f"SELECT address, version, record_json FROM records {where} ORDER BY sort_ts_ms ASC, address ASC;",
                tuple(params),
            ).fetchall()
        for row in rows:
            yield VersionedRecord(str(row["address"]), int(row["version"]), json.loads(str(row["record_json"])))

    def commit(self, *, reads: Mapping[str, int], writes: Mapping[str, Json], receipt: Json) -> int:
        check_commit_shape(reads, writes)
        tx_id = str(receipt.get("tx_id") or "")
        now = _now_ms()

        try:
            with self._db.write_tx() as con:
                for address in sorted(reads):
                    row = con.execute("SELECT version FROM records WHERE address=?;", (address,)).fetchone()
                    have = int(row["version"]) if row is not None else 0
                    if have != int(reads[address]):
                        raise Conflict(
                            "version_mismatch",
                            {"address": address, "expected": int(reads[address]), "actual": have},
                        )

                if tx_id:
                    dup = con.execute(
                        "SELECT 1 FROM tx_log WHERE tx_id=? AND status=? LIMIT 1;", (tx_id, STATUS_COMMITTED)
                    ).fetchone()
                    if dup is not None:
                        raise AlreadyExists("duplicate_tx", {"tx_id": tx_id})

                for address in sorted(writes):
                    rec = writes[address]
                    expected = int(reads[address])
                    payload = _canon_json(rec)
                    sort_ts, _ = record_sort_key(rec, address)
                    if expected == 0:
                        con.execute(
                            """
                            INSERT INTO records(address, kind, owner, version, sort_ts_ms, record_json, updated_ts_ms)
                            VALUES(?, ?, ?, 1, ?, ?, ?);
                            """,
                            (address, str(rec.get("kind") or ""), str(rec.get("owner") or ""), sort_ts, payload, now),
                        )
                    else:
                        cur = con.execute(
                            """
                            UPDATE records SET version=version+1, sort_ts_ms=?, record_json=?, updated_ts_ms=?
                            WHERE address=? AND version=?;
                            """,
                            (sort_ts, payload, now, address, expected),
                        )
                        if cur.rowcount != 1:
                            raise Conflict("version_mismatch", {"address": address, "expected": expected})

                return self._insert_receipt(con, receipt, now)
        except sqlite3.IntegrityError as e:
            raise Conflict("integrity_error", {"error": str(e)}) from e
        except sqlite3.OperationalError as e:
            if SqliteDB._is_locked_error(e):
                raise Unknown("store_busy", {"error": str(e)}) from e
            raise

    # ----------------------------
    # Transaction log
    # ----------------------------

    @staticmethod
    def _insert_receipt(con: sqlite3.Connection, receipt: Json, now: int) -> int:
        cur = con.execute(
            "INSERT INTO tx_log(tx_id, status, receipt_json, created_ts_ms) VALUES(?, ?, ?, ?);",
            (str(receipt.get("tx_id") or ""), str(receipt.get("status") or ""), _canon_json(receipt), now),
        )
        return int(cur.lastrowid)

    def append_receipt(self, receipt: Json) -> int:
        try:
            with self._db.write_tx() as con:
                return self._insert_receipt(con, receipt, _now_ms())
        except sqlite3.OperationalError as e:
            if SqliteDB._is_locked_error(e):
                raise Unknown("store_busy", {"error": str(e)}) from e
            raise

    @staticmethod
    def _row_receipt(row: sqlite3.Row) -> Json:
        out = json.loads(str(row["receipt_json"]))
        out["seq"] = int(row["seq"])
        return out

    def get_receipt(self, tx_id: str) -> Optional[Json]:
        with self._db.connection() as con:
            row = con.execute(
                """
                SELECT seq, receipt_json FROM tx_log WHERE tx_id=?
                ORDER BY (status='committed') DESC, seq DESC LIMIT 1;
                """,
                (str(tx_id),),
            ).fetchone()
        return self._row_receipt(row) if row is not None else None

    def has_committed(self, tx_id: str) -> bool:
        with self._db.connection() as con:
            row = con.execute(
                "SELECT 1 FROM tx_log WHERE tx_id=? AND status=? LIMIT 1;", (str(tx_id), STATUS_COMMITTED)
            ).fetchone()
        return row is not None

    def receipts(self, *, limit: int = 100, offset: int = 0) -> List[Json]:
        with self._db.connection() as con:
            rows = con.execute(
                "SELECT seq, receipt_json FROM tx_log ORDER BY seq ASC LIMIT ? OFFSET ?;",
                (max(0, int(limit)), max(0, int(offset))),
            ).fetchall()
        return [self._row_receipt(r) for r in rows]
