# src/dcloud/ledger/store.py
from __future__ import annotations

"""Versioned record arena + append-only transaction log.

Every record lives at a deterministic address and carries a monotonically
increasing version (0 means "absent"). A commit names the versions it read and
the records it writes; the store applies all writes and appends the receipt as
one unit, or raises `Conflict` if any read version moved. Locks are scoped to
the addresses a commit touches and taken in sorted order.

The SQLite-backed implementation lives in dcloud.runtime.sqlite_db.
"""

import copy
import threading
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Mapping, Optional, Protocol

from dcloud.runtime.errors import AlreadyExists, Conflict, Unknown

Json = Dict[str, Any]

STATUS_COMMITTED = "committed"
STATUS_REJECTED = "rejected"


@dataclass(frozen=True, slots=True)
class VersionedRecord:
    address: str
    version: int
    record: Json


def record_sort_key(record: Json, address: str) -> tuple[int, str]:
    ts = record.get("upload_ts_ms", record.get("created_ts_ms", 0))
    return int(ts or 0), address


class RecordStore(Protocol):
    def get(self, address: str) -> Optional[VersionedRecord]: ...

    def iter_records(self, *, kind: Optional[str] = None, owner: Optional[str] = None) -> Iterator[VersionedRecord]: ...

    def commit(self, *, reads: Mapping[str, int], writes: Mapping[str, Json], receipt: Json) -> int: ...

    def append_receipt(self, receipt: Json) -> int: ...

    def get_receipt(self, tx_id: str) -> Optional[Json]: ...

    def has_committed(self, tx_id: str) -> bool: ...

    def receipts(self, *, limit: int = 100, offset: int = 0) -> List[Json]: ...


def check_commit_shape(reads: Mapping[str, int], writes: Mapping[str, Json]) -> None:
    """Blind writes are not allowed: every written address must have been read."""
    blind = sorted(a for a in writes if a not in reads)
    if blind:
        raise ValueError(f"write without read of {blind}")


class MemoryRecordStore:
    """In-process arena with per-address locks.

    Used for tests and single-process embedding. Thread-safe: commits that touch
    disjoint addresses proceed in parallel; the log append is the only shared
    critical section.
    """

    def __init__(self, *, lock_timeout_s: float = 30.0) -> None:
        self._lock_timeout_s = float(lock_timeout_s)
        self._records: Dict[str, VersionedRecord] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

        self._log: List[Json] = []
        self._committed: Dict[str, int] = {}
        self._latest: Dict[str, int] = {}
        self._log_lock = threading.Lock()

    def _lock_for(self, address: str) -> threading.Lock:
        with self._locks_guard:
            lk = self._locks.get(address)
            if lk is None:
                lk = threading.Lock()
                self._locks[address] = lk
            return lk

    # ----------------------------
    # Records
    # ----------------------------

    def get(self, address: str) -> Optional[VersionedRecord]:
        vr = self._records.get(address)
        if vr is None:
            return None
        return VersionedRecord(vr.address, vr.version, copy.deepcopy(vr.record))

    def iter_records(self, *, kind: Optional[str] = None, owner: Optional[str] = None) -> Iterator[VersionedRecord]:
        snap = [
            vr
            for vr in list(self._records.values())
            if (kind is None or vr.record.get("kind") == kind) and (owner is None or vr.record.get("owner") == owner)
        ]
        snap.sort(key=lambda vr: record_sort_key(vr.record, vr.address))
        for vr in snap:
            yield VersionedRecord(vr.address, vr.version, copy.deepcopy(vr.record))

    def commit(self, *, reads: Mapping[str, int], writes: Mapping[str, Json], receipt: Json) -> int:
        check_commit_shape(reads, writes)

        acquired: List[threading.Lock] = []
        try:
            for address in sorted(reads):
                lk = self._lock_for(address)
                if not lk.acquire(timeout=self._lock_timeout_s):
                    raise Unknown("lock_timeout", {"address": address})
                acquired.append(lk)

            for address, expected in reads.items():
                cur = self._records.get(address)
                have = cur.version if cur is not None else 0
                if have != int(expected):
                    raise Conflict("version_mismatch", {"address": address, "expected": int(expected), "actual": have})

            with self._log_lock:
                tx_id = str(receipt.get("tx_id") or "")
                if tx_id and tx_id in self._committed:
                    raise AlreadyExists("duplicate_tx", {"tx_id": tx_id})

                for address, rec in writes.items():
                    self._records[address] = VersionedRecord(address, int(reads[address]) + 1, copy.deepcopy(rec))

                seq = self._append_locked(receipt)
                if tx_id:
                    self._committed[tx_id] = seq
                return seq
        finally:
            for lk in reversed(acquired):
                lk.release()

    # ----------------------------
    # Transaction log
    # ----------------------------

    def _append_locked(self, receipt: Json) -> int:
        seq = len(self._log) + 1
        entry = copy.deepcopy(dict(receipt))
        entry["seq"] = seq
        self._log.append(entry)
        tx_id = str(entry.get("tx_id") or "")
        if tx_id:
            self._latest[tx_id] = seq
        return seq

    def append_receipt(self, receipt: Json) -> int:
        with self._log_lock:
            return self._append_locked(receipt)

    def get_receipt(self, tx_id: str) -> Optional[Json]:
        with self._log_lock:
            seq = self._committed.get(tx_id) or self._latest.get(tx_id)
            return copy.deepcopy(self._log[seq - 1]) if seq else None

    def has_committed(self, tx_id: str) -> bool:
        with self._log_lock:
            return tx_id in self._committed

    def receipts(self, *, limit: int = 100, offset: int = 0) -> List[Json]:
        with self._log_lock:
            start = max(0, int(offset))
            return copy.deepcopy(self._log[start : start + max(0, int(limit))])


__all__ = [
    "VersionedRecord",
    "RecordStore",
    "MemoryRecordStore",
    "STATUS_COMMITTED",
    "STATUS_REJECTED",
    "check_commit_shape",
    "record_sort_key",
]
