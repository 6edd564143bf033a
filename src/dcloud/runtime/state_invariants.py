# src/dcloud/runtime/state_invariants.py
from __future__ import annotations

"""Quota-consistency audit.

StorageAccount aggregates are maintained incrementally by reserve(); this
module re-derives them from the live FileRecords so drift can be detected.
It reads the store directly and never writes.
"""

from dataclasses import dataclass
from typing import Dict, List

from dcloud.ledger.address import normalize_identity, storage_address
from dcloud.ledger.store import RecordStore
from dcloud.ledger.types import KIND_FILE, KIND_STORAGE, FileRecord, StorageAccount


class InvariantViolation(RuntimeError):
    pass


@dataclass(frozen=True)
class QuotaTotals:
    total_files: int
    total_storage_used: int


def derive_quota(store: RecordStore, owner: str) -> QuotaTotals:
    owner = normalize_identity(owner)
    files = 0
    used = 0
    for vr in store.iter_records(kind=KIND_FILE, owner=owner):
        rec = FileRecord.from_json(vr.record)
        if rec.alive:
            files += 1
            used += rec.file_size
    return QuotaTotals(total_files=files, total_storage_used=used)


def check_quota_consistency(store: RecordStore, owner: str) -> QuotaTotals:
    """Raise InvariantViolation if the owner's account disagrees with its live files."""
    owner = normalize_identity(owner)
    derived = derive_quota(store, owner)

    vr = store.get(storage_address(owner))
    if vr is None:
        if derived.total_files:
            raise InvariantViolation(f"owner {owner} has {derived.total_files} live files but no storage account")
        return derived

    acct = StorageAccount.from_json(vr.record)
    if acct.total_files != derived.total_files or acct.total_storage_used != derived.total_storage_used:
        raise InvariantViolation(
            f"quota drift for {owner}: account=({acct.total_files}, {acct.total_storage_used}) "
            f"derived=({derived.total_files}, {derived.total_storage_used})"
        )
    return derived


def audit_all(store: RecordStore) -> Dict[str, List[str]]:
    """Check every storage account; returns {"ok": [...owners], "violations": [...messages]}."""
    ok: List[str] = []
    violations: List[str] = []
    for vr in store.iter_records(kind=KIND_STORAGE):
        owner = str(vr.record.get("owner") or "")
        try:
            check_quota_consistency(store, owner)
            ok.append(owner)
        except InvariantViolation as e:
            violations.append(str(e))
    return {"ok": ok, "violations": violations}


__all__ = ["InvariantViolation", "QuotaTotals", "derive_quota", "check_quota_consistency", "audit_all"]
