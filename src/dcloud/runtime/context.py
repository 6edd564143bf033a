from __future__ import annotations

import copy
from typing import Any, Dict, Iterator, Optional

from dcloud.ledger.store import RecordStore, VersionedRecord

Json = Dict[str, Any]


class ApplyContext:
    """Staging area for one transaction.

    Reads go through the store and pin the version observed; writes are buffered
    and only reach the store through TransactionExecutor's commit. Domain code
    never mutates the store directly.
    """

    def __init__(self, store: RecordStore, *, now_ms: int = 0) -> None:
        self._store = store
        self.now_ms = int(now_ms)
        self.reads: Dict[str, int] = {}
        self.writes: Dict[str, Json] = {}
        self._seen: Dict[str, Optional[Json]] = {}

    def get(self, address: str) -> Optional[Json]:
        if address in self.writes:
            return copy.deepcopy(self.writes[address])
        if address not in self._seen:
            vr = self._store.get(address)
            self.reads[address] = vr.version if vr is not None else 0
            self._seen[address] = vr.record if vr is not None else None
        rec = self._seen[address]
        return copy.deepcopy(rec) if rec is not None else None

    def put(self, address: str, record: Json) -> None:
        if address not in self.reads:
            self.get(address)
        self.writes[address] = copy.deepcopy(record)

    def iter_records(self, *, kind: Optional[str] = None, owner: Optional[str] = None) -> Iterator[VersionedRecord]:
        """Unpinned scan; for queries only, never for validation."""
        return self._store.iter_records(kind=kind, owner=owner)

    @property
    def dirty(self) -> bool:
        return bool(self.writes)
