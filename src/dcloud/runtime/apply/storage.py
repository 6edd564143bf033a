# src/dcloud/runtime/apply/storage.py
from __future__ import annotations

"""dcloud.runtime.apply.storage

Per-identity storage quota accounts.

Key invariants:
  - exactly one StorageAccount per identity, at storage_address(owner)
  - total_files / total_storage_used equal the count / byte sum of the
    owner's live FileRecords
  - reserve() is the only write path after initialize(); FileRegistry calls it
    inside the same ApplyContext as the file mutation, so both commit together
"""

from typing import Optional

from dcloud.ledger.address import normalize_identity, storage_address
from dcloud.ledger.constants import U64_MAX
from dcloud.ledger.types import StorageAccount
from dcloud.runtime.context import ApplyContext
from dcloud.runtime.errors import AlreadyExists, InvalidInput, NotFound, NotInitialized, Overflow


class StorageQuotaLedger:
    def __init__(self, *, max_bytes_per_account: int = 0) -> None:
        # 0 = unbounded; the u64 ceiling always applies.
        self.max_bytes_per_account = int(max_bytes_per_account)

    @property
    def ceiling(self) -> int:
        if self.max_bytes_per_account > 0:
            return min(self.max_bytes_per_account, U64_MAX)
        return U64_MAX

    def _load(self, ctx: ApplyContext, owner: str) -> Optional[StorageAccount]:
        rec = ctx.get(storage_address(owner))
        return StorageAccount.from_json(rec) if rec is not None else None

    def initialize(self, ctx: ApplyContext, owner: str) -> StorageAccount:
        owner = normalize_identity(owner)
        address = storage_address(owner)
        if ctx.get(address) is not None:
            raise AlreadyExists("storage_already_initialized", {"owner": owner, "address": address})

        acct = StorageAccount(address=address, owner=owner, created_ts_ms=ctx.now_ms)
        ctx.put(address, acct.to_json())
        return acct

    def reserve(self, ctx: ApplyContext, owner: str, delta_bytes: int, delta_files: int) -> StorageAccount:
        owner = normalize_identity(owner)
        acct = self._load(ctx, owner)
        if acct is None:
            raise NotInitialized("storage_not_initialized", {"owner": owner})

        new_bytes = acct.total_storage_used + int(delta_bytes)
        new_files = acct.total_files + int(delta_files)

        if new_bytes < 0 or new_files < 0:
            raise InvalidInput(
                "quota_underflow",
                {"owner": owner, "total_storage_used": new_bytes, "total_files": new_files},
            )
        if new_bytes > self.ceiling:
            raise Overflow(
                "quota_exceeded",
                {"owner": owner, "requested": new_bytes, "ceiling": self.ceiling},
            )

        acct2 = StorageAccount(
            address=acct.address,
            owner=acct.owner,
            total_files=new_files,
            total_storage_used=new_bytes,
            created_ts_ms=acct.created_ts_ms,
        )
        ctx.put(acct.address, acct2.to_json())
        return acct2

    def query(self, ctx: ApplyContext, owner: str) -> StorageAccount:
        owner = normalize_identity(owner)
        acct = self._load(ctx, owner)
        if acct is None:
            raise NotFound("storage_not_found", {"owner": owner})
        return acct
