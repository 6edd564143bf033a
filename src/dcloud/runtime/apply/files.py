# src/dcloud/runtime/apply/files.py
from __future__ import annotations

"""dcloud.runtime.apply.files

File metadata records, one per (owner, file_hash).

Key invariants:
  - a live record at file_address(owner, hash) blocks a second upload
  - tombstoned records are never mutated; a later upload of the same hash
    replaces the tombstone with a fresh record (generation + 1)
  - upload/remove stage the file write and the quota reserve() in one
    ApplyContext, so they commit together or not at all
  - only successful reads bump access_count
"""

import unicodedata
from typing import Iterator, Optional

from dcloud.ledger.address import (
    file_address,
    identity_bytes,
    normalize_file_hash,
    normalize_identity,
    storage_address,
)
from dcloud.ledger.constants import MAX_CONTENT_LOCATOR_LEN, MAX_ENCRYPTION_KEY_LEN, MAX_FILE_NAME_LEN, U64_MAX
from dcloud.ledger.types import KIND_FILE, FileRecord
from dcloud.runtime.apply.storage import StorageQuotaLedger
from dcloud.runtime.context import ApplyContext
from dcloud.runtime.errors import AlreadyExists, InvalidInput, NotFound, NotInitialized, Unauthorized


def _has_control_chars(s: str) -> bool:
    return any(unicodedata.category(ch) == "Cc" for ch in s)


class FileRegistry:
    def __init__(self, quota: StorageQuotaLedger, *, max_file_name_len: int = MAX_FILE_NAME_LEN) -> None:
        self.quota = quota
        self.max_file_name_len = int(max_file_name_len)

    # ----------------------------
    # Validation
    # ----------------------------

    def _check_file_name(self, file_name: str) -> str:
        if not isinstance(file_name, str):
            raise InvalidInput("bad_file_name", {"type": type(file_name).__name__})
        name = file_name.strip()
        if not name:
            raise InvalidInput("empty_file_name")
        if len(name) > self.max_file_name_len:
            raise InvalidInput("file_name_too_long", {"len": len(name), "max": self.max_file_name_len})
        if _has_control_chars(name):
            raise InvalidInput("file_name_control_chars")
        return name

    @staticmethod
    def _check_file_size(file_size: int) -> int:
        if isinstance(file_size, bool) or not isinstance(file_size, int):
            raise InvalidInput("bad_file_size", {"type": type(file_size).__name__})
        if file_size <= 0:
            raise InvalidInput("file_size_must_be_positive", {"file_size": file_size})
        if file_size > U64_MAX:
            raise InvalidInput("file_size_out_of_range", {"file_size": file_size})
        return file_size

    @staticmethod
    def _check_locator(content_locator: str) -> str:
        if not isinstance(content_locator, str) or not content_locator.strip():
            raise InvalidInput("missing_content_locator")
        loc = content_locator.strip()
        if len(loc) > MAX_CONTENT_LOCATOR_LEN:
            raise InvalidInput("content_locator_too_long", {"len": len(loc), "max": MAX_CONTENT_LOCATOR_LEN})
        return loc

    @staticmethod
    def _check_encryption_key(encryption_key: Optional[str]) -> Optional[str]:
        if encryption_key is None:
            return None
        if not isinstance(encryption_key, str) or not encryption_key:
            raise InvalidInput("bad_encryption_key")
        if len(encryption_key) > MAX_ENCRYPTION_KEY_LEN:
            raise InvalidInput("encryption_key_too_long", {"len": len(encryption_key)})
        return encryption_key

    @staticmethod
    def _require_owner(caller: str, owner: str) -> None:
        if normalize_identity(caller) != normalize_identity(owner):
            raise Unauthorized("caller_is_not_owner", {"caller": caller, "owner": owner})

    def _load(self, ctx: ApplyContext, owner: str, file_hash: str) -> Optional[FileRecord]:
        rec = ctx.get(file_address(owner, file_hash))
        return FileRecord.from_json(rec) if rec is not None else None

    def _load_live(self, ctx: ApplyContext, owner: str, file_hash: str) -> FileRecord:
        rec = self._load(ctx, owner, file_hash)
        if rec is None or not rec.alive:
            raise NotFound("file_not_found", {"owner": owner, "file_hash": file_hash})
        return rec

    # ----------------------------
    # Operations
    # ----------------------------

    def upload(
        self,
        ctx: ApplyContext,
        owner: str,
        file_hash: str,
        file_name: str,
        file_size: int,
        content_locator: str,
        encryption_key: Optional[str] = None,
    ) -> FileRecord:
        owner = normalize_identity(owner)
        file_hash = normalize_file_hash(file_hash)
        address = file_address(owner, file_hash)
        name = self._check_file_name(file_name)
        size = self._check_file_size(file_size)
        locator = self._check_locator(content_locator)
        key = self._check_encryption_key(encryption_key)

        if ctx.get(storage_address(owner)) is None:
            raise NotInitialized("storage_not_initialized", {"owner": owner})

        prev = self._load(ctx, owner, file_hash)
        if prev is not None and prev.alive:
            raise AlreadyExists("file_already_exists", {"owner": owner, "file_hash": file_hash, "address": address})

        self.quota.reserve(ctx, owner, size, 1)

        rec = FileRecord(
            address=address,
            owner=owner,
            file_hash=file_hash,
            file_name=name,
            file_size=size,
            content_locator=locator,
            upload_ts_ms=ctx.now_ms,
            encryption_key=key,
            generation=(prev.generation + 1) if prev is not None else 1,
        )
        ctx.put(address, rec.to_json())
        return rec

    def remove(self, ctx: ApplyContext, caller: str, owner: str, file_hash: str) -> FileRecord:
        self._require_owner(caller, owner)
        owner = normalize_identity(owner)
        file_hash = normalize_file_hash(file_hash)

        rec = self._load_live(ctx, owner, file_hash)
        self.quota.reserve(ctx, owner, -rec.file_size, -1)

        dead = rec.evolve(alive=False, deleted_ts_ms=ctx.now_ms)
        ctx.put(rec.address, dead.to_json())
        return dead

    def set_visibility(self, ctx: ApplyContext, caller: str, owner: str, file_hash: str, is_public: bool) -> FileRecord:
        if not isinstance(is_public, bool):
            raise InvalidInput("bad_is_public", {"type": type(is_public).__name__})
        self._require_owner(caller, owner)
        owner = normalize_identity(owner)
        file_hash = normalize_file_hash(file_hash)

        rec = self._load_live(ctx, owner, file_hash)
        if rec.is_public == is_public:
            return rec

        rec2 = rec.evolve(is_public=is_public)
        ctx.put(rec.address, rec2.to_json())
        return rec2

    def read(self, ctx: ApplyContext, requester: str, owner: str, file_hash: str) -> FileRecord:
        requester = normalize_identity(requester)
        owner = normalize_identity(owner)
        file_hash = normalize_file_hash(file_hash)

        rec = self._load_live(ctx, owner, file_hash)
        if requester != owner and not rec.is_public:
            raise Unauthorized("file_is_private", {"requester": requester, "owner": owner})

        rec2 = rec.evolve(access_count=rec.access_count + 1)
        ctx.put(rec.address, rec2.to_json())
        return rec2

    def get(self, ctx: ApplyContext, owner: str, file_hash: str, *, include_deleted: bool = False) -> FileRecord:
        """Metadata lookup without the read side effect."""
        owner = normalize_identity(owner)
        file_hash = normalize_file_hash(file_hash)
        if include_deleted:
            rec = self._load(ctx, owner, file_hash)
            if rec is None:
                raise NotFound("file_not_found", {"owner": owner, "file_hash": file_hash})
            return rec
        return self._load_live(ctx, owner, file_hash)

    def list_by_owner(self, ctx: ApplyContext, owner: str) -> Iterator[FileRecord]:
        # Validate now, not on first iteration.
        identity_bytes(owner)
        return self._iter_live(ctx, normalize_identity(owner))

    @staticmethod
    def _iter_live(ctx: ApplyContext, owner: str) -> Iterator[FileRecord]:
        for vr in ctx.iter_records(kind=KIND_FILE, owner=owner):
            rec = FileRecord.from_json(vr.record)
            if rec.alive:
                yield rec
