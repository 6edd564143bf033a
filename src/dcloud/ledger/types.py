"""dcloud.ledger.types

Record object model for the registry arena.

Records are persisted as JSON objects (snake_case keys, with a `kind` tag) and
exposed to collaborators through `to_public()`, a camelCase, schema-versioned
read surface. New fields may be appended to the public shape; existing keys
never change meaning.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from typing import Any, Dict, Optional

from dcloud.ledger.constants import PUBLIC_SCHEMA_VERSION

Json = Dict[str, Any]

KIND_STORAGE = "storage"
KIND_FILE = "file"


def _coerce_int(v: Any, *, field: str) -> int:
    # bool is an int subclass; disallow it explicitly
    if isinstance(v, bool):
        raise ValueError(f"record schema error: field '{field}' must be int (got bool)")
    try:
        return int(v)
    except Exception as e:
        raise ValueError(f"record schema error: field '{field}' must be int-coercible (got {type(v).__name__})") from e


def _require_kind(j: Any, kind: str) -> Json:
    if not isinstance(j, dict):
        raise ValueError(f"record schema error: expected object, got {type(j).__name__}")
    if str(j.get("kind") or "") != kind:
        raise ValueError(f"record schema error: expected kind={kind!r}, got {j.get('kind')!r}")
    return j


@dataclass(frozen=True, slots=True)
class StorageAccount:
    address: str
    owner: str
    total_files: int = 0
    total_storage_used: int = 0
    created_ts_ms: int = 0

    @classmethod
    def from_json(cls, j: Any) -> "StorageAccount":
        d = _require_kind(j, KIND_STORAGE)
        return cls(
            address=str(d.get("address") or ""),
            owner=str(d.get("owner") or ""),
            total_files=_coerce_int(d.get("total_files", 0), field="total_files"),
            total_storage_used=_coerce_int(d.get("total_storage_used", 0), field="total_storage_used"),
            created_ts_ms=_coerce_int(d.get("created_ts_ms", 0), field="created_ts_ms"),
        )

    def to_json(self) -> Json:
        out = asdict(self)
        out["kind"] = KIND_STORAGE
        return out

    def to_public(self) -> Json:
        return {
            "schemaVersion": PUBLIC_SCHEMA_VERSION,
            "address": self.address,
            "owner": self.owner,
            "totalFiles": self.total_files,
            "totalStorageUsed": self.total_storage_used,
            "createdAt": self.created_ts_ms,
        }


@dataclass(frozen=True, slots=True)
class FileRecord:
    address: str
    owner: str
    file_hash: str
    file_name: str
    file_size: int
    content_locator: str
    upload_ts_ms: int
    is_public: bool = False
    access_count: int = 0
    encryption_key: Optional[str] = None
    alive: bool = True
    generation: int = 1
    deleted_ts_ms: int = 0

    @classmethod
    def from_json(cls, j: Any) -> "FileRecord":
        d = _require_kind(j, KIND_FILE)
        ek = d.get("encryption_key")
        return cls(
            address=str(d.get("address") or ""),
            owner=str(d.get("owner") or ""),
            file_hash=str(d.get("file_hash") or ""),
            file_name=str(d.get("file_name") or ""),
            file_size=_coerce_int(d.get("file_size", 0), field="file_size"),
            content_locator=str(d.get("content_locator") or ""),
            upload_ts_ms=_coerce_int(d.get("upload_ts_ms", 0), field="upload_ts_ms"),
            is_public=bool(d.get("is_public", False)),
            access_count=_coerce_int(d.get("access_count", 0), field="access_count"),
            encryption_key=None if ek is None else str(ek),
            alive=bool(d.get("alive", True)),
            generation=_coerce_int(d.get("generation", 1), field="generation"),
            deleted_ts_ms=_coerce_int(d.get("deleted_ts_ms", 0), field="deleted_ts_ms"),
        )

    def to_json(self) -> Json:
        out = asdict(self)
        out["kind"] = KIND_FILE
        return out

    def to_public(self) -> Json:
        out: Json = {
            "schemaVersion": PUBLIC_SCHEMA_VERSION,
            "address": self.address,
            "owner": self.owner,
            "fileHash": self.file_hash,
            "fileName": self.file_name,
            "fileSize": self.file_size,
            "contentLocator": self.content_locator,
            "uploadTimestamp": self.upload_ts_ms,
            "isPublic": self.is_public,
            "accessCount": self.access_count,
        }
        if self.encryption_key is not None:
            out["encrypted"] = True
        return out

    def evolve(self, **changes: Any) -> "FileRecord":
        return replace(self, **changes)


def redact_record_json(j: Any) -> Any:
    """Copy of a persisted record with key material replaced by an `encrypted` flag.

    Used wherever a record leaves the record arena in a form others can read
    (receipts in the tx log). Non-file records pass through unchanged.
    """
    if not isinstance(j, dict) or j.get("kind") != KIND_FILE or "encryption_key" not in j:
        return j
    out = dict(j)
    out["encrypted"] = out.pop("encryption_key") is not None
    return out


def record_from_json(j: Any) -> StorageAccount | FileRecord:
    kind = str(j.get("kind") or "") if isinstance(j, dict) else ""
    if kind == KIND_STORAGE:
        return StorageAccount.from_json(j)
    if kind == KIND_FILE:
        return FileRecord.from_json(j)
    raise ValueError(f"record schema error: unknown kind {kind!r}")


__all__ = ["StorageAccount", "FileRecord", "record_from_json", "redact_record_json", "KIND_STORAGE", "KIND_FILE"]
