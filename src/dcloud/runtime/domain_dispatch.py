# src/dcloud/runtime/domain_dispatch.py

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from dcloud.runtime.apply.files import FileRegistry
from dcloud.runtime.apply.storage import StorageQuotaLedger
from dcloud.runtime.context import ApplyContext
from dcloud.runtime.errors import InvalidInput
from dcloud.runtime.tx_admission_types import TxEnvelope

Json = Dict[str, Any]

TX_STORAGE_INIT = "STORAGE_INIT"
TX_FILE_UPLOAD = "FILE_UPLOAD"
TX_FILE_DELETE = "FILE_DELETE"
TX_FILE_SET_VISIBILITY = "FILE_SET_VISIBILITY"
TX_FILE_READ = "FILE_READ"


@dataclass(frozen=True)
class Domains:
    quota: StorageQuotaLedger
    files: FileRegistry


ApplyFn = Callable[[ApplyContext, TxEnvelope, Domains], Json]


def _req_str(payload: Json, key: str) -> str:
    v = payload.get(key)
    if not isinstance(v, str) or not v.strip():
        raise InvalidInput("missing_field", {"field": key})
    return v


def _opt_str(payload: Json, key: str) -> Optional[str]:
    v = payload.get(key)
    if v is None:
        return None
    if not isinstance(v, str):
        raise InvalidInput("bad_field", {"field": key})
    return v


def _req_int(payload: Json, key: str) -> int:
    v = payload.get(key)
    if isinstance(v, bool) or not isinstance(v, int):
        raise InvalidInput("bad_field", {"field": key, "expected": "int"})
    return v


def _req_bool(payload: Json, key: str) -> bool:
    v = payload.get(key)
    if not isinstance(v, bool):
        raise InvalidInput("bad_field", {"field": key, "expected": "bool"})
    return v


def _owner_or_signer(env: TxEnvelope) -> str:
    return _opt_str(env.payload, "owner") or env.signer


def _apply_storage_init(ctx: ApplyContext, env: TxEnvelope, d: Domains) -> Json:
    return d.quota.initialize(ctx, env.signer).to_json()


def _apply_file_upload(ctx: ApplyContext, env: TxEnvelope, d: Domains) -> Json:
    p = env.payload
    rec = d.files.upload(
        ctx,
        env.signer,
        _req_str(p, "file_hash"),
        _req_str(p, "file_name"),
        _req_int(p, "file_size"),
        _req_str(p, "content_locator"),
        _opt_str(p, "encryption_key"),
    )
    return rec.to_json()


def _apply_file_delete(ctx: ApplyContext, env: TxEnvelope, d: Domains) -> Json:
    rec = d.files.remove(ctx, env.signer, _owner_or_signer(env), _req_str(env.payload, "file_hash"))
    return rec.to_json()


def _apply_file_set_visibility(ctx: ApplyContext, env: TxEnvelope, d: Domains) -> Json:
    p = env.payload
    rec = d.files.set_visibility(ctx, env.signer, _owner_or_signer(env), _req_str(p, "file_hash"), _req_bool(p, "is_public"))
    return rec.to_json()


def _apply_file_read(ctx: ApplyContext, env: TxEnvelope, d: Domains) -> Json:
    p = env.payload
    rec = d.files.read(ctx, env.signer, _req_str(p, "owner"), _req_str(p, "file_hash"))
    return rec.to_json()


_HANDLERS: Dict[str, ApplyFn] = {
    TX_STORAGE_INIT: _apply_storage_init,
    TX_FILE_UPLOAD: _apply_file_upload,
    TX_FILE_DELETE: _apply_file_delete,
    TX_FILE_SET_VISIBILITY: _apply_file_set_visibility,
    TX_FILE_READ: _apply_file_read,
}

SUPPORTED_TX_TYPES = tuple(sorted(_HANDLERS))


def apply_tx(ctx: ApplyContext, env: TxEnvelope, domains: Domains) -> Json:
    """Route an envelope to its domain handler; returns the persisted JSON of the affected record."""
    fn = _HANDLERS.get(str(env.tx_type or "").strip().upper())
    if fn is None:
        raise InvalidInput("tx_unimplemented", {"tx_type": env.tx_type})
    return fn(ctx, env, domains)
