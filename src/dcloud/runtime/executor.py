from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, Iterator, List, Optional

from dcloud.ledger.store import STATUS_COMMITTED, STATUS_REJECTED, RecordStore
from dcloud.ledger.types import FileRecord, StorageAccount
from dcloud.runtime.apply.files import FileRegistry
from dcloud.runtime.apply.storage import StorageQuotaLedger
from dcloud.runtime.context import ApplyContext
from dcloud.runtime.domain_dispatch import Domains, apply_tx
from dcloud.runtime.errors import AlreadyExists, Conflict, RegistryError, Unauthorized, Unknown
from dcloud.runtime.metrics import inc_counter, set_gauge
from dcloud.runtime.registry_config import RegistryConfig
from dcloud.runtime.sigverify import verify_tx_signature
from dcloud.runtime.tx_admission_types import STATUS_PENDING, TxEnvelope, TxReceipt
from dcloud.runtime.tx_id import compute_tx_id_from_dict, compute_tx_id_from_envelope
from dcloud.structured_logging import log_event

Json = Dict[str, Any]


def _now_ms() -> int:
    return int(time.time() * 1000)


class TransactionExecutor:
    """Validate-then-commit boundary for every registry state transition.

    submit() runs: envelope shape -> signature -> duplicate tx_id -> domain apply
    against an ApplyContext -> store.commit() (per-address compare-and-swap plus
    receipt append). Rejections append a `rejected` receipt and leave records
    untouched. Conflicts are never retried here; that is the caller's call.
    """

    def __init__(
        self,
        *,
        store: RecordStore,
        config: RegistryConfig,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self.store = store
        self.config = config
        self.chain_id = str(config.chain_id)
        self._clock = clock or _now_ms

        self.quota = StorageQuotaLedger(max_bytes_per_account=config.max_bytes_per_account)
        self.files = FileRegistry(self.quota, max_file_name_len=config.max_file_name_len)
        self._domains = Domains(quota=self.quota, files=self.files)

        self._pending: set[str] = set()
        self._pending_lock = threading.Lock()
        self._logger = logging.getLogger("dcloud.executor")

    # ----------------------------
    # Submission
    # ----------------------------

    def submit(self, env: Any) -> TxReceipt:
        """Apply one signed envelope. Returns a terminal receipt; raises Unknown when the outcome is ambiguous."""
        ts = int(self._clock())
        raw = env.to_json() if isinstance(env, TxEnvelope) else env
        tx_id = compute_tx_id_from_dict(self.chain_id, raw) if isinstance(raw, dict) else ""
        tx_type = str(raw.get("tx_type") or "") if isinstance(raw, dict) else ""
        signer = str(raw.get("signer") or "") if isinstance(raw, dict) else ""

        try:
            envelope = TxEnvelope.from_json(raw)
            tx_id = compute_tx_id_from_envelope(self.chain_id, envelope)

            if not verify_tx_signature(envelope, require_signatures=self.config.require_signatures):
                raise Unauthorized("bad_signature", {"signer": envelope.signer})
        except RegistryError as err:
            return self._reject(tx_id, tx_type, signer, ts, err)

        with self._pending_lock:
            if tx_id in self._pending:
                in_flight = True
            else:
                in_flight = False
                self._pending.add(tx_id)
            set_gauge("tx_pending", len(self._pending))
        if in_flight:
            return self._reject(tx_id, envelope.tx_type, envelope.signer, ts, Conflict("tx_pending", {"tx_id": tx_id}))

        try:
            return self._apply_and_commit(tx_id, envelope, ts)
        finally:
            with self._pending_lock:
                self._pending.discard(tx_id)
                set_gauge("tx_pending", len(self._pending))

    def _apply_and_commit(self, tx_id: str, env: TxEnvelope, ts: int) -> TxReceipt:
        try:
            if self.store.has_committed(tx_id):
                raise AlreadyExists("duplicate_tx", {"tx_id": tx_id})

            ctx = ApplyContext(self.store, now_ms=ts)
            result = apply_tx(ctx, env, self._domains)

            receipt = TxReceipt(
                tx_id=tx_id,
                tx_type=env.tx_type,
                signer=env.signer,
                status=STATUS_COMMITTED,
                ts_ms=ts,
                result=result,
            )
            seq = self.store.commit(reads=ctx.reads, writes=ctx.writes, receipt=receipt.redacted().to_json())
        except Unknown as err:
            inc_counter("tx_unknown_total")
            log_event(
                self._logger,
                "tx_unknown",
                level=logging.WARNING,
                tx_id=tx_id,
                tx_type=env.tx_type,
                signer=env.signer,
                reason=err.reason,
            )
            raise
        except RegistryError as err:
            return self._reject(tx_id, env.tx_type, env.signer, ts, err)

        inc_counter("tx_committed_total")
        log_event(
            self._logger,
            "tx_committed",
            tx_id=tx_id,
            tx_type=env.tx_type,
            signer=env.signer,
            seq=seq,
            writes=len(ctx.writes),
        )
        return TxReceipt(
            tx_id=tx_id,
            tx_type=env.tx_type,
            signer=env.signer,
            status=STATUS_COMMITTED,
            ts_ms=ts,
            result=result,
            seq=seq,
        )

    def _reject(self, tx_id: str, tx_type: str, signer: str, ts: int, err: RegistryError) -> TxReceipt:
        receipt = TxReceipt(
            tx_id=tx_id,
            tx_type=tx_type,
            signer=signer,
            status=STATUS_REJECTED,
            ts_ms=ts,
            code=err.code,
            reason=err.reason,
            details=err.details,
        )
        seq = self.store.append_receipt(receipt.to_json())

        inc_counter("tx_rejected_total")
        inc_counter(f"tx_rejected_{err.code}_total")
        log_event(
            self._logger,
            "tx_rejected",
            level=logging.WARNING if err.retryable else logging.INFO,
            tx_id=tx_id,
            tx_type=tx_type,
            signer=signer,
            code=err.code,
            reason=err.reason,
            seq=seq,
        )
        return TxReceipt(
            tx_id=tx_id,
            tx_type=tx_type,
            signer=signer,
            status=STATUS_REJECTED,
            ts_ms=ts,
            code=err.code,
            reason=err.reason,
            details=err.details,
            seq=seq,
        )

    # ----------------------------
    # Queries (no side effects)
    # ----------------------------

    def _read_ctx(self) -> ApplyContext:
        return ApplyContext(self.store, now_ms=int(self._clock()))

    def query_storage(self, owner: str) -> StorageAccount:
        return self.quota.query(self._read_ctx(), owner)

    def get_file(self, owner: str, file_hash: str, *, include_deleted: bool = False) -> FileRecord:
        return self.files.get(self._read_ctx(), owner, file_hash, include_deleted=include_deleted)

    def list_files(self, owner: str) -> Iterator[FileRecord]:
        return self.files.list_by_owner(self._read_ctx(), owner)

    def receipt(self, tx_id: str) -> Optional[TxReceipt]:
        j = self.store.get_receipt(str(tx_id))
        return TxReceipt.from_json(j) if j is not None else None

    def status(self, tx_id: str) -> Optional[str]:
        """pending | committed | rejected, or None if never seen."""
        with self._pending_lock:
            if tx_id in self._pending:
                return STATUS_PENDING
        r = self.receipt(tx_id)
        return r.status if r is not None else None

    def history(self, *, limit: int = 100, offset: int = 0) -> List[TxReceipt]:
        return [TxReceipt.from_json(j) for j in self.store.receipts(limit=limit, offset=offset)]
