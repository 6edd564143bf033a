# src/dcloud/client.py
from __future__ import annotations

"""dcloud.client

Caller-side API over a TransactionExecutor.

Each mutating call builds an envelope, has the wallet sign it and waits for a
terminal receipt. Rejections surface as the matching RegistryError subclass.
The wait is bounded by `timeout_s`, defaulting to the executor config's
`submit_timeout_ms` (0 waits indefinitely). When it elapses first, Unknown is
raised: the submission may still commit. Unknown details carry `tx_id` and the
signed `tx`, so callers reconcile with get_receipt(tx_id) or resubmit(tx),
which the executor deduplicates by tx_id.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Dict, List, Optional

from dcloud.crypto.wallet import Wallet
from dcloud.ledger.types import FileRecord, StorageAccount, record_from_json
from dcloud.runtime.domain_dispatch import (
    TX_FILE_DELETE,
    TX_FILE_READ,
    TX_FILE_SET_VISIBILITY,
    TX_FILE_UPLOAD,
    TX_STORAGE_INIT,
)
from dcloud.runtime.errors import AlreadyExists, InvalidInput, NotFound, Unknown, raise_for_code
from dcloud.runtime.executor import TransactionExecutor
from dcloud.runtime.tx_admission_types import TxReceipt
from dcloud.runtime.tx_id import compute_tx_id_from_dict
from dcloud.storage.blobstore import BlobStore, fingerprint
from dcloud.structured_logging import log_event

Json = Dict[str, Any]


class RegistryClient:
    def __init__(
        self,
        executor: TransactionExecutor,
        wallet: Wallet,
        *,
        blob_store: Optional[BlobStore] = None,
        timeout_s: Optional[float] = None,
    ) -> None:
        self.executor = executor
        self.wallet = wallet
        self.blob_store = blob_store
        if timeout_s is None:
            # 0 in config disables the bounded wait.
            cfg_ms = int(getattr(executor.config, "submit_timeout_ms", 0) or 0)
            timeout_s = cfg_ms / 1000.0 if cfg_ms > 0 else None
        self.timeout_s = float(timeout_s) if timeout_s is not None else None

        self._nonce_lock = threading.Lock()
        self._last_nonce = 0
        self._pool: Optional[ThreadPoolExecutor] = None
        self._logger = logging.getLogger("dcloud.client")

    @property
    def identity(self) -> str:
        return self.wallet.identity

    # ----------------------------
    # Submission plumbing
    # ----------------------------

    def _next_nonce(self) -> int:
        with self._nonce_lock:
            n = max(int(time.time() * 1000), self._last_nonce + 1)
            self._last_nonce = n
            return n

    def build_tx(self, tx_type: str, payload: Json) -> Json:
        """Signed envelope dict, ready for TransactionExecutor.submit()."""
        tx: Json = {
            "tx_type": tx_type,
            "signer": self.wallet.identity,
            "nonce": self._next_nonce(),
            "payload": payload,
        }
        return self.wallet.sign_tx(tx)

    def _unknown(self, reason: str, tx: Json, details: Any = None) -> Unknown:
        """Unknown carrying what a caller needs to reconcile: the tx_id and the signed envelope."""
        out: Json = dict(details) if isinstance(details, dict) else {}
        out.update(
            tx_type=tx.get("tx_type"),
            tx_id=compute_tx_id_from_dict(self.executor.chain_id, tx),
            tx=tx,
        )
        return Unknown(reason, out)

    def _submit_signed(self, tx: Json) -> TxReceipt:
        if self.timeout_s is None:
            try:
                return self.executor.submit(tx)
            except Unknown as err:
                raise self._unknown(err.reason, tx, err.details) from err

        if self._pool is None:
            self._pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix="dcloud-client")
        fut = self._pool.submit(self.executor.submit, tx)
        try:
            return fut.result(timeout=self.timeout_s)
        except Unknown as err:
            raise self._unknown(err.reason, tx, err.details) from err
        except FutureTimeout:
            err = self._unknown("submit_timeout", tx, {"timeout_s": self.timeout_s})
            log_event(
                self._logger,
                "client_submit_timeout",
                level=logging.WARNING,
                tx_type=err.details["tx_type"],
                tx_id=err.details["tx_id"],
                timeout_s=self.timeout_s,
            )
            raise err from None

    def submit(self, tx_type: str, payload: Json) -> TxReceipt:
        receipt = self._submit_signed(self.build_tx(tx_type, payload))
        if receipt.rejected:
            raise_for_code(receipt.code, receipt.reason, receipt.details)
        return receipt

    def resubmit(self, tx: Json) -> TxReceipt:
        """Submit an already-signed envelope again, e.g. after Unknown."""
        receipt = self._submit_signed(tx)
        if receipt.rejected:
            raise_for_code(receipt.code, receipt.reason, receipt.details)
        return receipt

    @staticmethod
    def _record(receipt: TxReceipt) -> Any:
        if not isinstance(receipt.result, dict):
            raise Unknown("missing_result", {"tx_id": receipt.tx_id})
        return record_from_json(receipt.result)

    # ----------------------------
    # Storage account
    # ----------------------------

    def initialize_storage(self) -> StorageAccount:
        return self._record(self.submit(TX_STORAGE_INIT, {}))

    def ensure_initialized(self) -> StorageAccount:
        try:
            return self.initialize_storage()
        except AlreadyExists:
            return self.get_storage_info()

    def storage_exists(self, owner: Optional[str] = None) -> bool:
        try:
            self.executor.query_storage(owner or self.identity)
        except NotFound:
            return False
        return True

    def get_storage_info(self, owner: Optional[str] = None) -> StorageAccount:
        return self.executor.query_storage(owner or self.identity)

    # ----------------------------
    # Files
    # ----------------------------

    def upload_file(
        self,
        file_hash: str,
        file_name: str,
        file_size: int,
        content_locator: str,
        encryption_key: Optional[str] = None,
    ) -> FileRecord:
        payload: Json = {
            "file_hash": file_hash,
            "file_name": file_name,
            "file_size": file_size,
            "content_locator": content_locator,
        }
        if encryption_key is not None:
            payload["encryption_key"] = encryption_key
        return self._record(self.submit(TX_FILE_UPLOAD, payload))

    def upload_bytes(self, data: bytes, file_name: str, *, encryption_key: Optional[str] = None) -> FileRecord:
        """Store the blob, then register it under its SHA-256 fingerprint.

        The blob is written first; if registration is rejected the blob stays
        in the store unreferenced.
        """
        if self.blob_store is None:
            raise InvalidInput("no_blob_store")
        raw = bytes(data)
        locator = self.blob_store.put(raw, name=file_name)
        return self.upload_file(fingerprint(raw), file_name, len(raw), locator, encryption_key)

    def delete_file(self, file_hash: str, owner: Optional[str] = None) -> FileRecord:
        return self._record(
            self.submit(TX_FILE_DELETE, {"owner": owner or self.identity, "file_hash": file_hash})
        )

    def share_file(self, file_hash: str, is_public: bool = True, owner: Optional[str] = None) -> FileRecord:
        return self._record(
            self.submit(
                TX_FILE_SET_VISIBILITY,
                {"owner": owner or self.identity, "file_hash": file_hash, "is_public": bool(is_public)},
            )
        )

    def download_file(self, owner: str, file_hash: str) -> FileRecord:
        """Authorized read; bumps access_count and returns the updated record."""
        return self._record(self.submit(TX_FILE_READ, {"owner": owner, "file_hash": file_hash}))

    def download_bytes(self, owner: str, file_hash: str) -> bytes:
        if self.blob_store is None:
            raise InvalidInput("no_blob_store")
        rec = self.download_file(owner, file_hash)
        data = self.blob_store.get(rec.content_locator)
        if fingerprint(data) != rec.file_hash:
            raise InvalidInput("fingerprint_mismatch", {"file_hash": rec.file_hash, "locator": rec.content_locator})
        return data

    def get_file(self, owner: str, file_hash: str) -> FileRecord:
        """Metadata only; no access_count side effect."""
        return self.executor.get_file(owner, file_hash)

    def get_user_files(self, owner: Optional[str] = None) -> List[FileRecord]:
        return list(self.executor.list_files(owner or self.identity))

    def get_receipt(self, tx_id: str) -> Optional[TxReceipt]:
        return self.executor.receipt(tx_id)

    # ----------------------------
    # Lifecycle
    # ----------------------------

    def close(self) -> None:
        if self._pool is not None:
            self._pool.shutdown(wait=False)
            self._pool = None

    def __enter__(self) -> "RegistryClient":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()
