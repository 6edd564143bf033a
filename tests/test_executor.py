from __future__ import annotations

import threading

import pytest

from dcloud.ledger.address import storage_address
from dcloud.ledger.store import MemoryRecordStore
from dcloud.runtime import metrics
from dcloud.runtime.errors import Unknown
from dcloud.runtime.executor import TransactionExecutor
from dcloud.runtime.tx_id import compute_tx_id_from_dict
from dcloud.storage.blobstore import fingerprint
from dcloud.testing.sigtools import deterministic_ed25519_keypair, sign_tx_dict

H1 = fingerprint(b"one")


def _records(store: MemoryRecordStore) -> list:
    return [(vr.address, vr.version, vr.record) for vr in store.iter_records()]


def _upload_tx(wallet, *, nonce: int = 1, file_hash: str = H1, size: int = 10) -> dict:
    return wallet.sign_tx(
        {
            "tx_type": "FILE_UPLOAD",
            "nonce": nonce,
            "payload": {"file_hash": file_hash, "file_name": "a.txt", "file_size": size, "content_locator": "loc1"},
        }
    )


def test_storage_init_commits_with_receipt(executor: TransactionExecutor, alice) -> None:
    r = executor.submit(alice.sign_tx({"tx_type": "STORAGE_INIT", "nonce": 1, "payload": {}}))

    assert r.committed
    assert r.code == "ok"
    assert r.seq == 1
    assert r.result["kind"] == "storage"
    assert r.result["address"] == storage_address(alice.identity)
    assert executor.status(r.tx_id) == "committed"


def test_unsigned_submission_is_unauthorized_before_state_read(executor, store, alice) -> None:
    tx = {"tx_type": "STORAGE_INIT", "signer": alice.identity, "nonce": 1, "payload": {}, "sig": ""}
    r = executor.submit(tx)

    assert r.rejected
    assert r.code == "unauthorized"
    assert r.reason == "bad_signature"
    assert _records(store) == []


def test_mis_signed_submission_is_unauthorized(executor, store, alice) -> None:
    # Signed with bob's key but claims alice's identity.
    tx = sign_tx_dict({"tx_type": "STORAGE_INIT", "signer": alice.identity, "nonce": 1, "payload": {}}, label="bob")
    r = executor.submit(tx)

    assert r.code == "unauthorized"
    assert _records(store) == []


def test_tampered_payload_is_unauthorized(executor, alice) -> None:
    executor.submit(alice.sign_tx({"tx_type": "STORAGE_INIT", "nonce": 1, "payload": {}}))
    tx = _upload_tx(alice, nonce=2)
    tx["payload"] = dict(tx["payload"], file_size=1)

    r = executor.submit(tx)
    assert r.code == "unauthorized"


def test_malformed_signer_is_unauthorized(executor) -> None:
    r = executor.submit({"tx_type": "STORAGE_INIT", "signer": "alice", "nonce": 1, "payload": {}, "sig": "00"})
    assert r.code == "unauthorized"


def test_sigtools_keypair_matches_wallet(alice) -> None:
    pub, _seed = deterministic_ed25519_keypair(label="alice")
    assert pub == alice.identity


def test_duplicate_envelope_is_rejected_and_original_receipt_kept(executor, alice) -> None:
    tx = alice.sign_tx({"tx_type": "STORAGE_INIT", "nonce": 7, "payload": {}})
    first = executor.submit(tx)
    second = executor.submit(tx)

    assert first.committed
    assert second.rejected
    assert second.code == "already_exists"
    assert second.reason == "duplicate_tx"
    assert second.tx_id == first.tx_id

    kept = executor.receipt(first.tx_id)
    assert kept is not None and kept.committed
    assert kept.seq == first.seq


def test_second_initialize_leaves_account_unchanged(executor, alice) -> None:
    executor.submit(alice.sign_tx({"tx_type": "STORAGE_INIT", "nonce": 1, "payload": {}}))
    before = executor.query_storage(alice.identity)

    r = executor.submit(alice.sign_tx({"tx_type": "STORAGE_INIT", "nonce": 2, "payload": {}}))
    assert r.code == "already_exists"
    assert executor.query_storage(alice.identity) == before


def test_rejection_leaves_records_unchanged(executor, store, alice) -> None:
    executor.submit(alice.sign_tx({"tx_type": "STORAGE_INIT", "nonce": 1, "payload": {}}))
    executor.submit(_upload_tx(alice, nonce=2))
    before = _records(store)

    r = executor.submit(_upload_tx(alice, nonce=3))
    assert r.code == "already_exists"
    assert _records(store) == before


def test_unknown_tx_type_is_invalid_input(executor, alice) -> None:
    r = executor.submit(alice.sign_tx({"tx_type": "FILE_RENAME", "nonce": 1, "payload": {}}))
    assert r.code == "invalid_input"
    assert r.reason == "tx_unimplemented"


@pytest.mark.parametrize(
    "env",
    [
        "not-an-envelope",
        {"tx_type": "", "signer": "ab" * 32, "nonce": 1, "payload": {}},
        {"tx_type": "STORAGE_INIT", "signer": "ab" * 32, "nonce": "x", "payload": {}},
        {"tx_type": "STORAGE_INIT", "signer": "ab" * 32, "nonce": 1, "payload": []},
    ],
)
def test_malformed_envelope_is_invalid_input(executor, env) -> None:
    r = executor.submit(env)
    assert r.rejected
    assert r.code == "invalid_input"


def test_receipts_form_an_append_only_history(executor, alice, bob) -> None:
    executor.submit(alice.sign_tx({"tx_type": "STORAGE_INIT", "nonce": 1, "payload": {}}))
    executor.submit(bob.sign_tx({"tx_type": "FILE_UPLOAD", "nonce": 1, "payload": {}}))
    executor.submit(bob.sign_tx({"tx_type": "STORAGE_INIT", "nonce": 2, "payload": {}}))

    hist = executor.history()
    assert [r.seq for r in hist] == [1, 2, 3]
    assert [r.status for r in hist] == ["committed", "rejected", "committed"]
    assert executor.history(limit=1, offset=1)[0].seq == 2

    snapshot = [r.to_json() for r in hist]
    executor.submit(alice.sign_tx({"tx_type": "STORAGE_INIT", "nonce": 3, "payload": {}}))
    assert [r.to_json() for r in executor.history(limit=3)] == snapshot


def test_signatures_optional_outside_prod(store, cfg, clock, alice) -> None:
    ex = TransactionExecutor(store=store, config=cfg.with_overrides(require_signatures=False), clock=clock)
    r = ex.submit({"tx_type": "STORAGE_INIT", "signer": alice.identity, "nonce": 1, "payload": {}})
    assert r.committed


def test_status_of_unseen_tx_is_none(executor) -> None:
    assert executor.status("00" * 32) is None
    assert executor.receipt("00" * 32) is None


class _LostLockStore(MemoryRecordStore):
    def commit(self, *, reads, writes, receipt) -> int:
        raise Unknown("lock_timeout", {"address": "test"})


def test_unknown_outcome_is_raised_not_recorded(cfg, clock, alice) -> None:
    store = _LostLockStore()
    ex = TransactionExecutor(store=store, config=cfg, clock=clock)

    with pytest.raises(Unknown):
        ex.submit(alice.sign_tx({"tx_type": "STORAGE_INIT", "nonce": 1, "payload": {}}))
    assert ex.history() == []
    assert metrics.snapshot()["counters"]["tx_unknown_total"] == 1


def test_metrics_count_outcomes(executor, alice) -> None:
    executor.submit(alice.sign_tx({"tx_type": "STORAGE_INIT", "nonce": 1, "payload": {}}))
    executor.submit(alice.sign_tx({"tx_type": "STORAGE_INIT", "nonce": 2, "payload": {}}))

    counters = metrics.snapshot()["counters"]
    assert counters["tx_committed_total"] == 1
    assert counters["tx_rejected_total"] == 1
    assert counters["tx_rejected_already_exists_total"] == 1


class _GatedStore(MemoryRecordStore):
    def __init__(self) -> None:
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def commit(self, *, reads, writes, receipt) -> int:
        self.entered.set()
        self.release.wait(10.0)
        return super().commit(reads=reads, writes=writes, receipt=receipt)


def test_in_flight_copy_is_rejected_as_pending(cfg, clock, alice) -> None:
    store = _GatedStore()
    ex = TransactionExecutor(store=store, config=cfg, clock=clock)
    tx = alice.sign_tx({"tx_type": "STORAGE_INIT", "nonce": 1, "payload": {}})
    tx_id = compute_tx_id_from_dict(ex.chain_id, tx)

    results: list = []
    t = threading.Thread(target=lambda: results.append(ex.submit(tx)))
    t.start()
    try:
        assert store.entered.wait(5.0)
        assert ex.status(tx_id) == "pending"

        second = ex.submit(tx)
        assert second.rejected
        assert second.code == "conflict"
        assert second.reason == "tx_pending"
    finally:
        store.release.set()
        t.join(5.0)

    assert results and results[0].committed
    assert ex.status(tx_id) == "committed"
    assert [r.status for r in ex.history()] == ["rejected", "committed"]
