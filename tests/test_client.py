from __future__ import annotations

import threading
import time

import pytest

from dcloud.client import RegistryClient
from dcloud.ledger.store import MemoryRecordStore
from dcloud.runtime.errors import AlreadyExists, InvalidInput, NotInitialized, Unknown, describe
from dcloud.runtime.executor import TransactionExecutor
from dcloud.storage.blobstore import MemoryBlobStore, fingerprint


def test_ensure_initialized_treats_already_exists_as_success(make_client, alice) -> None:
    c = make_client(alice)
    assert not c.storage_exists()

    first = c.ensure_initialized()
    again = c.ensure_initialized()
    assert again == first
    assert c.storage_exists()

    with pytest.raises(AlreadyExists):
        c.initialize_storage()


def test_nonces_are_strictly_increasing(make_client, alice) -> None:
    c = make_client(alice)
    nonces = [c.build_tx("STORAGE_INIT", {})["nonce"] for _ in range(50)]
    assert nonces == sorted(set(nonces))


def test_upload_and_download_bytes(make_client, alice, bob, blobs: MemoryBlobStore) -> None:
    owner = make_client(alice)
    reader = make_client(bob)
    owner.ensure_initialized()

    rec = owner.upload_bytes(b"hello registry", "hello.txt")
    assert rec.file_hash == fingerprint(b"hello registry")
    assert rec.file_size == len(b"hello registry")
    assert blobs.get(rec.content_locator) == b"hello registry"

    owner.share_file(rec.file_hash)
    assert reader.download_bytes(alice.identity, rec.file_hash) == b"hello registry"
    assert owner.get_file(alice.identity, rec.file_hash).access_count == 1


def test_download_bytes_detects_swapped_blob(make_client, alice, blobs: MemoryBlobStore) -> None:
    c = make_client(alice)
    c.ensure_initialized()
    wrong = blobs.put(b"other bytes")
    c.upload_file(fingerprint(b"real bytes"), "r.bin", 10, wrong)

    with pytest.raises(InvalidInput) as e:
        c.download_bytes(alice.identity, fingerprint(b"real bytes"))
    assert e.value.reason == "fingerprint_mismatch"


def test_upload_bytes_without_blob_store(executor, alice) -> None:
    c = RegistryClient(executor, alice)
    with pytest.raises(InvalidInput):
        c.upload_bytes(b"x", "x.bin")


def test_rejections_raise_typed_errors_with_distinct_messages(make_client, alice) -> None:
    c = make_client(alice)
    with pytest.raises(NotInitialized) as e:
        c.upload_file(fingerprint(b"a"), "a.txt", 1, "loc")
    assert describe(e.value) != describe(Unknown("x"))


def test_get_receipt_after_commit(make_client, alice) -> None:
    c = make_client(alice)
    tx = c.build_tx("STORAGE_INIT", {})
    r = c.resubmit(tx)
    assert c.get_receipt(r.tx_id) == r

    # Resubmitting the same envelope is detected, not applied twice.
    with pytest.raises(AlreadyExists):
        c.resubmit(tx)


class _SlowStore(MemoryRecordStore):
    def __init__(self) -> None:
        super().__init__()
        self.release = threading.Event()

    def commit(self, *, reads, writes, receipt) -> int:
        self.release.wait(10.0)
        return super().commit(reads=reads, writes=writes, receipt=receipt)


def test_timeout_raises_unknown_and_reconciles(cfg, clock, alice) -> None:
    store = _SlowStore()
    ex = TransactionExecutor(store=store, config=cfg, clock=clock)

    with RegistryClient(ex, alice, timeout_s=0.05) as c:
        with pytest.raises(Unknown) as e:
            c.initialize_storage()
        assert e.value.reason == "submit_timeout"
        tx_id = e.value.details["tx_id"]
        tx = e.value.details["tx"]
        assert tx["tx_type"] == "STORAGE_INIT"
        assert tx["signer"] == alice.identity

        # The submission was not cancelled; once the store lets it through it commits.
        store.release.set()
        deadline = time.monotonic() + 5.0
        while ex.status(tx_id) != "committed" and time.monotonic() < deadline:
            time.sleep(0.01)

        r = c.get_receipt(tx_id)
        assert r is not None and r.committed

        with pytest.raises(AlreadyExists) as dup:
            c.resubmit(tx)
        assert dup.value.reason == "duplicate_tx"

        acct = c.ensure_initialized()
        assert acct.owner == alice.identity
        assert c.storage_exists()


def test_unknown_from_executor_carries_envelope(cfg, clock, alice) -> None:
    class _LostLock(MemoryRecordStore):
        def commit(self, *, reads, writes, receipt) -> int:
            raise Unknown("lock_timeout", {"address": "a"})

    ex = TransactionExecutor(store=_LostLock(), config=cfg.with_overrides(submit_timeout_ms=0), clock=clock)
    c = RegistryClient(ex, alice)
    assert c.timeout_s is None

    with pytest.raises(Unknown) as e:
        c.initialize_storage()
    assert e.value.reason == "lock_timeout"
    assert e.value.details["address"] == "a"
    assert e.value.details["tx"]["signer"] == alice.identity
    assert len(e.value.details["tx_id"]) == 64


def test_default_timeout_comes_from_config(cfg, clock, alice) -> None:
    ex = TransactionExecutor(
        store=MemoryRecordStore(), config=cfg.with_overrides(submit_timeout_ms=1500), clock=clock
    )
    assert RegistryClient(ex, alice).timeout_s == 1.5
    assert RegistryClient(ex, alice, timeout_s=0.2).timeout_s == 0.2

    unbounded = TransactionExecutor(
        store=MemoryRecordStore(), config=cfg.with_overrides(submit_timeout_ms=0), clock=clock
    )
    assert RegistryClient(unbounded, alice).timeout_s is None
