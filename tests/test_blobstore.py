from __future__ import annotations

import hashlib

import pytest

from dcloud.storage.blobstore import BlobStoreError, IpfsBlobStore, IpfsConfig, MemoryBlobStore, _parse_add_response, fingerprint
from dcloud.util.ipfs_cid import cid_v1_raw, validate_ipfs_cid


def test_fingerprint_is_sha256_hex() -> None:
    assert fingerprint(b"hello") == hashlib.sha256(b"hello").hexdigest()


def test_cid_v1_raw_known_value() -> None:
    # `ipfs add --cid-version=1 --raw-leaves` of the empty file.
    assert cid_v1_raw(b"") == "bafkreihdwdcefgh4dqkjv67uzcmw7ojee6xedzdetojuzjevtenxquvyku"


def test_memory_blob_store_round_trip() -> None:
    bs = MemoryBlobStore()
    loc = bs.put(b"payload", name="p.bin")

    assert validate_ipfs_cid(loc).ok
    assert loc == cid_v1_raw(b"payload")
    assert bs.get(loc) == b"payload"
    assert bs.put(b"payload") == loc
    assert len(bs) == 1


def test_memory_blob_store_missing_locator() -> None:
    with pytest.raises(BlobStoreError):
        MemoryBlobStore().get(cid_v1_raw(b"never stored"))


@pytest.mark.parametrize(
    "cid,ok",
    [
        ("QmYwAPJzv5CZsnA625s3Xf2nemtYgPpHdWEz79ojWnPbdG", True),
        ("bafkreihdwdcefgh4dqkjv67uzcmw7ojee6xedzdetojuzjevtenxquvyku", True),
        ("", False),
        ("Qm123", False),
        ("BAFY-not-base32", False),
    ],
)
def test_validate_ipfs_cid(cid: str, ok: bool) -> None:
    assert validate_ipfs_cid(cid).ok is ok


def test_parse_add_response_takes_last_object() -> None:
    raw = b'{"Name":"a","Hash":"bafyfirst","Size":"1"}\n{"Name":"a","Hash":"bafysecond","Size":"12"}\n'
    assert _parse_add_response(raw) == ("bafysecond", 12)

    with pytest.raises(BlobStoreError):
        _parse_add_response(b"")
    with pytest.raises(BlobStoreError):
        _parse_add_response(b'{"Name":"a"}')


def test_ipfs_store_rejects_bad_locator_without_network() -> None:
    bs = IpfsBlobStore(IpfsConfig(api_base="http://127.0.0.1:1"))
    with pytest.raises(BlobStoreError):
        bs.get("not a cid")


def test_ipfs_store_unreachable_node_is_blob_store_error() -> None:
    bs = IpfsBlobStore(IpfsConfig(api_base="http://127.0.0.1:1", timeout_s=0.5))
    with pytest.raises(BlobStoreError):
        bs.put(b"data", name="d.bin")
