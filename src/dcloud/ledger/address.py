# src/dcloud/ledger/address.py
from __future__ import annotations

"""Deterministic record addressing.

    address = sha256(DOMAIN_TAG || seg(namespace) || seg(owner) [|| seg(discriminator)])
    seg(x)  = u32_be(len(x)) || x

Pure functions; the only failures are malformed inputs (InvalidInput).
"""

import hashlib
from typing import Optional

from dcloud.ledger.constants import (
    ADDRESS_DOMAIN_TAG,
    FINGERPRINT_WIDTH,
    IDENTITY_WIDTH,
    NAMESPACES,
    NS_FILE,
    NS_STORAGE,
)
from dcloud.runtime.errors import InvalidInput


def normalize_identity(owner: str) -> str:
    if not isinstance(owner, str):
        raise InvalidInput("bad_identity", {"type": type(owner).__name__})
    return owner.strip().lower()


def identity_bytes(owner: str) -> bytes:
    """Raw public-key bytes for an identity (hex-encoded Ed25519 public key)."""
    s = normalize_identity(owner)
    try:
        b = bytes.fromhex(s)
    except ValueError:
        raise InvalidInput("bad_identity", {"owner": owner}) from None
    if len(b) != IDENTITY_WIDTH:
        raise InvalidInput("bad_identity_width", {"owner": owner, "width": len(b)})
    return b


def normalize_file_hash(file_hash: str) -> str:
    if not isinstance(file_hash, str):
        raise InvalidInput("bad_file_hash", {"type": type(file_hash).__name__})
    return file_hash.strip().lower()


def parse_file_hash(file_hash: str) -> bytes:
    s = normalize_file_hash(file_hash)
    try:
        b = bytes.fromhex(s)
    except ValueError:
        raise InvalidInput("bad_file_hash", {"file_hash": file_hash}) from None
    if len(b) != FINGERPRINT_WIDTH:
        raise InvalidInput("bad_fingerprint_width", {"file_hash": file_hash, "width": len(b)})
    return b


def _seg(b: bytes) -> bytes:
    return len(b).to_bytes(4, "big") + b


def derive(namespace: str, owner: str, discriminator: Optional[bytes] = None) -> str:
    if namespace not in NAMESPACES:
        raise InvalidInput("unknown_namespace", {"namespace": namespace})
    if discriminator is not None and len(discriminator) != FINGERPRINT_WIDTH:
        raise InvalidInput("bad_discriminator_width", {"width": len(discriminator)})

    h = hashlib.sha256()
    h.update(ADDRESS_DOMAIN_TAG)
    h.update(_seg(namespace.encode("utf-8")))
    h.update(_seg(identity_bytes(owner)))
    if discriminator is not None:
        h.update(_seg(bytes(discriminator)))
    return h.hexdigest()


def storage_address(owner: str) -> str:
    return derive(NS_STORAGE, owner)


def file_address(owner: str, file_hash: str) -> str:
    return derive(NS_FILE, owner, parse_file_hash(file_hash))


__all__ = [
    "derive",
    "storage_address",
    "file_address",
    "identity_bytes",
    "normalize_identity",
    "normalize_file_hash",
    "parse_file_hash",
]
