# src/dcloud/util/ipfs_cid.py
from __future__ import annotations

"""IPFS CID helpers.

Validation is lightweight:
  - CIDv0 (base58btc) starts with "Qm" and is length 46.
  - CIDv1 (base32 lowercase) starts with "b" and uses the RFC4648 base32
    alphabet in lowercase: a-z2-7.

This is NOT a full multiformats parser. The goal is to fail-closed on obviously
bad inputs while accepting the vast majority of real-world CIDs.
"""

import base64
import hashlib
import re
from dataclasses import dataclass


_CIDV0_RE = re.compile(r"^Qm[1-9A-HJ-NP-Za-km-z]{44}$")  # base58btc (no 0,O,I,l)
_CIDV1_BASE32_RE = re.compile(r"^b[a-z2-7]{10,}$")  # base32 lowercase (bafy..., bafk...)

# multiformats codes
_CID_V1 = 0x01
_CODEC_RAW = 0x55
_MH_SHA2_256 = 0x12


@dataclass(frozen=True)
class CidValidation:
    ok: bool
    reason: str
    cid: str


def normalize_cid(cid: str) -> str:
    return (cid or "").strip()


def validate_ipfs_cid(cid: str, *, max_len: int = 128) -> CidValidation:
    c = normalize_cid(cid)
    if not c:
        return CidValidation(False, "missing_cid", "")
    if len(c) > int(max_len):
        return CidValidation(False, "cid_too_long", c)

    if _CIDV0_RE.match(c):
        return CidValidation(True, "ok", c)
    if _CIDV1_BASE32_RE.match(c):
        return CidValidation(True, "ok", c)
    return CidValidation(False, "invalid_cid_format", c)


def cid_v1_raw(data: bytes) -> str:
    """CIDv1 for a single raw block (codec raw, sha2-256), multibase base32 lowercase.

    Matches `ipfs add --cid-version=1 --raw-leaves` for content that fits in one block.
    """
    digest = hashlib.sha256(bytes(data)).digest()
    body = bytes([_CID_V1, _CODEC_RAW, _MH_SHA2_256, len(digest)]) + digest
    return "b" + base64.b32encode(body).decode("ascii").lower().rstrip("=")
