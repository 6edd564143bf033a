# src/dcloud/storage/blobstore.py
from __future__ import annotations

import hashlib
import http.client
import json
import os
import threading
import urllib.parse
from dataclasses import dataclass
from typing import Dict, Optional, Protocol, Tuple

from dcloud.util.ipfs_cid import cid_v1_raw, validate_ipfs_cid


class BlobStoreError(RuntimeError):
    pass


def fingerprint(data: bytes) -> str:
    """SHA-256 hex of the blob; this is the registry's file_hash."""
    return hashlib.sha256(bytes(data)).hexdigest()


class BlobStore(Protocol):
    def put(self, data: bytes, *, name: str = "") -> str: ...

    def get(self, locator: str) -> bytes: ...


class MemoryBlobStore:
    """Process-local blob store. Locators are the CIDv1 an IPFS node would assign."""

    def __init__(self) -> None:
        self._blobs: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def put(self, data: bytes, *, name: str = "") -> str:
        raw = bytes(data)
        cid = cid_v1_raw(raw)
        with self._lock:
            self._blobs[cid] = raw
        return cid

    def get(self, locator: str) -> bytes:
        with self._lock:
            raw = self._blobs.get(str(locator or "").strip())
        if raw is None:
            raise BlobStoreError(f"blob_not_found:{locator}")
        return raw

    def __len__(self) -> int:
        with self._lock:
            return len(self._blobs)


# ----------------------------
# IPFS (Kubo HTTP API)
# ----------------------------


@dataclass(frozen=True)
class IpfsConfig:
    api_base: str
    timeout_s: float = 30.0
    pin: bool = True


def ipfs_config_from_env() -> IpfsConfig:
    api_base = (os.getenv("DCLOUD_IPFS_API_BASE") or "http://127.0.0.1:5001").strip()
    try:
        timeout_s = float(os.getenv("DCLOUD_IPFS_TIMEOUT_S") or "30")
    except ValueError:
        timeout_s = 30.0
    return IpfsConfig(api_base=api_base.rstrip("/"), timeout_s=timeout_s)


def _parse_add_response(raw: bytes) -> Tuple[str, int]:
    """
    /api/v0/add returns NDJSON (one JSON per line).
    Take the last JSON object and extract Hash + Size.
    """
    txt = raw.decode("utf-8", errors="replace").strip()
    if not txt:
        raise BlobStoreError("ipfs_add_failed:empty_response")

    last_obj: Optional[dict] = None
    for line in txt.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            obj = json.loads(line)
        except ValueError:
            continue
        if isinstance(obj, dict):
            last_obj = obj

    if not isinstance(last_obj, dict):
        raise BlobStoreError(f"ipfs_add_failed:bad_response:{txt[:200]}")

    cid = str(last_obj.get("Hash") or "").strip()
    try:
        size = int(str(last_obj.get("Size") or "0").strip())
    except ValueError:
        size = 0

    if not cid:
        raise BlobStoreError(f"ipfs_add_failed:missing_hash:{last_obj!r}")
    return cid, size


class IpfsBlobStore:
    """Blob store backed by a Kubo node's HTTP RPC API."""

    _BOUNDARY = "----dcloud-ipfs-boundary-3c1e9a5d7f2b4e60"

    def __init__(self, cfg: Optional[IpfsConfig] = None) -> None:
        self.cfg = cfg or ipfs_config_from_env()
        if not self.cfg.api_base:
            raise BlobStoreError("ipfs_disabled:DCLOUD_IPFS_API_BASE is empty")

        u = urllib.parse.urlparse(self.cfg.api_base)
        self._scheme = (u.scheme or "http").lower()
        self._host = u.hostname or "127.0.0.1"
        self._port = int(u.port or (443 if self._scheme == "https" else 80))

    def _conn(self) -> http.client.HTTPConnection:
        if self._scheme == "https":
            return http.client.HTTPSConnection(self._host, self._port, timeout=self.cfg.timeout_s)
        return http.client.HTTPConnection(self._host, self._port, timeout=self.cfg.timeout_s)

    def _post(self, path: str, *, body: bytes = b"", headers: Optional[Dict[str, str]] = None) -> bytes:
        conn = self._conn()
        try:
            conn.request("POST", path, body=body, headers=headers or {})
            resp = conn.getresponse()
            data = resp.read()
            if resp.status < 200 or resp.status >= 300:
                msg = data.decode("utf-8", errors="replace").strip()
                raise BlobStoreError(f"ipfs_http_{resp.status}:{path.split('?', 1)[0]}:{msg[:300]}")
            return data
        except OSError as e:
            raise BlobStoreError(f"ipfs_unreachable:{e}") from e
        finally:
            conn.close()

    def put(self, data: bytes, *, name: str = "") -> str:
        qs = urllib.parse.urlencode(
            {
                "pin": "true" if self.cfg.pin else "false",
                "cid-version": "1",
                "raw-leaves": "true",
                "wrap-with-directory": "false",
                "progress": "false",
            }
        )
        filename = (name or "upload").strip().replace('"', "_") or "upload"
        preamble = (
            f"--{self._BOUNDARY}\r\n"
            f'Content-Disposition: form-data; name="file"; filename="{filename}"\r\n'
            f"Content-Type: application/octet-stream\r\n"
            f"\r\n"
        ).encode("utf-8")
        epilogue = f"\r\n--{self._BOUNDARY}--\r\n".encode("utf-8")

        raw = self._post(
            f"/api/v0/add?{qs}",
            body=preamble + bytes(data) + epilogue,
            headers={"Content-Type": f"multipart/form-data; boundary={self._BOUNDARY}"},
        )
        cid, _size = _parse_add_response(raw)
        return cid

    def get(self, locator: str) -> bytes:
        v = validate_ipfs_cid(locator)
        if not v.ok:
            raise BlobStoreError(f"bad_locator:{v.reason}")
        qs = urllib.parse.urlencode({"arg": v.cid})
        return self._post(f"/api/v0/cat?{qs}")


__all__ = [
    "BlobStore",
    "BlobStoreError",
    "IpfsBlobStore",
    "IpfsConfig",
    "MemoryBlobStore",
    "fingerprint",
    "ipfs_config_from_env",
]
