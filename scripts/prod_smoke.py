#!/usr/bin/env python3

"""Production-ish smoke test for the DCloud registry.

It verifies:
  - executor boots on a fresh SQLite db
  - FastAPI app boots and serves /v1/health
  - a signed STORAGE_INIT + FILE_UPLOAD commit over HTTP
  - the quota audit finds no drift afterwards

Usage:
  python3 scripts/prod_smoke.py
"""

from __future__ import annotations

import os
import sys
import tempfile

from fastapi.testclient import TestClient

from dcloud.api.app import create_app
from dcloud.runtime.executor_boot import build_executor
from dcloud.runtime.registry_config import default_registry_config
from dcloud.runtime.state_invariants import audit_all
from dcloud.storage.blobstore import MemoryBlobStore, fingerprint
from dcloud.testing.sigtools import wallet_for


def main() -> int:
    with tempfile.TemporaryDirectory(prefix="dcloud-smoke-") as td:
        cfg = default_registry_config().with_overrides(
            chain_id="smoke-chain",
            backend="sqlite",
            db_path=os.path.join(td, "dcloud.db"),
        )
        ex = build_executor(cfg)
        c = TestClient(create_app(executor=ex))

        r = c.get("/v1/health")
        if r.status_code != 200 or not r.json().get("ready"):
            print(f"health failed: {r.status_code} {r.text}", file=sys.stderr)
            return 1

        wallet = wallet_for("smoke")
        data = b"dcloud smoke payload"
        locator = MemoryBlobStore().put(data, name="smoke.txt")

        txs = [
            wallet.sign_tx({"tx_type": "STORAGE_INIT", "nonce": 1, "payload": {}}),
            wallet.sign_tx(
                {
                    "tx_type": "FILE_UPLOAD",
                    "nonce": 2,
                    "payload": {
                        "file_hash": fingerprint(data),
                        "file_name": "smoke.txt",
                        "file_size": len(data),
                        "content_locator": locator,
                    },
                }
            ),
        ]
        for tx in txs:
            r = c.post("/v1/tx/submit", json=tx)
            if r.status_code != 200:
                print(f"{tx['tx_type']} failed: {r.status_code} {r.text}", file=sys.stderr)
                return 1

        audit = audit_all(ex.store)
        if audit["violations"]:
            print(f"quota drift: {audit['violations']}", file=sys.stderr)
            return 1

        print(f"ok: {len(ex.history())} receipts, {len(audit['ok'])} account(s) consistent")
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
