from __future__ import annotations

import sys
from pathlib import Path
from typing import Callable

import pytest

# Ensure local "src/" takes precedence over any globally-installed "dcloud" package.
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

src_str = str(SRC)
if src_str not in sys.path:
    sys.path.insert(0, src_str)

from dcloud.client import RegistryClient  # noqa: E402
from dcloud.crypto.wallet import Ed25519Wallet  # noqa: E402
from dcloud.ledger.store import MemoryRecordStore  # noqa: E402
from dcloud.runtime import metrics  # noqa: E402
from dcloud.runtime.executor import TransactionExecutor  # noqa: E402
from dcloud.runtime.registry_config import RegistryConfig, default_registry_config  # noqa: E402
from dcloud.storage.blobstore import MemoryBlobStore  # noqa: E402
from dcloud.testing.sigtools import wallet_for  # noqa: E402


class FakeClock:
    """Deterministic ms clock; every reading advances by `step_ms`."""

    def __init__(self, start_ms: int = 1_700_000_000_000, step_ms: int = 1_000) -> None:
        self.now_ms = int(start_ms)
        self.step_ms = int(step_ms)

    def __call__(self) -> int:
        self.now_ms += self.step_ms
        return self.now_ms


@pytest.fixture(autouse=True)
def _clean_metrics() -> None:
    metrics.reset()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cfg() -> RegistryConfig:
    return default_registry_config().with_overrides(chain_id="dcloud-test", mode="dev", backend="memory")


@pytest.fixture
def store() -> MemoryRecordStore:
    return MemoryRecordStore(lock_timeout_s=5.0)


@pytest.fixture
def executor(store: MemoryRecordStore, cfg: RegistryConfig, clock: FakeClock) -> TransactionExecutor:
    return TransactionExecutor(store=store, config=cfg, clock=clock)


@pytest.fixture
def alice() -> Ed25519Wallet:
    return wallet_for("alice")


@pytest.fixture
def bob() -> Ed25519Wallet:
    return wallet_for("bob")


@pytest.fixture
def blobs() -> MemoryBlobStore:
    return MemoryBlobStore()


@pytest.fixture
def make_client(executor: TransactionExecutor, blobs: MemoryBlobStore) -> Callable[[Ed25519Wallet], RegistryClient]:
    def _make(wallet: Ed25519Wallet) -> RegistryClient:
        return RegistryClient(executor, wallet, blob_store=blobs)

    return _make

