# src/dcloud/runtime/registry_config.py
from __future__ import annotations

import json
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Optional

from dcloud.ledger.constants import MAX_FILE_NAME_LEN, U64_MAX

Json = Dict[str, Any]


def _as_int(v: Any, default: int, *, field: str = "") -> int:
    if v is None or (isinstance(v, str) and not v.strip()):
        return int(default)
    if isinstance(v, bool):
        raise ValueError(f"{field or 'value'} must be an integer; got: {v!r}")
    try:
        return int(v)
    except (TypeError, ValueError):
        raise ValueError(f"{field or 'value'} must be an integer; got: {v!r}") from None


def _as_str(v: Any, default: str) -> str:
    if v is None:
        return str(default)
    s = str(v)
    return s if s.strip() else str(default)


def _as_bool(v: Any, default: bool, *, field: str = "") -> bool:
    if v is None or (isinstance(v, str) and not v.strip()):
        return bool(default)
    if isinstance(v, bool):
        return v
    s = str(v).strip().lower()
    if s in {"1", "true", "yes", "y", "on"}:
        return True
    if s in {"0", "false", "no", "n", "off"}:
        return False
    raise ValueError(f"{field or 'value'} must be a boolean; got: {v!r}")


@dataclass(frozen=True)
class RegistryConfig:
    chain_id: str
    mode: str  # "dev" | "testnet" | "prod"

    backend: str  # "memory" | "sqlite"
    db_path: str

    # 0 means unbounded (only the u64 ceiling applies).
    max_bytes_per_account: int
    max_file_name_len: int

    require_signatures: bool

    # Client-side bounded wait; 0 disables the timeout.
    submit_timeout_ms: int
    # Store-side lock wait before a commit gives up with `unknown`.
    lock_timeout_ms: int

    api_host: str
    api_port: int

    log_level: str

    def with_overrides(self, **changes: Any) -> "RegistryConfig":
        cfg = replace(self, **changes)
        validate_registry_config(cfg)
        return cfg


_ALLOWED_MODES = {"dev", "testnet", "prod"}
_ALLOWED_BACKENDS = {"memory", "sqlite"}


def validate_registry_config(cfg: RegistryConfig) -> None:
    """Fail-fast validation for operator config."""

    if not isinstance(cfg.chain_id, str) or not cfg.chain_id.strip():
        raise ValueError("chain_id must be a non-empty string")

    mode = str(cfg.mode or "").strip().lower()
    if mode not in _ALLOWED_MODES:
        raise ValueError(f"mode must be one of {_ALLOWED_MODES}; got: {cfg.mode!r}")

    if cfg.backend not in _ALLOWED_BACKENDS:
        raise ValueError(f"backend must be one of {_ALLOWED_BACKENDS}; got: {cfg.backend!r}")

    if cfg.backend == "sqlite" and not str(cfg.db_path or "").strip():
        raise ValueError("db_path must be a non-empty string for the sqlite backend")

    if int(cfg.max_bytes_per_account) < 0 or int(cfg.max_bytes_per_account) > U64_MAX:
        raise ValueError(f"max_bytes_per_account must be 0..2^64-1; got: {cfg.max_bytes_per_account}")

    if not 1 <= int(cfg.max_file_name_len) <= MAX_FILE_NAME_LEN:
        raise ValueError(f"max_file_name_len must be 1..{MAX_FILE_NAME_LEN}; got: {cfg.max_file_name_len}")

    if int(cfg.submit_timeout_ms) < 0:
        raise ValueError(f"submit_timeout_ms must be >= 0; got: {cfg.submit_timeout_ms}")

    if int(cfg.lock_timeout_ms) <= 0:
        raise ValueError(f"lock_timeout_ms must be > 0; got: {cfg.lock_timeout_ms}")

    if int(cfg.api_port) <= 0 or int(cfg.api_port) > 65535:
        raise ValueError(f"api_port must be 1..65535; got: {cfg.api_port}")

    if mode == "prod" and not cfg.require_signatures:
        raise ValueError("require_signatures cannot be disabled in prod mode")


def default_registry_config() -> RegistryConfig:
    return RegistryConfig(
        chain_id="dcloud-dev",
        mode="prod",
        backend="sqlite",
        db_path="./data/dcloud.db",
        max_bytes_per_account=0,
        max_file_name_len=MAX_FILE_NAME_LEN,
        require_signatures=True,
        submit_timeout_ms=30_000,
        lock_timeout_ms=30_000,
        api_host="127.0.0.1",
        api_port=8080,
        log_level="INFO",
    )


def _merge(raw: Json, d: RegistryConfig) -> RegistryConfig:
    return RegistryConfig(
        chain_id=_as_str(raw.get("chain_id"), d.chain_id),
        mode=_as_str(raw.get("mode"), d.mode).strip().lower(),
        backend=_as_str(raw.get("backend"), d.backend).strip().lower(),
        db_path=_as_str(raw.get("db_path"), d.db_path),
        max_bytes_per_account=_as_int(
            raw.get("max_bytes_per_account"), d.max_bytes_per_account, field="max_bytes_per_account"
        ),
        max_file_name_len=_as_int(raw.get("max_file_name_len"), d.max_file_name_len, field="max_file_name_len"),
        require_signatures=_as_bool(
            raw.get("require_signatures"), d.require_signatures, field="require_signatures"
        ),
        submit_timeout_ms=_as_int(raw.get("submit_timeout_ms"), d.submit_timeout_ms, field="submit_timeout_ms"),
        lock_timeout_ms=_as_int(raw.get("lock_timeout_ms"), d.lock_timeout_ms, field="lock_timeout_ms"),
        api_host=_as_str(raw.get("api_host"), d.api_host),
        api_port=_as_int(raw.get("api_port"), d.api_port, field="api_port"),
        log_level=_as_str(raw.get("log_level"), d.log_level).strip().upper(),
    )


def read_registry_config_file(path: str) -> RegistryConfig:
    p = Path(path)
    raw = json.loads(p.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ValueError("registry config must be a JSON object")

    cfg = _merge(raw, default_registry_config())
    validate_registry_config(cfg)
    return cfg


_ENV_KEYS = (
    "chain_id",
    "mode",
    "backend",
    "db_path",
    "max_bytes_per_account",
    "max_file_name_len",
    "require_signatures",
    "submit_timeout_ms",
    "lock_timeout_ms",
    "api_host",
    "api_port",
    "log_level",
)


def registry_config_from_env(base: Optional[RegistryConfig] = None) -> RegistryConfig:
    """Overlay DCLOUD_<KEY> environment variables on top of `base` (or the defaults)."""
    raw: Json = {}
    for key in _ENV_KEYS:
        v = os.environ.get(f"DCLOUD_{key.upper()}")
        if v is not None:
            raw[key] = v
    cfg = _merge(raw, base or default_registry_config())
    validate_registry_config(cfg)
    return cfg


def load_registry_config(*, config_path: Optional[str] = None) -> RegistryConfig:
    """File (explicit arg or DCLOUD_CONFIG_PATH) first, then env overrides."""
    p = config_path or os.environ.get("DCLOUD_CONFIG_PATH")
    base = read_registry_config_file(p) if p else default_registry_config()
    return registry_config_from_env(base)
