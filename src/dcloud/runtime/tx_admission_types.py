from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Dict, Optional

from dcloud.ledger.store import STATUS_COMMITTED, STATUS_REJECTED
from dcloud.ledger.types import redact_record_json
from dcloud.runtime.errors import InvalidInput

Json = Dict[str, Any]

STATUS_PENDING = "pending"


@dataclass(frozen=True)
class TxEnvelope:
    tx_type: str
    signer: str
    nonce: int
    payload: Dict[str, Any]
    sig: str = ""

    @staticmethod
    def from_json(j: Any) -> "TxEnvelope":
        if isinstance(j, TxEnvelope):
            return j
        if not isinstance(j, dict):
            raise InvalidInput("bad_env", {"reason": "not_object"})

        payload = j.get("payload", {})
        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            raise InvalidInput("bad_env", {"reason": "payload_not_object"})

        nonce = j.get("nonce", 0)
        if isinstance(nonce, bool):
            raise InvalidInput("bad_env", {"reason": "bad_nonce"})
        try:
            nonce_i = int(nonce)
        except (TypeError, ValueError):
            raise InvalidInput("bad_env", {"reason": "bad_nonce"}) from None

        tx_type = str(j.get("tx_type") or "").strip()
        if not tx_type:
            raise InvalidInput("bad_env", {"reason": "missing_tx_type"})

        return TxEnvelope(
            tx_type=tx_type,
            signer=str(j.get("signer") or "").strip(),
            nonce=nonce_i,
            payload=dict(payload),
            sig=str(j.get("sig") or ""),
        )

    def to_json(self) -> Json:
        return {
            "tx_type": self.tx_type,
            "signer": self.signer,
            "nonce": self.nonce,
            "payload": self.payload,
            "sig": self.sig,
        }


@dataclass(frozen=True)
class TxReceipt:
    """Terminal outcome of one submission. Never rewritten once stored."""

    tx_id: str
    tx_type: str
    signer: str
    status: str
    ts_ms: int
    code: str = "ok"
    reason: str = ""
    details: Optional[Any] = None
    result: Optional[Json] = None
    seq: int = 0

    @property
    def committed(self) -> bool:
        return self.status == STATUS_COMMITTED

    @property
    def rejected(self) -> bool:
        return self.status == STATUS_REJECTED

    def redacted(self) -> "TxReceipt":
        """Form that goes into the shared tx log: no key material in `result`."""
        return replace(self, result=redact_record_json(self.result))

    @staticmethod
    def from_json(j: Json) -> "TxReceipt":
        return TxReceipt(
            tx_id=str(j.get("tx_id") or ""),
            tx_type=str(j.get("tx_type") or ""),
            signer=str(j.get("signer") or ""),
            status=str(j.get("status") or ""),
            ts_ms=int(j.get("ts_ms") or 0),
            code=str(j.get("code") or ""),
            reason=str(j.get("reason") or ""),
            details=j.get("details"),
            result=j.get("result"),
            seq=int(j.get("seq") or 0),
        )

    def to_json(self) -> Json:
        out: Json = {
            "tx_id": self.tx_id,
            "tx_type": self.tx_type,
            "signer": self.signer,
            "status": self.status,
            "ts_ms": self.ts_ms,
            "code": self.code,
            "reason": self.reason,
            "details": self.details,
            "result": self.result,
        }
        if self.seq:
            out["seq"] = self.seq
        return out
