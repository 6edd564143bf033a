from __future__ import annotations

"""Pydantic request schemas for the public API.

These exist only for HTTP input validation; the executor re-validates every
envelope field itself.
"""

from typing import Any, Dict

from pydantic import BaseModel, Field


class TxSubmitRequest(BaseModel):
    tx_type: str = Field(..., min_length=1, description="STORAGE_INIT | FILE_UPLOAD | FILE_DELETE | ...")
    signer: str = Field(..., min_length=1, description="Hex Ed25519 public key")
    nonce: int = Field(default=0, description="Client nonce; distinct nonces give distinct tx ids")
    payload: Dict[str, Any] = Field(default_factory=dict)
    sig: str = Field(default="", description="Hex or base64 Ed25519 signature")

    model_config = {"extra": "ignore"}
