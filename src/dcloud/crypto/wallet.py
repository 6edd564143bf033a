from __future__ import annotations

"""Wallet collaborator seam.

The registry never holds private keys. Clients hand RegistryClient anything that
exposes an `identity` (hex Ed25519 public key) and can sign a tx envelope dict.
`Ed25519Wallet` is the in-process implementation used by tools and tests.
"""

from typing import Any, Dict, Protocol

from dcloud.crypto.sig import public_key_hex, sign_tx_envelope_dict

Json = Dict[str, Any]


class Wallet(Protocol):
    @property
    def identity(self) -> str: ...

    def sign_tx(self, tx: Json) -> Json: ...


class Ed25519Wallet:
    def __init__(self, privkey: str) -> None:
        self._privkey = str(privkey)
        self._identity = public_key_hex(self._privkey)

    @property
    def identity(self) -> str:
        return self._identity

    def sign_tx(self, tx: Json) -> Json:
        tx2 = dict(tx)
        tx2["signer"] = self._identity
        return sign_tx_envelope_dict(tx=tx2, privkey=self._privkey)

    def __repr__(self) -> str:
        return f"Ed25519Wallet(identity={self._identity!r})"
