# src/dcloud/runtime/sigverify.py

from __future__ import annotations

from dcloud.crypto.sig import PUBKEY_LEN, canonical_tx_message, verify_ed25519_signature
from dcloud.runtime.tx_admission_types import TxEnvelope


def _signer_is_pubkey(signer: str) -> bool:
    try:
        return len(bytes.fromhex(signer)) == PUBKEY_LEN
    except ValueError:
        return False


def verify_tx_signature(env: TxEnvelope, *, require_signatures: bool = True) -> bool:
    """Verify the envelope signature against the signer identity.

    The signer identity IS the Ed25519 public key, so no key registry is
    consulted; possession of a key for some other identity proves nothing.

    Policy:
      - signer must always be a well-formed identity
      - if require_signatures is False (dev/testnet only), skip the sig check
      - otherwise the sig must verify over canonical_tx_message(...)

    NOTE: This function is pure (no I/O).
    """
    signer = (env.signer or "").strip()
    if not signer or not _signer_is_pubkey(signer):
        return False

    if not require_signatures:
        return True

    sig = (env.sig or "").strip()
    if not sig:
        return False

    msg = canonical_tx_message(tx_type=env.tx_type, signer=signer, nonce=env.nonce, payload=env.payload)
    return verify_ed25519_signature(message=msg, sig=sig, pubkey=signer)
