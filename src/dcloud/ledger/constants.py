# src/dcloud/ledger/constants.py
from __future__ import annotations

"""Registry-wide constants.

Changing any value here changes addresses or accepted inputs, so treat these
as part of the on-ledger format.
"""

# Fingerprints are SHA-256 digests (hex on the wire).
FINGERPRINT_WIDTH: int = 32

# Identities are raw Ed25519 public keys (hex on the wire).
IDENTITY_WIDTH: int = 32

# Unsigned 64-bit ceiling for byte counters.
U64_MAX: int = 2**64 - 1

MAX_FILE_NAME_LEN: int = 256
MAX_CONTENT_LOCATOR_LEN: int = 256
MAX_ENCRYPTION_KEY_LEN: int = 1024

# Address derivation
ADDRESS_DOMAIN_TAG: bytes = b"dcloud-address:v1"
NS_STORAGE: str = "storage"
NS_FILE: str = "file"
NAMESPACES = (NS_STORAGE, NS_FILE)

# Read-surface schema version (append-only evolution)
PUBLIC_SCHEMA_VERSION: int = 1
