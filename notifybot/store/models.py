"""
Persisted rows.

Table: registrations
    identity_hash  BLOB  PK   (BLAKE2b-256 of public_key)
    identity_id    BLOB       (intermediary ID, input to derivation)
    public_key     BLOB
    signature      BLOB
    offset_bucket  INT
    token          TEXT       (push token)
    created_at     INT
    updated_at     INT

Table: ephemerals
    identity_hash  BLOB  ┐ PK
    epoch          INT   ┘
    ephemeral_id   INT        (signed 64-bit, indexed)
    offset_bucket  INT
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field


@dataclass
class Registration:
    """One registered device."""

    identity_hash: bytes
    identity_id: bytes
    public_key: bytes
    signature: bytes
    offset_bucket: int
    token: str
    created_at: int = field(default_factory=lambda: int(time.time()))
    updated_at: int = field(default_factory=lambda: int(time.time()))

    @property
    def token_prefix(self) -> str:
        """Loggable stand-in for the token."""
        return self.token[:8]


@dataclass(frozen=True)
class EphemeralBinding:
    """The ephemeral ID an identity held during one epoch."""

    identity_hash: bytes
    ephemeral_id: int
    epoch: int
    offset_bucket: int
