"""
Push primitives — the PushBackend interface and the fixed payload schema.

The payload is deliberately tiny: the network's message hash and identity
fingerprint, base64-armored, and nothing human-readable. The device wakes up
and fetches its messages itself.
"""

from __future__ import annotations

import base64
from abc import ABC, abstractmethod

MESSAGE_HASH_KEY = "MessageHash"
IDENTITY_FP_KEY = "IdentityFingerprint"


def build_data_payload(message_hash: bytes, identity_fp: bytes) -> dict[str, str]:
    """The only data a push ever carries."""
    return {
        MESSAGE_HASH_KEY: base64.b64encode(message_hash).decode("ascii"),
        IDENTITY_FP_KEY: base64.b64encode(identity_fp).decode("ascii"),
    }


class PushBackend(ABC):
    """
    Abstract push delivery target.

    send() returns the backend's acknowledgement (message name/ID) or raises
    PushError, with retryable=False for a token the backend will never
    accept again.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Short identifier, e.g. 'fcm', 'file'."""
        ...

    @abstractmethod
    async def send(self, token: str, message_hash: bytes, identity_fp: bytes) -> str:
        ...

    async def close(self) -> None:
        return None
