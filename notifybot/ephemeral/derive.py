"""
Ephemeral ID derivation.

The bot treats derivation as an opaque capability: given an identity ID, the
size of the address space and the current time, produce the ephemeral ID the
network will use for that identity right now, plus the window it is valid
for. ``HashDeriver`` is the default: a keyed BLAKE2b over the identity and
its current epoch, truncated to ``address_space_size`` bits.
"""

from __future__ import annotations

import hashlib
from abc import ABC, abstractmethod
from dataclasses import dataclass

from notifybot.core.errors import DerivationError
from notifybot.ephemeral.scheme import EpochScheme

_ID_PERSON = b"nb-ephemeral"


@dataclass(frozen=True)
class DerivedId:
    """An ephemeral ID and its validity window (nanoseconds)."""

    ephemeral_id: int
    valid_from: int
    valid_to: int


class Deriver(ABC):
    """Computes the ephemeral ID an identity holds at a given time."""

    @abstractmethod
    def derive(self, identity_id: bytes, address_space_size: int, now_ns: int) -> DerivedId:
        """Raises DerivationError when no ID can be produced."""
        ...


def to_signed64(value: int) -> int:
    """Reinterpret an unsigned 64-bit value as signed."""
    return int.from_bytes(value.to_bytes(8, "big"), "big", signed=True)


class HashDeriver(Deriver):
    """
    Deterministic, unlinkable-without-key ephemeral IDs.

    The epoch comes from the same EpochScheme that assigns offset buckets,
    so an ID changes exactly when the identity's bucket rolls over.
    """

    def __init__(self, scheme: EpochScheme, key: bytes = b"") -> None:
        if len(key) > 64:
            raise ValueError("derivation key must be at most 64 bytes")
        self._scheme = scheme
        self._key = key

    def derive(self, identity_id: bytes, address_space_size: int, now_ns: int) -> DerivedId:
        if not identity_id:
            raise DerivationError("identity ID is empty")
        if not 1 <= address_space_size <= 64:
            raise DerivationError(
                f"address space size {address_space_size} outside 1..64",
                details={"address_space_size": address_space_size},
            )
        bucket = self._scheme.offset_bucket(identity_id)
        epoch = self._scheme.epoch(bucket, now_ns)
        digest = hashlib.blake2b(
            identity_id + epoch.to_bytes(8, "big", signed=True),
            digest_size=8,
            key=self._key,
            person=_ID_PERSON,
        ).digest()
        value = int.from_bytes(digest, "big") >> (64 - address_space_size)
        valid_from, valid_to = self._scheme.window(bucket, epoch)
        return DerivedId(
            ephemeral_id=to_signed64(value),
            valid_from=valid_from,
            valid_to=valid_to,
        )
