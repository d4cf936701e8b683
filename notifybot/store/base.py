"""
Storage contracts for the two tables.

RegistrationStore owns registrations, EphemeralStore owns ephemeral
bindings. Every mutation is individually atomic; nothing spans both
tables. Backends raise StorageError on failure and never retry.

Implementations:
    SQLiteRegistrationStore / SQLiteEphemeralStore — aiosqlite, default
    InMemoryRegistrationStore / InMemoryEphemeralStore — for testing
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from typing import Iterable

from notifybot.core.errors import InvalidInputError
from notifybot.ephemeral.scheme import EpochScheme, identity_hash
from notifybot.store.models import EphemeralBinding, Registration


class RegistrationStore(ABC):
    """
    Long-term identity → push token.

    The hash and offset bucket are computed here so every backend keys and
    buckets identically; backends only implement the raw upsert.
    """

    def __init__(self, scheme: EpochScheme) -> None:
        self._scheme = scheme

    async def upsert_registration(
        self,
        identity_id: bytes,
        public_key: bytes,
        signature: bytes,
        token: str,
    ) -> Registration:
        """
        Insert the registration, or update its token if it changed.

        Returns the stored row. Re-registering never changes the hash or
        offset bucket of an existing row.
        """
        if not identity_id:
            raise InvalidInputError("identity ID is empty")
        if not public_key:
            raise InvalidInputError("public key is empty")
        if not token:
            raise InvalidInputError("push token is empty")
        now = int(time.time())
        registration = Registration(
            identity_hash=identity_hash(public_key),
            identity_id=identity_id,
            public_key=public_key,
            signature=signature,
            offset_bucket=self._scheme.offset_bucket(identity_id),
            token=token,
            created_at=now,
            updated_at=now,
        )
        return await self._upsert(registration)

    @abstractmethod
    async def _upsert(self, registration: Registration) -> Registration:
        """Insert if absent, else set token/updated_at when the token differs."""
        ...

    @abstractmethod
    async def get_registration(self, identity_hash: bytes) -> Registration | None:
        """Returns None if not found."""
        ...

    @abstractmethod
    async def get_registrations(self, identity_hashes: Iterable[bytes]) -> dict[bytes, Registration]:
        """Bulk lookup; absent hashes are simply missing from the result."""
        ...

    @abstractmethod
    async def delete_registration(self, identity_hash: bytes) -> None:
        """Raises NotFoundError if no such registration exists."""
        ...

    @abstractmethod
    async def list_registrations(self, offset_buckets: Iterable[int] | None = None) -> list[Registration]:
        """Snapshot ordered by identity_hash, optionally filtered by bucket."""
        ...

    @abstractmethod
    async def count_registrations(self) -> int:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


class EphemeralStore(ABC):
    """(identity_hash, epoch) → ephemeral ID."""

    async def upsert_binding(self, binding: EphemeralBinding) -> None:
        """Insert or fully overwrite the binding for its (identity, epoch)."""
        await self.upsert_bindings([binding])

    @abstractmethod
    async def upsert_bindings(self, bindings: list[EphemeralBinding]) -> None:
        """Bulk upsert, last writer wins per (identity, epoch)."""
        ...

    @abstractmethod
    async def get_bindings(self, ephemeral_ids: Iterable[int]) -> dict[int, list[EphemeralBinding]]:
        """All bindings per ephemeral ID, read in one pass. Misses are omitted."""
        ...

    @abstractmethod
    async def list_bindings(
        self,
        identity_hash: bytes | None = None,
        min_epoch: int | None = None,
    ) -> list[EphemeralBinding]:
        """Ordered by (identity_hash, epoch)."""
        ...

    @abstractmethod
    async def purge_epochs_below(self, floor_epoch: int) -> int:
        """Delete every binding with epoch < floor_epoch. Returns rows removed."""
        ...

    @abstractmethod
    async def latest_epoch(self) -> int | None:
        """Highest epoch stored, None when empty."""
        ...

    @abstractmethod
    async def count_bindings(self) -> int:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...
