"""
In-memory storage backends — for testing.

Dict-based, same contracts as the SQLite backends. Data lost when the
process exits.
"""

from __future__ import annotations

import asyncio
import dataclasses
from typing import Iterable

from notifybot.core.errors import NotFoundError
from notifybot.ephemeral.scheme import EpochScheme
from notifybot.store.base import EphemeralStore, RegistrationStore
from notifybot.store.models import EphemeralBinding, Registration


class InMemoryRegistrationStore(RegistrationStore):
    """
    Usage:
        store = InMemoryRegistrationStore(EpochScheme())
        reg = await store.upsert_registration(iid, pubkey, sig, "token")
        assert await store.get_registration(reg.identity_hash) == reg
    """

    def __init__(self, scheme: EpochScheme) -> None:
        super().__init__(scheme)
        self._rows: dict[bytes, Registration] = {}
        self._lock = asyncio.Lock()

    async def _upsert(self, registration: Registration) -> Registration:
        async with self._lock:
            existing = self._rows.get(registration.identity_hash)
            if existing is None:
                self._rows[registration.identity_hash] = registration
                return dataclasses.replace(registration)
            if existing.token != registration.token:
                existing.token = registration.token
                existing.updated_at = registration.updated_at
            return dataclasses.replace(existing)

    async def get_registration(self, identity_hash: bytes) -> Registration | None:
        row = self._rows.get(identity_hash)
        return dataclasses.replace(row) if row else None

    async def get_registrations(self, identity_hashes: Iterable[bytes]) -> dict[bytes, Registration]:
        return {
            h: dataclasses.replace(self._rows[h])
            for h in set(identity_hashes)
            if h in self._rows
        }

    async def delete_registration(self, identity_hash: bytes) -> None:
        async with self._lock:
            if self._rows.pop(identity_hash, None) is None:
                raise NotFoundError(f"No registration with hash {identity_hash.hex()}")

    async def list_registrations(self, offset_buckets: Iterable[int] | None = None) -> list[Registration]:
        buckets = set(offset_buckets) if offset_buckets is not None else None
        return [
            dataclasses.replace(r)
            for _, r in sorted(self._rows.items())
            if buckets is None or r.offset_bucket in buckets
        ]

    async def count_registrations(self) -> int:
        return len(self._rows)

    async def close(self) -> None:
        self._rows.clear()


class InMemoryEphemeralStore(EphemeralStore):
    """Bindings keyed by (identity_hash, epoch)."""

    def __init__(self) -> None:
        self._rows: dict[tuple[bytes, int], EphemeralBinding] = {}
        self._lock = asyncio.Lock()

    async def upsert_bindings(self, bindings: list[EphemeralBinding]) -> None:
        async with self._lock:
            for b in bindings:
                self._rows[(b.identity_hash, b.epoch)] = b

    async def get_bindings(self, ephemeral_ids: Iterable[int]) -> dict[int, list[EphemeralBinding]]:
        wanted = set(ephemeral_ids)
        result: dict[int, list[EphemeralBinding]] = {}
        for key in sorted(self._rows):
            b = self._rows[key]
            if b.ephemeral_id in wanted:
                result.setdefault(b.ephemeral_id, []).append(b)
        return result

    async def list_bindings(
        self,
        identity_hash: bytes | None = None,
        min_epoch: int | None = None,
    ) -> list[EphemeralBinding]:
        return [
            self._rows[key]
            for key in sorted(self._rows)
            if (identity_hash is None or key[0] == identity_hash)
            and (min_epoch is None or key[1] >= min_epoch)
        ]

    async def purge_epochs_below(self, floor_epoch: int) -> int:
        async with self._lock:
            stale = [key for key in self._rows if key[1] < floor_epoch]
            for key in stale:
                del self._rows[key]
            return len(stale)

    async def latest_epoch(self) -> int | None:
        return max((key[1] for key in self._rows), default=None)

    async def count_bindings(self) -> int:
        return len(self._rows)

    async def close(self) -> None:
        self._rows.clear()


def memory_stores(scheme: EpochScheme) -> tuple[InMemoryRegistrationStore, InMemoryEphemeralStore]:
    """Convenience pair for tests and the `memory` storage backend."""
    return InMemoryRegistrationStore(scheme), InMemoryEphemeralStore()
