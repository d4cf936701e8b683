"""
SQLite storage backends.

Uses aiosqlite for async SQLite access. Both tables live in one database
file behind a shared SQLiteDatabase; writes are serialised with an asyncio
lock so one coroutine's commit never publishes another's half-done work.
WAL mode lets reads proceed while the rotation writes.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Iterable

import aiosqlite

from notifybot.core.errors import NotFoundError, StorageError
from notifybot.ephemeral.scheme import EpochScheme
from notifybot.store.base import EphemeralStore, RegistrationStore
from notifybot.store.models import EphemeralBinding, Registration

logger = logging.getLogger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS registrations (
        identity_hash BLOB PRIMARY KEY,
        identity_id   BLOB NOT NULL,
        public_key    BLOB NOT NULL,
        signature     BLOB NOT NULL,
        offset_bucket INTEGER NOT NULL,
        token         TEXT NOT NULL,
        created_at    INTEGER NOT NULL,
        updated_at    INTEGER NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_registrations_bucket ON registrations(offset_bucket)",
    """
    CREATE TABLE IF NOT EXISTS ephemerals (
        identity_hash BLOB NOT NULL,
        epoch         INTEGER NOT NULL,
        ephemeral_id  INTEGER NOT NULL,
        offset_bucket INTEGER NOT NULL,
        PRIMARY KEY (identity_hash, epoch)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_ephemerals_eid ON ephemerals(ephemeral_id)",
    "CREATE INDEX IF NOT EXISTS idx_ephemerals_epoch ON ephemerals(epoch)",
)

# SQLite caps bound parameters per statement
_CHUNK = 500


def _chunks(items: list, size: int = _CHUNK) -> Iterable[list]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


class SQLiteDatabase:
    """
    One aiosqlite connection shared by both stores.

    Usage:
        db = SQLiteDatabase("~/.notifybot/notifybot.db")
        await db.initialize()
        registrations = SQLiteRegistrationStore(db, scheme)
        ephemerals = SQLiteEphemeralStore(db)
    """

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = Path(db_path).expanduser()
        self._db: aiosqlite.Connection | None = None
        self.write_lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._db_path

    async def initialize(self) -> None:
        """Open the database and create tables."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._db = await aiosqlite.connect(str(self._db_path))
            self._db.row_factory = aiosqlite.Row
            await self._db.execute("PRAGMA journal_mode=WAL")
            await self._db.execute("PRAGMA synchronous=NORMAL")
            for statement in _SCHEMA:
                await self._db.execute(statement)
            await self._db.commit()
            logger.debug(f"SQLite storage initialized at {self._db_path}")
        except Exception as e:
            raise StorageError(f"Failed to initialize SQLite at {self._db_path}: {e}") from e

    async def connection(self) -> aiosqlite.Connection:
        if self._db is None:
            await self.initialize()
        return self._db  # type: ignore[return-value]

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None


class SQLiteRegistrationStore(RegistrationStore):
    """Registrations table on a SQLiteDatabase."""

    def __init__(self, db: SQLiteDatabase, scheme: EpochScheme) -> None:
        super().__init__(scheme)
        self._database = db

    async def _upsert(self, registration: Registration) -> Registration:
        db = await self._database.connection()
        try:
            async with self._database.write_lock:
                await db.execute(
                    """
                    INSERT INTO registrations (identity_hash, identity_id, public_key,
                        signature, offset_bucket, token, created_at, updated_at)
                    VALUES (:identity_hash, :identity_id, :public_key,
                        :signature, :offset_bucket, :token, :created_at, :updated_at)
                    ON CONFLICT(identity_hash) DO UPDATE SET
                        token = excluded.token, updated_at = excluded.updated_at
                    WHERE registrations.token != excluded.token
                    """,
                    {
                        "identity_hash": registration.identity_hash,
                        "identity_id": registration.identity_id,
                        "public_key": registration.public_key,
                        "signature": registration.signature,
                        "offset_bucket": registration.offset_bucket,
                        "token": registration.token,
                        "created_at": registration.created_at,
                        "updated_at": registration.updated_at,
                    },
                )
                await db.commit()
        except Exception as e:
            raise StorageError(
                f"Failed to upsert registration {registration.identity_hash.hex()}: {e}"
            ) from e
        stored = await self.get_registration(registration.identity_hash)
        if stored is None:
            raise StorageError(f"Registration {registration.identity_hash.hex()} vanished after upsert")
        return stored

    async def get_registration(self, identity_hash: bytes) -> Registration | None:
        db = await self._database.connection()
        try:
            async with db.execute(
                "SELECT * FROM registrations WHERE identity_hash = ?", (identity_hash,)
            ) as cursor:
                row = await cursor.fetchone()
        except Exception as e:
            raise StorageError(f"Failed to get registration {identity_hash.hex()}: {e}") from e
        return _row_to_registration(row) if row else None

    async def get_registrations(self, identity_hashes: Iterable[bytes]) -> dict[bytes, Registration]:
        hashes = list(set(identity_hashes))
        db = await self._database.connection()
        result: dict[bytes, Registration] = {}
        try:
            for chunk in _chunks(hashes):
                marks = ",".join("?" * len(chunk))
                async with db.execute(
                    f"SELECT * FROM registrations WHERE identity_hash IN ({marks})", chunk
                ) as cursor:
                    for row in await cursor.fetchall():
                        reg = _row_to_registration(row)
                        result[reg.identity_hash] = reg
        except Exception as e:
            raise StorageError(f"Failed to get {len(hashes)} registrations: {e}") from e
        return result

    async def delete_registration(self, identity_hash: bytes) -> None:
        db = await self._database.connection()
        try:
            async with self._database.write_lock:
                cursor = await db.execute(
                    "DELETE FROM registrations WHERE identity_hash = ?", (identity_hash,)
                )
                await db.commit()
        except Exception as e:
            raise StorageError(f"Failed to delete registration {identity_hash.hex()}: {e}") from e
        if cursor.rowcount < 1:
            raise NotFoundError(f"No registration with hash {identity_hash.hex()}")

    async def list_registrations(self, offset_buckets: Iterable[int] | None = None) -> list[Registration]:
        db = await self._database.connection()
        try:
            if offset_buckets is None:
                async with db.execute(
                    "SELECT * FROM registrations ORDER BY identity_hash"
                ) as cursor:
                    rows = list(await cursor.fetchall())
            else:
                rows = []
                for chunk in _chunks(sorted(set(offset_buckets))):
                    marks = ",".join("?" * len(chunk))
                    async with db.execute(
                        f"SELECT * FROM registrations WHERE offset_bucket IN ({marks})", chunk
                    ) as cursor:
                        rows.extend(await cursor.fetchall())
        except Exception as e:
            raise StorageError(f"Failed to list registrations: {e}") from e
        return sorted((_row_to_registration(r) for r in rows), key=lambda r: r.identity_hash)

    async def count_registrations(self) -> int:
        db = await self._database.connection()
        try:
            async with db.execute("SELECT COUNT(*) FROM registrations") as cursor:
                row = await cursor.fetchone()
        except Exception as e:
            raise StorageError(f"Failed to count registrations: {e}") from e
        return row[0]

    async def close(self) -> None:
        await self._database.close()


class SQLiteEphemeralStore(EphemeralStore):
    """Ephemerals table on a SQLiteDatabase."""

    def __init__(self, db: SQLiteDatabase) -> None:
        self._database = db

    async def upsert_bindings(self, bindings: list[EphemeralBinding]) -> None:
        if not bindings:
            return
        db = await self._database.connection()
        try:
            async with self._database.write_lock:
                await db.executemany(
                    """
                    INSERT INTO ephemerals (identity_hash, epoch, ephemeral_id, offset_bucket)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(identity_hash, epoch) DO UPDATE SET
                        ephemeral_id = excluded.ephemeral_id,
                        offset_bucket = excluded.offset_bucket
                    """,
                    [(b.identity_hash, b.epoch, b.ephemeral_id, b.offset_bucket) for b in bindings],
                )
                await db.commit()
        except Exception as e:
            raise StorageError(f"Failed to upsert {len(bindings)} ephemeral bindings: {e}") from e

    async def get_bindings(self, ephemeral_ids: Iterable[int]) -> dict[int, list[EphemeralBinding]]:
        ids = sorted(set(ephemeral_ids))
        db = await self._database.connection()
        result: dict[int, list[EphemeralBinding]] = {}
        try:
            for chunk in _chunks(ids):
                marks = ",".join("?" * len(chunk))
                async with db.execute(
                    f"SELECT * FROM ephemerals WHERE ephemeral_id IN ({marks}) "
                    "ORDER BY identity_hash, epoch",
                    chunk,
                ) as cursor:
                    for row in await cursor.fetchall():
                        b = _row_to_binding(row)
                        result.setdefault(b.ephemeral_id, []).append(b)
        except Exception as e:
            raise StorageError(f"Failed to look up {len(ids)} ephemeral IDs: {e}") from e
        return result

    async def list_bindings(
        self,
        identity_hash: bytes | None = None,
        min_epoch: int | None = None,
    ) -> list[EphemeralBinding]:
        clauses: list[str] = []
        params: list = []
        if identity_hash is not None:
            clauses.append("identity_hash = ?")
            params.append(identity_hash)
        if min_epoch is not None:
            clauses.append("epoch >= ?")
            params.append(min_epoch)
        q = "SELECT * FROM ephemerals"
        if clauses:
            q += " WHERE " + " AND ".join(clauses)
        q += " ORDER BY identity_hash, epoch"
        db = await self._database.connection()
        try:
            async with db.execute(q, params) as cursor:
                rows = await cursor.fetchall()
        except Exception as e:
            raise StorageError(f"Failed to list ephemeral bindings: {e}") from e
        return [_row_to_binding(r) for r in rows]

    async def purge_epochs_below(self, floor_epoch: int) -> int:
        db = await self._database.connection()
        try:
            async with self._database.write_lock:
                cursor = await db.execute("DELETE FROM ephemerals WHERE epoch < ?", (floor_epoch,))
                await db.commit()
        except Exception as e:
            raise StorageError(f"Failed to purge epochs below {floor_epoch}: {e}") from e
        return cursor.rowcount

    async def latest_epoch(self) -> int | None:
        db = await self._database.connection()
        try:
            async with db.execute("SELECT MAX(epoch) FROM ephemerals") as cursor:
                row = await cursor.fetchone()
        except Exception as e:
            raise StorageError(f"Failed to read latest epoch: {e}") from e
        return row[0] if row else None

    async def count_bindings(self) -> int:
        db = await self._database.connection()
        try:
            async with db.execute("SELECT COUNT(*) FROM ephemerals") as cursor:
                row = await cursor.fetchone()
        except Exception as e:
            raise StorageError(f"Failed to count ephemeral bindings: {e}") from e
        return row[0]

    async def close(self) -> None:
        await self._database.close()


async def sqlite_stores(
    db_path: str | Path, scheme: EpochScheme
) -> tuple[SQLiteRegistrationStore, SQLiteEphemeralStore]:
    """Open one database and return both stores on it."""
    db = SQLiteDatabase(db_path)
    await db.initialize()
    return SQLiteRegistrationStore(db, scheme), SQLiteEphemeralStore(db)


# ── Helpers ───────────────────────────────────────────────────────────────────


def _row_to_registration(row: aiosqlite.Row) -> Registration:
    return Registration(
        identity_hash=bytes(row["identity_hash"]),
        identity_id=bytes(row["identity_id"]),
        public_key=bytes(row["public_key"]),
        signature=bytes(row["signature"]),
        offset_bucket=row["offset_bucket"],
        token=row["token"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_binding(row: aiosqlite.Row) -> EphemeralBinding:
    return EphemeralBinding(
        identity_hash=bytes(row["identity_hash"]),
        ephemeral_id=row["ephemeral_id"],
        epoch=row["epoch"],
        offset_bucket=row["offset_bucket"],
    )
