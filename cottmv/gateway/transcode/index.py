import time
from enum import StrEnum, auto
from pathlib import Path

import aiosqlite
from loguru import logger
from pydantic import BaseModel

from cottmv.gateway.transcode.keys import CacheKey
from cottmv.gateway.transcode.profiles import OutputFormat, Quality


class EntryStatus(StrEnum):
    PENDING = auto()
    READY = auto()
    FAILED = auto()


class CacheEntry(BaseModel):
    source_hash: str
    quality: Quality
    format: OutputFormat
    status: EntryStatus
    file_path: str
    size_bytes: int = 0
    created_at: float
    last_accessed_at: float
    expires_at: float
    error_message: str | None = None

    @property
    def key(self) -> CacheKey:
        return CacheKey(source_hash=self.source_hash, quality=self.quality, format=self.format)

    @classmethod
    def for_key(cls, key: CacheKey, **fields) -> "CacheEntry":
        return cls(source_hash=key.source_hash, quality=key.quality, format=key.format, **fields)

    def is_expired(self, now: float) -> bool:
        return self.expires_at <= now

    def same_generation(self, other: "CacheEntry") -> bool:
        """Whether both describe the same job outcome for the key, ignoring access time."""
        return (self.status, self.created_at, self.file_path) == (other.status, other.created_at, other.file_path)


class CacheStats(BaseModel):
    total_entries: int
    ready_entries: int
    pending_entries: int
    failed_entries: int
    expired_entries: int
    total_size_bytes: int
    oldest_access_at: float | None
    newest_access_at: float | None


_COLUMNS = (
    "source_hash, quality, format, status, file_path, size_bytes, "
    "created_at, last_accessed_at, expires_at, error_message"
)


def _row_to_entry(row: aiosqlite.Row) -> CacheEntry:
    return CacheEntry(
        source_hash=row["source_hash"],
        quality=row["quality"],
        format=row["format"],
        status=row["status"],
        file_path=row["file_path"],
        size_bytes=row["size_bytes"],
        created_at=row["created_at"],
        last_accessed_at=row["last_accessed_at"],
        expires_at=row["expires_at"],
        error_message=row["error_message"],
    )


class CacheIndex:
    """Durable record of transcode cache entries, one row per CacheKey.

    Single-row writes only; the last writer wins. The database lives next to the
    cached files unless an explicit path is given.
    """

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)
        self._db: aiosqlite.Connection | None = None

    async def open(self) -> None:
        if self._db is not None:
            return
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute(
            """
            CREATE TABLE IF NOT EXISTS transcode_cache (
                key TEXT PRIMARY KEY,
                source_hash TEXT NOT NULL,
                quality TEXT NOT NULL,
                format TEXT NOT NULL,
                status TEXT NOT NULL,
                file_path TEXT NOT NULL,
                size_bytes INTEGER NOT NULL DEFAULT 0,
                created_at REAL NOT NULL,
                last_accessed_at REAL NOT NULL,
                expires_at REAL NOT NULL,
                error_message TEXT
            )
            """
        )
        await self._db.execute("CREATE INDEX IF NOT EXISTS idx_tc_expires ON transcode_cache(expires_at)")
        await self._db.execute("CREATE INDEX IF NOT EXISTS idx_tc_accessed ON transcode_cache(last_accessed_at)")
        await self._db.execute("CREATE INDEX IF NOT EXISTS idx_tc_source ON transcode_cache(source_hash)")
        await self._db.commit()

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("CacheIndex is not open")
        return self._db

    async def get(self, key: CacheKey) -> CacheEntry | None:
        async with self.db.execute(
            f"SELECT {_COLUMNS} FROM transcode_cache WHERE key = ?", (key.serialize(),)
        ) as cur:
            row = await cur.fetchone()
        return _row_to_entry(row) if row else None

    async def put(self, entry: CacheEntry) -> None:
        await self.db.execute(
            f"REPLACE INTO transcode_cache (key, {_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                entry.key.serialize(),
                entry.source_hash,
                str(entry.quality),
                str(entry.format),
                str(entry.status),
                entry.file_path,
                entry.size_bytes,
                entry.created_at,
                entry.last_accessed_at,
                entry.expires_at,
                entry.error_message,
            ),
        )
        await self.db.commit()

    async def remove(self, key: CacheKey) -> bool:
        cur = await self.db.execute("DELETE FROM transcode_cache WHERE key = ?", (key.serialize(),))
        await self.db.commit()
        return cur.rowcount > 0

    async def remove_entry(self, entry: CacheEntry) -> bool:
        """Delete the row only if it still holds `entry`'s generation. False if a job replaced it."""
        cur = await self.db.execute(
            "DELETE FROM transcode_cache WHERE key = ? AND status = ? AND created_at = ? AND file_path = ?",
            (entry.key.serialize(), str(entry.status), entry.created_at, entry.file_path),
        )
        await self.db.commit()
        return cur.rowcount > 0

    async def touch(self, key: CacheKey, now: float | None = None) -> None:
        """Record a served hit for LRU ordering."""
        await self.db.execute(
            "UPDATE transcode_cache SET last_accessed_at = ? WHERE key = ?",
            (now if now is not None else time.time(), key.serialize()),
        )
        await self.db.commit()

    async def _select(self, where: str = "", params: tuple = (), order: str = "") -> list[CacheEntry]:
        sql = f"SELECT {_COLUMNS} FROM transcode_cache"
        if where:
            sql += f" WHERE {where}"
        if order:
            sql += f" ORDER BY {order}"
        async with self.db.execute(sql, params) as cur:
            rows = await cur.fetchall()
        return [_row_to_entry(row) for row in rows]

    async def list_all(self) -> list[CacheEntry]:
        return await self._select(order="created_at")

    async def list_expired(self, now: float) -> list[CacheEntry]:
        return await self._select("expires_at <= ?", (now,), order="expires_at")

    async def list_by_least_recently_accessed(self) -> list[CacheEntry]:
        """Ready entries, oldest access first."""
        return await self._select("status = ?", (str(EntryStatus.READY),), order="last_accessed_at, created_at")

    async def list_for_source(self, source_hash: str) -> list[CacheEntry]:
        return await self._select("source_hash = ?", (source_hash,))

    async def reclaim_orphans(self, now: float, max_age: float) -> int:
        """Drop pending rows older than `max_age`; their job is gone."""
        cur = await self.db.execute(
            "DELETE FROM transcode_cache WHERE status = ? AND created_at <= ?",
            (str(EntryStatus.PENDING), now - max_age),
        )
        await self.db.commit()
        if cur.rowcount:
            logger.info(f"Reclaimed {cur.rowcount} orphaned pending cache entries")
        return cur.rowcount

    async def get_stats(self, now: float | None = None) -> CacheStats:
        now = now if now is not None else time.time()
        async with self.db.execute(
            """
            SELECT
                COUNT(*) AS total,
                SUM(CASE WHEN status = 'ready' THEN 1 ELSE 0 END) AS ready,
                SUM(CASE WHEN status = 'pending' THEN 1 ELSE 0 END) AS pending,
                SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END) AS failed,
                SUM(CASE WHEN expires_at <= ? THEN 1 ELSE 0 END) AS expired,
                COALESCE(SUM(CASE WHEN status = 'ready' THEN size_bytes ELSE 0 END), 0) AS size,
                MIN(last_accessed_at) AS oldest,
                MAX(last_accessed_at) AS newest
            FROM transcode_cache
            """,
            (now,),
        ) as cur:
            row = await cur.fetchone()
        return CacheStats(
            total_entries=row["total"] or 0,
            ready_entries=row["ready"] or 0,
            pending_entries=row["pending"] or 0,
            failed_entries=row["failed"] or 0,
            expired_entries=row["expired"] or 0,
            total_size_bytes=row["size"] or 0,
            oldest_access_at=row["oldest"],
            newest_access_at=row["newest"],
        )
