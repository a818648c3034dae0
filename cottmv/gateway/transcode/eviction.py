import asyncio
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from pathlib import Path

from loguru import logger

from cottmv.gateway.metrics import log_event
from cottmv.gateway.transcode.index import CacheEntry, CacheIndex, EntryStatus
from cottmv.gateway.transcode.keys import CacheKey, partial_path_for
from cottmv.gateway.transcode.profiles import OutputFormat, format_params

CACHE_FILE_SUFFIXES = {f".{format_params(fmt).extension}" for fmt in OutputFormat}


class EvictionIOError(Exception):
    """A single cache file could not be removed. Collected, never raised out of a sweep."""

    def __init__(self, path: Path, cause: OSError) -> None:
        super().__init__(f"Failed to delete {path}: {cause}")
        self.path = path
        self.cause = cause


@dataclass
class CleanupResult:
    files_deleted: int = 0
    bytes_freed: int = 0
    expired: int = 0
    evicted: int = 0
    orphans: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


class CacheEvictor:
    """Enforces TTL and the size quota on the transcode cache.

    Entries owned by an in-flight job are never touched; `is_active` is usually
    `TranscodeCoordinator.is_active`.
    """

    def __init__(
        self,
        index: CacheIndex,
        cache_dir: Path,
        is_active: Callable[[CacheKey], bool] = lambda key: False,
        stray_file_age: float = 900.0,
        clock: Callable[[], float] = time.time,
    ):
        self.index = index
        self.cache_dir = Path(cache_dir)
        self.is_active = is_active
        self.stray_file_age = stray_file_age
        self.clock = clock
        self._lock = asyncio.Lock()

    async def run_cleanup(self, max_size_bytes: int, ttl_seconds: float | None = None) -> CleanupResult:
        async with self._lock:
            result = CleanupResult()
            now = self.clock()
            await self._remove_expired(now, ttl_seconds, result)
            await self._enforce_quota(max_size_bytes, result)
            await self._remove_stray_files(now, result)

        if result.files_deleted or result.errors:
            logger.info(
                f"Cache cleanup: {result.files_deleted} files deleted, {result.bytes_freed} bytes freed "
                f"({result.expired} expired, {result.evicted} evicted, {result.orphans} orphans, "
                f"{len(result.errors)} errors)"
            )
        await log_event("cache_cleanup", data=result.to_dict())
        return result

    async def purge_source(self, source_hash: str) -> CleanupResult:
        """Drop every rendition of one source, e.g. when the media is deleted."""
        async with self._lock:
            result = CleanupResult()
            for entry in await self.index.list_for_source(source_hash):
                if await self._delete_entry(entry, result):
                    result.evicted += 1
        if result.evicted:
            logger.info(f"Purged {result.evicted} cache entries for source {source_hash[:12]}")
        return result

    async def run_periodic(self, interval: float, max_size_bytes: int, ttl_seconds: float | None = None) -> None:
        """Sweep every `interval` seconds until cancelled."""
        while True:
            await asyncio.sleep(interval)
            try:
                await self.run_cleanup(max_size_bytes, ttl_seconds)
            except Exception:
                logger.exception("Periodic cache cleanup failed")

    async def _remove_expired(self, now: float, ttl_seconds: float | None, result: CleanupResult) -> None:
        candidates = {entry.key: entry for entry in await self.index.list_expired(now)}
        if ttl_seconds is not None:
            for entry in await self.index.list_by_least_recently_accessed():
                if entry.created_at + ttl_seconds <= now:
                    candidates.setdefault(entry.key, entry)

        for entry in candidates.values():
            if await self._delete_entry(entry, result):
                if entry.status == EntryStatus.PENDING:
                    result.orphans += 1
                else:
                    result.expired += 1

    async def _enforce_quota(self, max_size_bytes: int, result: CleanupResult) -> None:
        lru = await self.index.list_by_least_recently_accessed()
        total = sum(entry.size_bytes for entry in lru)
        if total <= max_size_bytes:
            return
        logger.info(f"Cache over quota: {total} > {max_size_bytes} bytes")
        for entry in lru:
            if total <= max_size_bytes:
                break
            if await self._delete_entry(entry, result):
                total -= entry.size_bytes
                result.evicted += 1

    async def _delete_entry(self, entry: CacheEntry, result: CleanupResult) -> bool:
        """Delete the entry's file(s), then its record. Keeps the record if a file could not be removed.

        `entry` comes from a listing taken earlier in the sweep. The row is read
        again and the candidate skipped when a job now owns the key or has
        replaced the row since; nothing awaits between that check and the
        unlinks, so no job can start in between.
        """
        current = await self.index.get(entry.key)
        if current is None or not current.same_generation(entry) or self.is_active(entry.key):
            logger.debug(f"Skipping eviction of {entry.key}: entry changed or job in flight")
            return False
        path = Path(entry.file_path)
        paths = [path] if entry.status == EntryStatus.READY else [path, partial_path_for(path)]
        freed = 0
        for p in paths:
            try:
                size = p.stat().st_size
                p.unlink()
            except FileNotFoundError:
                continue
            except OSError as e:
                error = EvictionIOError(p, e)
                logger.warning(str(error))
                result.errors.append(str(error))
                return False
            result.files_deleted += 1
            freed += entry.size_bytes if entry.status == EntryStatus.READY else size

        if not await self.index.remove_entry(current):
            logger.debug(f"Cache entry {entry.key} was replaced while its files were being removed")
        result.bytes_freed += freed
        return True

    async def _remove_stray_files(self, now: float, result: CleanupResult) -> None:
        """Delete cache files no entry refers to, once they are older than any job could be."""
        if not self.cache_dir.is_dir():
            return
        referenced: set[str] = set()
        for entry in await self.index.list_all():
            path = Path(entry.file_path)
            referenced.update((path.name, partial_path_for(path).name))

        for path in self.cache_dir.iterdir():
            if path.suffix not in CACHE_FILE_SUFFIXES or path.name in referenced:
                continue
            try:
                stat = path.stat()
                if not path.is_file() or now - stat.st_mtime < self.stray_file_age:
                    continue
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as e:
                error = EvictionIOError(path, e)
                logger.warning(str(error))
                result.errors.append(str(error))
                continue
            logger.info(f"Deleted stray cache file {path.name}")
            result.files_deleted += 1
            result.bytes_freed += stat.st_size
            result.orphans += 1
