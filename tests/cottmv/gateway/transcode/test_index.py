"""Tests for the SQLite-backed cache metadata index."""

import pytest

from cottmv.gateway.hashing import calculate_source_hash
from cottmv.gateway.transcode.index import CacheEntry, CacheIndex, EntryStatus
from cottmv.gateway.transcode.keys import CacheKey
from cottmv.gateway.transcode.profiles import OutputFormat, Quality


def make_entry(key: CacheKey, status=EntryStatus.READY, size=100, created=1000.0, accessed=None, expires=None):
    return CacheEntry.for_key(
        key,
        status=status,
        file_path=f"/cache/{key.source_hash}_{key.quality}.{key.format}",
        size_bytes=size,
        created_at=created,
        last_accessed_at=accessed if accessed is not None else created,
        expires_at=expires if expires is not None else created + 86400,
    )


def other_key(n: int, quality=Quality.P720) -> CacheKey:
    return CacheKey(source_hash=calculate_source_hash(f"source-{n}"), quality=quality, format=OutputFormat.MP4)


class TestBasicOperations:
    @pytest.mark.asyncio
    async def test_put_and_get(self, index, key):
        entry = make_entry(key)
        await index.put(entry)
        assert await index.get(key) == entry

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, index, key):
        assert await index.get(key) is None

    @pytest.mark.asyncio
    async def test_put_replaces_last_writer_wins(self, index, key):
        await index.put(make_entry(key, status=EntryStatus.PENDING, size=0))
        await index.put(make_entry(key, status=EntryStatus.READY, size=4096))

        stored = await index.get(key)
        assert stored.status == EntryStatus.READY
        assert stored.size_bytes == 4096
        assert len(await index.list_all()) == 1

    @pytest.mark.asyncio
    async def test_remove(self, index, key):
        await index.put(make_entry(key))
        assert await index.remove(key)
        assert await index.get(key) is None
        assert not await index.remove(key)

    @pytest.mark.asyncio
    async def test_remove_entry_only_removes_same_generation(self, index, key):
        failed = make_entry(key, status=EntryStatus.FAILED, size=0, created=1000.0)
        await index.put(failed)
        retried = make_entry(key, status=EntryStatus.READY, size=4096, created=2000.0)
        await index.put(retried)

        assert not await index.remove_entry(failed)
        assert await index.get(key) == retried

        touched = retried.model_copy(update={"last_accessed_at": 9999.0})
        assert touched.same_generation(retried)
        assert await index.remove_entry(touched)
        assert await index.get(key) is None

    @pytest.mark.asyncio
    async def test_touch_updates_last_accessed_only(self, index, key):
        await index.put(make_entry(key, created=1000.0, expires=5000.0))
        await index.touch(key, now=2500.0)

        stored = await index.get(key)
        assert stored.last_accessed_at == 2500.0
        assert stored.expires_at == 5000.0

    @pytest.mark.asyncio
    async def test_failed_entry_keeps_message(self, index, key):
        entry = make_entry(key, status=EntryStatus.FAILED, size=0).model_copy(
            update={"error_message": "ffmpeg exited with code 1"}
        )
        await index.put(entry)
        assert (await index.get(key)).error_message == "ffmpeg exited with code 1"

    @pytest.mark.asyncio
    async def test_survives_reopen(self, tmp_path, key):
        db_path = tmp_path / "reopen.db"
        first = CacheIndex(db_path)
        await first.open()
        await first.put(make_entry(key))
        await first.close()

        second = CacheIndex(db_path)
        await second.open()
        try:
            assert await second.get(key) is not None
        finally:
            await second.close()

    @pytest.mark.asyncio
    async def test_closed_index_raises(self, tmp_path, key):
        with pytest.raises(RuntimeError):
            await CacheIndex(tmp_path / "never.db").get(key)


class TestQueries:
    @pytest.mark.asyncio
    async def test_list_expired(self, index):
        fresh, stale = other_key(1), other_key(2)
        await index.put(make_entry(fresh, expires=10_000.0))
        await index.put(make_entry(stale, expires=2_000.0))

        expired = await index.list_expired(now=5_000.0)
        assert [e.key for e in expired] == [stale]

    @pytest.mark.asyncio
    async def test_lru_order_ready_only(self, index):
        a, b, c, pending = other_key(1), other_key(2), other_key(3), other_key(4)
        await index.put(make_entry(a, accessed=3000.0))
        await index.put(make_entry(b, accessed=1000.0))
        await index.put(make_entry(c, accessed=2000.0))
        await index.put(make_entry(pending, status=EntryStatus.PENDING, accessed=10.0))

        lru = await index.list_by_least_recently_accessed()
        assert [e.key for e in lru] == [b, c, a]

    @pytest.mark.asyncio
    async def test_list_for_source(self, index):
        k720, k1080, unrelated = other_key(1), other_key(1, Quality.P1080), other_key(2)
        for k in (k720, k1080, unrelated):
            await index.put(make_entry(k))

        found = {e.key for e in await index.list_for_source(k720.source_hash)}
        assert found == {k720, k1080}

    @pytest.mark.asyncio
    async def test_reclaim_orphans_drops_old_pending_only(self, index):
        old_pending, new_pending, old_ready = other_key(1), other_key(2), other_key(3)
        await index.put(make_entry(old_pending, status=EntryStatus.PENDING, created=1000.0))
        await index.put(make_entry(new_pending, status=EntryStatus.PENDING, created=9500.0))
        await index.put(make_entry(old_ready, created=1000.0))

        assert await index.reclaim_orphans(now=10_000.0, max_age=900) == 1
        assert await index.get(old_pending) is None
        assert await index.get(new_pending) is not None
        assert await index.get(old_ready) is not None

    @pytest.mark.asyncio
    async def test_stats(self, index):
        await index.put(make_entry(other_key(1), size=300, accessed=1000.0))
        await index.put(make_entry(other_key(2), size=700, accessed=4000.0, expires=1500.0))
        await index.put(make_entry(other_key(3), status=EntryStatus.PENDING, size=0, accessed=2000.0))
        await index.put(make_entry(other_key(4), status=EntryStatus.FAILED, size=0, accessed=3000.0))

        stats = await index.get_stats(now=2000.0)
        assert stats.total_entries == 4
        assert stats.ready_entries == 2
        assert stats.pending_entries == 1
        assert stats.failed_entries == 1
        assert stats.expired_entries == 1
        assert stats.total_size_bytes == 1000
        assert stats.oldest_access_at == 1000.0
        assert stats.newest_access_at == 4000.0

    @pytest.mark.asyncio
    async def test_stats_empty(self, index):
        stats = await index.get_stats(now=0.0)
        assert stats.total_entries == 0
        assert stats.total_size_bytes == 0
        assert stats.oldest_access_at is None
