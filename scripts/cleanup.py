"""Transcode cache cleanup, for cron or manual runs.

    python scripts/cleanup.py
    python scripts/cleanup.py --max-size-gb 50 --ttl-hours 72

Hourly via cron:
    0 * * * * cd /path/to/cottmv && .venv/bin/python scripts/cleanup.py

Reads the same settings (env / .env) as the gateway. This process cannot see the
gateway's job table, so it relies on pending entries: a job's wall-clock budget
starts when its pending entry is written, queue time included, and the entry
expires when that budget runs out. A pending entry is therefore only treated as
orphaned once its job has been told to stop. The job may still spend up to the
runner's kill grace period shutting FFmpeg down, and a partial file removed in
that window is one the job was about to discard anyway.

Each candidate is re-read just before its files are removed and its row is only
deleted if unchanged, so a retry the gateway finishes mid-sweep keeps its new
rendition.
"""

import argparse
import asyncio
import sys
import time

from cottmv.gateway.config import Settings
from cottmv.gateway.transcode.eviction import CacheEvictor
from cottmv.gateway.transcode.index import CacheIndex


def format_bytes(n: float) -> str:
    for unit in ("B", "KB", "MB", "GB"):
        if abs(n) < 1024:
            return f"{n:.1f} {unit}"
        n /= 1024
    return f"{n:.1f} TB"


def format_duration(seconds: float) -> str:
    if seconds < 3600:
        return f"{seconds / 60:.0f}m"
    if seconds < 86400:
        return f"{seconds / 3600:.1f}h"
    return f"{seconds / 86400:.1f}d"


async def run(args: argparse.Namespace) -> int:
    settings = Settings()  # type: ignore
    max_size_gb = args.max_size_gb if args.max_size_gb is not None else settings.cache_max_size_gb
    ttl_hours = args.ttl_hours if args.ttl_hours is not None else settings.cache_ttl_hours

    print(f"Cache directory: {settings.cache_dir}")
    print(f"Max size:        {max_size_gb} GB")
    print(f"TTL:             {ttl_hours} hours\n")

    index = CacheIndex(settings.resolved_cache_index_path)
    await index.open()
    try:
        before = await index.get_stats()
        print(f"Entries: {before.total_entries} ({before.ready_entries} ready, {before.pending_entries} pending)")
        print(f"Size:    {format_bytes(before.total_size_bytes)}")
        if before.oldest_access_at is not None:
            print(f"Oldest access: {format_duration(time.time() - before.oldest_access_at)} ago")
        print()

        evictor = CacheEvictor(index, settings.cache_dir, stray_file_age=settings.transcode_timeout_seconds)
        result = await evictor.run_cleanup(int(max_size_gb * 1024**3), ttl_hours * 3600)

        print(f"Files deleted: {result.files_deleted}")
        print(f"Space freed:   {format_bytes(result.bytes_freed)}")
        print(f"Expired: {result.expired}  LRU: {result.evicted}  Orphans: {result.orphans}")
        for error in result.errors:
            print(f"  error: {error}", file=sys.stderr)

        after = await index.get_stats()
        print(f"\nSize after cleanup: {format_bytes(after.total_size_bytes)} in {after.ready_entries} files")
    finally:
        await index.close()
    return 1 if result.errors else 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Clean up the CottMV transcode cache")
    parser.add_argument("--max-size-gb", type=float, default=None, help="Override CACHE_MAX_SIZE_GB")
    parser.add_argument("--ttl-hours", type=float, default=None, help="Override CACHE_TTL_HOURS")
    args = parser.parse_args()
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
