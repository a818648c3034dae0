import asyncio
from pathlib import Path

import pytest
import pytest_asyncio

from cottmv.contracts import ProgressUpdate
from cottmv.gateway.hashing import calculate_source_hash
from cottmv.gateway.transcode.index import CacheIndex
from cottmv.gateway.transcode.keys import CacheKey, partial_path_for
from cottmv.gateway.transcode.profiles import OutputFormat, Quality
from cottmv.gateway.transcode.runner import (
    MediaInfo,
    TranscodeCancelled,
    TranscodeResult,
    TranscodeRunner,
)


class FakeRunner(TranscodeRunner):
    """Call-counting stand-in for FFmpeg.

    Emits `steps` as progress, optionally parks after `pause_at` steps until
    `release` is set, then writes `output_bytes` (or raises `fail_with`).
    """

    def __init__(self) -> None:
        self.calls: list[tuple[Path, Path, Quality, OutputFormat]] = []
        self.probe_calls = 0
        self.timeouts: list[float | None] = []
        self.info = MediaInfo(
            duration=10.0, width=1920, height=1080, video_codec="hevc", audio_codec="aac", bitrate=8_000_000
        )
        self.steps: list[float] = [10.0, 35.0, 60.0, 85.0, 100.0]
        self.pause_at: int | None = None
        self.release = asyncio.Event()
        self.paused = asyncio.Event()
        self.fail_with: Exception | None = None
        self.output_bytes = b"\x00\x00\x00\x18ftypmp42" + b"\x01" * 2048

    async def probe(self, path: Path) -> MediaInfo:
        self.probe_calls += 1
        return self.info

    async def transcode(
        self,
        input_path,
        output_path,
        quality,
        fmt,
        on_progress,
        cancel_event=None,
        timeout=None,
    ) -> TranscodeResult:
        self.calls.append((input_path, output_path, quality, fmt))
        self.timeouts.append(timeout)
        partial = partial_path_for(output_path)
        partial.write_bytes(b"")

        for i, percent in enumerate(self.steps):
            if i == self.pause_at:
                await self._park(cancel_event)
            if cancel_event is not None and cancel_event.is_set():
                partial.unlink(missing_ok=True)
                raise TranscodeCancelled("Transcode cancelled")
            on_progress(ProgressUpdate(percent=percent, message=f"Transcoding... {percent:.0f}%"))
            await asyncio.sleep(0)

        if self.fail_with is not None:
            partial.unlink(missing_ok=True)
            raise self.fail_with

        partial.write_bytes(self.output_bytes)
        partial.replace(output_path)
        return TranscodeResult(output_path=output_path, size_bytes=len(self.output_bytes), elapsed_seconds=0.01)

    async def _park(self, cancel_event: asyncio.Event | None) -> None:
        self.paused.set()
        waiters = [asyncio.ensure_future(self.release.wait())]
        if cancel_event is not None:
            waiters.append(asyncio.ensure_future(cancel_event.wait()))
        _, pending = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        for waiter in pending:
            waiter.cancel()


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def cache_dir(tmp_path) -> Path:
    return tmp_path / "cache"


@pytest.fixture
def source_file(tmp_path) -> Path:
    path = tmp_path / "media" / "holiday.mkv"
    path.parent.mkdir(parents=True)
    path.write_bytes(b"\x1a\x45\xdf\xa3" + b"source" * 512)
    return path


@pytest.fixture
def source_hash() -> str:
    return calculate_source_hash("1|3076|1700000000000000000")


@pytest.fixture
def key(source_hash) -> CacheKey:
    return CacheKey(source_hash=source_hash, quality=Quality.P720, format=OutputFormat.MP4)


@pytest_asyncio.fixture
async def index(tmp_path):
    cache_index = CacheIndex(tmp_path / "index" / "cache.db")
    await cache_index.open()
    yield cache_index
    await cache_index.close()
