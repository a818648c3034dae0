"""Single-flight transcode jobs with progress fan-out.

At most one job exists per CacheKey. The first requester for a missing key
becomes the owner and launches the runner; everyone else attaches to the same
job and receives the same events. The job table and its lock are the only
shared mutable state.
"""

import asyncio
import time
from collections.abc import AsyncIterator, Callable
from contextlib import suppress
from dataclasses import dataclass, field
from enum import StrEnum, auto
from pathlib import Path

from loguru import logger

from cottmv.contracts import (
    CompleteEvent,
    ErrorEvent,
    HeartbeatEvent,
    ProgressEvent,
    ProgressUpdate,
    StatusEvent,
    TerminalEvent,
)
from cottmv.gateway.metrics import log_event
from cottmv.gateway.transcode.index import CacheEntry, CacheIndex, EntryStatus
from cottmv.gateway.transcode.keys import CacheKey, partial_path_for, path_for
from cottmv.gateway.transcode.runner import (
    ProbeError,
    TranscodeCancelled,
    TranscodeError,
    TranscodeRunner,
    TranscodeTimeout,
)

MAX_ERROR_MESSAGE_LENGTH = 1000


class AbandonPolicy(StrEnum):
    """What happens to a job when its last subscriber goes away."""

    RUN_TO_COMPLETION = auto()
    CANCEL = auto()


def truncate_error(message: str, limit: int = MAX_ERROR_MESSAGE_LENGTH) -> str:
    if len(message) <= limit:
        return message
    return message[: limit - 3] + "..."


@dataclass(frozen=True)
class CacheHit:
    entry: CacheEntry

    @property
    def path(self) -> Path:
        return Path(self.entry.file_path)


class Subscription:
    """One caller's view of a job: an ordered event queue ending in exactly one terminal event."""

    def __init__(self, job: "TranscodeJob", on_close: Callable[["Subscription"], None]):
        self.job = job
        self._on_close = on_close
        self._queue: asyncio.Queue[ProgressEvent] = asyncio.Queue()
        self._terminal: TerminalEvent | None = None
        self._closed = False

    @property
    def key(self) -> CacheKey:
        return self.job.key

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, event: ProgressEvent) -> None:
        if self._terminal is not None:
            return
        if event.is_terminal:
            self._terminal = event
        self._queue.put_nowait(event)

    async def events(self, heartbeat_interval: float | None = None) -> AsyncIterator[ProgressEvent]:
        """Yield events up to and including the terminal one.

        With `heartbeat_interval`, a HeartbeatEvent is yielded whenever nothing
        arrived for that many seconds.
        """
        while True:
            if self._queue.empty() and self._terminal is not None:
                return
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=heartbeat_interval)
            except TimeoutError:
                yield HeartbeatEvent()
                continue
            yield event
            if event.is_terminal:
                return

    async def wait(self) -> TerminalEvent:
        async for event in self.events():
            if event.is_terminal:
                return event  # type: ignore[return-value]
        assert self._terminal is not None
        return self._terminal

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._on_close(self)

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc) -> None:
        self.close()


@dataclass
class TranscodeJob:
    key: CacheKey
    source_path: Path
    output_path: Path
    started_at: float
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    subscribers: set[Subscription] = field(default_factory=set)
    last_percent: float = 0.0
    last_message: str = "Queued"
    warmed: bool = False
    task: asyncio.Task | None = None
    terminal: TerminalEvent | None = None

    def to_dict(self) -> dict:
        return {
            "key": self.key.serialize(),
            "quality": str(self.key.quality),
            "format": str(self.key.format),
            "source_path": str(self.source_path),
            "output_path": str(self.output_path),
            "started_at": self.started_at,
            "percent": self.last_percent,
            "message": self.last_message,
            "subscribers": len(self.subscribers),
            "warmed": self.warmed,
        }


class TranscodeCoordinator:
    def __init__(
        self,
        index: CacheIndex,
        runner: TranscodeRunner,
        cache_dir: Path,
        ttl_seconds: float,
        job_timeout_seconds: float,
        max_concurrent: int = 2,
        abandon_policy: AbandonPolicy = AbandonPolicy.RUN_TO_COMPLETION,
        clock: Callable[[], float] = time.time,
    ):
        self.index = index
        self.runner = runner
        self.cache_dir = Path(cache_dir)
        self.ttl_seconds = ttl_seconds
        self.job_timeout_seconds = job_timeout_seconds
        self.abandon_policy = AbandonPolicy(abandon_policy)
        self.clock = clock
        self._jobs: dict[CacheKey, TranscodeJob] = {}
        self._lock = asyncio.Lock()
        self._slots = asyncio.Semaphore(max_concurrent)

    async def lookup(self, key: CacheKey) -> CacheEntry | None:
        """Ready, unexpired entry whose file is present with the recorded size."""
        entry = await self.index.get(key)
        if entry is None or entry.status != EntryStatus.READY:
            return None
        if entry.is_expired(self.clock()):
            return None
        try:
            size = Path(entry.file_path).stat().st_size
        except FileNotFoundError:
            logger.warning(f"Cache file missing for {key}: {entry.file_path}")
            return None
        if size != entry.size_bytes:
            logger.warning(f"Cache file size mismatch for {key}: expected {entry.size_bytes}, found {size}")
            return None
        return entry

    async def request_stream(self, key: CacheKey, source_path: Path) -> CacheHit | Subscription:
        hit = await self._serve_hit(key)
        if hit is not None:
            return hit

        async with self._lock:
            job = self._jobs.get(key)
            if job is None:
                hit = await self._serve_hit(key)
                if hit is not None:
                    return hit
                job = await self._start_job(key, Path(source_path))
            return self._attach(job)

    async def warm(self, key: CacheKey, source_path: Path) -> CacheHit | None:
        """Start (or join) a job nobody is watching. Returns the hit if already cached."""
        outcome = await self.request_stream(key, source_path)
        if isinstance(outcome, CacheHit):
            return outcome
        outcome.job.warmed = True
        outcome.close()
        return None

    def active_keys(self) -> set[CacheKey]:
        return set(self._jobs)

    def is_active(self, key: CacheKey) -> bool:
        return key in self._jobs

    def active_jobs(self) -> list[dict]:
        return [job.to_dict() for job in self._jobs.values()]

    async def shutdown(self, timeout: float = 10.0) -> None:
        jobs = list(self._jobs.values())
        if not jobs:
            return
        logger.info(f"Cancelling {len(jobs)} in-flight transcode(s)")
        for job in jobs:
            job.cancel_event.set()
        tasks = [job.task for job in jobs if job.task is not None]
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _serve_hit(self, key: CacheKey) -> CacheHit | None:
        entry = await self.lookup(key)
        if entry is None:
            return None
        now = self.clock()
        await self.index.touch(key, now)
        await log_event(
            "cache_hit",
            cache_key=key.serialize(),
            quality=str(key.quality),
            size_bytes=entry.size_bytes,
            cache_hit=True,
        )
        return CacheHit(entry=entry.model_copy(update={"last_accessed_at": now}))

    async def _start_job(self, key: CacheKey, source_path: Path) -> TranscodeJob:
        """Caller holds the lock."""
        now = self.clock()
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        output_path = path_for(key, self.cache_dir)
        await self.index.put(
            CacheEntry.for_key(
                key,
                status=EntryStatus.PENDING,
                file_path=str(output_path),
                created_at=now,
                last_accessed_at=now,
                expires_at=now + self.job_timeout_seconds,
            )
        )
        job = TranscodeJob(key=key, source_path=source_path, output_path=output_path, started_at=now)
        self._jobs[key] = job
        job.task = asyncio.create_task(self._run(job), name=f"transcode:{key}")
        logger.info(f"Transcode job created for {key}")
        return job

    def _attach(self, job: TranscodeJob) -> Subscription:
        sub = Subscription(job, on_close=self._detach)
        job.subscribers.add(sub)
        sub.push(StatusEvent(message=job.last_message, percent=job.last_percent))
        return sub

    def _detach(self, sub: Subscription) -> None:
        job = sub.job
        job.subscribers.discard(sub)
        if job.subscribers or job.terminal is not None or job.warmed:
            return
        if self.abandon_policy is AbandonPolicy.CANCEL:
            logger.info(f"Last subscriber left {job.key}, cancelling")
            job.cancel_event.set()

    def _broadcast(self, job: TranscodeJob, event: ProgressEvent) -> None:
        if job.terminal is not None:
            return
        match event:
            case ProgressUpdate():
                if event.percent < job.last_percent:
                    event = event.model_copy(update={"percent": job.last_percent})
                job.last_percent = event.percent
                job.last_message = event.message
            case StatusEvent():
                if event.percent is not None and event.percent < job.last_percent:
                    event = event.model_copy(update={"percent": job.last_percent})
                job.last_message = event.message
        for sub in list(job.subscribers):
            sub.push(event)

    def _finish(self, job: TranscodeJob, terminal: TerminalEvent) -> None:
        job.terminal = terminal
        if self._jobs.get(job.key) is job:
            del self._jobs[job.key]
        for sub in list(job.subscribers):
            sub.push(terminal)
        job.subscribers.clear()

    async def _acquire_slot(self, job: TranscodeJob, deadline: float) -> None:
        if self._slots.locked():
            self._broadcast(job, StatusEvent(message="Waiting for a free transcode slot", percent=job.last_percent))
        try:
            await asyncio.wait_for(self._slots.acquire(), timeout=max(deadline - self.clock(), 0.0))
        except TimeoutError:
            raise TranscodeTimeout(
                f"Transcode timed out after {self.job_timeout_seconds}s waiting for a free slot"
            ) from None

    async def _run(self, job: TranscodeJob) -> None:
        """Drive one job to its terminal event.

        The job timeout counts from job creation, the same instant the pending
        entry's expiry is based on, so time spent queued for a slot comes out of
        the runner's budget.
        """
        key = job.key
        deadline = job.started_at + self.job_timeout_seconds
        try:
            await self._acquire_slot(job, deadline)
            try:
                if job.cancel_event.is_set():
                    raise TranscodeCancelled("Transcode cancelled before it started")
                remaining = deadline - self.clock()
                if remaining <= 0:
                    raise TranscodeTimeout(
                        f"Transcode timed out after {self.job_timeout_seconds}s waiting for a free slot"
                    )
                self._broadcast(
                    job, StatusEvent(message=f"Starting transcoding to {key.quality} {key.format}...", percent=0)
                )
                await log_event(
                    "transcode_started", cache_key=key.serialize(), quality=str(key.quality), format=str(key.format)
                )
                result = await self.runner.transcode(
                    job.source_path,
                    job.output_path,
                    key.quality,
                    key.format,
                    on_progress=lambda event: self._broadcast(job, event),
                    cancel_event=job.cancel_event,
                    timeout=remaining,
                )
            finally:
                self._slots.release()
            size = job.output_path.stat().st_size
            now = self.clock()
            await self.index.put(
                CacheEntry.for_key(
                    key,
                    status=EntryStatus.READY,
                    file_path=str(job.output_path),
                    size_bytes=size,
                    created_at=job.started_at,
                    last_accessed_at=now,
                    expires_at=now + self.ttl_seconds,
                )
            )
            self._finish(job, CompleteEvent(output_path=str(job.output_path), size_bytes=size))
            logger.info(f"Transcode complete for {key}: {size} bytes in {result.elapsed_seconds:.1f}s")
            await log_event(
                "transcode_complete",
                cache_key=key.serialize(),
                quality=str(key.quality),
                format=str(key.format),
                size_bytes=size,
                duration_ms=int(result.elapsed_seconds * 1000),
            )
        except (ProbeError, TranscodeError) as e:
            logger.warning(f"Transcode failed for {key}: {e}")
            await self._fail(job, str(e))
        except asyncio.CancelledError:
            await self._fail(job, "Transcode cancelled")
            raise
        except Exception as e:
            logger.exception(f"Unexpected error in transcode job {key}")
            await self._fail(job, f"Unexpected error: {e}")

    async def _fail(self, job: TranscodeJob, message: str) -> None:
        message = truncate_error(message)
        for path in (job.output_path, partial_path_for(job.output_path)):
            with suppress(FileNotFoundError):
                path.unlink()
        now = self.clock()
        try:
            await self.index.put(
                CacheEntry.for_key(
                    job.key,
                    status=EntryStatus.FAILED,
                    file_path=str(job.output_path),
                    created_at=job.started_at,
                    last_accessed_at=now,
                    expires_at=now + self.ttl_seconds,
                    error_message=message,
                )
            )
        finally:
            self._finish(job, ErrorEvent(message=message))
        await log_event("transcode_failed", cache_key=job.key.serialize(), data={"error": message})
