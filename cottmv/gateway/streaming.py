import asyncio
import re
from collections.abc import AsyncIterator, Iterator
from pathlib import Path

from fastapi import Request
from fastapi.responses import StreamingResponse
from loguru import logger

from cottmv.contracts import ProgressEvent, TerminalEvent, encode_sse
from cottmv.gateway.exceptions import APIError, ResourceNotFoundError
from cottmv.gateway.transcode.coordinator import Subscription

CHUNK_SIZE = 1024 * 1024

_RANGE = re.compile(r"^bytes=(\d*)-(\d*)$")


class RangeNotSatisfiableError(APIError):
    """Raised for a Range header outside the file - maps to HTTP 416."""

    status_code = 416


def parse_range(header: str, file_size: int) -> tuple[int, int]:
    """Resolve a single `bytes=` range to inclusive (start, end) offsets."""
    match = _RANGE.match(header.strip())
    if not match or (not match.group(1) and not match.group(2)):
        raise RangeNotSatisfiableError(f"Invalid Range header: {header!r}")
    start_s, end_s = match.groups()
    if not start_s:
        # suffix range: the last N bytes
        length = int(end_s)
        if length == 0:
            raise RangeNotSatisfiableError(f"Invalid Range header: {header!r}")
        return max(0, file_size - length), file_size - 1
    start = int(start_s)
    end = min(int(end_s), file_size - 1) if end_s else file_size - 1
    if start > end or start >= file_size:
        raise RangeNotSatisfiableError(f"Range {header!r} not satisfiable for {file_size} bytes")
    return start, end


def _file_chunks(path: Path, start: int, end: int) -> Iterator[bytes]:
    with path.open("rb") as f:
        f.seek(start)
        remaining = end - start + 1
        while remaining > 0:
            data = f.read(min(CHUNK_SIZE, remaining))
            if not data:
                break
            remaining -= len(data)
            yield data


def serve_file(request: Request, path: Path, media_type: str) -> StreamingResponse:
    """Full or partial (Range) response for a file on disk."""
    if not path.is_file():
        raise ResourceNotFoundError("File", path.name)
    file_size = path.stat().st_size
    range_header = request.headers.get("range")

    if range_header and file_size > 0:
        start, end = parse_range(range_header, file_size)
        headers = {
            "Content-Range": f"bytes {start}-{end}/{file_size}",
            "Accept-Ranges": "bytes",
            "Content-Length": str(end - start + 1),
        }
        return StreamingResponse(
            _file_chunks(path, start, end), status_code=206, headers=headers, media_type=media_type
        )

    headers = {"Accept-Ranges": "bytes", "Content-Length": str(file_size)}
    return StreamingResponse(_file_chunks(path, 0, file_size - 1), headers=headers, media_type=media_type)


async def sse_frames(events: AsyncIterator[ProgressEvent]) -> AsyncIterator[str]:
    async for event in events:
        yield encode_sse(event)


async def subscription_frames(subscription: Subscription, heartbeat_interval: float | None) -> AsyncIterator[str]:
    """SSE frames for one subscriber; detaches when the client goes away or the job ends."""
    try:
        async for frame in sse_frames(subscription.events(heartbeat_interval)):
            yield frame
    finally:
        subscription.close()
        logger.debug(f"Progress stream closed for {subscription.key}")


def event_stream_response(frames: AsyncIterator[str]) -> StreamingResponse:
    return StreamingResponse(
        frames,
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"},
    )


async def wait_unless_disconnected(
    request: Request, subscription: Subscription, poll_interval: float = 1.0
) -> TerminalEvent | None:
    """The job's terminal event, or None as soon as the client has gone away."""
    waiter = asyncio.ensure_future(subscription.wait())
    try:
        while True:
            done, _ = await asyncio.wait({waiter}, timeout=poll_interval)
            if done:
                return waiter.result()
            if await request.is_disconnected():
                logger.debug(f"Client disconnected while waiting for {subscription.key}")
                return None
    finally:
        waiter.cancel()
