from collections.abc import AsyncIterator
from pathlib import Path

from fastapi import APIRouter, Query, Request, status
from fastapi.responses import Response, StreamingResponse
from loguru import logger
from pydantic import BaseModel

from cottmv.contracts import CompleteEvent, ErrorEvent, ProgressEvent
from cottmv.gateway.deps import CoordinatorDep, RegistryDep, RunnerDep, SettingsDep
from cottmv.gateway.exceptions import ProcessingError, ValidationError
from cottmv.gateway.streaming import (
    event_stream_response,
    serve_file,
    sse_frames,
    subscription_frames,
    wait_unless_disconnected,
)
from cottmv.gateway.transcode.coordinator import CacheHit
from cottmv.gateway.transcode.keys import resolve_key
from cottmv.gateway.transcode.profiles import OutputFormat, Quality, format_params, qualities_up_to
from cottmv.gateway.transcode.runner import ProbeError, needs_transcoding

router = APIRouter(prefix="/v1/stream", tags=["Stream"])

CLIENT_CLOSED_REQUEST = 499


class StreamInfo(BaseModel):
    media_id: int
    mime_type: str
    duration: float
    width: int
    height: int
    video_codec: str
    audio_codec: str
    bitrate: int
    needs_transcoding: bool
    reason: str | None
    available_qualities: list[Quality]
    formats: list[OutputFormat]


class TranscodeAccepted(BaseModel):
    key: str
    status: str  # "ready" or "queued"
    output_path: str | None = None


@router.get("/{media_id}")
async def stream_media(
    media_id: int,
    request: Request,
    registry: RegistryDep,
    coordinator: CoordinatorDep,
    settings: SettingsDep,
    quality: Quality | None = None,
    format: OutputFormat = OutputFormat.MP4,
) -> Response:
    """Stream the original file, or a transcoded rendition when `quality` is given.

    A transcode request waits for the job to finish. If it fails, the original
    is served instead unless fallback is disabled. A client that disconnects
    while waiting is detached from the job.
    """
    source = await registry.resolve_source(media_id)
    if quality is None:
        return serve_file(request, source.path, source.mime_type)

    key = resolve_key(source, quality, format)
    outcome = await coordinator.request_stream(key, source.path)
    if isinstance(outcome, CacheHit):
        return serve_file(request, outcome.path, format_params(format).mime_type)

    async with outcome:
        terminal = await wait_unless_disconnected(request, outcome)
    match terminal:
        case None:
            return Response(status_code=CLIENT_CLOSED_REQUEST)
        case CompleteEvent():
            return serve_file(request, Path(terminal.output_path), format_params(format).mime_type)
        case ErrorEvent():
            if settings.stream_fallback_to_original:
                logger.warning(f"Transcode failed for media {media_id}, serving original: {terminal.message}")
                return serve_file(request, source.path, source.mime_type)
            raise ProcessingError(f"Transcode failed: {terminal.message}")


@router.get("/{media_id}/transcode-progress")
async def transcode_progress(
    media_id: int,
    registry: RegistryDep,
    coordinator: CoordinatorDep,
    settings: SettingsDep,
    quality: Quality = Quality.P720,
    format: OutputFormat = OutputFormat.MP4,
) -> StreamingResponse:
    """Server-sent progress for (media, quality, format), starting the job if needed."""
    source = await registry.resolve_source(media_id)
    key = resolve_key(source, quality, format)
    outcome = await coordinator.request_stream(key, source.path)

    if isinstance(outcome, CacheHit):
        return event_stream_response(
            sse_frames(_single(CompleteEvent(output_path=str(outcome.path), size_bytes=outcome.entry.size_bytes)))
        )
    return event_stream_response(subscription_frames(outcome, settings.progress_heartbeat_seconds))


async def _single(event: ProgressEvent) -> AsyncIterator[ProgressEvent]:
    yield event


@router.get("/{media_id}/info", response_model=StreamInfo)
async def stream_info(media_id: int, registry: RegistryDep, runner: RunnerDep) -> StreamInfo:
    source = await registry.resolve_source(media_id)
    if source.media_type != "video":
        raise ValidationError(f"Media {media_id} is not a video")
    try:
        info = await runner.probe(source.path)
    except ProbeError as e:
        raise ProcessingError(f"Could not read media {media_id}: {e}") from e

    needed, reason = needs_transcoding(info, source.path)
    return StreamInfo(
        media_id=media_id,
        mime_type=source.mime_type,
        duration=info.duration,
        width=info.width,
        height=info.height,
        video_codec=info.video_codec,
        audio_codec=info.audio_codec,
        bitrate=info.bitrate,
        needs_transcoding=needed,
        reason=reason,
        available_qualities=qualities_up_to(info.height),
        formats=list(OutputFormat),
    )


@router.post("/{media_id}/transcode", status_code=status.HTTP_202_ACCEPTED, response_model=TranscodeAccepted)
async def prewarm_transcode(
    media_id: int,
    registry: RegistryDep,
    coordinator: CoordinatorDep,
    quality: Quality = Query(Quality.P720),
    format: OutputFormat = Query(OutputFormat.MP4),
) -> TranscodeAccepted:
    """Start a transcode in the background so a later stream request is a cache hit."""
    source = await registry.resolve_source(media_id)
    key = resolve_key(source, quality, format)
    hit = await coordinator.warm(key, source.path)
    if hit is not None:
        return TranscodeAccepted(key=key.serialize(), status="ready", output_path=str(hit.path))
    return TranscodeAccepted(key=key.serialize(), status="queued")
