from fastapi import APIRouter, status
from loguru import logger
from pydantic import BaseModel

from cottmv.gateway.deps import DbSession, EvictorDep, OCRDep, RegistryDep, RunnerDep
from cottmv.gateway.domain_models import Media, MediaCreate, MediaRead, MediaType
from cottmv.gateway.exceptions import ProcessingError, SourceNotFound, ValidationError
from cottmv.gateway.hashing import calculate_source_hash
from cottmv.gateway.ocr import OCRError
from cottmv.gateway.transcode.runner import ProbeError

router = APIRouter(prefix="/v1/media", tags=["Media"])


class MediaDeleted(BaseModel):
    id: int
    cache_entries_removed: int
    bytes_freed: int


class OCRResult(BaseModel):
    id: int
    text: str


@router.post("", status_code=status.HTTP_201_CREATED, response_model=MediaRead)
async def register_media(request: MediaCreate, registry: RegistryDep, runner: RunnerDep, db: DbSession) -> Media:
    """Register a file that already sits under the media directory."""
    media = await registry.register(request)
    if media.media_type == MediaType.VIDEO:
        try:
            info = await runner.probe(registry.path_of(media))
        except ProbeError as e:
            logger.warning(f"Could not probe media {media.id}: {e}")
        else:
            media.duration, media.width, media.height = info.duration, info.width, info.height
            db.add(media)
            await db.commit()
            await db.refresh(media)
    return media


@router.get("/{media_id}", response_model=MediaRead)
async def get_media(media_id: int, registry: RegistryDep) -> Media:
    return await registry.get(media_id)


@router.delete("/{media_id}", response_model=MediaDeleted)
async def delete_media(media_id: int, registry: RegistryDep, evictor: EvictorDep) -> MediaDeleted:
    """Unregister a media item and drop its transcoded renditions. The source file is left alone."""
    removed, freed = 0, 0
    try:
        source = await registry.resolve_source(media_id)
    except SourceNotFound:
        await registry.get(media_id)  # 404 if the record itself is gone
        logger.warning(f"Media {media_id} file is missing, cached renditions are left to eviction")
    else:
        result = await evictor.purge_source(calculate_source_hash(source.content_identity))
        removed, freed = result.evicted, result.bytes_freed

    await registry.remove(media_id)
    return MediaDeleted(id=media_id, cache_entries_removed=removed, bytes_freed=freed)


@router.post("/{media_id}/ocr", response_model=OCRResult)
async def extract_media_text(media_id: int, registry: RegistryDep, ocr: OCRDep, db: DbSession) -> OCRResult:
    source = await registry.resolve_source(media_id)
    if not ocr.supports(source.mime_type):
        raise ValidationError(f"Media {media_id} is not an image ({source.mime_type})")
    try:
        text = await ocr.extract_text(source.path)
    except OCRError as e:
        raise ProcessingError(str(e)) from e

    media = await registry.get(media_id)
    media.ocr_text = text
    db.add(media)
    await db.commit()
    return OCRResult(id=media_id, text=text)
