import asyncio
import mimetypes
from pathlib import Path

from loguru import logger
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from cottmv.gateway.db import get_or_404
from cottmv.gateway.domain_models import Media, MediaCreate, MediaType
from cottmv.gateway.exceptions import ConflictError, SourceNotFound, ValidationError
from cottmv.gateway.hashing import file_identity, hash_file
from cottmv.gateway.transcode.keys import SourceFile


def guess_media_type(mime_type: str) -> MediaType:
    match mime_type.split("/", 1)[0]:
        case "video":
            return MediaType.VIDEO
        case "audio":
            return MediaType.AUDIO
        case "image":
            return MediaType.IMAGE
        case _:
            return MediaType.DOCUMENT


class MediaRegistry:
    """Maps media ids to files under `media_dir`."""

    def __init__(self, session: AsyncSession, media_dir: Path):
        self.session = session
        self.media_dir = Path(media_dir)

    def path_of(self, media: Media) -> Path:
        path = Path(media.file_path)
        return path if path.is_absolute() else self.media_dir / path

    async def get(self, media_id: int) -> Media:
        return await get_or_404(self.session, Media, media_id)

    async def resolve_source(self, media_id: int) -> SourceFile:
        """Resolve a media id to its file and a content identity that changes with the file."""
        media = await self.session.get(Media, media_id)
        if media is None:
            raise SourceNotFound(media_id)
        path = self.path_of(media)
        if not path.is_file():
            raise SourceNotFound(media_id, message=f"File for media {media_id} is missing")
        if media.file_hash:
            identity = f"sha256:{media.file_hash}"
        else:
            identity = file_identity(media_id, path)
        return SourceFile(path=path, content_identity=identity, mime_type=media.mime_type, media_type=media.media_type)

    async def register(self, request: MediaCreate) -> Media:
        path = self._checked_path(request.file_path)
        mime_type = request.mime_type or mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        file_hash = await asyncio.to_thread(hash_file, path) if request.compute_hash else None

        if file_hash is not None:
            existing = (await self.session.exec(select(Media).where(Media.file_hash == file_hash))).first()
            if existing is not None:
                raise ConflictError(f"File already registered as media {existing.id}")

        media = Media(
            title=request.title,
            media_type=request.media_type or guess_media_type(mime_type),
            mime_type=mime_type,
            file_path=request.file_path,
            file_size=path.stat().st_size,
            file_hash=file_hash,
        )
        self.session.add(media)
        await self.session.commit()
        await self.session.refresh(media)
        logger.info(f"Registered media {media.id}: {media.title} ({media.mime_type}, {media.file_size} bytes)")
        return media

    async def remove(self, media_id: int) -> Media:
        media = await self.get(media_id)
        await self.session.delete(media)
        await self.session.commit()
        logger.info(f"Removed media {media_id}")
        return media

    def _checked_path(self, file_path: str) -> Path:
        root = self.media_dir.resolve()
        path = Path(file_path)
        path = (path if path.is_absolute() else root / path).resolve()
        if not path.is_relative_to(root):
            raise ValidationError(f"File path must be inside the media directory: {file_path}")
        if not path.is_file():
            raise ValidationError(f"File does not exist: {file_path}")
        return path
