"""Cache keys and the on-disk layout of the transcode cache.

Nothing here touches the filesystem; directories are created by the coordinator
right before the first write.
"""

import re
from dataclasses import dataclass
from pathlib import Path

from cottmv.gateway.hashing import calculate_source_hash
from cottmv.gateway.transcode.profiles import OutputFormat, Quality, format_params

_HEX = re.compile(r"^[0-9a-f]{16,128}$")

PARTIAL_MARKER = ".partial"


@dataclass(frozen=True)
class SourceFile:
    """A resolved source file as handed out by the media registry."""

    path: Path
    content_identity: str
    mime_type: str = "application/octet-stream"
    media_type: str = "video"


@dataclass(frozen=True)
class CacheKey:
    source_hash: str
    quality: Quality
    format: OutputFormat

    def __post_init__(self) -> None:
        if not _HEX.match(self.source_hash):
            raise ValueError(f"source_hash must be a lowercase hex digest, got {self.source_hash!r}")
        # accept raw strings ("720p", "mp4") from callers
        object.__setattr__(self, "quality", Quality(self.quality))
        object.__setattr__(self, "format", OutputFormat(self.format))

    def serialize(self) -> str:
        return f"{self.source_hash}:{self.quality}:{self.format}"

    @classmethod
    def parse(cls, raw: str) -> "CacheKey":
        source_hash, quality, fmt = raw.split(":")
        return cls(source_hash=source_hash, quality=Quality(quality), format=OutputFormat(fmt))

    def __str__(self) -> str:
        return self.serialize()


def resolve_key(source: SourceFile, quality: Quality, fmt: OutputFormat) -> CacheKey:
    return CacheKey(source_hash=calculate_source_hash(source.content_identity), quality=quality, format=fmt)


def path_for(key: CacheKey, cache_dir: Path) -> Path:
    """Final location of the rendition for `key`."""
    ext = format_params(key.format).extension
    return Path(cache_dir) / f"{key.source_hash}_{key.quality}.{ext}"


def partial_path_for(final_path: Path) -> Path:
    """Sibling the encoder writes to; keeps the extension so the muxer is still inferable."""
    return final_path.with_name(f"{final_path.stem}{PARTIAL_MARKER}{final_path.suffix}")
