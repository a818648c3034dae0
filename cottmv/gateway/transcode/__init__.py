"""On-demand transcoding cache: keys, FFmpeg supervision, single-flight jobs, index and eviction."""

from cottmv.gateway.transcode.coordinator import (
    AbandonPolicy,
    CacheHit,
    Subscription,
    TranscodeCoordinator,
    TranscodeJob,
)
from cottmv.gateway.transcode.eviction import CacheEvictor, CleanupResult, EvictionIOError
from cottmv.gateway.transcode.index import CacheEntry, CacheIndex, CacheStats, EntryStatus
from cottmv.gateway.transcode.keys import CacheKey, SourceFile, path_for, resolve_key
from cottmv.gateway.transcode.profiles import OutputFormat, Quality
from cottmv.gateway.transcode.runner import (
    FFmpegRunner,
    MediaInfo,
    ProbeError,
    TranscodeCancelled,
    TranscodeError,
    TranscodeResult,
    TranscodeRunner,
    TranscodeTimeout,
)

__all__ = [
    # Keys & profiles
    "CacheKey",
    "SourceFile",
    "resolve_key",
    "path_for",
    "Quality",
    "OutputFormat",
    # Runner
    "TranscodeRunner",
    "FFmpegRunner",
    "MediaInfo",
    "TranscodeResult",
    "ProbeError",
    "TranscodeError",
    "TranscodeTimeout",
    "TranscodeCancelled",
    # Coordinator
    "TranscodeCoordinator",
    "TranscodeJob",
    "Subscription",
    "CacheHit",
    "AbandonPolicy",
    # Index & eviction
    "CacheIndex",
    "CacheEntry",
    "CacheStats",
    "EntryStatus",
    "CacheEvictor",
    "CleanupResult",
    "EvictionIOError",
]
