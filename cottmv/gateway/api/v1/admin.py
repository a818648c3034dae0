from fastapi import APIRouter, Depends
from pydantic import BaseModel

from cottmv.gateway.deps import CacheIndexDep, CoordinatorDep, EvictorDep, SettingsDep, require_admin
from cottmv.gateway.transcode.index import CacheStats

router = APIRouter(prefix="/v1/admin", tags=["Admin"], dependencies=[Depends(require_admin)])


class CacheStatsResponse(BaseModel):
    """Index statistics plus the configured limits."""

    stats: CacheStats
    active_transcodes: int
    max_size_bytes: int
    ttl_seconds: float
    usage_percent: float


class CleanupResponse(BaseModel):
    files_deleted: int
    bytes_freed: int
    expired: int
    evicted: int
    orphans: int
    errors: list[str]


@router.get("/cache/stats", response_model=CacheStatsResponse)
async def cache_stats(index: CacheIndexDep, coordinator: CoordinatorDep, settings: SettingsDep) -> CacheStatsResponse:
    stats = await index.get_stats()
    max_size = settings.cache_max_size_bytes
    return CacheStatsResponse(
        stats=stats,
        active_transcodes=len(coordinator.active_keys()),
        max_size_bytes=max_size,
        ttl_seconds=settings.cache_ttl_seconds,
        usage_percent=round(stats.total_size_bytes / max_size * 100, 2) if max_size else 0.0,
    )


@router.get("/transcodes")
async def list_transcodes(coordinator: CoordinatorDep) -> list[dict]:
    """In-flight jobs with their latest progress."""
    return coordinator.active_jobs()


@router.post("/cache/cleanup", response_model=CleanupResponse)
async def run_cache_cleanup(evictor: EvictorDep, settings: SettingsDep) -> CleanupResponse:
    result = await evictor.run_cleanup(settings.cache_max_size_bytes, settings.cache_ttl_seconds)
    return CleanupResponse(**result.to_dict())
